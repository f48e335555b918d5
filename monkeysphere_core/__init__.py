"""
Monkeysphere Core Package
=========================
OpenPGP web-of-trust authentication for SSH hosts and users.

Provides:
- OpenPGP <-> SSH/PEM key translation (v4 RSA and Ed25519)
- Certificate policy evaluation against a GnuPG keyring
- Managed known_hosts / authorized_keys maintenance
- gpg-agent -> ssh-agent key transfer
"""
