"""
monkeysphere_core.cli
---------------------
``monkeysphere-keytrans``: key translation and file maintenance commands.

Key material goes to stdout, logs to stderr. Exit status is 0 on success,
1 on a failure and 2 on a usage error.
"""

from __future__ import annotations
import argparse, os, sys

from .config import load_config
from .errors import MonkeysphereError
from .engine import read_authorized_user_ids, update_authorized_keys, update_known_hosts
from .keyring import load_keyring
from .openpgp import openpgp_to_pem, openpgp_to_ssh, pem_to_openpgp
from .policy import CertificatePolicy, resolve_user_id, select_single_key


def _read_stdin() -> bytes:
    return sys.stdin.buffer.read()


def _int_env(name: str):
    value = os.getenv(name)
    return int(value) if value else None


def cmd_pem2openpgp(args, config) -> int:
    usage = (args.usage or os.getenv("PEM2OPENPGP_USAGE_FLAGS") or "certify").split(",")
    sig_ts = args.timestamp if args.timestamp is not None else _int_env("PEM2OPENPGP_TIMESTAMP")
    key_ts = args.key_timestamp if args.key_timestamp is not None else _int_env("PEM2OPENPGP_KEY_TIMESTAMP")
    expires = args.expiration if args.expiration is not None else _int_env("PEM2OPENPGP_EXPIRATION")
    if key_ts is None:
        key_ts = sig_ts
    data = pem_to_openpgp(args.user_id, _read_stdin(), usage=[u.strip() for u in usage if u.strip()],
                          key_timestamp=key_ts, sig_timestamp=sig_ts, expires_in=expires)
    sys.stdout.buffer.write(data)
    return 0


def cmd_openpgp2ssh(args, config) -> int:
    print(openpgp_to_ssh(_read_stdin(), args.fingerprint or ""))
    return 0


def cmd_openpgp2pem(args, config) -> int:
    sys.stdout.buffer.write(openpgp_to_pem(_read_stdin(), args.fingerprint or ""))
    return 0


def _policy(config) -> CertificatePolicy:
    return CertificatePolicy(config, load_keyring(config))


def cmd_update_known_hosts(args, config) -> int:
    outcome = update_known_hosts(config, _policy(config), args.hosts or None,
                                 path=args.file, bootstrap=args.bootstrap)
    return 1 if outcome.failures else 0


def cmd_update_authorized_keys(args, config) -> int:
    user_ids = read_authorized_user_ids(args.user_ids_file)
    outcome = update_authorized_keys(config, _policy(config), user_ids, path=args.file)
    return 1 if outcome.failures else 0


def cmd_find_user_id(args, config) -> int:
    # exactly one key must carry the User ID; the hash names it for gpg edits
    record = select_single_key(load_keyring(config).list_keys(args.user_id), args.key_id)
    uid = resolve_user_id(record, args.user_id)
    print(f"{record.fingerprint} {uid.uid_hash} {uid.validity or '-'}")
    return 0


def cmd_agent_transfer(args, config) -> int:
    from .agent import agent_transfer
    if args.time is not None and args.time <= 0:
        raise ValueError("lifetime must be positive")
    agent_transfer(args.keygrip, comment=args.comment, lifetime=args.time or 0, confirm=args.confirm,
                   logger=config.get_logger("monkeysphere.agent"))
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="monkeysphere-keytrans",
                                     description="OpenPGP <-> SSH key translation and maintenance")
    parser.add_argument("--log-level", help="SILENT, ERROR, INFO, VERBOSE or DEBUG")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("pem2openpgp", help="wrap a PEM RSA key (stdin) as an OpenPGP secret key")
    p.add_argument("user_id")
    p.add_argument("--usage", help="comma-separated usage flags (default: certify)")
    p.add_argument("--timestamp", type=int, help="signature creation time")
    p.add_argument("--key-timestamp", type=int, help="key creation time")
    p.add_argument("--expiration", type=int, help="key lifetime in seconds")
    p.set_defaults(func=cmd_pem2openpgp)

    p = sub.add_parser("openpgp2ssh", help="print the SSH public key of an OpenPGP key (stdin)")
    p.add_argument("fingerprint", nargs="?")
    p.set_defaults(func=cmd_openpgp2ssh)

    p = sub.add_parser("openpgp2pem", help="print an OpenPGP key (stdin) as PEM")
    p.add_argument("fingerprint", nargs="?")
    p.set_defaults(func=cmd_openpgp2pem)

    p = sub.add_parser("update-known-hosts", help="refresh monkeysphere lines in known_hosts")
    p.add_argument("hosts", nargs="*")
    p.add_argument("--file", help="known_hosts path")
    p.add_argument("--bootstrap", action="store_true", help="trust-on-first-use keyserver lookups")
    p.set_defaults(func=cmd_update_known_hosts)

    p = sub.add_parser("update-authorized-keys", help="refresh monkeysphere lines in authorized_keys")
    p.add_argument("user_ids_file", help="file of authorized User IDs")
    p.add_argument("--file", help="authorized_keys path")
    p.set_defaults(func=cmd_update_authorized_keys)

    p = sub.add_parser("find-user-id", help="print fingerprint, User ID hash and validity for a User ID")
    p.add_argument("user_id")
    p.add_argument("--key-id", help="fingerprint suffix when several keys carry the User ID")
    p.set_defaults(func=cmd_find_user_id)

    p = sub.add_parser("agent-transfer", help="move a key from gpg-agent into ssh-agent")
    p.add_argument("keygrip")
    p.add_argument("comment", nargs="?")
    p.add_argument("-t", "--time", type=int, help="lifetime in seconds")
    p.add_argument("-c", "--confirm", action="store_true", help="require confirmation on each use")
    p.set_defaults(func=cmd_agent_transfer)
    return parser


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    try:
        overrides = {"log_level": args.log_level} if args.log_level else None
        config = load_config(overrides)
    except ValueError as e:
        print(f"monkeysphere-keytrans: {e}", file=sys.stderr)
        return 2
    log = config.get_logger("monkeysphere.cli")
    try:
        return args.func(args, config)
    except (MonkeysphereError, ValueError, OSError) as e:
        log.error("%s: %s", args.command, e)
        return 1


if __name__ == "__main__":
    sys.exit(main())
