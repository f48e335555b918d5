"""
monkeysphere_core.agent
-----------------------
Moves a secret key from gpg-agent into ssh-agent without touching disk:
gpg-agent exports it wrapped (AES key wrap), it is unwrapped in memory,
re-encoded as an OpenSSH "add identity" request and the buffers are wiped.
"""

from .transfer import (
    SecretKeyMaterial,
    add_identity_message,
    agent_transfer,
    send_to_ssh_agent,
    unwrap_key,
)

__all__ = [
    "SecretKeyMaterial",
    "add_identity_message",
    "agent_transfer",
    "send_to_ssh_agent",
    "unwrap_key",
]
