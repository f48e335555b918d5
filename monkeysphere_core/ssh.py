"""
monkeysphere_core.ssh
---------------------
OpenSSH wire encodings (RFC 4251 §5) and single-line public keys.
"""

from __future__ import annotations
from dataclasses import dataclass
import binascii
import struct

from .utils import b64e, b64d

SSH_RSA = "ssh-rsa"
SSH_ED25519 = "ssh-ed25519"
KEY_TYPES = (SSH_RSA, SSH_ED25519)


def ssh_uint32(value: int) -> bytes:
    return struct.pack(">I", value)


def ssh_string(data) -> bytes:
    if isinstance(data, str):
        data = data.encode("utf-8")
    return ssh_uint32(len(data)) + bytes(data)


def openssh_mpi_pack(value: int) -> bytes:
    """SSH ``mpint``: byte-counted, big-endian two's complement.

    Zero is the empty string; a positive value whose top bit is set gets a
    leading zero octet so it is not read back as negative.
    """
    if value < 0:
        raise ValueError("negative mpint values are not used here")
    if value == 0:
        return ssh_uint32(0)
    body = value.to_bytes((value.bit_length() + 7) // 8, "big")
    if body[0] & 0x80:
        body = b"\x00" + body
    return ssh_string(body)


class SshReader:
    """Sequential reader over an SSH wire buffer."""

    def __init__(self, data: bytes):
        self.data = bytes(data)
        self.pos = 0

    def _take(self, n: int) -> bytes:
        if self.pos + n > len(self.data):
            raise ValueError("truncated SSH wire data")
        out = self.data[self.pos:self.pos + n]
        self.pos += n
        return out

    def uint32(self) -> int:
        return struct.unpack(">I", self._take(4))[0]

    def byte(self) -> int:
        return self._take(1)[0]

    def string(self) -> bytes:
        return self._take(self.uint32())

    def mpint(self) -> int:
        raw = self.string()
        if raw and raw[0] & 0x80:
            raise ValueError("negative mpint")
        return int.from_bytes(raw, "big")

    def at_end(self) -> bool:
        return self.pos == len(self.data)


@dataclass(frozen=True)
class SshPublicKey:
    key_type: str
    blob: bytes

    @classmethod
    def rsa(cls, n: int, e: int) -> "SshPublicKey":
        return cls(SSH_RSA, ssh_string(SSH_RSA) + openssh_mpi_pack(e) + openssh_mpi_pack(n))

    @classmethod
    def ed25519(cls, public: bytes) -> "SshPublicKey":
        if len(public) != 32:
            raise ValueError(f"Ed25519 public key must be 32 bytes, got {len(public)}")
        return cls(SSH_ED25519, ssh_string(SSH_ED25519) + ssh_string(public))

    @classmethod
    def from_line(cls, line: str) -> "SshPublicKey":
        """Parse ``<type> <base64> [comment]``."""
        parts = line.split()
        if len(parts) < 2:
            raise ValueError("not an SSH public key line")
        try:
            blob = b64d(parts[1])
        except (binascii.Error, ValueError) as e:
            raise ValueError(f"bad base64 in SSH key: {e}") from e
        key_type = SshReader(blob).string().decode("ascii", "replace")
        if key_type != parts[0]:
            raise ValueError(f"key type mismatch: {parts[0]} vs {key_type}")
        return cls(key_type, blob)

    def to_line(self, comment: str | None = None) -> str:
        line = f"{self.key_type} {b64e(self.blob)}"
        if comment:
            line += f" {comment}"
        return line

    def __str__(self) -> str:
        return self.to_line()


def find_key_in_line(line: str) -> SshPublicKey | None:
    """Locate the ``<type> <base64>`` pair anywhere in a known_hosts or
    authorized_keys line (hosts or options may precede it)."""
    tokens = line.split()
    for i, tok in enumerate(tokens[:-1]):
        if tok in KEY_TYPES or tok.startswith(("ssh-", "ecdsa-", "sk-")):
            try:
                return SshPublicKey.from_line(f"{tok} {tokens[i + 1]}")
            except ValueError:
                continue
    return None
