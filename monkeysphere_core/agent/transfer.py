"""
monkeysphere_core.agent.transfer
--------------------------------
gpg-agent -> ssh-agent key transfer.

Secret material only ever lives in ``bytearray`` buffers that are zeroed
on every exit path (success, refusal or error).
"""

from __future__ import annotations
from dataclasses import dataclass, field
from typing import Dict, Optional
import os, re, socket, struct

from monkeysphere_core.constants import (
    KEYGRIP_LENGTH, SSH2_AGENTC_ADD_ID_CONSTRAINED, SSH2_AGENTC_ADD_IDENTITY,
    SSH_AGENT_CONSTRAIN_CONFIRM, SSH_AGENT_CONSTRAIN_LIFETIME, SSH_AGENT_SUCCESS,
)
from monkeysphere_core.crypto import keywrap_unwrap, modinv
from monkeysphere_core.errors import AgentError
from monkeysphere_core.logger import get_logger
from monkeysphere_core.ssh import SSH_ED25519, SSH_RSA, ssh_uint32
from . import sexp
from .assuan import AssuanClient, gpg_agent_socket_path, percent_plus_escape

_KEYGRIP = re.compile(r"^[0-9A-Fa-f]{%d}$" % KEYGRIP_LENGTH)

# environment forwarded to gpg-agent so pinentry shows up in the right place
AGENT_ENV_OPTIONS = (
    ("ttytype", "TERM"),
    ("display", "DISPLAY"),
    ("xauthority", "XAUTHORITY"),
    ("putenv=GTK_IM_MODULE", "GTK_IM_MODULE"),
    ("putenv=DBUS_SESSION_BUS_ADDRESS", "DBUS_SESSION_BUS_ADDRESS"),
    ("lc-ctype", "LC_CTYPE"),
    ("lc-messages", "LC_MESSAGES"),
)


def wipe(buf) -> None:
    if isinstance(buf, bytearray):
        buf[:] = bytes(len(buf))


def validate_keygrip(keygrip: str) -> str:
    if not _KEYGRIP.match(keygrip or ""):
        raise ValueError(f"keygrip must be {KEYGRIP_LENGTH} hexadecimal digits, got {keygrip!r}")
    return keygrip.upper()


@dataclass
class SecretKeyMaterial:
    """
    Unwrapped private key. ``fields`` holds big-endian values:
    n, e, d, p, q, iqmp for RSA; public (32) and seed (32) for Ed25519.
    """
    key_type: str
    fields: Dict[str, bytearray] = field(default_factory=dict)

    def integer(self, name: str) -> int:
        return int.from_bytes(self.fields[name], "big")

    def wipe(self) -> None:
        for buf in self.fields.values():
            wipe(buf)

    def __enter__(self) -> "SecretKeyMaterial":
        return self

    def __exit__(self, *exc) -> None:
        self.wipe()


def _int_bytes(value: int) -> bytearray:
    return bytearray(value.to_bytes(max(1, (value.bit_length() + 7) // 8), "big"))


def _rsa_material(node) -> SecretKeyMaterial:
    mat = SecretKeyMaterial(SSH_RSA)
    try:
        for name in ("n", "e", "d", "p", "q"):
            raw = sexp.value(node, name.encode())
            if raw is None:
                raise AgentError(f"RSA key is missing parameter {name!r}")
            mat.fields[name] = bytearray(raw)
        p, q = mat.integer("p"), mat.integer("q")
        if p * q != mat.integer("n"):
            raise AgentError("RSA key parameters are inconsistent (p*q != n)")
        # OpenSSH wants q^-1 mod p
        mat.fields["iqmp"] = _int_bytes(modinv(q, p))
    except (AgentError, ValueError):
        mat.wipe()
        raise
    return mat


def _ed25519_material(node) -> SecretKeyMaterial:
    curve = sexp.value(node, b"curve")
    if curve != b"Ed25519":
        raise AgentError(f"unsupported curve {curve!r}; only Ed25519 can be transferred")
    if b"eddsa" not in sexp.values(node, b"flags"):
        raise AgentError("Ed25519 key is not flagged for EdDSA")
    q = sexp.value(node, b"q")
    d = sexp.value(node, b"d")
    if q is None or len(q) != 33 or q[0] != 0x40:
        raise AgentError("Ed25519 public point must be 33 bytes with a 0x40 prefix")
    if d is None or len(d) != 32:
        raise AgentError(f"Ed25519 secret must be 32 bytes, got {len(d) if d else 0}")
    return SecretKeyMaterial(SSH_ED25519, {"public": bytearray(q[1:]), "seed": bytearray(d)})


def unwrap_key(kek, wrapped) -> SecretKeyMaterial:
    """Unwrap an ``EXPORT_KEY`` result and extract the key parameters."""
    try:
        plain = keywrap_unwrap(kek, wrapped)
    except ValueError as e:
        raise AgentError(str(e)) from e
    try:
        try:
            tree = sexp.parse_canonical(plain)
        except ValueError as e:
            raise AgentError(f"failed to parse exported key: {e}") from e
        key = sexp.find(tree, b"private-key")
        if key is None:
            raise AgentError("exported data is not a private key")
        rsa_node = sexp.find(key, b"rsa")
        if rsa_node is not None:
            return _rsa_material(rsa_node)
        ecc_node = sexp.find(key, b"ecc")
        if ecc_node is not None:
            return _ed25519_material(ecc_node)
        raise AgentError("unsupported key type; only RSA and Ed25519 can be transferred")
    finally:
        wipe(plain)


def _put_string(buf: bytearray, data) -> None:
    buf += ssh_uint32(len(data))
    buf += data


def _put_mpint(buf: bytearray, raw: bytearray) -> None:
    """SSH mpint written straight from a big-endian buffer."""
    start = 0
    while start < len(raw) and raw[start] == 0:
        start += 1
    pad = start < len(raw) and raw[start] & 0x80
    buf += ssh_uint32(len(raw) - start + (1 if pad else 0))
    if pad:
        buf.append(0)
    buf += memoryview(raw)[start:]


def add_identity_message(material: SecretKeyMaterial, comment: str,
                         lifetime: int = 0, confirm: bool = False) -> bytearray:
    """Length-prefixed SSH2_AGENTC_ADD_IDENTITY / ADD_ID_CONSTRAINED request.

    Secret fields are copied into the returned buffer only; the caller wipes it.
    """
    if lifetime < 0:
        raise ValueError("lifetime must be positive")
    constrained = bool(lifetime) or confirm
    msg = bytearray(4)
    msg.append(SSH2_AGENTC_ADD_ID_CONSTRAINED if constrained else SSH2_AGENTC_ADD_IDENTITY)
    try:
        _put_string(msg, material.key_type.encode())
        if material.key_type == SSH_RSA:
            for name in ("n", "e", "d", "iqmp", "p", "q"):
                _put_mpint(msg, material.fields[name])
        elif material.key_type == SSH_ED25519:
            public, seed = material.fields["public"], material.fields["seed"]
            _put_string(msg, public)
            msg += ssh_uint32(len(seed) + len(public))
            msg += seed
            msg += public
        else:
            raise AgentError(f"cannot send {material.key_type} keys to ssh-agent")
    except BaseException:
        wipe(msg)
        raise
    _put_string(msg, (comment or "").encode("utf-8"))
    if confirm:
        msg.append(SSH_AGENT_CONSTRAIN_CONFIRM)
    if lifetime:
        msg.append(SSH_AGENT_CONSTRAIN_LIFETIME)
        msg += ssh_uint32(lifetime)
    msg[:4] = ssh_uint32(len(msg) - 4)
    return msg


def _recv_exact(sock: socket.socket, n: int) -> bytes:
    buf = b""
    while len(buf) < n:
        chunk = sock.recv(n - len(buf))
        if not chunk:
            raise AgentError("ssh-agent closed the connection")
        buf += chunk
    return buf


def send_to_ssh_agent(sock: socket.socket, message) -> None:
    sock.sendall(bytes(message))
    (length,) = struct.unpack(">I", _recv_exact(sock, 4))
    if length != 1:
        raise AgentError(f"unexpected ssh-agent response length {length}")
    status = _recv_exact(sock, 1)[0]
    if status != SSH_AGENT_SUCCESS:
        raise AgentError(f"ssh-agent refused the key (response code {status})")


def connect_ssh_agent(path: Optional[str] = None) -> socket.socket:
    path = path or os.environ.get("SSH_AUTH_SOCK")
    if not path:
        raise AgentError("SSH_AUTH_SOCK is not set; is ssh-agent running?")
    sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
    try:
        sock.connect(path)
    except OSError as e:
        sock.close()
        raise AgentError(f"failed to connect to ssh-agent at {path}: {e}") from e
    return sock


def key_description(keygrip: str, comment: Optional[str]) -> str:
    if comment:
        text = f"Sending key for '{comment}' from gpg-agent to ssh-agent...\n(keygrip: {keygrip})"
    else:
        text = f"Sending key from gpg-agent to ssh-agent...\n(keygrip: {keygrip})"
    return "SETKEYDESC " + percent_plus_escape(text)


def send_environment(client: AssuanClient, environ=None) -> None:
    environ = os.environ if environ is None else environ
    tty = environ.get("GPG_TTY")
    if not tty and os.isatty(0):
        tty = os.ttyname(0)
    client.option("ttyname", tty)
    for option, var in AGENT_ENV_OPTIONS:
        client.option(option, environ.get(var))


def agent_transfer(keygrip: str, comment: Optional[str] = None, lifetime: int = 0, confirm: bool = False,
                   ssh_auth_sock: Optional[str] = None, agent_socket: Optional[str] = None,
                   gpgconf: str = "gpgconf", logger=None) -> None:
    log = logger or get_logger("monkeysphere.agent")
    keygrip = validate_keygrip(keygrip)
    if lifetime < 0:
        raise ValueError("lifetime must be positive")

    ssh_sock = connect_ssh_agent(ssh_auth_sock)
    try:
        path = agent_socket or gpg_agent_socket_path(gpgconf)
        with AssuanClient.connect(path, logger=log, gpgconf=gpgconf) as gpg:
            send_environment(gpg)
            kek = gpg.transact("KEYWRAP_KEY --export")
            wrapped = bytearray()
            try:
                gpg.transact(key_description(keygrip, comment))
                wrapped = gpg.transact(f"EXPORT_KEY {keygrip}")
                with unwrap_key(kek, wrapped) as material:
                    msg = add_identity_message(material, comment or f"GnuPG keygrip {keygrip}", lifetime, confirm)
                    try:
                        send_to_ssh_agent(ssh_sock, msg)
                    finally:
                        wipe(msg)
            finally:
                wipe(kek)
                wipe(wrapped)
    finally:
        ssh_sock.close()
    log.info("transferred %s key %s to ssh-agent", material.key_type, keygrip)
