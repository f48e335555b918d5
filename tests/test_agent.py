import socket
import threading
import pytest
from cryptography.hazmat.primitives.keywrap import aes_key_wrap

from monkeysphere_core.agent import sexp
from monkeysphere_core.agent.assuan import AssuanClient, percent_plus_escape, percent_unescape, trim_and_unescape
from monkeysphere_core.agent.transfer import (
    SecretKeyMaterial, add_identity_message, agent_transfer, key_description, send_to_ssh_agent,
    unwrap_key, validate_keygrip,
)
from monkeysphere_core.crypto import ed25519_public_from_seed, modinv
from monkeysphere_core.errors import AgentError
from monkeysphere_core.ssh import SshReader

KEK = bytes(range(16))
GRIP = "0123456789ABCDEF0123456789ABCDEF01234567"
# textbook RSA
N, E, D, P, Q = 3233, 17, 2753, 61, 53


def atom(value) -> bytes:
    if isinstance(value, int):
        value = value.to_bytes((value.bit_length() + 7) // 8, "big")
    if isinstance(value, str):
        value = value.encode()
    return f"{len(value)}:".encode() + value


def wrap(plain: bytes) -> bytes:
    # gpg-agent pads the S-expression to a multiple of 8
    plain += b"\x00" * (-len(plain) % 8)
    return aes_key_wrap(KEK, plain)


def rsa_sexp() -> bytes:
    params = b"".join(b"(" + atom(k) + atom(v) + b")" for k, v in
                      (("n", N), ("e", E), ("d", D), ("p", P), ("q", Q), ("u", modinv(P, Q))))
    return b"(" + atom("private-key") + b"(" + atom("rsa") + params + b"))"


def ed25519_sexp(seed: bytes) -> bytes:
    q = b"\x40" + ed25519_public_from_seed(seed)
    return (b"(" + atom("private-key") + b"(" + atom("ecc")
            + b"(" + atom("curve") + atom("Ed25519") + b")"
            + b"(" + atom("flags") + atom("eddsa") + b")"
            + b"(" + atom("q") + atom(q) + b")"
            + b"(" + atom("d") + atom(seed) + b")"
            + b"))")


def test_sexp_parse_and_find():
    tree = sexp.parse_canonical(b"(3:foo[4:text]3:bar(1:a2:xy))\x00\x00")
    assert tree == [b"foo", b"bar", [b"a", b"xy"]]
    assert sexp.find(tree, b"a") == [b"a", b"xy"]
    assert sexp.value(tree, b"a") == b"xy"
    assert sexp.find(tree, b"nope") is None
    with pytest.raises(ValueError):
        sexp.parse_canonical(b"(3:fo")
    with pytest.raises(ValueError):
        sexp.parse_canonical(b"3:foo")


def test_unwrap_rsa():
    with unwrap_key(KEK, wrap(rsa_sexp())) as mat:
        assert mat.key_type == "ssh-rsa"
        assert mat.integer("n") == N and mat.integer("d") == D
        assert mat.integer("iqmp") == modinv(Q, P)
        fields = list(mat.fields.values())
    # wiped on exit
    assert all(not any(buf) for buf in fields)


def test_unwrap_rejects_inconsistent_rsa():
    # p = 61 is "=", 59 is ";"
    bad = rsa_sexp().replace(b"1:p1:=", b"1:p1:;")
    with pytest.raises(AgentError):
        unwrap_key(KEK, wrap(bad))


def test_unwrap_with_wrong_kek():
    with pytest.raises(AgentError):
        unwrap_key(bytes(16), wrap(rsa_sexp()))


def test_unwrap_ed25519_and_message():
    seed = bytes(range(32, 64))
    public = ed25519_public_from_seed(seed)
    with unwrap_key(KEK, wrap(ed25519_sexp(seed))) as mat:
        msg = add_identity_message(mat, "laptop key")
    r = SshReader(msg)
    assert r.uint32() == len(msg) - 4
    assert r.byte() == 17
    assert r.string() == b"ssh-ed25519"
    assert r.string() == public
    assert r.string() == seed + public
    assert r.string() == b"laptop key"
    assert r.at_end()


def test_unwrap_rejects_other_curves():
    other = ed25519_sexp(bytes(32)).replace(atom("Ed25519"), atom("NIST P-256"))
    with pytest.raises(AgentError, match="curve"):
        unwrap_key(KEK, wrap(other))


def test_constrained_rsa_message():
    mat = SecretKeyMaterial("ssh-rsa", {k: bytearray(v.to_bytes(2, "big")) for k, v in
                                        (("n", N), ("e", E), ("d", D), ("p", P), ("q", Q),
                                         ("iqmp", modinv(Q, P)))})
    msg = add_identity_message(mat, "c", lifetime=300, confirm=True)
    r = SshReader(msg)
    r.uint32()
    assert r.byte() == 25
    assert r.string() == b"ssh-rsa"
    assert [r.mpint() for _ in range(6)] == [N, E, D, modinv(Q, P), P, Q]
    assert r.string() == b"c"
    assert r.byte() == 2
    assert r.byte() == 1
    assert r.uint32() == 300
    assert r.at_end()


def test_send_to_ssh_agent():
    ours, agent = socket.socketpair()
    with ours, agent:
        agent.sendall(b"\x00\x00\x00\x01\x06")
        send_to_ssh_agent(ours, bytearray(b"\x00\x00\x00\x01\x11"))
        assert agent.recv(16) == b"\x00\x00\x00\x01\x11"

        agent.sendall(b"\x00\x00\x00\x01\x05")
        with pytest.raises(AgentError, match="refused"):
            send_to_ssh_agent(ours, b"\x00\x00\x00\x01\x11")


def test_percent_escaping():
    assert percent_plus_escape('a b+c%"\n') == "a+b%2Bc%25%22%0A"
    assert percent_unescape(b"a%25b%0a") == b"a%b\n"
    assert trim_and_unescape("/run/user/1000/gnupg/S.gpg-agent%3a\n") == "/run/user/1000/gnupg/S.gpg-agent:"


def test_assuan_transact():
    ours, agent = socket.socketpair()
    with ours, agent:
        client = AssuanClient(ours)
        agent.sendall(b"S PROGRESS x\nD ab%0A\nD c\nOK\n")
        assert client.transact("GETINFO version") == bytearray(b"ab\nc")
        assert agent.recv(64) == b"GETINFO version\n"

        agent.sendall(b"INQUIRE PINENTRY_LAUNCHED\nOK\n")
        client.transact("SETKEYDESC x")
        assert agent.recv(64) == b"SETKEYDESC x\nEND\n"

        agent.sendall(b"ERR 67108881 No such key <GPG Agent>\n")
        with pytest.raises(AgentError, match="No such key"):
            client.transact("EXPORT_KEY " + GRIP)


def test_keygrip_and_description():
    assert validate_keygrip(GRIP.lower()) == GRIP
    with pytest.raises(ValueError):
        validate_keygrip("1234")
    desc = key_description(GRIP, "my key")
    assert desc.startswith("SETKEYDESC Sending+key+for+'my+key'+from+gpg-agent+to+ssh-agent...%0A(keygrip:+")


def _d_line(data: bytes) -> bytes:
    out = bytearray()
    for b in data:
        out += b"%%%02X" % b if b in (0x25, 0x0A, 0x0D) else bytes([b])
    return b"D " + bytes(out) + b"\n"


def _serve(listener, handler):
    def run():
        conn, _ = listener.accept()
        with conn:
            handler(conn)
    t = threading.Thread(target=run, daemon=True)
    t.start()
    return t


def test_agent_transfer_end_to_end(tmp_path):
    seed = bytes(range(32))
    wrapped = wrap(ed25519_sexp(seed))
    seen_commands = []
    received = {}

    def gpg_agent(conn):
        f = conn.makefile("rb")
        conn.sendall(b"OK Pleased to meet you\n")
        for line in f:
            cmd = line.strip().decode()
            seen_commands.append(cmd)
            if cmd.startswith("KEYWRAP_KEY"):
                conn.sendall(_d_line(KEK) + b"OK\n")
            elif cmd.startswith("EXPORT_KEY"):
                conn.sendall(_d_line(wrapped) + b"OK\n")
                break
            else:
                conn.sendall(b"OK\n")

    def ssh_agent(conn):
        length = int.from_bytes(conn.recv(4), "big")
        body = b""
        while len(body) < length:
            body += conn.recv(length - len(body))
        received["body"] = body
        conn.sendall(b"\x00\x00\x00\x01\x06")

    gpg_path, ssh_path = str(tmp_path / "g.s"), str(tmp_path / "s.s")
    listeners = []
    for path in (gpg_path, ssh_path):
        s = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        s.bind(path)
        s.listen(1)
        listeners.append(s)
    threads = [_serve(listeners[0], gpg_agent), _serve(listeners[1], ssh_agent)]

    agent_transfer(GRIP, lifetime=60, ssh_auth_sock=ssh_path, agent_socket=gpg_path)
    for t in threads:
        t.join(timeout=5)
    for s in listeners:
        s.close()

    assert "KEYWRAP_KEY --export" in seen_commands
    assert seen_commands[-1] == f"EXPORT_KEY {GRIP}"
    r = SshReader(received["body"])
    assert r.byte() == 25
    assert r.string() == b"ssh-ed25519"
    r.string(), r.string()
    assert r.string() == f"GnuPG keygrip {GRIP}".encode()
    assert r.byte() == 1 and r.uint32() == 60


def test_agent_transfer_requires_ssh_agent(monkeypatch):
    monkeypatch.delenv("SSH_AUTH_SOCK", raising=False)
    with pytest.raises(AgentError, match="SSH_AUTH_SOCK"):
        agent_transfer(GRIP)
    with pytest.raises(ValueError):
        agent_transfer(GRIP, lifetime=-1)


def test_message_mpints_are_encoded_from_field_buffers():
    fields = {name: bytearray(b"\x00\x00\x80\x01") for name in ("n", "d", "iqmp", "p", "q")}
    fields["e"] = bytearray(b"\x00\x03")
    msg = add_identity_message(SecretKeyMaterial("ssh-rsa", fields), "c")
    assert isinstance(msg, bytearray)
    r = SshReader(msg)
    assert r.uint32() == len(msg) - 4
    r.byte(), r.string()
    # leading zeros dropped, a zero octet kept in front of a set top bit
    assert r.string() == b"\x00\x80\x01"
    assert r.string() == b"\x03"
    with pytest.raises(AgentError, match="cannot send"):
        add_identity_message(SecretKeyMaterial("ssh-dss", {}), "c")
