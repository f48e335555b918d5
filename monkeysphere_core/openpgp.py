"""
monkeysphere_core.openpgp
-------------------------
OpenPGP (RFC 4880) packet codec for version-4 RSA and Ed25519 keys.

Parsing is split in two: ``iter_packets`` turns bytes into a lazy sequence of
typed ``Packet`` values, and ``select_key`` is a pure reduction over that
sequence. Encoding builds secret-key certificates from PEM RSA keys, signed
with a positive self-certification.
"""

from __future__ import annotations
from dataclasses import dataclass
from enum import IntEnum
from typing import Iterable, Iterator, Optional
import base64, binascii, re, time

from cryptography.hazmat.primitives.asymmetric import rsa

from .constants import (
    ED25519_OID, FEATURE_MDC, HASH_ALGO_SHA256, KEYSERVER_NO_MODIFY,
    PREFERRED_COMPRESSION, PREFERRED_HASH, PREFERRED_SYMMETRIC,
    PUBKEY_ALGO_EDDSA, PUBKEY_ALGO_RSA, SIG_POSITIVE_CERTIFICATION,
    SubpacketType, USAGE_FLAGS,
)
from .crypto import (
    ed25519_private_pem, ed25519_public_from_seed, load_rsa_private_pem, modinv,
    rsa_private_numbers, rsa_private_pem, rsa_public_pem, rsa_sign_digest, sha256_digest,
)
from .errors import AmbiguousKeyError, NoMatchingKeyError, PacketFormatError
from .ssh import SshPublicKey
from .utils import normalize_fingerprint, sha1


class PacketTag(IntEnum):
    PUBLIC_KEY_ENCRYPTED_SESSION_KEY = 1
    SIGNATURE = 2
    SYMMETRIC_KEY_ENCRYPTED_SESSION_KEY = 3
    ONE_PASS_SIGNATURE = 4
    SECRET_KEY = 5
    PUBLIC_KEY = 6
    SECRET_SUBKEY = 7
    COMPRESSED_DATA = 8
    SYMMETRICALLY_ENCRYPTED_DATA = 9
    MARKER = 10
    LITERAL_DATA = 11
    TRUST = 12
    USER_ID = 13
    PUBLIC_SUBKEY = 14
    USER_ATTRIBUTE = 17
    SYM_ENCRYPTED_INTEGRITY_PROTECTED_DATA = 18
    MODIFICATION_DETECTION_CODE = 19
    AEAD_ENCRYPTED_DATA = 20
    PADDING = 21


KEY_TAGS = frozenset({
    PacketTag.PUBLIC_KEY, PacketTag.PUBLIC_SUBKEY,
    PacketTag.SECRET_KEY, PacketTag.SECRET_SUBKEY,
})
SECRET_TAGS = frozenset({PacketTag.SECRET_KEY, PacketTag.SECRET_SUBKEY})
SUBKEY_TAGS = frozenset({PacketTag.PUBLIC_SUBKEY, PacketTag.SECRET_SUBKEY})

UNSUPPORTED = "unsupported key version/algorithm"


# --------- MPIs ----------
def mpi_pack(value: int) -> bytes:
    """RFC 4880 §3.2: 16-bit count of significant bits, then the octets."""
    if value < 0:
        raise ValueError("MPIs are unsigned")
    bits = value.bit_length()
    return bits.to_bytes(2, "big") + value.to_bytes((bits + 7) // 8, "big")


def mpi_unpack(data: bytes, pos: int = 0) -> tuple[int, int]:
    if pos + 2 > len(data):
        raise PacketFormatError("truncated MPI header", offset=pos)
    bits = int.from_bytes(data[pos:pos + 2], "big")
    end = pos + 2 + (bits + 7) // 8
    if end > len(data):
        raise PacketFormatError("truncated MPI", offset=pos)
    return int.from_bytes(data[pos + 2:end], "big"), end


# --------- framing ----------
def fingerprint_bytes(public_body: bytes) -> bytes:
    """RFC 4880 §12.2: SHA-1 over 0x99, a two-octet length and the body."""
    return sha1(b"\x99" + len(public_body).to_bytes(2, "big") + public_body)


def fingerprint(public_body: bytes) -> str:
    return fingerprint_bytes(public_body).hex().upper()


def key_id(public_body: bytes) -> str:
    return fingerprint(public_body)[-16:]


def encode_packet(tag: PacketTag, body: bytes) -> bytes:
    """Old-format header with the shortest length type that fits."""
    n = len(body)
    if n < 0x100:
        return bytes([0x80 | (tag << 2)]) + n.to_bytes(1, "big") + body
    if n < 0x10000:
        return bytes([0x80 | (tag << 2) | 1]) + n.to_bytes(2, "big") + body
    return bytes([0x80 | (tag << 2) | 2]) + n.to_bytes(4, "big") + body


def encode_subpacket(kind: SubpacketType, data: bytes) -> bytes:
    n = len(data) + 1
    if n < 192:
        head = bytes([n])
    elif n < 8384:
        n -= 192
        head = bytes([(n >> 8) + 192, n & 0xFF])
    else:
        head = b"\xff" + n.to_bytes(4, "big")
    return head + bytes([kind]) + data


@dataclass(frozen=True)
class Packet:
    tag: PacketTag
    body: bytes
    offset: int


def iter_packets(data: bytes) -> Iterator[Packet]:
    data = bytes(data)
    pos = 0

    def take(n: int, start: int) -> bytes:
        nonlocal pos
        if n < 0 or pos + n > len(data):
            raise PacketFormatError("truncated packet", offset=start)
        chunk = data[pos:pos + n]
        pos += n
        return chunk

    while pos < len(data):
        start = pos
        ctb = take(1, start)[0]
        if not ctb & 0x80:
            raise PacketFormatError("invalid packet header", offset=start)
        if ctb & 0x40:
            raw_tag = ctb & 0x3F
            parts = []
            while True:
                o1 = take(1, start)[0]
                partial = False
                if o1 < 192:
                    length = o1
                elif o1 < 224:
                    length = ((o1 - 192) << 8) + take(1, start)[0] + 192
                elif o1 == 255:
                    length = int.from_bytes(take(4, start), "big")
                else:
                    length = 1 << (o1 & 0x1F)
                    partial = True
                parts.append(take(length, start))
                if not partial:
                    break
            body = b"".join(parts)
        else:
            raw_tag = (ctb >> 2) & 0x0F
            length_type = ctb & 0x03
            if length_type == 3:
                length = len(data) - pos
            else:
                length = int.from_bytes(take((1, 2, 4)[length_type], start), "big")
            body = take(length, start)
        try:
            tag = PacketTag(raw_tag)
        except ValueError:
            raise PacketFormatError("unknown packet tag", tag=raw_tag, offset=start) from None
        yield Packet(tag, body, start)


class PacketStream:
    """Restartable view over raw packet bytes; each iteration re-parses."""

    def __init__(self, data: bytes):
        self.data = bytes(data)

    def __iter__(self) -> Iterator[Packet]:
        return iter_packets(self.data)


def dearmor(text) -> bytes:
    """Strip ASCII armor if present; binary input is returned unchanged."""
    if isinstance(text, bytes):
        if b"-----BEGIN PGP" not in text:
            return text
        text = text.decode("ascii", "replace")
    blocks = re.findall(r"-----BEGIN PGP [A-Z ]+-----\r?\n(.*?)-----END PGP [A-Z ]+-----", text, re.S)
    if not blocks:
        raise PacketFormatError("no armored OpenPGP block found")
    out = []
    for block in blocks:
        # armor headers end at the first blank line
        head, sep, payload = block.partition("\n\n")
        if not sep:
            head, sep, payload = block.partition("\r\n\r\n")
        if not sep:
            payload = block
        lines = [l.strip() for l in payload.splitlines() if l.strip() and not l.startswith("=")]
        try:
            out.append(base64.b64decode("".join(lines), validate=True))
        except (binascii.Error, ValueError) as e:
            raise PacketFormatError(f"bad armor: {e}") from e
    return b"".join(out)


# --------- key packets ----------
@dataclass
class OpenPGPKey:
    tag: PacketTag
    created: int
    algorithm: int
    public_body: bytes
    rsa_public: Optional[rsa.RSAPublicNumbers] = None
    ed25519_public: Optional[bytes] = None
    rsa_private: Optional[rsa.RSAPrivateNumbers] = None
    ed25519_seed: Optional[bytes] = None

    @property
    def fingerprint(self) -> str:
        return fingerprint(self.public_body)

    @property
    def key_id(self) -> str:
        return key_id(self.public_body)

    @property
    def is_secret(self) -> bool:
        return self.tag in SECRET_TAGS

    @property
    def is_subkey(self) -> bool:
        return self.tag in SUBKEY_TAGS

    def ssh_public_key(self) -> SshPublicKey:
        if self.algorithm == PUBKEY_ALGO_RSA:
            return SshPublicKey.rsa(self.rsa_public.n, self.rsa_public.e)
        return SshPublicKey.ed25519(self.ed25519_public)

    def to_pem(self) -> bytes:
        if self.algorithm == PUBKEY_ALGO_RSA:
            if self.rsa_private is not None:
                return rsa_private_pem(self.rsa_private)
            return rsa_public_pem(self.rsa_public)
        if self.ed25519_seed is not None:
            return ed25519_private_pem(self.ed25519_seed)
        raise PacketFormatError("no PEM form for an Ed25519 public key; use the SSH form")


def _public_length(body: bytes) -> Optional[int]:
    """Length of the public part of a v4 key body, or None if it cannot be
    determined (other versions, unknown algorithms)."""
    if len(body) < 6 or body[0] != 4:
        return None
    algo, pos = body[5], 6
    mpi_counts = {1: 2, 2: 2, 3: 2, 16: 3, 17: 4}
    try:
        if algo in mpi_counts:
            for _ in range(mpi_counts[algo]):
                _, pos = mpi_unpack(body, pos)
        elif algo in (18, 19, 22):
            pos += 1 + body[pos]
            _, pos = mpi_unpack(body, pos)
            if algo == 18:  # ECDH KDF parameters
                pos += 1 + body[pos]
        else:
            return None
    except (PacketFormatError, IndexError):
        return None
    return pos if pos <= len(body) else None


def packet_fingerprint(packet: Packet) -> Optional[str]:
    if packet.tag not in SECRET_TAGS:
        if not packet.body or packet.body[0] != 4:
            return None
        return fingerprint(packet.body)
    n = _public_length(packet.body)
    return fingerprint(packet.body[:n]) if n else None


def parse_key_packet(packet: Packet) -> OpenPGPKey:
    body = packet.body
    if packet.tag not in KEY_TAGS:
        raise PacketFormatError("not a key packet", tag=packet.tag, offset=packet.offset)
    if len(body) < 6:
        raise PacketFormatError(f"{UNSUPPORTED}: truncated key packet", tag=packet.tag, offset=packet.offset)
    if body[0] != 4:
        raise PacketFormatError(f"{UNSUPPORTED}: version {body[0]}", tag=packet.tag, offset=packet.offset)
    created = int.from_bytes(body[1:5], "big")
    algo = body[5]
    pos = 6
    key = OpenPGPKey(tag=packet.tag, created=created, algorithm=algo, public_body=b"")

    if algo == PUBKEY_ALGO_RSA:
        n, pos = mpi_unpack(body, pos)
        e, pos = mpi_unpack(body, pos)
        key.rsa_public = rsa.RSAPublicNumbers(e, n)
    elif algo == PUBKEY_ALGO_EDDSA:
        oid_len = body[pos] if pos < len(body) else 0
        oid = body[pos + 1:pos + 1 + oid_len]
        if oid != ED25519_OID:
            raise PacketFormatError(f"{UNSUPPORTED}: EdDSA curve is not Ed25519", tag=packet.tag, offset=packet.offset)
        pos += 1 + oid_len
        point, pos = mpi_unpack(body, pos)
        raw = point.to_bytes(33, "big") if point.bit_length() <= 264 else b""
        if raw[:1] != b"\x40":
            raise PacketFormatError("Ed25519 point is not in native (0x40) form", tag=packet.tag, offset=packet.offset)
        key.ed25519_public = raw[1:]
    else:
        raise PacketFormatError(f"{UNSUPPORTED}: algorithm {algo}", tag=packet.tag, offset=packet.offset)
    key.public_body = body[:pos]

    if packet.tag in SECRET_TAGS:
        if pos >= len(body):
            raise PacketFormatError("truncated secret key packet", tag=packet.tag, offset=packet.offset)
        s2k_usage = body[pos]
        pos += 1
        if s2k_usage != 0:
            raise PacketFormatError(f"secret key material is encrypted (S2K usage {s2k_usage})",
                                    tag=packet.tag, offset=packet.offset)
        secret_start = pos
        if algo == PUBKEY_ALGO_RSA:
            values = []
            for _ in range(4):
                v, pos = mpi_unpack(body, pos)
                values.append(v)
            d, pgp_p, pgp_q, _u = values
            # OpenPGP p/q are stored swapped relative to PKCS#1
            try:
                key.rsa_private = rsa_private_numbers(key.rsa_public.n, key.rsa_public.e, d, pgp_q, pgp_p)
            except ValueError as e:
                raise PacketFormatError(f"bad RSA secret material: {e}", tag=packet.tag, offset=packet.offset) from e
        else:
            seed, pos = mpi_unpack(body, pos)
            if seed.bit_length() > 256:
                raise PacketFormatError("Ed25519 secret is too large", tag=packet.tag, offset=packet.offset)
            key.ed25519_seed = seed.to_bytes(32, "big")
            if ed25519_public_from_seed(key.ed25519_seed) != key.ed25519_public:
                raise PacketFormatError("Ed25519 secret does not match public key", tag=packet.tag, offset=packet.offset)
        if pos + 2 > len(body):
            raise PacketFormatError("missing secret key checksum", tag=packet.tag, offset=packet.offset)
        expected = int.from_bytes(body[pos:pos + 2], "big")
        if sum(body[secret_start:pos]) & 0xFFFF != expected:
            raise PacketFormatError("secret key checksum mismatch", tag=packet.tag, offset=packet.offset)
    return key


def select_key(packets: Iterable[Packet], fingerprint_filter: str = "") -> OpenPGPKey:
    """First key packet, or the single key whose fingerprint ends with the
    filter. Two matches for one filter is an error."""
    want = normalize_fingerprint(fingerprint_filter) if fingerprint_filter else ""
    found: Optional[Packet] = None
    for packet in packets:
        if packet.tag not in KEY_TAGS:
            continue
        if not want:
            return parse_key_packet(packet)
        fpr = packet_fingerprint(packet)
        if fpr is None or not fpr.endswith(want):
            continue
        if found is not None:
            raise AmbiguousKeyError(f"found multiple keys matching {want}")
        found = packet
    if found is None:
        raise NoMatchingKeyError()
    return parse_key_packet(found)


def openpgp_to_key(data: bytes, fingerprint_filter: str = "") -> OpenPGPKey:
    return select_key(PacketStream(dearmor(data)), fingerprint_filter)


def openpgp_to_ssh(data: bytes, fingerprint_filter: str = "") -> str:
    return openpgp_to_key(data, fingerprint_filter).ssh_public_key().to_line()


def openpgp_to_pem(data: bytes, fingerprint_filter: str = "") -> bytes:
    return openpgp_to_key(data, fingerprint_filter).to_pem()


# --------- encoding ----------
def usage_flags(usage: Iterable[str]) -> int:
    flags = 0
    for name in usage:
        try:
            flags |= USAGE_FLAGS[name]
        except KeyError:
            raise ValueError(f"unknown key usage: {name}") from None
    return flags


def rsa_public_body(n: int, e: int, created: int) -> bytes:
    return bytes([4]) + created.to_bytes(4, "big") + bytes([PUBKEY_ALGO_RSA]) + mpi_pack(n) + mpi_pack(e)


def rsa_secret_material(numbers: rsa.RSAPrivateNumbers) -> bytes:
    # PKCS#1 (p, q, q^-1 mod p) is OpenPGP (q, p, p^-1 mod q) read backwards
    mpis = (mpi_pack(numbers.d) + mpi_pack(numbers.q) + mpi_pack(numbers.p)
            + mpi_pack(modinv(numbers.q, numbers.p)))
    checksum = sum(mpis) & 0xFFFF
    return b"\x00" + mpis + checksum.to_bytes(2, "big")


def certification_hashed_subpackets(public_body: bytes, sig_timestamp: int, flags: int,
                                    expires_in: Optional[int] = None) -> bytes:
    out = [
        encode_subpacket(SubpacketType.ISSUER_FINGERPRINT, b"\x04" + fingerprint_bytes(public_body)),
        encode_subpacket(SubpacketType.CREATION_TIME, sig_timestamp.to_bytes(4, "big")),
        encode_subpacket(SubpacketType.KEY_FLAGS, bytes([flags])),
    ]
    if expires_in:
        out.append(encode_subpacket(SubpacketType.KEY_EXPIRATION_TIME, int(expires_in).to_bytes(4, "big")))
    out += [
        encode_subpacket(SubpacketType.PREFERRED_SYMMETRIC, PREFERRED_SYMMETRIC),
        encode_subpacket(SubpacketType.PREFERRED_HASH, PREFERRED_HASH),
        encode_subpacket(SubpacketType.PREFERRED_COMPRESSION, PREFERRED_COMPRESSION),
        encode_subpacket(SubpacketType.FEATURES, bytes([FEATURE_MDC])),
        encode_subpacket(SubpacketType.KEYSERVER_PREFERENCES, bytes([KEYSERVER_NO_MODIFY])),
    ]
    return b"".join(out)


def certification_digest_input(public_body: bytes, user_id: bytes, sig_header: bytes) -> bytes:
    return (b"\x99" + len(public_body).to_bytes(2, "big") + public_body
            + b"\xb4" + len(user_id).to_bytes(4, "big") + user_id
            + sig_header + b"\x04\xff" + len(sig_header).to_bytes(4, "big"))


def self_certification(key: rsa.RSAPrivateKey, public_body: bytes, user_id: str,
                       sig_timestamp: int, flags: int, expires_in: Optional[int] = None) -> bytes:
    """Body of a v4 positive certification (0x13) over ``user_id``."""
    hashed = certification_hashed_subpackets(public_body, sig_timestamp, flags, expires_in)
    header = (bytes([4, SIG_POSITIVE_CERTIFICATION, PUBKEY_ALGO_RSA, HASH_ALGO_SHA256])
              + len(hashed).to_bytes(2, "big") + hashed)
    digest = sha256_digest(certification_digest_input(public_body, user_id.encode("utf-8"), header))
    signature = rsa_sign_digest(key, digest)
    unhashed = encode_subpacket(SubpacketType.ISSUER, fingerprint_bytes(public_body)[-8:])
    return header + len(unhashed).to_bytes(2, "big") + unhashed + digest[:2] + mpi_pack(signature)


def pem_to_openpgp(user_id: str, private_key_pem: bytes, usage: Iterable[str] = ("certify",),
                   key_timestamp: Optional[int] = None, sig_timestamp: Optional[int] = None,
                   expires_in: Optional[int] = None, secret: bool = True) -> bytes:
    """
    Wrap a PEM RSA private key as an OpenPGP certificate: key packet, User ID
    packet and self-certification.

    With ``secret=False`` the key packet is a public-key packet (what
    ``gpg --export`` would return for the same key).
    """
    key = load_rsa_private_pem(private_key_pem)
    now = int(time.time())
    key_timestamp = now if key_timestamp is None else int(key_timestamp)
    sig_timestamp = now if sig_timestamp is None else int(sig_timestamp)
    if key_timestamp > sig_timestamp:
        raise ValueError(f"key timestamp ({key_timestamp}) is later than signature timestamp ({sig_timestamp})")

    numbers = key.private_numbers()
    public_body = rsa_public_body(numbers.public_numbers.n, numbers.public_numbers.e, key_timestamp)
    flags = usage_flags(usage)
    if secret:
        key_packet = encode_packet(PacketTag.SECRET_KEY, public_body + rsa_secret_material(numbers))
    else:
        key_packet = encode_packet(PacketTag.PUBLIC_KEY, public_body)
    return (key_packet
            + encode_packet(PacketTag.USER_ID, user_id.encode("utf-8"))
            + encode_packet(PacketTag.SIGNATURE,
                            self_certification(key, public_body, user_id, sig_timestamp, flags, expires_in)))
