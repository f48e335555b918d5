from __future__ import annotations
from typing import Union
from cryptography.hazmat.primitives.asymmetric import rsa, ed25519, padding, utils as asym_utils
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.keywrap import aes_key_unwrap, InvalidUnwrap
import hashlib

"""
monkeysphere_core.crypto
------------------------
Thin layer over ``cryptography`` for the key codec and the agent bridge:

- modular inverse for RSA CRT coefficients
- RSA parameter <-> key object / PEM conversion
- PKCS#1 v1.5 signing over a precomputed SHA-256 digest
- AES key unwrap (RFC 3394) for keys exported by gpg-agent
"""

PrivateKey = Union[rsa.RSAPrivateKey, ed25519.Ed25519PrivateKey]


def modinv(a: int, m: int) -> int:
    """Inverse of ``a`` modulo ``m`` by the extended Euclidean algorithm.

    The result is normalised into ``[0, m)``; OpenPGP MPIs are unsigned.
    """
    if m <= 0:
        raise ValueError("modulus must be positive")
    old_r, r = a % m, m
    old_s, s = 1, 0
    while r:
        q = old_r // r
        old_r, r = r, old_r - q * r
        old_s, s = s, old_s - q * s
    if old_r != 1:
        raise ValueError("value is not invertible modulo m")
    return old_s % m


def rsa_private_numbers(n: int, e: int, d: int, p: int, q: int) -> rsa.RSAPrivateNumbers:
    """Assemble full private numbers; iqmp = q^-1 mod p."""
    if p * q != n:
        raise ValueError("RSA parameters are inconsistent (p*q != n)")
    return rsa.RSAPrivateNumbers(
        p=p,
        q=q,
        d=d,
        dmp1=d % (p - 1),
        dmq1=d % (q - 1),
        iqmp=modinv(q, p),
        public_numbers=rsa.RSAPublicNumbers(e, n),
    )


def load_rsa_private_pem(pem: bytes) -> rsa.RSAPrivateKey:
    key = serialization.load_pem_private_key(pem, password=None)
    if not isinstance(key, rsa.RSAPrivateKey):
        raise ValueError(f"Not an RSA key: {type(key).__name__}")
    return key


def rsa_private_pem(numbers: rsa.RSAPrivateNumbers) -> bytes:
    return numbers.private_key().private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.TraditionalOpenSSL,
        encryption_algorithm=serialization.NoEncryption(),
    )


def rsa_public_pem(numbers: rsa.RSAPublicNumbers) -> bytes:
    return numbers.public_key().public_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PublicFormat.PKCS1,
    )


def ed25519_private_pem(seed: bytes) -> bytes:
    sk = ed25519.Ed25519PrivateKey.from_private_bytes(seed)
    return sk.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.OpenSSH,
        encryption_algorithm=serialization.NoEncryption(),
    )


def ed25519_public_from_seed(seed: bytes) -> bytes:
    return ed25519.Ed25519PrivateKey.from_private_bytes(seed).public_key().public_bytes_raw()


def sha256_digest(data: bytes) -> bytes:
    return hashlib.sha256(data).digest()


def rsa_sign_digest(key: rsa.RSAPrivateKey, digest: bytes) -> int:
    """PKCS#1 v1.5 signature over a SHA-256 digest, returned as an integer."""
    sig = key.sign(digest, padding.PKCS1v15(), asym_utils.Prehashed(hashes.SHA256()))
    return int.from_bytes(sig, "big")


def rsa_verify_digest(public: rsa.RSAPublicKey, signature: int, digest: bytes) -> bool:
    size = (public.key_size + 7) // 8
    try:
        public.verify(signature.to_bytes(size, "big"), digest,
                      padding.PKCS1v15(), asym_utils.Prehashed(hashes.SHA256()))
        return True
    except Exception:
        return False


def keywrap_unwrap(kek: bytes, wrapped: bytes) -> bytearray:
    """Undo RFC 3394 AES key wrap. The plaintext is 8 octets shorter."""
    if len(kek) not in (16, 24, 32):
        raise ValueError(f"wrong number of bytes in keywrap key (got {len(kek)})")
    if len(wrapped) < 24 or len(wrapped) % 8:
        raise ValueError(f"wrapped key has invalid length {len(wrapped)}")
    try:
        return bytearray(aes_key_unwrap(bytes(kek), bytes(wrapped)))
    except InvalidUnwrap as e:
        raise ValueError("key unwrap failed: integrity check mismatch") from e
