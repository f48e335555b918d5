"""
monkeysphere_core.constants
---------------------------
Wire-level constants shared by the codec, the evaluator and the agent bridge.
"""

from enum import IntEnum

MARKER = "MonkeySphere"

# RFC 4880 §9.1
PUBKEY_ALGO_RSA = 1
PUBKEY_ALGO_EDDSA = 22

# RFC 4880 §9.4
HASH_ALGO_SHA1 = 2
HASH_ALGO_SHA256 = 8

# 1.3.6.1.4.1.11591.15.1
ED25519_OID = bytes.fromhex("2b06010401da470f01")

SIG_POSITIVE_CERTIFICATION = 0x13


class SubpacketType(IntEnum):
    CREATION_TIME = 2
    KEY_EXPIRATION_TIME = 9
    PREFERRED_SYMMETRIC = 11
    ISSUER = 16
    PREFERRED_HASH = 21
    PREFERRED_COMPRESSION = 22
    KEYSERVER_PREFERENCES = 23
    KEY_FLAGS = 27
    FEATURES = 30
    ISSUER_FINGERPRINT = 33


# key flag bits (RFC 4880 §5.2.3.21)
USAGE_FLAGS = {
    "certify": 0x01,
    "sign": 0x02,
    "encrypt_comms": 0x04,
    "encrypt_storage": 0x08,
    "split": 0x10,
    "auth": 0x20,
    "shared": 0x80,
}

# AES256, AES192, AES128, CAST5, 3DES
PREFERRED_SYMMETRIC = bytes([9, 8, 7, 3, 2])
# SHA256, SHA512, SHA384, SHA224, SHA1
PREFERRED_HASH = bytes([8, 10, 9, 11, 2])
# ZLIB, BZip2, ZIP
PREFERRED_COMPRESSION = bytes([2, 3, 1])
FEATURE_MDC = 0x01
KEYSERVER_NO_MODIFY = 0x80

# gpg --with-colons validity codes, ranked
VALIDITY_LEVELS = {
    "u": 4,   # ultimate
    "f": 3,   # full
    "m": 2,   # marginal
    "-": 1,   # unknown
    "q": 1,   # undefined
    "o": 1,   # unknown (new key)
    "": 1,
    "n": 0,   # never
    "i": -1,  # invalid
    "d": -1,  # disabled
    "r": -1,  # revoked
    "e": -1,  # expired
}

VALIDITY_NAMES = {
    "ultimate": 4,
    "full": 3,
    "marginal": 2,
    "unknown": 1,
    "never": 0,
}

# OpenSSH agent protocol
SSH2_AGENTC_ADD_IDENTITY = 17
SSH2_AGENTC_ADD_ID_CONSTRAINED = 25
SSH_AGENT_CONSTRAIN_LIFETIME = 1
SSH_AGENT_CONSTRAIN_CONFIRM = 2
SSH_AGENT_SUCCESS = 6
SSH_AGENT_FAILURE = 5

KEYGRIP_LENGTH = 40
