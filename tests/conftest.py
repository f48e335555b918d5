# tests/conftest.py
import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa

from monkeysphere_core.config import MonkeysphereConfig
from monkeysphere_core.keyring import InMemoryKeyring
from monkeysphere_core.openpgp import openpgp_to_key, pem_to_openpgp
from monkeysphere_core.policy import CertificatePolicy

KEY_TS = 1_600_000_000
NOW = 1_700_000_000  # 2023-11-14T22:13:20Z


def _pem(key) -> bytes:
    return key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.TraditionalOpenSSL,
        serialization.NoEncryption(),
    )


@pytest.fixture(scope="session")
def rsa_keys():
    """A few RSA keys, generated once per run."""
    return [rsa.generate_private_key(public_exponent=65537, key_size=2048) for _ in range(3)]


@pytest.fixture(scope="session")
def rsa_pems(rsa_keys):
    return [_pem(k) for k in rsa_keys]


@pytest.fixture
def config(tmp_path):
    return MonkeysphereConfig(
        log_level="DEBUG",
        check_keyserver=False,
        known_hosts=str(tmp_path / "known_hosts"),
        authorized_keys=str(tmp_path / "authorized_keys"),
    )


class KeyringBuilder:
    """Fills an InMemoryKeyring with real certificates and matching
    colon listings."""

    def __init__(self, pems):
        self.pems = pems
        self.keyring = InMemoryKeyring()

    def cert(self, idx: int, user_id: str) -> bytes:
        return pem_to_openpgp(user_id, self.pems[idx], usage=["certify", "auth"],
                              key_timestamp=KEY_TS, sig_timestamp=KEY_TS, secret=False)

    def add(self, idx: int, user_id: str, validity: str = "f", caps: str = "caCA",
            uid_validity: str = None, expires: str = "", sub_idx: int = None,
            sub_validity: str = "f", sub_caps: str = "a"):
        cert = self.cert(idx, user_id)
        fpr = openpgp_to_key(cert).fingerprint
        material = {fpr: cert}
        lines = [
            f"pub:{validity}:2048:1:{fpr[-16:]}:{KEY_TS}:{expires}::u:::{caps}:",
            f"fpr:::::::::{fpr}:",
            f"uid:{uid_validity or validity}::::{KEY_TS}::HASH{idx}::{user_id.replace(':', chr(92) + 'x3a')}:",
        ]
        sub_fpr = None
        if sub_idx is not None:
            sub_cert = self.cert(sub_idx, user_id)
            sub_fpr = openpgp_to_key(sub_cert).fingerprint
            material[sub_fpr] = sub_cert
            lines += [
                f"sub:{sub_validity}:2048:1:{sub_fpr[-16:]}:{KEY_TS}::::::{sub_caps}:",
                f"fpr:::::::::{sub_fpr}:",
            ]
        self.keyring.add_listing("\n".join(lines) + "\n", material)
        return fpr, sub_fpr

    def ssh_key(self, idx: int):
        return openpgp_to_key(self.cert(idx, "x")).ssh_public_key()


@pytest.fixture
def keyring_builder(rsa_pems):
    return KeyringBuilder(rsa_pems)


@pytest.fixture
def make_policy(config):
    def _make(keyring, cfg=None):
        return CertificatePolicy(cfg or config, keyring, clock=lambda: NOW)
    return _make
