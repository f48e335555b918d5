# monkeysphere_core/keyring/__init__.py
from __future__ import annotations

from .models import KeyRecord, SubkeyRecord, UserIdRecord
from .provider import KeyringProvider
from .colons import parse_colons
from .providers.gpg_provider import GpgKeyring
from .providers.memory_provider import InMemoryKeyring
import os


def load_keyring(config=None, provider: str | None = None) -> KeyringProvider:
    """
    Factory resolver for the keyring backend.

        - gpg (default)
        - memory
    """
    provider = provider or os.getenv("MONKEYSPHERE_KEYRING_PROVIDER", "gpg")

    if provider == "memory":
        return InMemoryKeyring()

    if provider == "gpg":
        if config is None:
            return GpgKeyring()
        return GpgKeyring(
            homedir=config.gnupg_home,
            gpg=config.gpg_binary,
            logger=config.get_logger("monkeysphere.keyring.gpg"),
        )
    raise ValueError(f"Unknown keyring provider: {provider}")


__all__ = [
    "KeyRecord",
    "SubkeyRecord",
    "UserIdRecord",
    "KeyringProvider",
    "GpgKeyring",
    "InMemoryKeyring",
    "parse_colons",
    "load_keyring",
]
