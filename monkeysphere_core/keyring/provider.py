# monkeysphere_core/keyring/provider.py
from __future__ import annotations
from typing import List, Optional

from monkeysphere_core.keyring.models import KeyRecord


class KeyringProvider:
    """
    Contract for the OpenPGP keyring engine.

    The core only reads snapshots (list/export) and hands back material
    fetched from a keyserver (import). Trust computation stays in the
    engine.
    """
    name: str = "base"

    def list_keys(self, identity: Optional[str] = None, secret: bool = False) -> List[KeyRecord]:
        raise NotImplementedError

    def export_key(self, fingerprint: str) -> bytes:
        raise NotImplementedError

    def export_secret_key(self, fingerprint: str) -> bytes:
        raise NotImplementedError

    def import_keys(self, data: bytes) -> None:
        raise NotImplementedError

    def has_key(self, identity: str) -> bool:
        return bool(self.list_keys(identity))
