from __future__ import annotations
from typing import Dict, List, Optional

from monkeysphere_core.errors import KeyringError
from monkeysphere_core.keyring.colons import parse_colons
from monkeysphere_core.keyring.models import KeyRecord
from monkeysphere_core.keyring.provider import KeyringProvider
from monkeysphere_core.utils import normalize_fingerprint


class InMemoryKeyring(KeyringProvider):
    """Offline keyring: records and exported material held in dicts."""

    name = "memory"

    def __init__(self):
        self.records: List[KeyRecord] = []
        self.material: Dict[str, bytes] = {}
        self.secret_material: Dict[str, bytes] = {}
        self.imported: List[bytes] = []

    def add_key(self, record: KeyRecord, material: Optional[Dict[str, bytes]] = None,
                secret: Optional[Dict[str, bytes]] = None) -> KeyRecord:
        self.records.append(record)
        for fpr, data in (material or {}).items():
            self.material[normalize_fingerprint(fpr)] = data
        for fpr, data in (secret or {}).items():
            self.secret_material[normalize_fingerprint(fpr)] = data
        return record

    def add_listing(self, colons: str, material: Optional[Dict[str, bytes]] = None) -> List[KeyRecord]:
        return [self.add_key(r, material) for r in parse_colons(colons)]

    def list_keys(self, identity: Optional[str] = None, secret: bool = False) -> List[KeyRecord]:
        out = []
        for rec in self.records:
            if secret and normalize_fingerprint(rec.fingerprint) not in self.secret_material:
                continue
            if identity is None or any(u.user_id == identity for u in rec.user_ids):
                out.append(rec)
        return out

    def _lookup(self, table: Dict[str, bytes], fingerprint: str) -> bytes:
        fpr = normalize_fingerprint(fingerprint)
        for known, data in table.items():
            if known.endswith(fpr):
                return data
        raise KeyringError(f"no key material for {fpr}")

    def export_key(self, fingerprint: str) -> bytes:
        return self._lookup(self.material, fingerprint)

    def export_secret_key(self, fingerprint: str) -> bytes:
        return self._lookup(self.secret_material, fingerprint)

    def import_keys(self, data: bytes) -> None:
        self.imported.append(data)
