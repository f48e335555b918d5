# monkeysphere_core/keyring/models.py
from __future__ import annotations
from dataclasses import dataclass, field
from typing import List, Optional


@dataclass
class UserIdRecord:
    user_id: str
    validity: str = ""
    created: Optional[int] = None
    expires: Optional[int] = None
    uid_hash: str = ""   # stable per-UID identifier from the keyring


@dataclass
class SubkeyRecord:
    key_id: str
    validity: str = ""
    created: Optional[int] = None
    expires: Optional[int] = None
    capabilities: str = ""
    fingerprint: str = ""
    keygrip: str = ""


@dataclass
class KeyRecord:
    """
    Snapshot of one primary key as reported by the keyring engine.

    The keyring owns and persists the certificate; this is a read-only view
    used for policy decisions.
    """
    key_id: str
    validity: str = ""
    created: Optional[int] = None
    expires: Optional[int] = None
    capabilities: str = ""
    fingerprint: str = ""
    keygrip: str = ""
    user_ids: List[UserIdRecord] = field(default_factory=list)
    subkeys: List[SubkeyRecord] = field(default_factory=list)

    @property
    def disabled(self) -> bool:
        return "D" in self.capabilities
