"""
monkeysphere_core.keyring.colons
--------------------------------
Parser for ``gpg --with-colons --fixed-list-mode`` listings.

Only the record types the evaluator needs are interpreted (pub/sec, sub/ssb,
uid, fpr, grp); everything else is skipped.
"""

from __future__ import annotations
from datetime import datetime, timezone
from typing import Iterable, List, Optional, Union

from monkeysphere_core.keyring.models import KeyRecord, SubkeyRecord, UserIdRecord
from monkeysphere_core.utils import gpg_unescape

PRIMARY_TYPES = ("pub", "sec")
SUBKEY_TYPES = ("sub", "ssb")


def parse_timestamp(value: str) -> Optional[int]:
    if not value:
        return None
    if "T" in value:
        dt = datetime.strptime(value, "%Y%m%dT%H%M%S").replace(tzinfo=timezone.utc)
        return int(dt.timestamp())
    return int(value)


def _field(fields: List[str], idx: int) -> str:
    return fields[idx] if idx < len(fields) else ""


def parse_colons(text: Union[str, bytes, Iterable[str]]) -> List[KeyRecord]:
    if isinstance(text, bytes):
        text = text.decode("utf-8", "replace")
    if isinstance(text, str):
        text = text.splitlines()

    records: List[KeyRecord] = []
    current: Optional[KeyRecord] = None
    last_key: Union[KeyRecord, SubkeyRecord, None] = None

    for line in text:
        fields = line.rstrip("\n").split(":")
        kind = fields[0]
        if kind in PRIMARY_TYPES:
            current = KeyRecord(
                key_id=_field(fields, 4),
                validity=_field(fields, 1),
                created=parse_timestamp(_field(fields, 5)),
                expires=parse_timestamp(_field(fields, 6)),
                capabilities=_field(fields, 11),
            )
            records.append(current)
            last_key = current
        elif current is None:
            continue
        elif kind in SUBKEY_TYPES:
            sub = SubkeyRecord(
                key_id=_field(fields, 4),
                validity=_field(fields, 1),
                created=parse_timestamp(_field(fields, 5)),
                expires=parse_timestamp(_field(fields, 6)),
                capabilities=_field(fields, 11),
            )
            current.subkeys.append(sub)
            last_key = sub
        elif kind == "uid":
            # user IDs only belong to the primary key
            if last_key is not current:
                continue
            current.user_ids.append(UserIdRecord(
                user_id=gpg_unescape(_field(fields, 9)),
                validity=_field(fields, 1),
                created=parse_timestamp(_field(fields, 5)),
                expires=parse_timestamp(_field(fields, 6)),
                uid_hash=_field(fields, 7),
            ))
        elif kind == "fpr" and last_key is not None and not last_key.fingerprint:
            last_key.fingerprint = _field(fields, 9).upper()
        elif kind == "grp" and last_key is not None:
            last_key.keygrip = _field(fields, 9).upper()
    return records
