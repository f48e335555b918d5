"""
monkeysphere_core.utils
-----------------------
Small helpers for base64, timestamps and gpg's colon-field escaping.
"""

from __future__ import annotations
import base64, hashlib, re, time
from typing import Optional

_GPG_ESCAPE = re.compile(r"\\x([0-9a-fA-F]{2})")


def b64e(b: bytes) -> str:
    return base64.b64encode(b).decode("ascii")


def b64d(s: str) -> bytes:
    return base64.b64decode(s.encode("ascii"), validate=True)


def now_ts(when: Optional[float] = None) -> str:
    # ISO 8601 in UTC, second precision, no zone suffix (the marker format)
    return time.strftime("%Y-%m-%dT%H:%M:%S", time.gmtime(when))


def sha1(data: bytes) -> bytes:
    return hashlib.sha1(data).digest()


def gpg_unescape(field: str) -> str:
    """Undo gpg's ``\\xNN`` escaping of colon-listing fields."""
    raw = _GPG_ESCAPE.sub(lambda m: chr(int(m.group(1), 16)), field)
    # escapes encode bytes; re-decode multi-byte UTF-8 sequences
    try:
        return raw.encode("latin-1").decode("utf-8")
    except (UnicodeEncodeError, UnicodeDecodeError):
        return raw


def normalize_fingerprint(fpr: str) -> str:
    fpr = fpr.strip().replace(" ", "").upper()
    if fpr.startswith("0X"):
        fpr = fpr[2:]
    if fpr.endswith("!"):
        fpr = fpr[:-1]
    if not re.fullmatch(r"[0-9A-F]*", fpr):
        raise ValueError(f"not a hexadecimal key identifier: {fpr!r}")
    return fpr
