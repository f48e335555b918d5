"""
monkeysphere_core.policy
------------------------
Certificate policy evaluation: which keys on the certificates carrying a
given User ID may be used for SSH authentication.

Two stages:

- ``assess_keys`` is a pure function over keyring records and returns one
  ``KeyAssessment`` per candidate key.
- ``CertificatePolicy.evaluate`` refreshes/queries the keyring, runs the
  assessment and translates every candidate (good or bad) to SSH form, so
  rejected keys can still be found and removed from generated files.
"""

from __future__ import annotations
from dataclasses import dataclass
from typing import Iterable, List, Optional
import time

from .constants import VALIDITY_LEVELS
from .errors import (
    AmbiguousKeyError, KeyringError, KeyserverError, NoMatchingKeyError,
    NoPrimaryKeysError, PacketFormatError,
)
from .identity import canonical_identity
from .keyring.models import KeyRecord, UserIdRecord
from .keyserver import KeyserverClient
from .logger import verbose
from .openpgp import openpgp_to_key
from .ssh import SshPublicKey
from .utils import normalize_fingerprint


@dataclass(frozen=True)
class KeyResult:
    ssh_key: SshPublicKey
    user_id: str
    fingerprint: str

    @property
    def ok(self) -> bool:
        raise NotImplementedError


@dataclass(frozen=True)
class Accepted(KeyResult):
    @property
    def ok(self) -> bool:
        return True


@dataclass(frozen=True)
class Rejected(KeyResult):
    reason: str = ""

    @property
    def ok(self) -> bool:
        return False


def precedence(result: KeyResult) -> int:
    """Rejected results sort before accepted ones, so a later acceptance of
    the same key wins."""
    return 1 if result.ok else 0


def sort_results(results: Iterable[KeyResult]) -> List[KeyResult]:
    return sorted(results, key=precedence)


@dataclass(frozen=True)
class KeyAssessment:
    fingerprint: str
    primary: bool
    acceptable: bool
    reason: str = ""


def has_capability(capabilities: str, required: str) -> bool:
    return all(c in capabilities for c in required)


def validity_problem(code: str, threshold: int) -> Optional[str]:
    level = VALIDITY_LEVELS.get(code, -1)
    if level < threshold:
        return f"unacceptable validity ({code or 'none'})"
    return None


def expiry_problem(expires: Optional[int], now: float) -> Optional[str]:
    if expires and expires <= now:
        return "expired"
    return None


def primary_problem(rec: KeyRecord, required: str, threshold: int, now: float) -> Optional[str]:
    problem = validity_problem(rec.validity, threshold)
    if problem:
        return f"primary key {problem}"
    if rec.disabled:
        return "primary key disabled"
    # overall (upper-case) capability covers the key and its subkeys
    if not has_capability(rec.capabilities, required.upper()):
        return f"unacceptable primary key capability ({rec.capabilities})"
    problem = expiry_problem(rec.expires, now)
    if problem:
        return f"primary key {problem}"
    return None


def user_id_problem(rec: KeyRecord, user_id: str, threshold: int, now: float) -> Optional[str]:
    """First acceptable matching User ID wins."""
    reason = "no matching user ID"
    for uid in rec.user_ids:
        if uid.user_id != user_id:
            continue
        problem = validity_problem(uid.validity, threshold) or expiry_problem(uid.expires, now)
        if problem is None:
            return None
        reason = f"user ID {problem}"
    return reason


def assess_keys(records: Iterable[KeyRecord], user_id: str, required: str,
                threshold: int, now: float) -> List[KeyAssessment]:
    out: List[KeyAssessment] = []
    for rec in records:
        gate = primary_problem(rec, required, threshold, now) or user_id_problem(rec, user_id, threshold, now)
        if has_capability(rec.capabilities, required):
            out.append(KeyAssessment(rec.fingerprint, True, gate is None, gate or ""))
        for sub in rec.subkeys:
            problem = gate
            if problem is None:
                problem = validity_problem(sub.validity, threshold)
                problem = f"sub key {problem}" if problem else None
            if problem is None and not has_capability(sub.capabilities, required):
                problem = f"unacceptable sub key capability ({sub.capabilities})"
            if problem is None and expiry_problem(sub.expires, now):
                problem = "sub key expired"
            out.append(KeyAssessment(sub.fingerprint, False, problem is None, problem or ""))
    return out


def select_single_key(records: List[KeyRecord], key_id: Optional[str] = None) -> KeyRecord:
    """Exactly one primary key, optionally narrowed by a fingerprint suffix."""
    if key_id:
        want = normalize_fingerprint(key_id)
        records = [r for r in records if r.fingerprint.upper().endswith(want)]
    if not records:
        raise NoMatchingKeyError()
    if len(records) > 1:
        fprs = ", ".join(r.fingerprint for r in records)
        raise AmbiguousKeyError(f"multiple primary keys found ({fprs}); specify a key identifier")
    return records[0]


def resolve_user_id(record: KeyRecord, user_id: str) -> UserIdRecord:
    """The User ID to act on (e.g. revoke), identified by its exact text and
    reported with the keyring's per-UID hash, never by list position."""
    matches = [u for u in record.user_ids if u.user_id == user_id]
    if not matches:
        raise NoMatchingKeyError(f"no user ID {user_id!r} on key {record.fingerprint}")
    if len({u.uid_hash or id(u) for u in matches}) > 1:
        raise AmbiguousKeyError(f"user ID {user_id!r} appears more than once on key {record.fingerprint}")
    return matches[0]


class CertificatePolicy:
    def __init__(self, config, keyring, keyserver: Optional[KeyserverClient] = None, clock=time.time):
        self.config = config
        self.keyring = keyring
        self._keyserver = keyserver
        self.clock = clock
        self.log = config.get_logger("monkeysphere.policy")

    @property
    def keyserver(self) -> KeyserverClient:
        if self._keyserver is None:
            self._keyserver = KeyserverClient.from_config(self.config)
        return self._keyserver

    def should_refresh(self, identity: str, bootstrap: bool = False, trusted_key_present: bool = False) -> bool:
        """
        Explicit configuration wins. Otherwise: when bootstrapping a
        connection, only look up hosts with no previously trusted key (trust
        on first use, verify thereafter); elsewhere only look up identities
        the keyring does not know yet.
        """
        if self.config.check_keyserver is not None:
            return self.config.check_keyserver
        if bootstrap:
            return not trusted_key_present
        try:
            return not self.keyring.has_key(identity)
        except KeyringError as e:
            self.log.warning("could not query keyring for %s: %s", identity, e)
            return True

    def refresh(self, identity: str) -> bool:
        try:
            return self.keyserver.refresh(identity, self.keyring)
        except (KeyserverError, KeyringError) as e:
            if self.config.require_keyserver:
                raise
            self.log.warning("keyserver refresh for %s failed, using local keyring: %s", identity, e)
            return False

    def translate(self, fingerprint: str, acceptable: bool) -> Optional[SshPublicKey]:
        try:
            return openpgp_to_key(self.keyring.export_key(fingerprint), fingerprint).ssh_public_key()
        except (PacketFormatError, NoMatchingKeyError, AmbiguousKeyError, KeyringError) as e:
            level = self.log.error if acceptable else self.log.debug
            level("key %s could not be translated: %s", fingerprint, e)
            return None

    def evaluate(self, identity: str, mode: str = "host", refresh: Optional[bool] = None,
                 bootstrap: bool = False, trusted_key_present: bool = False) -> List[KeyResult]:
        identity = canonical_identity(identity)
        if refresh is None:
            refresh = self.should_refresh(identity, bootstrap, trusted_key_present)
        if refresh:
            self.refresh(identity)

        verbose(self.log, "processing: %s", identity)
        records = self.keyring.list_keys(identity)
        if not records:
            raise NoPrimaryKeysError(f"no primary keys found for {identity}")

        assessments = assess_keys(records, identity, self.config.required_capability(mode),
                                  self.config.validity_threshold, self.clock())
        results: List[KeyResult] = []
        for a in assessments:
            kind = "primary key" if a.primary else "sub key"
            if a.acceptable:
                verbose(self.log, "  * acceptable %s %s", kind, a.fingerprint)
            else:
                self.log.debug("  - unacceptable %s %s: %s", kind, a.fingerprint, a.reason)
            ssh_key = self.translate(a.fingerprint, a.acceptable)
            if ssh_key is None:
                continue
            if a.acceptable:
                results.append(Accepted(ssh_key, identity, a.fingerprint))
            else:
                results.append(Rejected(ssh_key, identity, a.fingerprint, a.reason))
        return sort_results(results)
