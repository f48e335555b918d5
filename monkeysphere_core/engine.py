"""
monkeysphere_core.engine
------------------------
Regenerates ``known_hosts`` and ``authorized_keys`` content from policy
results.

Every run works on a private copy of the target, holds an advisory lock on
the target's directory for the whole generate-and-swap sequence, and swaps
the result in with ``os.replace``. An empty result removes the target.
Lines we did not write are preserved.

Processing is two-pass: results for all identities are collected first,
then every result's matching lines are removed, then accepted keys are
appended with a ``MonkeySphere<timestamp>`` marker. Marked lines belonging
to identities that lost all their keys are dropped as well.
"""

from __future__ import annotations
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Dict, Iterable, Iterator, List, Optional, Sequence
import fcntl, hashlib, hmac, os, re, tempfile, time

from .constants import MARKER
from .errors import MonkeysphereError, NoPrimaryKeysError
from .identity import parse_service_identity, ssh_host_identity
from .logger import verbose
from .perms import permissions_ok
from .policy import KeyResult
from .ssh import SshPublicKey, find_key_in_line
from .utils import b64d, b64e, now_ts


# --------- line formats ----------
def marker(stamp: str) -> str:
    return f"{MARKER}{stamp}"


_MANAGED = re.compile(rf"(?:^|\s){MARKER}\d{{4}}-\d\d-\d\dT\d\d:\d\d:\d\d(?=\s|$)")


def is_managed(line: str) -> bool:
    return _MANAGED.search(line) is not None


def managed_user_id(line: str) -> Optional[str]:
    """The User ID trailing the marker of a managed authorized_keys line."""
    m = _MANAGED.search(line)
    return line[m.end():].strip() if m else None


def hash_host(name: str, salt: Optional[bytes] = None) -> str:
    """OpenSSH HashKnownHosts form: ``|1|base64(salt)|base64(HMAC-SHA1)``."""
    salt = salt if salt is not None else os.urandom(20)
    digest = hmac.new(salt, name.encode("utf-8"), hashlib.sha1).digest()
    return f"|1|{b64e(salt)}|{b64e(digest)}"


def host_field_matches(host_field: str, name: str) -> bool:
    for entry in host_field.split(","):
        if entry.startswith("|1|"):
            try:
                _, _, salt, _ = entry.split("|")
                if hmac.compare_digest(hash_host(name, b64d(salt)), entry):
                    return True
            except ValueError:
                continue
        elif entry == name:
            return True
    return False


def known_hosts_name(user_id: str) -> str:
    return parse_service_identity(user_id).known_hosts_name


def _split_known_host(line: str):
    stripped = line.strip()
    if not stripped or stripped.startswith("#") or stripped.startswith("@"):
        return None, None
    host_field = stripped.split()[0]
    return host_field, find_key_in_line(stripped)


def known_hosts_line(name: str, ssh_key: SshPublicKey, stamp: str, hashed: bool = False) -> str:
    host = hash_host(name) if hashed else name
    return f"{host} {ssh_key.to_line()} {marker(stamp)}"


def authorized_keys_line(ssh_key: SshPublicKey, user_id: str, stamp: str, options: str = "") -> str:
    line = f"{ssh_key.to_line()} {marker(stamp)} {user_id}"
    return f"{options} {line}" if options else line


class KnownHostsFormat:
    mode = "host"

    def __init__(self, hashed: bool = False):
        self.hashed = hashed

    def matches(self, line: str, result: KeyResult) -> bool:
        host_field, key = _split_known_host(line)
        if key is None or key != result.ssh_key:
            return False
        return host_field_matches(host_field, known_hosts_name(result.user_id))

    def owns(self, line: str, identity: str) -> bool:
        if not is_managed(line):
            return False
        host_field, _ = _split_known_host(line)
        return bool(host_field) and host_field_matches(host_field, known_hosts_name(identity))

    def render(self, result: KeyResult, stamp: str) -> str:
        return known_hosts_line(known_hosts_name(result.user_id), result.ssh_key, stamp, self.hashed)


class AuthorizedKeysFormat:
    mode = "user"

    def __init__(self, options: Optional[Dict[str, str]] = None):
        self.options = options or {}

    def matches(self, line: str, result: KeyResult) -> bool:
        stripped = line.strip()
        if not stripped or stripped.startswith("#"):
            return False
        return find_key_in_line(stripped) == result.ssh_key

    def owns(self, line: str, identity: str) -> bool:
        return managed_user_id(line) == identity

    def render(self, result: KeyResult, stamp: str) -> str:
        return authorized_keys_line(result.ssh_key, result.user_id, stamp, self.options.get(result.user_id, ""))


# --------- processing ----------
@dataclass
class ProcessOutcome:
    lines: List[str]
    results: List[KeyResult] = field(default_factory=list)
    removed: int = 0
    added: int = 0
    failures: int = 0


class LineProcessor:
    def __init__(self, config, policy, fmt, clock=time.time):
        self.config = config
        self.policy = policy
        self.fmt = fmt
        self.clock = clock
        self.log = config.get_logger("monkeysphere.engine")

    def collect(self, identities: Iterable[str], existing: Sequence[str] = (),
                bootstrap: bool = False) -> tuple[List[KeyResult], int, List[str]]:
        """Results for every identity, the failure count, and the identities
        the keyring has no primary keys for."""
        results: List[KeyResult] = []
        missing: List[str] = []
        failures = 0
        for identity in identities:
            trusted = False
            try:
                if self.fmt.mode == "host":
                    parse_service_identity(identity)
                    if bootstrap:
                        trusted = has_known_host(existing, identity)
                results.extend(self.policy.evaluate(identity, mode=self.fmt.mode,
                                                    bootstrap=bootstrap, trusted_key_present=trusted))
            except NoPrimaryKeysError as e:
                verbose(self.log, "%s", e)
                missing.append(identity)
            except MonkeysphereError as e:
                # one bad identity must not sink the batch
                self.log.error("could not process %s: %s", identity, e)
                failures += 1
        return results, failures, missing

    def drop_managed(self, lines: Sequence[str], identities: Optional[Iterable[str]] = None) -> List[str]:
        """Remove lines carrying our marker: all of them, or only those
        belonging to ``identities``."""
        if identities is None:
            return [l for l in lines if not is_managed(l)]
        identities = list(identities)
        return [l for l in lines if not any(self.fmt.owns(l, i) for i in identities)]

    def apply(self, lines: Sequence[str], results: Sequence[KeyResult]) -> ProcessOutcome:
        kept = [l for l in lines if not any(self.fmt.matches(l, r) for r in results)]
        outcome = ProcessOutcome(lines=kept, results=list(results), removed=len(lines) - len(kept))
        stamp = now_ts(self.clock())
        seen = set()
        for r in results:
            if not r.ok or (r.ssh_key, r.user_id) in seen:
                continue
            seen.add((r.ssh_key, r.user_id))
            outcome.lines.append(self.fmt.render(r, stamp))
            outcome.added += 1
        return outcome

    def process(self, lines: Sequence[str], identities: Iterable[str], bootstrap: bool = False,
                replace_managed: bool = False) -> ProcessOutcome:
        """
        Collect, then apply. With ``replace_managed`` every marked line is
        dropped first, so the managed part of the file is exactly what this
        run accepts. Otherwise only marked lines of identities that no longer
        have any key are dropped; other identities go through ``apply``.
        """
        results, failures, missing = self.collect(identities, lines, bootstrap)
        kept = self.drop_managed(lines, None if replace_managed else missing)
        outcome = self.apply(kept, results)
        outcome.removed += len(lines) - len(kept)
        outcome.failures = failures
        verbose(self.log, "removed %d line(s), added %d line(s)", outcome.removed, outcome.added)
        return outcome


# --------- files ----------
def read_lines(path: str) -> List[str]:
    try:
        with open(path, "r", encoding="utf-8", errors="surrogateescape") as f:
            return f.read().splitlines()
    except FileNotFoundError:
        return []


@contextmanager
def file_lock(path: str) -> Iterator[None]:
    """
    Exclusive advisory lock on the directory holding ``path``. The directory
    must already exist. Locking it rather than the target keeps the lock
    valid across ``os.replace`` and leaves no lock file behind.
    """
    fd = os.open(os.path.dirname(os.path.abspath(path)), os.O_RDONLY | os.O_DIRECTORY)
    try:
        fcntl.flock(fd, fcntl.LOCK_EX)
        yield
    finally:
        fcntl.flock(fd, fcntl.LOCK_UN)
        os.close(fd)


def atomic_write(path: str, lines: Sequence[str], mode: int = 0o600, owner: Optional[int] = None,
                 group: Optional[int] = None, tmp_dir: Optional[str] = None) -> bool:
    """
    Write ``lines`` to a private temp file and rename it over ``path``.
    With no lines the target is removed instead. ``tmp_dir`` must be on
    the same filesystem as ``path``. Returns whether a file was written.
    """
    if not lines:
        try:
            os.remove(path)
        except FileNotFoundError:
            pass
        return False

    directory = tmp_dir or os.path.dirname(os.path.abspath(path))
    fd, tmp = tempfile.mkstemp(prefix=".monkeysphere.", dir=directory)
    try:
        with os.fdopen(fd, "w", encoding="utf-8", errors="surrogateescape") as f:
            f.write("\n".join(lines) + "\n")
            f.flush()
            os.fsync(f.fileno())
        if owner is not None or group is not None:
            os.chown(tmp, -1 if owner is None else owner, -1 if group is None else group)
        os.chmod(tmp, mode)
        os.replace(tmp, path)
    except BaseException:
        try:
            os.remove(tmp)
        except FileNotFoundError:
            pass
        raise
    return True


def _existing_mode(path: str, default: int) -> int:
    try:
        return os.stat(path).st_mode & 0o777
    except FileNotFoundError:
        return default


# --------- known_hosts ----------
def known_hosts_identities(lines: Iterable[str]) -> List[str]:
    """Identities for every plain (unhashed) host name in a known_hosts file."""
    out: List[str] = []
    for line in lines:
        host_field, key = _split_known_host(line)
        if not host_field or key is None:
            continue
        for entry in host_field.split(","):
            if entry.startswith("|") or entry.startswith("!") or "*" in entry or "?" in entry:
                continue
            try:
                ident = ssh_host_identity(entry)
            except (MonkeysphereError, ValueError):
                continue
            if ident not in out:
                out.append(ident)
    return out


def has_known_host(lines: Iterable[str], identity: str) -> bool:
    name = known_hosts_name(identity)
    for line in lines:
        host_field, key = _split_known_host(line)
        if key is not None and host_field_matches(host_field, name):
            return True
    return False


def update_known_hosts(config, policy, identities: Optional[Sequence[str]] = None,
                       path: Optional[str] = None, bootstrap: bool = False, clock=time.time) -> ProcessOutcome:
    """Refresh monkeysphere lines in a user's known_hosts in place. With no
    identities, every host already listed is refreshed."""
    path = path or config.known_hosts
    with file_lock(path):
        lines = read_lines(path)
        if not identities:
            identities = known_hosts_identities(lines)
        processor = LineProcessor(config, policy, KnownHostsFormat(config.hash_known_hosts), clock)
        outcome = processor.process(lines, identities, bootstrap=bootstrap)
        atomic_write(path, outcome.lines, mode=_existing_mode(path, 0o600), tmp_dir=config.tmp_dir)
    return outcome


# --------- authorized_keys ----------
@dataclass
class AuthorizedUserId:
    user_id: str
    options: str = ""


def read_authorized_user_ids(path: str) -> List[AuthorizedUserId]:
    """
    One User ID per line; indented lines following a User ID are
    authorized_keys options for it (joined with commas).
    """
    out: List[AuthorizedUserId] = []
    for line in read_lines(path):
        if not line.strip() or line.lstrip().startswith("#"):
            continue
        if line[0].isspace():
            if out:
                opt = line.strip()
                out[-1].options = f"{out[-1].options},{opt}" if out[-1].options else opt
            continue
        out.append(AuthorizedUserId(line.strip()))
    return out


def update_authorized_keys(config, policy, user_ids: Sequence[AuthorizedUserId],
                           path: Optional[str] = None, clock=time.time) -> ProcessOutcome:
    """Refresh monkeysphere lines in a user's own authorized_keys in place."""
    path = path or config.authorized_keys
    fmt = AuthorizedKeysFormat({u.user_id: u.options for u in user_ids})
    with file_lock(path):
        lines = read_lines(path)
        outcome = LineProcessor(config, policy, fmt, clock).process(lines, [u.user_id for u in user_ids],
                                                                    replace_managed=True)
        atomic_write(path, outcome.lines, mode=_existing_mode(path, 0o600), tmp_dir=config.tmp_dir)
    return outcome


def generate_authorized_keys(config, policy, username: str, output_path: str,
                             user_ids: Sequence[AuthorizedUserId], raw_files: Sequence[str] = (),
                             owner: Optional[int] = None, group: Optional[int] = None,
                             clock=time.time) -> ProcessOutcome:
    """
    Build a system-managed authorized_keys for ``username`` from scratch:
    monkeysphere lines first, then raw authorized_keys files that pass the
    permission guard, verbatim.
    """
    log = config.get_logger("monkeysphere.engine")
    fmt = AuthorizedKeysFormat({u.user_id: u.options for u in user_ids})
    with file_lock(output_path):
        outcome = LineProcessor(config, policy, fmt, clock).process([], [u.user_id for u in user_ids])
        for raw in raw_files:
            if not os.path.exists(raw):
                continue
            if permissions_ok(config, username, raw):
                verbose(log, "adding raw authorized_keys file %s", raw)
                outcome.lines.extend(read_lines(raw))
        written = atomic_write(output_path, outcome.lines, mode=0o644, owner=owner, group=group,
                               tmp_dir=config.tmp_dir)
        if not written:
            verbose(log, "no authorized keys for %s; removed %s", username, output_path)
    return outcome


@dataclass
class UserTarget:
    username: str
    authorized_user_ids: str
    output_path: str
    raw_authorized_keys: List[str] = field(default_factory=list)
    owner: Optional[int] = None
    group: Optional[int] = None


def update_users(config, policy, targets: Iterable[UserTarget], clock=time.time) -> int:
    """Regenerate authorized_keys for each user. A failing user is reported
    and makes the return status non-zero; the others still run."""
    log = config.get_logger("monkeysphere.engine")
    status = 0
    for t in targets:
        log.info("processing user %s", t.username)
        try:
            user_ids: List[AuthorizedUserId] = []
            if os.path.exists(t.authorized_user_ids):
                if permissions_ok(config, t.username, t.authorized_user_ids):
                    user_ids = read_authorized_user_ids(t.authorized_user_ids)
            generate_authorized_keys(config, policy, t.username, t.output_path, user_ids,
                                     t.raw_authorized_keys, t.owner, t.group, clock)
        except (OSError, MonkeysphereError) as e:
            log.error("failed to update authorized_keys for %s: %s", t.username, e)
            status = 1
    return status
