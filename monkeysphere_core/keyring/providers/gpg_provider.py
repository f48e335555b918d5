from __future__ import annotations
from typing import List, Optional
import subprocess

from monkeysphere_core.errors import KeyringError
from monkeysphere_core.keyring.colons import parse_colons
from monkeysphere_core.keyring.models import KeyRecord
from monkeysphere_core.keyring.provider import KeyringProvider
from monkeysphere_core.logger import get_logger
from monkeysphere_core.utils import normalize_fingerprint

LIST_ARGS = ["--with-colons", "--fixed-list-mode", "--with-fingerprint",
             "--with-fingerprint", "--with-keygrip"]


class GpgKeyring(KeyringProvider):
    """Keyring backed by the ``gpg`` command line."""

    name = "gpg"

    def __init__(self, homedir: Optional[str] = None, gpg: str = "gpg", timeout: float = 60.0, logger=None):
        self.homedir = homedir
        self.gpg = gpg
        self.timeout = timeout
        self.log = logger or get_logger("monkeysphere.keyring.gpg")

    def _command(self, args: List[str]) -> List[str]:
        cmd = [self.gpg, "--batch", "--no-tty", "--quiet"]
        if self.homedir:
            cmd += ["--homedir", self.homedir]
        return cmd + args

    def _run(self, args: List[str], data: Optional[bytes] = None) -> subprocess.CompletedProcess:
        cmd = self._command(args)
        self.log.debug("running %s", " ".join(cmd))
        try:
            return subprocess.run(cmd, input=data, capture_output=True, timeout=self.timeout)
        except FileNotFoundError as e:
            raise KeyringError(f"gpg binary not found: {self.gpg}") from e
        except subprocess.TimeoutExpired as e:
            raise KeyringError(f"gpg timed out after {self.timeout}s") from e

    def list_keys(self, identity: Optional[str] = None, secret: bool = False) -> List[KeyRecord]:
        args = ["--list-secret-keys" if secret else "--list-keys"] + LIST_ARGS
        if identity is not None:
            args.append("=" + identity)
        res = self._run(args)
        if res.returncode != 0:
            # gpg exits 2 with no output when nothing matches
            if not res.stdout.strip():
                return []
            raise KeyringError(f"gpg listing failed ({res.returncode}): {res.stderr.decode(errors='replace').strip()}")
        return parse_colons(res.stdout)

    def _export(self, option: str, fingerprint: str) -> bytes:
        fpr = normalize_fingerprint(fingerprint)
        res = self._run([option, "--no-armor", f"0x{fpr}!"])
        if res.returncode != 0 or not res.stdout:
            raise KeyringError(f"gpg could not export {fpr}: {res.stderr.decode(errors='replace').strip()}")
        return res.stdout

    def export_key(self, fingerprint: str) -> bytes:
        return self._export("--export", fingerprint)

    def export_secret_key(self, fingerprint: str) -> bytes:
        return self._export("--export-secret-keys", fingerprint)

    def import_keys(self, data: bytes) -> None:
        res = self._run(["--import"], data=data)
        if res.returncode != 0:
            raise KeyringError(f"gpg import failed: {res.stderr.decode(errors='replace').strip()}")
        self.log.info("imported keys into %s", self.homedir or "default keyring")
