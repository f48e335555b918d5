"""
monkeysphere_core.keyserver
---------------------------
HKP/HKPS lookups used to refresh the keyring before a policy walk.

Network trouble is a ``KeyserverTransientError``; callers proceed with
local data unless the configuration requires a successful refresh.
"""

from __future__ import annotations
from typing import Optional
from urllib.parse import urlsplit
import requests

from .errors import KeyserverPermanentError, KeyserverTransientError
from .logger import get_logger

HKP_PORT = 11371


def keyserver_base_url(keyserver: str) -> str:
    parts = urlsplit(keyserver if "://" in keyserver else f"hkp://{keyserver}")
    if not parts.hostname:
        raise KeyserverPermanentError(f"bad keyserver: {keyserver}")
    if parts.scheme == "hkp":
        return f"http://{parts.hostname}:{parts.port or HKP_PORT}"
    if parts.scheme == "hkps":
        return f"https://{parts.hostname}" + (f":{parts.port}" if parts.port else "")
    if parts.scheme in ("http", "https"):
        return f"{parts.scheme}://{parts.netloc}"
    raise KeyserverPermanentError(f"unsupported keyserver scheme: {parts.scheme}")


class KeyserverClient:
    def __init__(self, keyserver: str, timeout: float = 10.0, session: Optional[requests.Session] = None, logger=None):
        self.base_url = keyserver_base_url(keyserver)
        self.timeout = timeout
        self.session = session or requests.Session()
        self.log = logger or get_logger("monkeysphere.keyserver")

    @classmethod
    def from_config(cls, config, session=None) -> "KeyserverClient":
        return cls(config.keyserver, config.keyserver_timeout, session=session,
                   logger=config.get_logger("monkeysphere.keyserver"))

    def fetch(self, identity: str) -> bytes:
        """Armored keys whose User IDs match ``identity``; empty if none."""
        url = f"{self.base_url}/pks/lookup"
        params = {"op": "get", "options": "mr", "search": identity}
        self.log.debug(f"[HKP GET] {url} search={identity}")
        try:
            res = self.session.get(url, params=params, timeout=self.timeout)
        except requests.Timeout as e:
            raise KeyserverTransientError(f"keyserver timed out after {self.timeout}s") from e
        except requests.ConnectionError as e:
            raise KeyserverTransientError(f"could not reach keyserver: {e}") from e
        except requests.RequestException as e:
            raise KeyserverTransientError(f"keyserver request failed: {e}") from e

        if res.status_code == 404:
            self.log.info(f"[HKP] no keys on keyserver for {identity}")
            return b""
        if res.status_code >= 500 or res.status_code == 429:
            raise KeyserverTransientError(f"keyserver error {res.status_code}")
        if not res.ok:
            raise KeyserverPermanentError(f"keyserver rejected lookup ({res.status_code}): {res.text[:200]}")
        return res.content

    def refresh(self, identity: str, keyring) -> bool:
        """Import whatever the keyserver has for ``identity``."""
        data = self.fetch(identity)
        if not data.strip():
            return False
        keyring.import_keys(data)
        self.log.info(f"[HKP] imported keys for {identity}")
        return True
