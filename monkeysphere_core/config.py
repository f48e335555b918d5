"""
monkeysphere_core.config
------------------------
Explicit configuration object threaded through every component.

Values come from ``MONKEYSPHERE_*`` environment variables, then from an
optional overrides dict (the same resolution order the storage and transport
factories use).
"""

from __future__ import annotations
from dataclasses import dataclass, field, fields, replace
from typing import Any, Dict, Optional
import os

from .constants import VALIDITY_NAMES
from .logger import get_logger, level_from_name

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off"}


def parse_bool(value) -> Optional[bool]:
    if value is None or isinstance(value, bool):
        return value
    v = str(value).strip().lower()
    if v in _TRUE:
        return True
    if v in _FALSE:
        return False
    if v in ("", "auto"):
        return None
    raise ValueError(f"not a boolean: {value!r}")


@dataclass
class MonkeysphereConfig:
    log_level: str = "INFO"
    min_validity: str = "full"
    required_host_capability: str = "a"
    required_user_capability: str = "a"
    check_keyserver: Optional[bool] = None  # None = decide per identity
    keyserver: str = "hkps://keys.openpgp.org"
    keyserver_timeout: float = 10.0
    require_keyserver: bool = False
    hash_known_hosts: bool = False
    strict_modes: bool = True
    gnupg_home: Optional[str] = None
    gpg_binary: str = "gpg"
    known_hosts: str = field(default_factory=lambda: os.path.expanduser("~/.ssh/known_hosts"))
    authorized_keys: str = field(default_factory=lambda: os.path.expanduser("~/.ssh/authorized_keys"))
    tmp_dir: Optional[str] = None

    def __post_init__(self):
        self.log_level = str(self.log_level).upper()
        level_from_name(self.log_level)
        self.min_validity = str(self.min_validity).lower()
        if self.min_validity not in VALIDITY_NAMES:
            raise ValueError(f"unknown validity level: {self.min_validity}")
        self.check_keyserver = parse_bool(self.check_keyserver)
        self.require_keyserver = bool(parse_bool(self.require_keyserver))
        self.hash_known_hosts = bool(parse_bool(self.hash_known_hosts))
        self.strict_modes = bool(parse_bool(self.strict_modes))
        self.keyserver_timeout = float(self.keyserver_timeout)

    @property
    def validity_threshold(self) -> int:
        return VALIDITY_NAMES[self.min_validity]

    def required_capability(self, mode: str) -> str:
        if mode == "host":
            return self.required_host_capability
        if mode == "user":
            return self.required_user_capability
        raise ValueError(f"unknown mode: {mode}")

    def get_logger(self, name: str):
        return get_logger(name, level=self.log_level)

    def with_overrides(self, **overrides) -> "MonkeysphereConfig":
        return replace(self, **overrides)


ENV_VARS = {
    "log_level": "MONKEYSPHERE_LOG_LEVEL",
    "min_validity": "MONKEYSPHERE_MIN_VALIDITY",
    "required_host_capability": "MONKEYSPHERE_REQUIRED_HOST_KEY_CAPABILITY",
    "required_user_capability": "MONKEYSPHERE_REQUIRED_USER_KEY_CAPABILITY",
    "check_keyserver": "MONKEYSPHERE_CHECK_KEYSERVER",
    "keyserver": "MONKEYSPHERE_KEYSERVER",
    "keyserver_timeout": "MONKEYSPHERE_KEYSERVER_TIMEOUT",
    "require_keyserver": "MONKEYSPHERE_REQUIRE_KEYSERVER",
    "hash_known_hosts": "MONKEYSPHERE_HASH_KNOWN_HOSTS",
    "strict_modes": "MONKEYSPHERE_STRICT_MODES",
    "gnupg_home": "MONKEYSPHERE_GNUPGHOME",
    "gpg_binary": "MONKEYSPHERE_GPG",
    "known_hosts": "MONKEYSPHERE_KNOWN_HOSTS",
    "authorized_keys": "MONKEYSPHERE_AUTHORIZED_KEYS",
    "tmp_dir": "MONKEYSPHERE_TMPDIR",
}


def load_config(overrides: Dict[str, Any] | None = None) -> MonkeysphereConfig:
    """
    Build the runtime configuration.

    Environment first, then ``overrides``. Unknown override keys are an
    error rather than silently ignored.
    """
    overrides = overrides or {}
    known = {f.name for f in fields(MonkeysphereConfig)}
    unknown = set(overrides) - known
    if unknown:
        raise ValueError(f"unknown configuration keys: {', '.join(sorted(unknown))}")

    values: Dict[str, Any] = {}
    for name, env in ENV_VARS.items():
        val = os.getenv(env)
        if val is not None and val != "":
            values[name] = val
    if "gnupg_home" not in values and os.getenv("GNUPGHOME"):
        values["gnupg_home"] = os.getenv("GNUPGHOME")
    values.update(overrides)
    return MonkeysphereConfig(**values)
