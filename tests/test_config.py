import logging
import pytest

from monkeysphere_core.config import MonkeysphereConfig, load_config, parse_bool
from monkeysphere_core.logger import VERBOSE


def test_defaults(monkeypatch):
    for var in ("MONKEYSPHERE_MIN_VALIDITY", "MONKEYSPHERE_CHECK_KEYSERVER", "MONKEYSPHERE_GNUPGHOME", "GNUPGHOME"):
        monkeypatch.delenv(var, raising=False)
    cfg = load_config()
    assert cfg.min_validity == "full"
    assert cfg.validity_threshold == 3
    assert cfg.check_keyserver is None
    assert cfg.required_capability("host") == "a"


def test_environment_and_overrides(monkeypatch):
    monkeypatch.setenv("MONKEYSPHERE_MIN_VALIDITY", "marginal")
    monkeypatch.setenv("MONKEYSPHERE_CHECK_KEYSERVER", "no")
    monkeypatch.setenv("GNUPGHOME", "/tmp/gnupg")
    cfg = load_config({"hash_known_hosts": "yes"})
    assert cfg.validity_threshold == 2
    assert cfg.check_keyserver is False
    assert cfg.hash_known_hosts is True
    assert cfg.gnupg_home == "/tmp/gnupg"


def test_invalid_values():
    with pytest.raises(ValueError):
        load_config({"no_such_option": 1})
    with pytest.raises(ValueError):
        MonkeysphereConfig(min_validity="sometimes")
    with pytest.raises(ValueError):
        MonkeysphereConfig(log_level="LOUD")
    with pytest.raises(ValueError):
        parse_bool("maybe")
    with pytest.raises(ValueError):
        MonkeysphereConfig().required_capability("robot")


def test_verbose_log_level():
    log = MonkeysphereConfig(log_level="verbose").get_logger("monkeysphere.test")
    assert log.level == VERBOSE
    assert log.isEnabledFor(VERBOSE) and not log.isEnabledFor(logging.DEBUG)
