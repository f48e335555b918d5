"""
monkeysphere_core.perms
-----------------------
Ownership / permission chain check run before any user-supplied file is
trusted as input.
"""

from __future__ import annotations
import os, pwd, stat

from .errors import PermissionCheckError
from .logger import get_logger


def _home_of(username: str) -> str:
    try:
        return os.path.realpath(pwd.getpwnam(username).pw_dir)
    except KeyError:
        raise PermissionCheckError(f"unknown user: {username}") from None


def check_permissions(username: str, path: str) -> None:
    """
    Walk from ``path`` up to (not including) the user's home directory, or to
    ``/`` when the path is outside it. Every component must be owned by root
    or the user and must not be group- or other-writable.
    """
    if not os.path.isabs(path):
        raise PermissionCheckError(f"path must be absolute: {path}")
    try:
        uid = pwd.getpwnam(username).pw_uid
    except KeyError:
        raise PermissionCheckError(f"unknown user: {username}") from None
    home = _home_of(username)
    current = os.path.realpath(path)
    inside_home = current == home or current.startswith(home.rstrip("/") + "/")

    while True:
        if inside_home and current == home:
            break
        try:
            st = os.stat(current)
        except FileNotFoundError:
            raise PermissionCheckError(f"{current} does not exist") from None
        if st.st_uid not in (0, uid):
            raise PermissionCheckError(f"improper ownership on {current} (uid {st.st_uid})")
        if st.st_mode & (stat.S_IWGRP | stat.S_IWOTH):
            raise PermissionCheckError(f"improper group or other writability on {current}")
        parent = os.path.dirname(current)
        if parent == current:
            break
        current = parent


def permissions_ok(config, username: str, path: str) -> bool:
    """Guard for an input file. In strict mode a failure means "skip this
    source"; otherwise it is only a warning."""
    log = config.get_logger("monkeysphere.perms") if config else get_logger("monkeysphere.perms")
    try:
        check_permissions(username, path)
        return True
    except PermissionCheckError as e:
        if config is None or config.strict_modes:
            log.error("skipping %s: %s", path, e)
            return False
        log.warning("ignoring permission problem on %s: %s", path, e)
        return True
