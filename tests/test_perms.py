import os
import pytest

from monkeysphere_core.config import MonkeysphereConfig
from monkeysphere_core.errors import PermissionCheckError
from monkeysphere_core.perms import check_permissions, permissions_ok


@pytest.fixture
def home(tmp_path, monkeypatch):
    """Point the current user's home at a private tmp dir."""
    import pwd
    real = pwd.getpwuid(os.getuid())
    user = real.pw_name
    home = tmp_path / "home"
    home.mkdir(mode=0o700)
    os.chmod(home, 0o700)

    class Entry:
        pw_uid = real.pw_uid
        pw_dir = str(home)

    def fake_getpwnam(name):
        if name != user:
            raise KeyError(name)
        return Entry

    monkeypatch.setattr("monkeysphere_core.perms.pwd.getpwnam", fake_getpwnam)
    return user, home


def test_private_file_passes(home):
    user, home_dir = home
    ssh = home_dir / ".monkeysphere"
    ssh.mkdir(mode=0o700)
    f = ssh / "authorized_user_ids"
    f.write_text("x\n")
    os.chmod(f, 0o600)
    check_permissions(user, str(f))


def test_group_writable_fails(home):
    user, home_dir = home
    d = home_dir / "shared"
    d.mkdir()
    os.chmod(d, 0o775)
    f = d / "ids"
    f.write_text("x\n")
    os.chmod(f, 0o600)
    with pytest.raises(PermissionCheckError, match="writability"):
        check_permissions(user, str(f))


def test_relative_path_and_unknown_user(home):
    user, _ = home
    with pytest.raises(PermissionCheckError):
        check_permissions(user, "relative/path")
    with pytest.raises(PermissionCheckError, match="unknown user"):
        check_permissions("no-such-user-here", "/etc/passwd")


def test_strict_mode_skips_and_lax_mode_warns(home, caplog):
    user, home_dir = home
    f = home_dir / "ids"
    f.write_text("x\n")
    os.chmod(f, 0o666)
    assert permissions_ok(MonkeysphereConfig(strict_modes=True), user, str(f)) is False
    assert permissions_ok(MonkeysphereConfig(strict_modes=False), user, str(f)) is True
    assert "ignoring permission problem" in caplog.text
