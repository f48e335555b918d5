import pytest

from monkeysphere_core.errors import InvalidIdentityError
from monkeysphere_core.identity import (
    canonical_identity, parse_service_identity, ssh_host_identity,
)


def test_service_identity_is_canonicalised():
    assert canonical_identity("SSH://Host.Example.NET.") == "ssh://host.example.net"
    assert canonical_identity("ssh://host.example.net:2222") == "ssh://host.example.net:2222"


@pytest.mark.parametrize("bad", [
    "ssh://", "ssh://host:0", "ssh://host:70000", "ssh://ho_st", "ssh://host:port",
    "ssh:// host", "1ssh://host", "ssh://-host.example",
])
def test_bad_service_identities(bad):
    with pytest.raises(InvalidIdentityError):
        canonical_identity(bad)


def test_user_identity_passes_verbatim():
    uid = "Alice Example <alice@example.org>"
    assert canonical_identity(uid) == uid
    with pytest.raises(InvalidIdentityError):
        canonical_identity(" padded ")
    with pytest.raises(InvalidIdentityError):
        canonical_identity("")


def test_known_hosts_names():
    assert parse_service_identity("ssh://host.example").known_hosts_name == "host.example"
    assert parse_service_identity("ssh://host.example:22").known_hosts_name == "host.example"
    assert parse_service_identity("ssh://host.example:2222").known_hosts_name == "[host.example]:2222"


def test_ssh_host_identity():
    assert ssh_host_identity("Host.Example") == "ssh://host.example"
    assert ssh_host_identity("host.example", 22) == "ssh://host.example"
    assert ssh_host_identity("[host.example]:2222") == "ssh://host.example:2222"
