from monkeysphere_core.keyring import parse_colons
from monkeysphere_core.keyring.colons import parse_timestamp

LISTING = """\
tru::1:1700000000:0:3:1:5
pub:f:4096:1:1111222233334444:1600000000:1800000000::u:::scaESCA::::::23::0:
fpr:::::::::AAAABBBBCCCCDDDDEEEEFFFF1111222233334444:
grp:::::::::0123456789ABCDEF0123456789ABCDEF01234567:
uid:f::::1600000000::HASH1::ssh\\x3a//host.example.net::::::::::0:
uid:r::::1600000001::HASH2::Old Name <old@example.net>::::::::::0:
sub:e:2048:1:5555666677778888:1600000000:1650000000:::::a::::::23:
fpr:::::::::99990000111122223333444455556666777788889999:
uid:f::::1600000000::HASH3::stray::::::::::0:
"""


def test_parse_listing():
    [rec] = parse_colons(LISTING)
    assert rec.key_id == "1111222233334444"
    assert rec.validity == "f"
    assert rec.expires == 1800000000
    assert rec.capabilities == "scaESCA"
    assert rec.fingerprint.endswith("1111222233334444")
    assert rec.keygrip == "0123456789ABCDEF0123456789ABCDEF01234567"
    assert [u.user_id for u in rec.user_ids] == ["ssh://host.example.net", "Old Name <old@example.net>"]
    assert rec.user_ids[1].validity == "r"
    assert rec.user_ids[0].uid_hash == "HASH1"
    [sub] = rec.subkeys
    assert sub.validity == "e"
    assert sub.capabilities == "a"
    assert sub.fingerprint == "99990000111122223333444455556666777788889999"
    assert not rec.disabled


def test_disabled_and_iso_timestamps():
    [rec] = parse_colons("pub:f:2048:1:AAAA:20200101T000000::::::scaD:\n")
    assert rec.disabled
    assert rec.created == parse_timestamp("1577836800")
