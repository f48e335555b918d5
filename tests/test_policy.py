import pytest

from monkeysphere_core.errors import AmbiguousKeyError, InvalidIdentityError, NoPrimaryKeysError
from monkeysphere_core.keyring import parse_colons
from monkeysphere_core.policy import (
    Accepted, Rejected, assess_keys, resolve_user_id, select_single_key, sort_results,
)

HOST = "ssh://host.example.org"


def test_ultimate_key_is_accepted(keyring_builder, make_policy):
    fpr, _ = keyring_builder.add(0, HOST, validity="u")
    results = make_policy(keyring_builder.keyring).evaluate(HOST)
    assert len(results) == 1
    [r] = results
    assert isinstance(r, Accepted) and r.ok
    assert r.fingerprint == fpr
    assert r.ssh_key == keyring_builder.ssh_key(0)
    assert r.ssh_key.key_type == "ssh-rsa"


def test_marginal_user_id_is_rejected(keyring_builder, make_policy):
    keyring_builder.add(0, HOST, validity="u", uid_validity="m")
    [r] = make_policy(keyring_builder.keyring).evaluate(HOST)
    assert isinstance(r, Rejected)
    assert "user ID" in r.reason
    # still translated so stale lines can be found
    assert r.ssh_key == keyring_builder.ssh_key(0)


def test_marginal_threshold_from_config(keyring_builder, make_policy, config):
    keyring_builder.add(0, HOST, validity="m")
    cfg = config.with_overrides(min_validity="marginal")
    [r] = make_policy(keyring_builder.keyring, cfg).evaluate(HOST)
    assert r.ok


def test_revoked_user_id_only_yields_rejections(keyring_builder, make_policy):
    keyring_builder.add(0, HOST, validity="f", uid_validity="r", sub_idx=1)
    results = make_policy(keyring_builder.keyring).evaluate(HOST)
    assert len(results) == 2
    assert not any(r.ok for r in results)


def test_subkey_with_auth_capability(keyring_builder, make_policy):
    fpr, sub_fpr = keyring_builder.add(0, HOST, validity="f", caps="scSCA", sub_idx=1)
    results = make_policy(keyring_builder.keyring).evaluate(HOST)
    # primary has no own 'a', so only the subkey is emitted
    assert [r.fingerprint for r in results] == [sub_fpr]
    assert results[0].ok


def test_disabled_primary_rejects_everything(keyring_builder, make_policy):
    keyring_builder.add(0, HOST, validity="f", caps="caCAD", sub_idx=1)
    results = make_policy(keyring_builder.keyring).evaluate(HOST)
    assert results and all(isinstance(r, Rejected) for r in results)
    assert any("disabled" in r.reason for r in results)


def test_expired_subkey_is_rejected_primary_still_good(keyring_builder, make_policy):
    fpr, sub_fpr = keyring_builder.add(0, HOST, validity="f", sub_idx=1, sub_validity="e")
    results = make_policy(keyring_builder.keyring).evaluate(HOST)
    # bad first, then good
    assert [(r.fingerprint, r.ok) for r in results] == [(sub_fpr, False), (fpr, True)]


def test_no_primary_keys(keyring_builder, make_policy):
    with pytest.raises(NoPrimaryKeysError, match="no primary keys found"):
        make_policy(keyring_builder.keyring).evaluate(HOST)


def test_invalid_identity_is_rejected_before_query(keyring_builder, make_policy):
    calls = []
    keyring_builder.keyring.list_keys = lambda *a, **kw: calls.append(a) or []
    with pytest.raises(InvalidIdentityError):
        make_policy(keyring_builder.keyring).evaluate("ssh://bad host")
    assert calls == []


def test_user_id_must_match_exactly(keyring_builder, make_policy):
    keyring_builder.add(0, "Alice <alice@example.org>", validity="f")
    policy = make_policy(keyring_builder.keyring)
    [r] = policy.evaluate("Alice <alice@example.org>", mode="user")
    assert r.ok
    with pytest.raises(NoPrimaryKeysError):
        policy.evaluate("alice <alice@example.org>", mode="user")


def test_sort_results_puts_rejections_first(keyring_builder):
    key = keyring_builder.ssh_key(0)
    good = Accepted(key, HOST, "A")
    bad = Rejected(key, HOST, "B", "x")
    assert sort_results([good, bad, good]) == [bad, good, good]


def test_assess_keys_is_pure():
    [rec] = parse_colons(
        "pub:f:2048:1:AAAA:1:100:::::caCA:\n"
        "fpr:::::::::AAAA:\n"
        "uid:f::::1::H::ssh\\x3a//h.example::::\n"
    )
    [a] = assess_keys([rec], "ssh://h.example", "a", 3, now=50)
    assert a.acceptable
    [a] = assess_keys([rec], "ssh://h.example", "a", 3, now=200)
    assert not a.acceptable and "expired" in a.reason


def test_refresh_toggle(keyring_builder, make_policy, config):
    keyring_builder.add(0, HOST, validity="f")
    policy = make_policy(keyring_builder.keyring, config.with_overrides(check_keyserver=None))
    assert policy.should_refresh(HOST) is False
    assert policy.should_refresh("ssh://unknown.example") is True
    assert policy.should_refresh(HOST, bootstrap=True, trusted_key_present=True) is False
    assert policy.should_refresh(HOST, bootstrap=True, trusted_key_present=False) is True


def test_select_single_key_and_resolve_user_id():
    recs = parse_colons(
        "pub:f:2048:1:AAAA:1::::::caCA:\nfpr:::::::::1111AAAA:\n"
        "uid:f::::1::H1::one::::\nuid:r::::1::H2::two::::\n"
        "pub:f:2048:1:BBBB:1::::::caCA:\nfpr:::::::::2222BBBB:\n"
    )
    with pytest.raises(AmbiguousKeyError):
        select_single_key(recs)
    rec = select_single_key(recs, "BBBB")
    assert rec.fingerprint == "2222BBBB"
    uid = resolve_user_id(recs[0], "two")
    assert uid.uid_hash == "H2"
