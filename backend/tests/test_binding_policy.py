from types import SimpleNamespace

from proctorexam.models.exam_session_model import ViolationType
from proctorexam.services.binding_policy import (
    get_binding_policy, StandardBindingPolicy, StrictBindingPolicy, LenientBindingPolicy,
)


def bound(ip="10.0.0.1", fingerprint="fp-1"):
    return SimpleNamespace(id="s1", ip_address=ip, browser_fingerprint=fingerprint)


def test_standard_ip_change_is_soft():
    outcome = StandardBindingPolicy().evaluate(bound(), "10.0.0.2", "fp-1")
    assert outcome.allowed
    assert outcome.rebind_ip == "10.0.0.2"
    assert [v[0] for v in outcome.violations] == [ViolationType.IP_CHANGE]


def test_standard_fingerprint_change_is_denied():
    outcome = StandardBindingPolicy().evaluate(bound(), "10.0.0.1", "fp-2")
    assert not outcome.allowed
    assert outcome.reason == "browser_mismatch"
    assert [v[0] for v in outcome.violations] == [ViolationType.BROWSER_CHANGE]
    assert outcome.rebind_fingerprint is None


def test_standard_matching_binding_has_no_side_effects():
    outcome = StandardBindingPolicy().evaluate(bound(), "10.0.0.1", "fp-1")
    assert outcome.allowed
    assert outcome.violations == []
    assert outcome.rebind_ip is None


def test_strict_denies_ip_change_with_generic_reason():
    outcome = StrictBindingPolicy().evaluate(bound(), "10.0.0.9", "fp-1")
    assert not outcome.allowed
    assert outcome.reason == "session_binding_failed"
    assert outcome.rebind_ip is None


def test_lenient_follows_both():
    outcome = LenientBindingPolicy().evaluate(bound(), "10.0.0.9", "fp-2")
    assert outcome.allowed
    assert outcome.rebind_ip == "10.0.0.9"
    assert outcome.rebind_fingerprint == "fp-2"
    assert [v[0] for v in outcome.violations] == [ViolationType.BROWSER_CHANGE]


def test_unknown_mode_falls_back_to_standard():
    assert get_binding_policy("paranoid").name == "standard"
    assert get_binding_policy(None).name == "standard"
    assert get_binding_policy("strict").name == "strict"
