"""
Drift Policy Store Tests

Coverage:
- Scope parsing and matching (exact, case-insensitive, glob)
- Time window evaluation
- Validation of inputs
- Persistence across reloads
"""

import pytest

from control_plane.drift_policy import (
    DriftPolicyInput,
    DriftPolicyStore,
    PolicyKind,
    ScopeType,
)
from control_plane.errors import InvalidScope, NotFound

from .conftest import utc


def suppression(scope_type="host", scope_value="web-1", begin=None, end=None, **kw):
    return DriftPolicyInput(
        scope_type=scope_type,
        scope_value=scope_value,
        begin=begin or utc(hours=-1),
        end=end or utc(hours=1),
        **kw,
    )


class TestScopeType:

    @pytest.mark.parametrize("raw,expected", [
        ("host", ScopeType.HOST),
        (" HOST ", ScopeType.HOST),
        ("resourceType", ScopeType.RESOURCE_TYPE),
        ("resource_id", ScopeType.RESOURCE_ID),
        ("glob", ScopeType.GLOB),
        ("all", ScopeType.ALL),
        ("", ScopeType.ALL),
        (None, ScopeType.ALL),
    ])
    def test_parse(self, raw, expected):
        assert ScopeType.parse(raw) == expected

    @pytest.mark.parametrize("raw", ["cluster", "hosts"])
    def test_parse_rejects_unknown(self, raw):
        with pytest.raises(InvalidScope):
            ScopeType.parse(raw)


class TestMatching:
    """Scope matching against resource coordinates."""

    def test_host_match_is_case_insensitive(self, policies):
        policies.add_suppression(suppression(scope_value="WEB-1"))
        assert policies.is_suppressed("Web-1", "file", "x", utc())
        assert not policies.is_suppressed("web-2", "file", "x", utc())

    def test_resource_type_and_id(self, policies):
        policies.add_allowlist(DriftPolicyInput(scope_type="resource_type", scope_value="package"))
        policies.add_allowlist(DriftPolicyInput(scope_type="resource_id", scope_value="motd"))
        assert policies.is_allowlisted("any", "package", "nginx", utc())
        assert policies.is_allowlisted("any", "file", "motd", utc())
        assert not policies.is_allowlisted("any", "file", "hosts", utc())

    def test_glob_matches_composite_key(self, policies):
        policies.add_suppression(suppression(scope_type="glob", scope_value="web-*|file|*"))
        assert policies.is_suppressed("web-7", "file", "etc-hosts", utc())
        assert not policies.is_suppressed("db-1", "file", "etc-hosts", utc())
        assert not policies.is_suppressed("web-7", "package", "nginx", utc())

    def test_glob_brackets_are_literal(self, policies):
        policies.add_allowlist(DriftPolicyInput(scope_type="glob", scope_value="web-[1]|file|*"))
        assert policies.is_allowlisted("web-[1]", "file", "x", utc())
        assert not policies.is_allowlisted("web-1", "file", "x", utc())

    def test_all_scope_matches_everything(self, policies):
        item = policies.add_allowlist(DriftPolicyInput(scope_type="", scope_value="ignored"))
        assert item.scope_type == ScopeType.ALL
        assert item.scope_value == ""
        assert policies.is_allowlisted("db-9", "service", "sshd", utc())

    def test_missing_begin_is_unbounded(self, policies):
        item = policies.add_suppression(DriftPolicyInput(
            scope_type="host", scope_value="web-1", end=utc(hours=1),
        ))
        assert item.begin is None
        assert item.to_dict()["begin"] is None
        assert policies.is_suppressed("web-1", "file", "x", utc(hours=-2))
        assert policies.is_suppressed("web-1", "file", "x", utc(days=-400))
        assert not policies.is_suppressed("web-1", "file", "x", utc(hours=2))

    def test_window_is_half_open(self, policies):
        begin, end = utc(hours=-2), utc(hours=-1)
        policies.add_suppression(suppression(begin=begin, end=end))
        assert policies.is_suppressed("web-1", "file", "x", begin)
        assert policies.is_suppressed("web-1", "file", "x", utc(minutes=-90))
        assert not policies.is_suppressed("web-1", "file", "x", end)
        assert not policies.is_suppressed("web-1", "file", "x", utc(hours=-3))

    def test_open_ended_allowlist(self, policies):
        policies.add_allowlist(DriftPolicyInput(scope_type="host", scope_value="web-1"))
        assert policies.is_allowlisted("web-1", "file", "x", utc(days=365))

    def test_kinds_are_independent(self, policies):
        policies.add_suppression(suppression())
        assert not policies.is_allowlisted("web-1", "file", "x", utc())


class TestValidation:

    def test_suppression_requires_end(self, policies):
        with pytest.raises(InvalidScope):
            policies.add_suppression(DriftPolicyInput(scope_type="host", scope_value="web-1"))

    def test_begin_must_precede_end(self, policies):
        with pytest.raises(InvalidScope):
            policies.add_suppression(suppression(begin=utc(hours=1), end=utc(hours=-1)))

    def test_empty_scope_value(self, policies):
        with pytest.raises(InvalidScope):
            policies.add_allowlist(DriftPolicyInput(scope_type="host", scope_value="  "))

    def test_unknown_scope_type(self, policies):
        with pytest.raises(InvalidScope):
            policies.add_allowlist(DriftPolicyInput(scope_type="rack", scope_value="r1"))


class TestLifecycle:

    def test_ids_are_prefixed_per_kind(self, policies):
        sup = policies.add_suppression(suppression())
        allow = policies.add_allowlist(DriftPolicyInput(scope_type="host", scope_value="web-1"))
        assert sup.policy_id == "drift-sup-1"
        assert allow.policy_id == "drift-allow-1"

    def test_delete(self, policies):
        sup = policies.add_suppression(suppression())
        assert policies.delete_suppression(sup.policy_id)
        assert not policies.delete_suppression(sup.policy_id)
        assert not policies.is_suppressed("web-1", "file", "x", utc())
        with pytest.raises(NotFound):
            policies.get(PolicyKind.SUPPRESSION, sup.policy_id)

    def test_list_hides_expired_by_default(self, policies):
        policies.add_suppression(suppression(begin=utc(hours=-3), end=utc(hours=-2)))
        live = policies.add_suppression(suppression())
        assert [p.policy_id for p in policies.list_suppressions()] == [live.policy_id]
        assert len(policies.list_suppressions(include_expired=True)) == 2

    def test_reload_preserves_rules_and_counter(self, tmp_path, policies):
        sup = policies.add_suppression(suppression(reason="maintenance", created_by="ops"))
        policies.add_allowlist(DriftPolicyInput(scope_type="glob", scope_value="*|package|*"))

        reloaded = DriftPolicyStore(tmp_path / "drift")
        restored = reloaded.get(PolicyKind.SUPPRESSION, sup.policy_id)
        assert restored == sup
        assert reloaded.is_allowlisted("db-1", "package", "nginx", utc())
        assert reloaded.add_suppression(suppression()).policy_id == "drift-sup-2"

    def test_reload_keeps_unbounded_begin(self, tmp_path, policies):
        sup = policies.add_suppression(DriftPolicyInput(
            scope_type="host", scope_value="web-1", end=utc(hours=1),
        ))
        reloaded = DriftPolicyStore(tmp_path / "drift")
        assert reloaded.get(PolicyKind.SUPPRESSION, sup.policy_id).begin is None
        assert reloaded.is_suppressed("web-1", "file", "x", utc(hours=-5))
