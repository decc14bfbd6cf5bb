"""Unit Tests for auto-resolution policies"""
from datetime import datetime, timedelta

import pytest

from conflux.models import ConflictStatus, ResolutionStrategy
from conflux.policies import DEFAULT_MAX_AGE_SECONDS, ConflictPolicy, PolicyRegistry


class TestConflictPolicy:

    @pytest.mark.parametrize("policy,strategy", [
        (ConflictPolicy.PROMPT, None),
        (ConflictPolicy.SERVER, ResolutionStrategy.SERVER_WINS),
        (ConflictPolicy.CLIENT, ResolutionStrategy.LOCAL_WINS),
    ])
    def test_strategy(self, policy, strategy):
        assert policy.strategy == strategy

    def test_from_string(self):
        assert ConflictPolicy.from_string("Server") == ConflictPolicy.SERVER

    def test_from_string_invalid(self):
        with pytest.raises(ValueError) as exc:
            ConflictPolicy.from_string("newest")
        assert "Invalid conflict policy" in str(exc.value)


class TestPolicyRegistry:

    def test_defaults(self):
        registry = PolicyRegistry()
        assert registry.policy_for("anything") == ConflictPolicy.PROMPT
        assert registry.max_age_seconds == DEFAULT_MAX_AGE_SECONDS

    def test_table_override(self):
        registry = PolicyRegistry()
        registry.set_policy("orders", ConflictPolicy.SERVER)

        assert registry.policy_for("orders") == ConflictPolicy.SERVER
        assert registry.policy_for("products") == ConflictPolicy.PROMPT

    def test_from_dict(self):
        registry = PolicyRegistry.from_dict(
            {"default": "client", "tables": {"orders": "server"}}, max_age_seconds=60
        )
        assert registry.default == ConflictPolicy.CLIENT
        assert registry.policy_for("orders") == ConflictPolicy.SERVER
        assert registry.max_age_seconds == 60

    def test_from_dict_empty(self):
        registry = PolicyRegistry.from_dict(None)
        assert registry.default == ConflictPolicy.PROMPT
        assert registry.tables == {}

    def test_from_dict_invalid_policy(self):
        with pytest.raises(ValueError):
            PolicyRegistry.from_dict({"tables": {"orders": "sometimes"}})

    def test_to_dict(self):
        registry = PolicyRegistry(tables={"orders": ConflictPolicy.SERVER})
        assert registry.to_dict() == {"default": "prompt", "tables": {"orders": "server"}}


class TestExpiry:

    def test_expired_after_max_age(self, make_conflict):
        detected = datetime(2024, 1, 1, 12, 0, 0)
        conflict = make_conflict({"a": 1}, {"a": 2}, detected_at=detected)
        registry = PolicyRegistry(max_age_seconds=30)

        assert not registry.is_expired(conflict, now=detected + timedelta(seconds=30))
        assert registry.is_expired(conflict, now=detected + timedelta(seconds=31))

    def test_override_max_age(self, make_conflict):
        detected = datetime(2024, 1, 1, 12, 0, 0)
        conflict = make_conflict({"a": 1}, {"a": 2}, detected_at=detected)
        registry = PolicyRegistry(max_age_seconds=30)

        assert registry.is_expired(conflict, now=detected + timedelta(seconds=6), max_age_seconds=5)

    def test_no_max_age_never_expires(self, make_conflict):
        conflict = make_conflict({"a": 1}, {"a": 2})
        registry = PolicyRegistry(max_age_seconds=None)
        assert not registry.is_expired(conflict, now=conflict.detected_at + timedelta(days=365))

    def test_resolved_never_expires(self, make_conflict):
        conflict = make_conflict({"a": 1}, {"a": 2})
        conflict.status = ConflictStatus.RESOLVED
        assert not PolicyRegistry().is_expired(conflict, now=conflict.detected_at + timedelta(hours=1))
