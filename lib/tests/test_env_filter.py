"""Tests for environment variable handling."""

from __future__ import annotations

from procshell.env_filter import (
    ENV_EXIT_AFTER,
    ENV_INVOCATION,
    ENV_WATCH_PARENT,
    EnvVarPolicy,
    filter_env_vars,
    merge_vars,
)


class TestEnvVarPolicyEnum:
    def test_inherit_all_value(self):
        assert EnvVarPolicy.INHERIT_ALL == "inherit_all"

    def test_core_only_value(self):
        assert EnvVarPolicy.CORE_ONLY == "core_only"

    def test_inherit_none_value(self):
        assert EnvVarPolicy.INHERIT_NONE == "inherit_none"


class TestFilterEnvVars:
    def test_inherit_all_passes_everything(self):
        base = {"PATH": "/usr/bin", "CUSTOM": "val"}
        assert filter_env_vars(EnvVarPolicy.INHERIT_ALL, base) == base

    def test_result_is_a_copy(self):
        base = {"PATH": "/usr/bin"}
        result = filter_env_vars(EnvVarPolicy.INHERIT_ALL, base)
        result["X"] = "1"
        assert "X" not in base

    def test_core_only_keeps_core_vars(self):
        base = {"PATH": "/usr/bin", "HOME": "/home/u", "CUSTOM": "val"}
        result = filter_env_vars(EnvVarPolicy.CORE_ONLY, base)
        assert result == {"PATH": "/usr/bin", "HOME": "/home/u"}

    def test_inherit_none(self):
        assert filter_env_vars(EnvVarPolicy.INHERIT_NONE, {"PATH": "/usr/bin"}) == {}

    def test_reserved_vars_always_dropped(self):
        base = {
            "PATH": "/usr/bin",
            ENV_INVOCATION: "abc",
            ENV_WATCH_PARENT: "1",
            ENV_EXIT_AFTER: "5",
        }
        for policy in EnvVarPolicy:
            result = filter_env_vars(policy, base)
            assert not set(result) & {ENV_INVOCATION, ENV_WATCH_PARENT, ENV_EXIT_AFTER}

    def test_explicit_vars_override(self):
        base = {"PATH": "/usr/bin", "MY_VAR": "old"}
        result = filter_env_vars(EnvVarPolicy.INHERIT_ALL, base, {"MY_VAR": "new"})
        assert result["MY_VAR"] == "new"

    def test_explicit_vars_added_under_inherit_none(self):
        result = filter_env_vars(EnvVarPolicy.INHERIT_NONE, {"A": "1"}, {"B": "2"})
        assert result == {"B": "2"}


class TestHelpers:
    def test_merge_later_wins(self):
        assert merge_vars({"a": "1", "b": "1"}, None, {"b": "2"}) == {"a": "1", "b": "2"}

