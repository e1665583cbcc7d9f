"""Environment variable handling for child processes.

A Shell seeds its vars from the parent environment according to an
EnvVarPolicy. The variables that drive the parent/child protocol are
reserved: they are set per child by Cmd.start and never inherited.
"""

from __future__ import annotations

from collections.abc import Mapping
from enum import Enum

# Encoded function invocation for a re-executed child.
ENV_INVOCATION = "PROCSHELL_INVOCATION"
# Parent pid; the child exits once it is no longer its parent.
ENV_WATCH_PARENT = "PROCSHELL_WATCH_PARENT"
# Seconds after which the child exits unconditionally.
ENV_EXIT_AFTER = "PROCSHELL_EXIT_AFTER"

RESERVED_VARS: frozenset[str] = frozenset(
    {ENV_INVOCATION, ENV_WATCH_PARENT, ENV_EXIT_AFTER}
)


class EnvVarPolicy(str, Enum):
    """How much of the parent environment a Shell passes to its children."""

    INHERIT_ALL = "inherit_all"
    CORE_ONLY = "core_only"
    INHERIT_NONE = "inherit_none"


# Vars kept under core_only: enough to locate executables and run Python.
CORE_VARS: frozenset[str] = frozenset(
    {
        "PATH",
        "HOME",
        "USER",
        "LOGNAME",
        "SHELL",
        "LANG",
        "LC_ALL",
        "TERM",
        "TMPDIR",
        "TEMP",
        "TMP",
        "PYTHONPATH",
        "VIRTUAL_ENV",
        "SYSTEMROOT",
        "COMSPEC",
        "PATHEXT",
    }
)


def filter_env_vars(
    policy: EnvVarPolicy,
    base_env: Mapping[str, str],
    explicit_vars: Mapping[str, str] | None = None,
) -> dict[str, str]:
    """Apply policy to base_env, drop reserved vars, then merge explicit_vars.

    Args:
        policy: Which vars to inherit from base_env.
        base_env: The base environment (typically os.environ).
        explicit_vars: Overrides applied last.

    Returns:
        A new dict.
    """
    if policy == EnvVarPolicy.INHERIT_ALL:
        result = dict(base_env)
    elif policy == EnvVarPolicy.CORE_ONLY:
        result = {k: v for k, v in base_env.items() if k in CORE_VARS}
    else:
        result = {}

    for name in RESERVED_VARS:
        result.pop(name, None)

    if explicit_vars:
        result.update(explicit_vars)
    return result


def merge_vars(*maps: Mapping[str, str] | None) -> dict[str, str]:
    """Merge maps into a new dict; later maps win."""
    result: dict[str, str] = {}
    for m in maps:
        if m:
            result.update(m)
    return result
