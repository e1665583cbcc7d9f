"""Data models shared by the parent and child sides of procshell.

- ShellOpts: configuration for a Shell
- ChildMessage: a structured message sent by a child to its parent
- Invocation: a function name plus JSON-ready arguments, used to re-exec
"""

from __future__ import annotations

import os
from collections.abc import Callable, Mapping
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

from .env_filter import EnvVarPolicy

ENV_CHILD_OUTPUT_DIR = "PROCSHELL_CHILD_OUTPUT_DIR"
ENV_PROPAGATE_CHILD_OUTPUT = "PROCSHELL_PROPAGATE_CHILD_OUTPUT"

_TRUTHY = frozenset({"1", "true", "yes", "on"})


class ShellOpts(BaseModel):
    """Configuration for a Shell.

    Errors handed to Shell.handle_error are fatal unless continue_on_error
    is set. A fatal error calls ``fatal`` with the message when provided,
    otherwise the error is raised.
    """

    model_config = ConfigDict(validate_assignment=True)

    fatal: Callable[[str], Any] | None = Field(
        default=None,
        description="Called with the error message on fatal errors (e.g. pytest.fail)",
    )
    continue_on_error: bool = Field(
        default=False, description="Log errors and continue instead of failing"
    )
    propagate_child_output: bool = Field(
        default=False,
        description="Default for new Cmds: copy child output to the parent's stdout/stderr",
    )
    child_output_dir: str = Field(
        default="",
        description="Default for new Cmds: directory that receives child output files",
    )
    env_policy: EnvVarPolicy = Field(
        default=EnvVarPolicy.INHERIT_ALL,
        description="How Shell.vars is seeded from the parent environment",
    )
    cleanup_grace_period: float = Field(
        default=1.0,
        ge=0,
        description="Seconds between the graceful signal and the kill during cleanup",
    )
    handle_signals: bool = Field(
        default=True,
        description="Clean up and exit on SIGINT, SIGTERM and SIGQUIT",
    )

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> ShellOpts:
        """Build options with defaults taken from PROCSHELL_* variables."""
        env = os.environ if environ is None else environ
        return cls(
            child_output_dir=env.get(ENV_CHILD_OUTPUT_DIR, ""),
            propagate_child_output=(
                env.get(ENV_PROPAGATE_CHILD_OUTPUT, "").strip().lower() in _TRUTHY
            ),
        )


class ChildMessage(BaseModel):
    """A message written by a child on its stderr."""

    type: Literal["ready", "vars"] = Field(..., description="Message kind")
    vars: dict[str, str] | None = Field(
        default=None, description="Variables sent with a 'vars' message"
    )


class Invocation(BaseModel):
    """A registered function name and its JSON-ready arguments."""

    name: str = Field(..., description="Registered function name")
    args: list[Any] = Field(default_factory=list, description="Encoded arguments")
