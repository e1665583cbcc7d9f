"""Orchestrate child processes from Python: a programmatic substitute for shell scripts.

Modules:
- shell: Shell, the owner of child processes and temporary resources
- cmd: Cmd, a single child process
- pipeline: Pipeline, Cmds chained stdout-to-stdin through OS pipes
- registry: FuncRegistry, functions that run in a re-executed child
- child: helpers for code running in a child (send_ready, send_vars, ...)
- buffers: BufferedPipe, RingBuffer, HeadTailBuffer
- messages: the child-to-parent wire format and its parser
- models: ShellOpts, ChildMessage, Invocation
- protocol / backends: per-platform process group control
"""

from .buffers import BufferedPipe, HeadTailBuffer, RingBuffer
from .child import init_child_main, maybe_watch_parent, send_ready, send_vars, watch_parent
from .cmd import Cmd
from .env_filter import EnvVarPolicy, filter_env_vars
from .errors import (
    ClosedPipeError,
    ExitError,
    ProcessExitedError,
    ShellError,
    UsageError,
    is_closed_pipe_error,
)
from .messages import MessageParser
from .models import ChildMessage, Invocation, ShellOpts
from .pipeline import PipeMode, Pipeline
from .protocol import ProcessGroupBackend
from .registry import Func, FuncRegistry, load_registry
from .shell import Shell

__all__ = [
    "BufferedPipe",
    "HeadTailBuffer",
    "RingBuffer",
    "init_child_main",
    "maybe_watch_parent",
    "send_ready",
    "send_vars",
    "watch_parent",
    "Cmd",
    "EnvVarPolicy",
    "filter_env_vars",
    "ClosedPipeError",
    "ExitError",
    "ProcessExitedError",
    "ShellError",
    "UsageError",
    "is_closed_pipe_error",
    "MessageParser",
    "ChildMessage",
    "Invocation",
    "ShellOpts",
    "PipeMode",
    "Pipeline",
    "ProcessGroupBackend",
    "Func",
    "FuncRegistry",
    "load_registry",
    "Shell",
]
