"""Exception types raised by procshell.

Two categories:
- usage: the caller broke a calling-order rule (UsageError)
- runtime: the environment failed (ExitError, ProcessExitedError, ClosedPipeError)
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .protocol import ProcessGroupBackend


class ShellError(Exception):
    """Base class for procshell errors."""


class UsageError(ShellError):
    """Incorrect use of a Shell, Cmd, Pipeline or FuncRegistry."""


ERR_ALREADY_CALLED_START = "already called Cmd.start"
ERR_DID_NOT_CALL_START = "did not call Cmd.start"
ERR_ALREADY_CALLED_WAIT = "already called Cmd.wait"
ERR_ALREADY_SET_STDIN = "already set stdin"
ERR_ALREADY_CALLED_CLEANUP = "already called Shell.cleanup"
ERR_SHELL_ERR_SET = "Shell.err is not None"
ERR_ALREADY_CALLED_INIT_MAIN = "already called init_main"
ERR_DID_NOT_CALL_INIT_MAIN = "did not call init_main"


class ExitError(ShellError):
    """A child process exited unsuccessfully."""

    def __init__(
        self, returncode: int, cmdline: list[str], signal: str | None = None
    ) -> None:
        self.returncode = returncode
        self.cmdline = list(cmdline)
        self.signal = signal
        if signal is not None:
            detail = f"terminated by signal {signal}"
        else:
            detail = f"exited with code {returncode}"
        super().__init__(f"{self.cmdline!r} {detail}")


class ProcessExitedError(ShellError):
    """The process exited before sending what the caller was waiting for."""


class ClosedPipeError(BrokenPipeError):
    """Write on a closed BufferedPipe."""

    def __init__(self, message: str = "write on closed pipe") -> None:
        super().__init__(message)


def is_closed_pipe_error(
    err: BaseException | None, backend: ProcessGroupBackend
) -> bool:
    """Report whether err means the reading end of a pipe went away.

    Covers write errors (EPIPE, ClosedPipeError) and a child killed for
    writing into a closed pipe, which only the platform backend can tell.
    """
    if err is None:
        return False
    if isinstance(err, BrokenPipeError):
        return True
    if isinstance(err, ExitError):
        return backend.is_closed_pipe_exit(err.returncode)
    return False
