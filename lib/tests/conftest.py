"""Shared fixtures for procshell tests."""

from __future__ import annotations

import os
import pathlib
import sys
import time

import pytest

from procshell import Shell, ShellOpts

TESTS_DIR = pathlib.Path(__file__).resolve().parent
LIB_DIR = TESTS_DIR.parent

posix_only = pytest.mark.skipif(sys.platform.startswith("win"), reason="POSIX only")


def child_pythonpath(existing: str | None) -> str:
    """PYTHONPATH that lets children import procshell and child_funcs."""
    parts = [str(LIB_DIR), str(TESTS_DIR)]
    if existing:
        parts.append(existing)
    return os.pathsep.join(parts)


def pid_alive(pid: int) -> bool:
    """Whether pid names a live (non-zombie) process."""
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    stat = pathlib.Path(f"/proc/{pid}/stat")
    try:
        state = stat.read_text().rsplit(")", 1)[1].split()[0]
    except (OSError, IndexError):
        return True
    return state != "Z"


def wait_gone(pid: int, timeout: float = 10.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if not pid_alive(pid):
            return True
        time.sleep(0.05)
    return False


@pytest.fixture
def make_shell():
    """Factory for Shells whose children can import the test helpers."""
    shells: list[Shell] = []

    def make(**opts) -> Shell:
        sh = Shell(ShellOpts(**opts))
        sh.vars["PYTHONPATH"] = child_pythonpath(sh.vars.get("PYTHONPATH"))
        shells.append(sh)
        return sh

    yield make
    for sh in reversed(shells):
        sh.cleanup()


@pytest.fixture
def sh(make_shell):
    return make_shell()
