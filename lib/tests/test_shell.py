"""Tests for Shell: error routing, resources, directories and cleanup."""

from __future__ import annotations

import logging
import os
import signal
import sys
import threading

import pytest

import child_funcs as cf
from conftest import posix_only
from procshell import EnvVarPolicy, ExitError, FuncRegistry, Shell, ShellOpts, UsageError
from procshell.env_filter import ENV_INVOCATION
from procshell.errors import (
    ERR_ALREADY_CALLED_CLEANUP,
    ERR_ALREADY_CALLED_WAIT,
    ERR_DID_NOT_CALL_INIT_MAIN,
)
from procshell.signals import SignalCleanup


@pytest.fixture
def restore_cwd():
    cwd = os.getcwd()
    yield cwd
    os.chdir(cwd)


# ---------------------------------------------------------------------------
# Construction
# ---------------------------------------------------------------------------


class TestConstruction:
    def test_vars_from_environment(self, monkeypatch):
        monkeypatch.setenv("PROCSHELL_TEST_VAR", "v")
        with Shell(ShellOpts(handle_signals=False)) as sh:
            assert sh.vars["PROCSHELL_TEST_VAR"] == "v"

    def test_reserved_vars_not_inherited(self, monkeypatch):
        monkeypatch.setenv(ENV_INVOCATION, "stale")
        with Shell(ShellOpts(handle_signals=False)) as sh:
            assert ENV_INVOCATION not in sh.vars

    def test_core_only_policy(self, monkeypatch):
        monkeypatch.setenv("PROCSHELL_TEST_VAR", "v")
        opts = ShellOpts(env_policy=EnvVarPolicy.CORE_ONLY, handle_signals=False)
        with Shell(opts) as sh:
            assert "PROCSHELL_TEST_VAR" not in sh.vars
            assert sh.vars.get("PATH") == os.environ.get("PATH")

    def test_opts_from_env(self, monkeypatch, tmp_path):
        monkeypatch.setenv("PROCSHELL_CHILD_OUTPUT_DIR", str(tmp_path))
        sh = Shell()
        try:
            assert sh.opts.child_output_dir == str(tmp_path)
        finally:
            sh.cleanup()

    def test_context_manager_cleans_up(self):
        with Shell(ShellOpts(handle_signals=False)) as sh:
            f = sh.make_temp_file()
        assert f.closed
        assert not os.path.exists(f.name)
        with pytest.raises(UsageError, match=ERR_ALREADY_CALLED_CLEANUP):
            sh.ok()


# ---------------------------------------------------------------------------
# Error handling
# ---------------------------------------------------------------------------


class TestHandleError:
    def test_raises_by_default(self, sh):
        err = ValueError("boom")
        with pytest.raises(ValueError, match="boom"):
            sh.handle_error(err)
        assert sh.err is err

    def test_none_is_success(self, sh):
        sh.handle_error(None)
        assert sh.err is None

    def test_fatal_callback(self, make_shell):
        messages = []
        sh = make_shell(fatal=messages.append)
        sh.handle_error(ValueError("boom"))
        assert messages == ["ValueError: boom"]
        sh.err = None

    def test_continue_on_error(self, make_shell, caplog):
        sh = make_shell(continue_on_error=True)
        with caplog.at_level(logging.WARNING, logger="procshell.shell"):
            sh.handle_error(ValueError("boom"))
        assert isinstance(sh.err, ValueError)
        assert "boom" in caplog.text
        sh.err = None

    def test_err_blocks_further_calls(self, make_shell):
        sh = make_shell(continue_on_error=True)
        sh.handle_error(ValueError("boom"))
        with pytest.raises(UsageError, match="Shell.err"):
            sh.make_temp_dir()
        sh.err = None
        assert sh.make_temp_dir() is not None


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


class TestCommands:
    def test_func_cmd_needs_init_main(self, sh):
        registry = FuncRegistry()

        def noop() -> None:
            pass

        with pytest.raises(UsageError, match=ERR_DID_NOT_CALL_INIT_MAIN):
            sh.func_cmd(registry.register("noop", noop))

    def test_func_cmd_bad_args(self, sh):
        with pytest.raises(TypeError, match="cannot use argument"):
            sh.func_cmd(cf.exit_with, "not an int")

    def test_func_cmd_arity(self, sh):
        with pytest.raises(TypeError, match="too many"):
            sh.func_cmd(cf.exit_with, 1, 2)

    def test_wait_all(self, sh):
        a = sh.func_cmd(cf.print_args, "a")
        b = sh.func_cmd(cf.print_args, "b")
        a.start()
        b.start()
        sh.wait()
        with pytest.raises(UsageError, match=ERR_ALREADY_CALLED_WAIT):
            a.wait()

    def test_wait_skips_unstarted_and_waited(self, sh):
        sh.func_cmd(cf.print_args)
        waited = sh.func_cmd(cf.print_args)
        waited.run()
        sh.wait()
        assert sh.err is None

    def test_wait_reports_last_error(self, make_shell):
        sh = make_shell(continue_on_error=True)
        for code in (1, 2):
            sh.func_cmd(cf.exit_with, code).start()
        sh.wait()
        assert isinstance(sh.err, ExitError)
        assert sh.err.returncode == 2
        sh.err = None

    def test_wait_ignores_ok_exits(self, sh):
        c = sh.func_cmd(cf.exit_with, 1)
        c.exit_error_is_ok = True
        c.start()
        sh.wait()
        assert sh.err is None

    @pytest.mark.asyncio
    async def test_wait_async(self, sh):
        sh.func_cmd(cf.print_args).start()
        await sh.wait_async()
        assert sh.err is None


# ---------------------------------------------------------------------------
# Files and directories
# ---------------------------------------------------------------------------


class TestFiles:
    def test_temp_file_removed(self, sh):
        f = sh.make_temp_file()
        f.write(b"data")
        assert os.path.basename(f.name).startswith("procshell-")
        assert os.path.exists(f.name)
        sh.cleanup()
        assert f.closed
        assert not os.path.exists(f.name)

    def test_temp_dir_removed(self, sh):
        d = sh.make_temp_dir()
        with open(os.path.join(d, "inner"), "w") as f:
            f.write("x")
        sh.cleanup()
        assert not os.path.exists(d)

    def test_move(self, sh, tmp_path):
        src = tmp_path / "src"
        src.write_text("content")
        dst = tmp_path / "dst"
        sh.move(str(src), str(dst))
        assert not src.exists()
        assert dst.read_text() == "content"

    def test_move_missing(self, sh, tmp_path):
        with pytest.raises(FileNotFoundError):
            sh.move(str(tmp_path / "missing"), str(tmp_path / "dst"))


class TestDirStack:
    def test_pushd_popd(self, sh, tmp_path, restore_cwd):
        sh.pushd(str(tmp_path))
        assert os.getcwd() == os.path.realpath(tmp_path)
        sh.popd()
        assert os.getcwd() == restore_cwd

    def test_nested(self, sh, tmp_path, restore_cwd):
        a, b = tmp_path / "a", tmp_path / "b"
        a.mkdir()
        b.mkdir()
        sh.pushd(str(a))
        sh.pushd(str(b))
        sh.popd()
        assert os.getcwd() == os.path.realpath(a)
        sh.popd()
        assert os.getcwd() == restore_cwd

    def test_popd_empty(self, sh):
        with pytest.raises(UsageError, match="dir stack is empty"):
            sh.popd()

    def test_pushd_missing(self, sh, tmp_path, restore_cwd):
        with pytest.raises(FileNotFoundError):
            sh.pushd(str(tmp_path / "missing"))
        assert os.getcwd() == restore_cwd

    def test_cleanup_restores_cwd(self, sh, tmp_path, restore_cwd):
        a = tmp_path / "a"
        a.mkdir()
        sh.pushd(str(tmp_path))
        sh.pushd(str(a))
        sh.cleanup()
        assert os.getcwd() == restore_cwd


# ---------------------------------------------------------------------------
# Cleanup
# ---------------------------------------------------------------------------


class TestCleanup:
    def test_handlers_lifo(self, sh):
        order = []
        for i in range(3):
            sh.add_cleanup_handler(lambda i=i: order.append(i))
        sh.cleanup()
        assert order == [2, 1, 0]

    def test_idempotent(self, sh):
        calls = []
        sh.add_cleanup_handler(lambda: calls.append(1))
        sh.cleanup()
        sh.cleanup()
        assert calls == [1]

    def test_concurrent_cleanup(self, sh):
        calls = []
        sh.add_cleanup_handler(lambda: calls.append(1))
        threads = [threading.Thread(target=sh.cleanup) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert calls == [1]

    def test_failing_handler(self, sh, caplog):
        calls = []
        sh.add_cleanup_handler(lambda: calls.append("first"))

        def fail():
            raise RuntimeError("handler failed")

        sh.add_cleanup_handler(fail)
        with caplog.at_level(logging.WARNING, logger="procshell.shell"):
            with pytest.raises(RuntimeError, match="handler failed"):
                sh.cleanup()
        assert calls == ["first"]
        assert "handler failed" in caplog.text

    def test_releases_every_resource(self, sh, tmp_path, restore_cwd):
        calls = []
        sh.add_cleanup_handler(lambda: calls.append(1))
        f = sh.make_temp_file()
        d = sh.make_temp_dir()
        sh.pushd(str(tmp_path))
        sh.cleanup()
        assert calls == [1]
        assert not os.path.exists(f.name)
        assert not os.path.exists(d)
        assert os.getcwd() == restore_cwd

    def test_missing_temp_file_does_not_stop_cleanup(self, sh, tmp_path, restore_cwd, caplog):
        calls = []
        sh.add_cleanup_handler(lambda: calls.append(1))
        f = sh.make_temp_file()
        os.remove(f.name)
        d = sh.make_temp_dir()
        sh.pushd(str(tmp_path))
        with caplog.at_level(logging.WARNING, logger="procshell.shell"):
            sh.cleanup()
        assert calls == [1]
        assert not os.path.exists(d)
        assert os.getcwd() == restore_cwd
        assert "removing temp file" in caplog.text

    def test_unusable_after_cleanup(self, sh):
        sh.cleanup()
        with pytest.raises(UsageError, match=ERR_ALREADY_CALLED_CLEANUP):
            sh.func_cmd(cf.print_args)
        with pytest.raises(UsageError, match=ERR_ALREADY_CALLED_CLEANUP):
            sh.add_cleanup_handler(lambda: None)

    def test_start_after_cleanup(self, sh):
        c = sh.func_cmd(cf.print_args)
        sh.cleanup()
        with pytest.raises(UsageError, match=ERR_ALREADY_CALLED_CLEANUP):
            c.start()

    def test_cleanup_stops_children(self, sh):
        c = sh.func_cmd(cf.sleep, 3600.0, 0)
        c.start()
        c.await_ready()
        proc = c._proc
        sh.cleanup()
        assert proc.wait(timeout=10) != 0


# ---------------------------------------------------------------------------
# Signal handling
# ---------------------------------------------------------------------------


@posix_only
class TestSignalCleanup:
    def test_install_and_restore(self):
        sh = Shell(ShellOpts(handle_signals=False))
        sc = SignalCleanup(signals=(signal.SIGUSR1,))
        previous = signal.getsignal(signal.SIGUSR1)
        try:
            assert sc.register(sh)
            assert sc.installed
            assert signal.getsignal(signal.SIGUSR1) == sc._handle
            sc.unregister(sh)
            assert not sc.installed
            assert signal.getsignal(signal.SIGUSR1) == previous
        finally:
            signal.signal(signal.SIGUSR1, previous)
            sh.cleanup()

    def test_handlers_kept_while_shells_remain(self):
        a = Shell(ShellOpts(handle_signals=False))
        b = Shell(ShellOpts(handle_signals=False))
        sc = SignalCleanup(signals=(signal.SIGUSR1,))
        previous = signal.getsignal(signal.SIGUSR1)
        try:
            sc.register(a)
            sc.register(b)
            sc.unregister(a)
            assert sc.installed
            sc.unregister(b)
            assert not sc.installed
        finally:
            signal.signal(signal.SIGUSR1, previous)
            a.cleanup()
            b.cleanup()

    def test_register_off_main_thread(self):
        sh = Shell(ShellOpts(handle_signals=False))
        sc = SignalCleanup(signals=(signal.SIGUSR1,))
        results = []
        t = threading.Thread(target=lambda: results.append(sc.register(sh)))
        t.start()
        t.join()
        assert results == [False]
        assert not sc.installed
        sh.cleanup()

    def test_sigterm_cleans_up_children(self, sh, tmp_path):
        # The child runs a Shell with signal handling, then is sent SIGTERM.
        marker = tmp_path / "cleaned"
        script = (
            "import sys, time\n"
            "from procshell import Shell, send_vars\n"
            "sh = Shell()\n"
            f"sh.add_cleanup_handler(lambda: open({str(marker)!r}, 'w').close())\n"
            "send_vars({'up': '1'})\n"
            "time.sleep(3600)\n"
        )
        c = sh.cmd(sys.executable, "-c", script)
        c.start()
        c.await_vars("up")
        c.signal(signal.SIGTERM)
        with pytest.raises(ExitError) as exc_info:
            c.wait()
        assert exc_info.value.returncode == 1
        assert marker.exists()
