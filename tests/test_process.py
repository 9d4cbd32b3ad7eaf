"""Tests for the process runner."""

import sys
import time
import uuid
from pathlib import Path

import psutil
import pytest

from appstack.core import process as process_module
from appstack.core.backends import DirectProcessBackend, ServiceDescriptor
from appstack.core.errors import ExternalProcessFailure
from appstack.core.process import CommandResult, ProcessHandle, ProcessRunner


@pytest.fixture
def runner():
    return ProcessRunner()


class TestSpawn:
    """Blocking commands."""

    def test_captures_output_and_exit_code(self, runner):
        """Test stdout, stderr and the exit code come back."""
        result = runner.spawn(
            sys.executable,
            ["-c", "import sys; print('out'); print('err', file=sys.stderr); sys.exit(3)"],
        )
        assert result.returncode == 3
        assert result.stdout.strip() == "out"
        assert result.stderr.strip() == "err"
        assert not result.ok

    def test_runs_in_cwd(self, runner, tmp_path):
        """Test the working directory is honoured."""
        result = runner.spawn(sys.executable, ["-c", "import os; print(os.getcwd())"], cwd=tmp_path)
        assert result.ok
        assert result.stdout.strip() == str(tmp_path.resolve())

    def test_missing_executable(self, runner, tmp_path):
        """Test a command that cannot launch raises with exit code -1."""
        with pytest.raises(ExternalProcessFailure) as exc:
            runner.spawn(tmp_path / "no-such-binary")
        assert exc.value.exit_code == -1

    def test_check_raises_on_failure(self):
        """Test check() turns a non-zero exit into an error carrying stderr."""
        result = CommandResult(["php", "artisan", "migrate"], 1, "", "SQLSTATE refused")
        with pytest.raises(ExternalProcessFailure) as exc:
            result.check()
        assert exc.value.exit_code == 1
        assert "SQLSTATE refused" in str(exc.value)
        assert "php artisan migrate" in str(exc.value)


class TestDetached:
    """Background processes."""

    def test_spawn_find_terminate(self, runner, tmp_path):
        """Test a detached child is found by its command line and stopped."""
        args = ["-c", f"import time; time.sleep(120)  # {uuid.uuid4().hex}"]
        log_file = tmp_path / "child.log"
        handle = runner.spawn_detached(sys.executable, args, log_file=log_file)
        try:
            assert handle.is_alive()
            found = runner.find_processes(sys.executable, args)
            assert [h.pid for h in found] == [handle.pid]
        finally:
            handle.terminate(timeout=5)
        assert not handle.is_alive()
        assert log_file.exists()

    def test_log_file_receives_output(self, runner, tmp_path):
        """Test stdout and stderr are appended to the log file."""
        log_file = tmp_path / "child.log"
        log_file.write_text("previous\n")
        handle = runner.spawn_detached(
            sys.executable, ["-c", "import sys; print('hello'); print('oops', file=sys.stderr)"],
            log_file=log_file,
        )
        handle.popen.wait(timeout=10)
        content = log_file.read_text()
        assert content.startswith("previous\n")
        assert "hello" in content
        assert "oops" in content

    def test_handle_from_pid(self, runner):
        """Test a handle built from a bare pid can stop the process."""
        args = ["-c", f"import time; time.sleep(120)  # {uuid.uuid4().hex}"]
        spawned = runner.spawn_detached(sys.executable, args)
        try:
            other = ProcessHandle.from_pid(spawned.pid)
            assert other.is_alive()
            other.terminate(timeout=5)
            deadline = time.time() + 5
            while spawned.is_alive() and time.time() < deadline:
                time.sleep(0.05)
            assert not spawned.is_alive()
        finally:
            spawned.terminate(timeout=5)

    def test_find_nothing(self, runner):
        """Test an unmatched command line finds no processes."""
        assert runner.find_processes(sys.executable, ["-c", uuid.uuid4().hex]) == []


class FakeProc:
    """Stand-in for a ``psutil.Process`` listed by ``process_iter``."""

    def __init__(self, pid, name, cmdline, exe="", status=psutil.STATUS_SLEEPING):
        self.pid = pid
        self.info = {"pid": pid, "name": name, "cmdline": cmdline}
        self._exe = exe
        self._status = status
        self.terminated = False

    def status(self):
        return self._status

    def exe(self):
        if not self._exe:
            raise psutil.AccessDenied(self.pid)
        return self._exe

    def is_running(self):
        return not self.terminated

    def terminate(self):
        self.terminated = True

    def wait(self, timeout=None):
        return 0

    def kill(self):
        self.terminated = True


NGINX = "/srv/runtime/nginx/nginx"
NGINX_ARGS = ["-p", "/srv/runtime/nginx", "-c", "/srv/runtime/nginx/conf/nginx.conf"]


@pytest.fixture
def host_processes(monkeypatch):
    procs = []
    monkeypatch.setattr(
        process_module.psutil, "process_iter", lambda attrs=None: list(procs)
    )
    return procs


class TestFindProcesses:
    """Matching host processes against a service command."""

    def test_rewritten_title(self, runner, host_processes):
        """Test a master process that rewrote its title is still found."""
        master = FakeProc(
            4100, "nginx", ["nginx:", "master", "process", NGINX, *NGINX_ARGS]
        )
        worker = FakeProc(4101, "nginx", ["nginx:", "worker", "process"])
        host_processes.extend([master, worker])

        found = runner.find_processes(NGINX, NGINX_ARGS)
        assert [h.pid for h in found] == [4100]

    def test_rewritten_title_as_one_string(self, runner, host_processes):
        """Test a title reported as a single argv entry is matched too."""
        title = " ".join(["nginx: master process", NGINX, *NGINX_ARGS])
        host_processes.append(FakeProc(4150, "nginx", [title]))
        assert [h.pid for h in runner.find_processes(NGINX, NGINX_ARGS)] == [4150]

    def test_exact_command_line(self, runner, host_processes):
        """Test a verbatim command line matches on its arguments."""
        host_processes.append(FakeProc(4200, "nginx", [NGINX, *NGINX_ARGS]))
        host_processes.append(FakeProc(4201, "nginx", [NGINX, "-p", "/elsewhere"]))
        assert [h.pid for h in runner.find_processes(NGINX, NGINX_ARGS)] == [4200]

    def test_matches_by_exe_path(self, runner, host_processes):
        """Test a process whose name and argv[0] differ is found through exe()."""
        host_processes.append(FakeProc(4300, "worker", ["worker", *NGINX_ARGS], exe=NGINX))
        assert [h.pid for h in runner.find_processes(NGINX, NGINX_ARGS)] == [4300]

    def test_skips_zombies_and_other_names(self, runner, host_processes):
        """Test zombies and unrelated executables are ignored."""
        host_processes.append(
            FakeProc(4400, "nginx", [NGINX, *NGINX_ARGS], status=psutil.STATUS_ZOMBIE)
        )
        host_processes.append(FakeProc(4401, "php-cgi", ["php-cgi", *NGINX_ARGS]))
        assert runner.find_processes(NGINX, NGINX_ARGS) == []

    def test_backend_stops_rewritten_master(self, runner, host_processes):
        """Test the direct backend stops a service found by its rewritten title."""
        master = FakeProc(
            4500, "nginx", ["nginx:", "master", "process", NGINX, *NGINX_ARGS]
        )
        host_processes.append(master)
        backend = DirectProcessBackend(runner)

        result = backend.stop(ServiceDescriptor("nginx", Path(NGINX), args=NGINX_ARGS))

        assert result.success
        assert result.pid == 4500
        assert master.terminated
