# AppStack - Process Runner

import logging
import os
import subprocess
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Union

import psutil  # type: ignore

from appstack.core.errors import ExternalProcessFailure, OperationTimeout

logger = logging.getLogger("appstack.process")

PathLike = Union[str, Path]


@dataclass
class CommandResult:
    """Outcome of a blocking command."""

    command: List[str]
    returncode: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    def check(self) -> "CommandResult":
        if not self.ok:
            raise ExternalProcessFailure(self.command, self.returncode, self.stderr)
        return self


class ProcessHandle:
    """Owned handle to a background process.

    Wraps the ``Popen`` object when we spawned the process ourselves (so it
    gets reaped), or just a ``psutil.Process`` for one found on the host.
    """

    def __init__(
        self,
        process: psutil.Process,
        popen: Optional[subprocess.Popen] = None,
    ):
        self.process = process
        self.popen = popen

    @classmethod
    def from_pid(cls, pid: int) -> "ProcessHandle":
        return cls(psutil.Process(pid))

    @property
    def pid(self) -> int:
        return self.process.pid

    def is_alive(self) -> bool:
        if self.popen is not None:
            return self.popen.poll() is None
        try:
            return (
                self.process.is_running()
                and self.process.status() != psutil.STATUS_ZOMBIE
            )
        except psutil.NoSuchProcess:
            return False

    def terminate(self, timeout: float = 5.0) -> None:
        """Terminate gracefully, killing after ``timeout`` seconds."""
        if not self.is_alive():
            return
        if self.popen is not None:
            self.popen.terminate()
            try:
                self.popen.wait(timeout=timeout)
            except subprocess.TimeoutExpired:
                logger.warning("pid %d didn't stop gracefully, killing", self.pid)
                self.popen.kill()
                try:
                    self.popen.wait(timeout=timeout)
                except subprocess.TimeoutExpired as e:
                    raise OperationTimeout(f"pid {self.pid} survived kill") from e
            return
        try:
            self.process.terminate()
            self.process.wait(timeout=timeout)
        except psutil.TimeoutExpired:
            logger.warning("pid %d didn't stop gracefully, killing", self.pid)
            self.process.kill()
            try:
                self.process.wait(timeout=timeout)
            except psutil.TimeoutExpired as e:
                raise OperationTimeout(f"pid {self.pid} survived kill") from e
        except psutil.NoSuchProcess:
            pass


class ProcessRunner:
    """Spawns provisioning commands and detached service processes."""

    def spawn(
        self,
        executable: PathLike,
        args: Sequence[str] = (),
        cwd: Optional[PathLike] = None,
        capture: bool = True,
        env: Optional[Dict[str, str]] = None,
    ) -> CommandResult:
        """Run a command to completion and return its exit code and output."""
        command = [str(executable), *args]
        logger.info("Running %s%s", " ".join(command), f" (cwd={cwd})" if cwd else "")
        try:
            proc = subprocess.run(
                command,
                cwd=str(cwd) if cwd else None,
                env={**os.environ, **env} if env else None,
                stdout=subprocess.PIPE if capture else subprocess.DEVNULL,
                stderr=subprocess.PIPE if capture else subprocess.DEVNULL,
                stdin=subprocess.DEVNULL,
                text=True,
            )
        except OSError as e:
            raise ExternalProcessFailure(command, -1, str(e)) from e
        result = CommandResult(
            command=command,
            returncode=proc.returncode,
            stdout=proc.stdout or "",
            stderr=proc.stderr or "",
        )
        if not result.ok:
            logger.warning("%s exited with code %d", command[0], result.returncode)
        return result

    def spawn_detached(
        self,
        executable: PathLike,
        args: Sequence[str] = (),
        cwd: Optional[PathLike] = None,
        log_file: Optional[Path] = None,
        env: Optional[Dict[str, str]] = None,
    ) -> ProcessHandle:
        """Start a background process, appending its output to ``log_file``."""
        command = [str(executable), *args]
        kwargs: Dict[str, object] = {}
        if sys.platform == "win32":
            kwargs["creationflags"] = (
                subprocess.DETACHED_PROCESS | subprocess.CREATE_NEW_PROCESS_GROUP
            )
        else:
            kwargs["start_new_session"] = True

        log = open(log_file, "a") if log_file else subprocess.DEVNULL
        try:
            popen = subprocess.Popen(
                command,
                cwd=str(cwd) if cwd else None,
                stdin=subprocess.DEVNULL,
                stdout=log,
                stderr=subprocess.STDOUT,
                env={**os.environ, "PYTHONUNBUFFERED": "1", **(env or {})},
                **kwargs,
            )
        except OSError as e:
            raise ExternalProcessFailure(command, -1, str(e)) from e
        finally:
            if log_file:
                log.close()

        logger.info("Spawned %s (pid=%d)", Path(command[0]).name, popen.pid)
        return ProcessHandle(psutil.Process(popen.pid), popen)

    def find_processes(
        self, executable: PathLike, args: Optional[Sequence[str]] = None
    ) -> List[ProcessHandle]:
        """Locate host processes by executable name (and args, when given).

        Daemons such as nginx rewrite their process title, so a command
        line that merely ends with the expected command also matches.
        """
        name = Path(str(executable)).name
        names = {name, Path(name).stem}
        expected = " ".join([str(executable), *args]) if args is not None else None
        found: List[ProcessHandle] = []
        for proc in psutil.process_iter(["pid", "name", "cmdline"]):
            if proc.pid == os.getpid():
                continue
            try:
                cmdline = list(proc.info.get("cmdline") or [])
                if proc.status() == psutil.STATUS_ZOMBIE:
                    continue
                candidates = {proc.info.get("name") or ""}
                if cmdline:
                    candidates.add(Path(cmdline[0]).name)
                if not names & candidates:
                    candidates.add(_exe_name(proc))
            except (psutil.NoSuchProcess, psutil.AccessDenied):
                continue
            if not names & candidates:
                continue
            if expected is not None and cmdline[1:] != list(args):
                if not " ".join(cmdline).endswith(expected):
                    continue
            found.append(ProcessHandle(proc))
        return found


def _exe_name(proc: psutil.Process) -> str:
    try:
        return Path(proc.exe()).name
    except psutil.AccessDenied:
        return ""
