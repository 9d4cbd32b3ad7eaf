# AppStack - Platform Service Backends

import logging
import re
import subprocess
import sys
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional

from appstack.core.config import Settings
from appstack.core.errors import (
    ExternalProcessFailure,
    PlatformOperationFailure,
    ServiceNotFound,
)
from appstack.core.process import CommandResult, ProcessHandle, ProcessRunner

logger = logging.getLogger("appstack.backends")


@dataclass
class ServiceDescriptor:
    """How to launch and identify one supervisable service."""

    name: str
    executable: Path
    args: List[str] = field(default_factory=list)
    port: Optional[int] = None
    config_path: Optional[Path] = None
    service_name: Optional[str] = None
    health_path: Optional[str] = None

    @property
    def native_name(self) -> str:
        return self.service_name or self.name

    @property
    def command(self) -> List[str]:
        return [str(self.executable), *self.args]


@dataclass
class ActionResult:
    success: bool
    message: str
    pid: Optional[int] = None


@dataclass
class BackendStatus:
    running: bool
    exists: bool
    pid: Optional[int] = None
    detail: Optional[str] = None


class ServiceBackend(ABC):
    """Platform capability for controlling one kind of service process."""

    @abstractmethod
    def start(self, descriptor: ServiceDescriptor, log_file: Optional[Path] = None) -> ActionResult:
        ...

    @abstractmethod
    def stop(self, descriptor: ServiceDescriptor) -> ActionResult:
        ...

    @abstractmethod
    def status(self, descriptor: ServiceDescriptor) -> BackendStatus:
        ...

    def remove(self, descriptor: ServiceDescriptor) -> None:
        """Drop any native registration for the service (no-op by default)."""

    def close(self) -> None:
        """Release resources held for tracked services."""


class DirectProcessBackend(ServiceBackend):
    """Runs services as detached child processes and tracks their handles."""

    def __init__(self, runner: ProcessRunner, stop_timeout: float = 5.0):
        self.runner = runner
        self.stop_timeout = stop_timeout
        self._handles: Dict[str, ProcessHandle] = {}
        self._lock = threading.Lock()

    def _tracked(self, name: str) -> Optional[ProcessHandle]:
        with self._lock:
            handle = self._handles.get(name)
            if handle is not None and not handle.is_alive():
                self._handles.pop(name, None)
                return None
            return handle

    def _lookup(self, descriptor: ServiceDescriptor) -> List[ProcessHandle]:
        return self.runner.find_processes(descriptor.executable, descriptor.args)

    def start(self, descriptor: ServiceDescriptor, log_file: Optional[Path] = None) -> ActionResult:
        handle = self._tracked(descriptor.name)
        if handle is None:
            found = self._lookup(descriptor)
            if found:
                handle = found[0]
        if handle is not None:
            return ActionResult(True, "Service already running", handle.pid)

        try:
            handle = self.runner.spawn_detached(
                descriptor.executable, descriptor.args, log_file=log_file
            )
        except ExternalProcessFailure as e:
            raise PlatformOperationFailure(descriptor.name, e.stderr or str(e)) from e
        with self._lock:
            self._handles[descriptor.name] = handle
        return ActionResult(True, "Service started", handle.pid)

    def stop(self, descriptor: ServiceDescriptor) -> ActionResult:
        handle = self._tracked(descriptor.name)
        if handle is not None:
            handle.terminate(self.stop_timeout)
            with self._lock:
                self._handles.pop(descriptor.name, None)
            return ActionResult(True, "Service stopped", handle.pid)

        found = self._lookup(descriptor)
        if not found:
            raise ServiceNotFound(
                descriptor.name, "Service not found or already stopped"
            )
        for proc in found:
            logger.info("Signalling %s (pid=%d)", descriptor.name, proc.pid)
            proc.terminate(self.stop_timeout)
        return ActionResult(True, "Service stopped", found[0].pid)

    def status(self, descriptor: ServiceDescriptor) -> BackendStatus:
        handle = self._tracked(descriptor.name)
        if handle is None:
            found = self._lookup(descriptor)
            handle = found[0] if found else None
        if handle is not None:
            return BackendStatus(running=True, exists=True, pid=handle.pid)
        exists = Path(descriptor.executable).exists()
        return BackendStatus(
            running=False,
            exists=exists,
            detail=None if exists else f"{descriptor.executable} not found",
        )

    def close(self) -> None:
        with self._lock:
            handles = list(self._handles.items())
            self._handles.clear()
        for name, handle in handles:
            logger.info("Stopping %s (pid=%d) on shutdown", name, handle.pid)
            handle.terminate(self.stop_timeout)


_PID_RE = re.compile(r"PID\s*:\s*(\d+)")


class WindowsServiceBackend(ServiceBackend):
    """Controls services through the Windows service control manager (sc.exe).

    Processes that were never registered natively are stopped through the
    direct-process fallback.
    """

    def __init__(
        self,
        runner: ProcessRunner,
        fallback: Optional[DirectProcessBackend] = None,
        sc: str = "sc",
    ):
        self.runner = runner
        self.fallback = fallback or DirectProcessBackend(runner)
        self.sc = sc

    def _sc(self, *args: str) -> CommandResult:
        try:
            return self.runner.spawn(self.sc, list(args))
        except ExternalProcessFailure as e:
            raise PlatformOperationFailure(args[1], e.stderr or str(e)) from e

    @staticmethod
    def _error(result: CommandResult) -> str:
        return (result.stderr or result.stdout).strip() or f"exit code {result.returncode}"

    def status(self, descriptor: ServiceDescriptor) -> BackendStatus:
        result = self._sc("queryex", descriptor.native_name)
        output = result.stdout
        if not result.ok or "does not exist" in output or "1060" in output:
            return BackendStatus(running=False, exists=False, detail="not_installed")
        running = "RUNNING" in output
        match = _PID_RE.search(output)
        pid = int(match.group(1)) if match and running else None
        return BackendStatus(running=running, exists=True, pid=pid or None)

    def start(self, descriptor: ServiceDescriptor, log_file: Optional[Path] = None) -> ActionResult:
        native = descriptor.native_name
        current = self.status(descriptor)
        if current.running:
            return ActionResult(True, "Service already running", current.pid)

        message = "Service started"
        if not current.exists:
            bin_path = subprocess.list2cmdline(descriptor.command)
            created = self._sc("create", native, "binPath=", bin_path, "start=", "demand")
            if not created.ok:
                raise PlatformOperationFailure(descriptor.name, self._error(created))
            logger.info("Created native service %s", native)
            message = "Service created and started"

        started = self._sc("start", native)
        if not started.ok:
            raise PlatformOperationFailure(descriptor.name, self._error(started))
        return ActionResult(True, message, self.status(descriptor).pid)

    def stop(self, descriptor: ServiceDescriptor) -> ActionResult:
        current = self.status(descriptor)
        if not current.exists:
            return self.fallback.stop(descriptor)
        if not current.running:
            return ActionResult(True, "Service already stopped")
        result = self._sc("stop", descriptor.native_name)
        if not result.ok:
            raise PlatformOperationFailure(descriptor.name, self._error(result))
        return ActionResult(True, "Service stopped", current.pid)

    def remove(self, descriptor: ServiceDescriptor) -> None:
        if not self.status(descriptor).exists:
            return
        result = self._sc("delete", descriptor.native_name)
        if not result.ok:
            raise PlatformOperationFailure(descriptor.name, self._error(result))
        logger.info("Deleted native service %s", descriptor.native_name)

    def close(self) -> None:
        self.fallback.close()


def select_backend(runner: ProcessRunner, settings: Settings) -> ServiceBackend:
    """Pick the service backend for this host."""
    choice = settings.service_backend
    if choice == "auto":
        choice = "windows" if sys.platform == "win32" else "process"
    direct = DirectProcessBackend(runner, stop_timeout=settings.stop_timeout)
    if choice == "windows":
        logger.info("Using Windows service control backend")
        return WindowsServiceBackend(runner, fallback=direct)
    logger.info("Using direct process backend")
    return direct
