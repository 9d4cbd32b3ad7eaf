# AppStack Service Manager - Business Logic

import logging
import threading
import time
from dataclasses import replace
from pathlib import Path
from typing import Dict, List, Optional

from appstack.api.models import ServiceState, ServiceStatus
from appstack.core.backends import ActionResult, ServiceBackend, ServiceDescriptor
from appstack.core.config import Settings
from appstack.core.errors import ServiceNotFound
from appstack.core.ports import probe_port

logger = logging.getLogger("appstack")


def default_catalog(settings: Settings) -> Dict[str, ServiceDescriptor]:
    """The PHP, nginx and PostgreSQL services shipped in the runtime dir."""
    runtime = settings.runtime_path
    exe = settings.exe_suffix
    nginx_conf = runtime / "nginx" / "conf" / "nginx.conf"
    pg_data = runtime / "pgsql" / "data"

    return {
        "php": ServiceDescriptor(
            name="php",
            service_name="AppStack_PHP",
            executable=runtime / "php" / f"php-cgi{exe}",
            args=["-b", "127.0.0.1:9000"],
            port=9000,
        ),
        "nginx": ServiceDescriptor(
            name="nginx",
            service_name="AppStack_Nginx",
            executable=runtime / "nginx" / f"nginx{exe}",
            args=["-p", str(runtime / "nginx"), "-c", str(nginx_conf)],
            config_path=nginx_conf,
            port=80,
            health_path="/",
        ),
        "postgres": ServiceDescriptor(
            name="postgres",
            service_name="AppStack_PostgreSQL",
            executable=runtime / "pgsql" / "bin" / f"postgres{exe}",
            args=["-D", str(pg_data), "-p", str(settings.db_port)],
            config_path=pg_data / "postgresql.conf",
            port=settings.db_port,
        ),
    }


class ServiceManager:
    """Starts, stops and reports on the catalog of background services."""

    def __init__(
        self,
        backend: ServiceBackend,
        settings: Settings,
        catalog: Optional[Dict[str, ServiceDescriptor]] = None,
    ):
        self.backend = backend
        self.settings = settings
        self.services: Dict[str, ServiceDescriptor] = dict(
            default_catalog(settings) if catalog is None else catalog
        )
        self._locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def __enter__(self) -> "ServiceManager":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def _lock_for(self, name: str) -> threading.Lock:
        with self._locks_guard:
            return self._locks.setdefault(name, threading.Lock())

    def _validate_service(self, name: str) -> ServiceDescriptor:
        """Validate service name and return descriptor."""
        if name not in self.services:
            raise ServiceNotFound(name)
        return self.services[name]

    def log_file(self, name: str) -> Path:
        return self.settings.log_dir / f"{name}.log"

    # -- catalog -------------------------------------------------------------

    def register(self, name: str, descriptor: ServiceDescriptor) -> None:
        """Add a service to the catalog under ``name``.

        The descriptor is copied, so the caller's object is left untouched.
        Replacing an existing entry stops the old service first.
        """
        descriptor = replace(descriptor, name=name)
        with self._lock_for(name):
            previous = self.services.get(name)
            if previous is not None:
                self._stop(name, previous)
            self.services[name] = descriptor
        logger.info("Registered service %s", name)

    def deregister(self, name: str) -> None:
        """Stop a service and drop it from the catalog."""
        descriptor = self._validate_service(name)
        with self._lock_for(name):
            self._stop(name, descriptor)
            self.backend.remove(descriptor)
            self.services.pop(name, None)
        logger.info("Deregistered service %s", name)

    # -- lifecycle -----------------------------------------------------------

    def _start(self, name: str, descriptor: ServiceDescriptor) -> ActionResult:
        self.settings.log_dir.mkdir(parents=True, exist_ok=True)
        logger.info("Starting %s", name)
        result = self.backend.start(descriptor, log_file=self.log_file(name))
        logger.info("%s: %s (pid=%s)", name, result.message, result.pid)
        return result

    def _stop(self, name: str, descriptor: ServiceDescriptor) -> ActionResult:
        logger.info("Stopping %s", name)
        try:
            result = self.backend.stop(descriptor)
        except ServiceNotFound:
            # Known service with nothing to stop.
            logger.info("%s not running", name)
            return ActionResult(True, "Service already stopped")
        logger.info("%s: %s", name, result.message)
        return result

    def start_service(self, name: str) -> ActionResult:
        """Start a service."""
        descriptor = self._validate_service(name)
        with self._lock_for(name):
            return self._start(name, descriptor)

    def stop_service(self, name: str) -> ActionResult:
        """Stop a service."""
        descriptor = self._validate_service(name)
        with self._lock_for(name):
            return self._stop(name, descriptor)

    def restart_service(self, name: str) -> ActionResult:
        """Restart a service, giving the OS time to release its port."""
        descriptor = self._validate_service(name)
        with self._lock_for(name):
            self._stop(name, descriptor)
            if self.settings.restart_grace > 0:
                time.sleep(self.settings.restart_grace)
            result = self._start(name, descriptor)
        return ActionResult(result.success, "Service restarted", result.pid)

    # -- status --------------------------------------------------------------

    def get_status(self, name: str) -> ServiceStatus:
        """Get service status, queried fresh from the backend."""
        descriptor = self._validate_service(name)
        current = self.backend.status(descriptor)

        if current.running:
            state = ServiceState.RUNNING
        elif current.exists:
            state = ServiceState.STOPPED
        else:
            state = ServiceState.NOT_INSTALLED

        port_in_use = None
        detail = current.detail
        if descriptor.port is not None:
            port_in_use = not probe_port(descriptor.port, self.settings.bind_host)
            if current.running and not port_in_use:
                detail = f"process running but port {descriptor.port} is not listening"
            elif not current.running and port_in_use:
                detail = f"port {descriptor.port} is held by another process"

        healthy = current.running and self._check_health(descriptor)

        return ServiceStatus(
            name=name,
            state=state,
            running=current.running,
            exists=current.exists,
            pid=current.pid,
            port=descriptor.port,
            port_in_use=port_in_use,
            healthy=healthy,
            detail=detail,
            log_file=str(self.log_file(name)),
        )

    def _check_health(self, descriptor: ServiceDescriptor) -> bool:
        """HTTP health check, or a bound port for non-HTTP services."""
        if descriptor.port is None:
            return True
        if not descriptor.health_path:
            return not probe_port(descriptor.port, self.settings.bind_host)

        import requests  # type: ignore

        try:
            resp = requests.get(
                f"http://localhost:{descriptor.port}{descriptor.health_path}",
                timeout=1,
            )
            return resp.status_code < 500
        except requests.RequestException:
            return False

    def get_logs(self, name: str, lines: int = 100) -> List[str]:
        """Get last N lines from service log."""
        self._validate_service(name)
        log_file = self.log_file(name)
        if not log_file.exists():
            return []
        with open(log_file, "r", errors="replace") as f:
            return f.readlines()[-lines:]

    def list_services(self) -> List[ServiceStatus]:
        """Get status of all services."""
        return [self.get_status(name) for name in list(self.services)]

    def start_all(self) -> List[ServiceStatus]:
        """Start all services."""
        return self._apply_to_all("start_service", list(self.services))

    def stop_all(self) -> List[ServiceStatus]:
        """Stop all services."""
        return self._apply_to_all("stop_service", list(self.services))

    def _apply_to_all(self, method_name: str, names: List[str]) -> List[ServiceStatus]:
        """Apply method to all service names, reporting the resulting status."""
        results = []
        for name in names:
            try:
                getattr(self, method_name)(name)
            except Exception as e:
                logger.error("Failed to %s %s: %s", method_name, name, e)
            results.append(self.get_status(name))
        return results

    def close(self) -> None:
        """Terminate every process this manager spawned."""
        self.backend.close()
