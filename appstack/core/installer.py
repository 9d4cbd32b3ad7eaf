# AppStack - Installation Coordinator

import logging
import re
import secrets
import shlex
import shutil
import string
import sys
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol, Tuple, Union

from pydantic import ValidationError

from appstack.core.archive import MANIFEST_NAME, ZipArchiveReader
from appstack.core.config import Settings
from appstack.core.errors import (
    AlreadyInstalled,
    ApplicationNotFound,
    ArchiveError,
    InstallationFailed,
)
from appstack.core.models import (
    AppPaths,
    ApplicationRecord,
    DatabaseConfig,
    InstallConfig,
    PackageManifest,
    PortRequirements,
)
from appstack.core.ports import PortAllocator
from appstack.core.process import ProcessRunner
from appstack.core.registry import Registry
from appstack.core.templates import render_env_file, render_nginx_vhost

logger = logging.getLogger("appstack.installer")

INSTALL_CONFIG_NAME = "install-config.json"
APP_CONFIG_NAME = "app-config.json"
SECRET_CHARSET = string.ascii_letters + string.digits + "!@#$%^&*"


class DatabaseCollaborator(Protocol):
    def create_database(self, name: str, user: str, secret: str) -> None:
        ...

    def drop_database(self, name: str, user: Optional[str] = None) -> None:
        ...


def sanitize_app_name(name: str) -> str:
    """Derive the stable application id from a display name.

    >>> sanitize_app_name("My Test App")
    'my_test_app'
    """
    app_id = re.sub(r"[^a-z0-9]+", "_", name.lower()).strip("_")
    if not app_id:
        raise ArchiveError(f"Invalid application name {name!r}")
    return app_id


def generate_secret(length: int = 16) -> str:
    return "".join(secrets.choice(SECRET_CHARSET) for _ in range(length))


@dataclass
class ProvisionStep:
    """One external command run inside the install directory."""

    label: str
    executable: str
    args: List[str] = field(default_factory=list)


@dataclass
class _InstallTransaction:
    """Resources created by one install attempt, undone on failure."""

    app_id: str
    install_path: Path
    step: str = "prepare"
    created_dir: bool = False
    ports: List[int] = field(default_factory=list)
    database: Optional[DatabaseConfig] = None
    vhost_path: Optional[Path] = None


class Installer:
    """Drives package installation and uninstallation."""

    def __init__(
        self,
        settings: Settings,
        registry: Registry,
        allocator: PortAllocator,
        database: DatabaseCollaborator,
        runner: ProcessRunner,
        archive: Optional[ZipArchiveReader] = None,
    ):
        self.settings = settings
        self.registry = registry
        self.allocator = allocator
        self.database = database
        self.runner = runner
        self.archive = archive or ZipArchiveReader()
        self._in_flight: set = set()
        self._in_flight_lock = threading.Lock()

    # -- paths ---------------------------------------------------------------

    @property
    def php_binary(self) -> Path:
        return self.settings.runtime_path / "php" / f"php{self.settings.exe_suffix}"

    @property
    def composer_phar(self) -> Path:
        return self.settings.runtime_path / "composer" / "composer.phar"

    @property
    def npm(self) -> str:
        return "npm.cmd" if sys.platform == "win32" else "npm"

    def vhost_path(self, app_id: str) -> Path:
        return self.settings.runtime_path / "nginx" / "conf" / "sites" / f"{app_id}.conf"

    # -- packages ------------------------------------------------------------

    def list_available_packages(self) -> List[Tuple[str, PackageManifest]]:
        return self.archive.list_packages(self.settings.packages_path)

    def install_package(self, filename: str) -> ApplicationRecord:
        """Install a package file from the packages directory."""
        archive_ref = self.settings.packages_path / filename
        manifest = self.archive.read_manifest(archive_ref)
        if manifest is None:
            raise ArchiveError(f"{filename} has no {MANIFEST_NAME}")
        return self.install(manifest, archive_ref)

    # -- install -------------------------------------------------------------

    def install(
        self, manifest: PackageManifest, archive_ref: Union[str, Path]
    ) -> ApplicationRecord:
        """Install a package, rolling back everything on any step failure."""
        app_id = sanitize_app_name(manifest.name)
        install_path = self.settings.apps_path / app_id

        with self._in_flight_lock:
            if (
                app_id in self._in_flight
                or self.registry.get(app_id) is not None
                or install_path.exists()
            ):
                raise AlreadyInstalled(app_id)
            self._in_flight.add(app_id)

        tx = _InstallTransaction(app_id=app_id, install_path=install_path)
        try:
            record = self._run_install(tx, manifest, archive_ref)
        except Exception as exc:
            logger.error("Install of %s failed at %s: %s", app_id, tx.step, exc)
            cleanup_errors = self._rollback(tx)
            raise InstallationFailed(app_id, tx.step, exc, cleanup_errors) from exc
        finally:
            with self._in_flight_lock:
                self._in_flight.discard(app_id)

        logger.info("%s %s installed on port %d", manifest.name, manifest.version, record.port)
        return record

    def _run_install(
        self,
        tx: _InstallTransaction,
        manifest: PackageManifest,
        archive_ref: Union[str, Path],
    ) -> ApplicationRecord:
        tx.step = "extract"
        logger.info("Extracting %s into %s", archive_ref, tx.install_path)
        tx.install_path.mkdir(parents=True)
        tx.created_dir = True
        self.archive.extract(archive_ref, tx.install_path)

        tx.step = "configure"
        install_config = self._read_install_config(tx.install_path)

        tx.step = "ports"
        requirements = PortRequirements(
            web=1, database=1 if install_config.requires_database else 0
        )
        allocation = self.allocator.allocate_for_requirements(tx.app_id, requirements)
        tx.ports = allocation.all_ports
        port = allocation.web[0]

        database = None
        if install_config.requires_database:
            tx.step = "database"
            database = DatabaseConfig(
                host=self.settings.db_host,
                port=allocation.database[0],
                name=f"{tx.app_id}_db",
                user=f"{tx.app_id}_user",
                password=generate_secret(self.settings.secret_length),
            )
            # Tracked before the call: a half-finished create is dropped too.
            tx.database = database
            self.database.create_database(database.name, database.user, database.password)

        record = ApplicationRecord(
            app_id=tx.app_id,
            display_name=manifest.name,
            version=manifest.version,
            port=port,
            url=f"http://localhost:{port}",
            database=database,
            paths=AppPaths(
                app=tx.install_path,
                php=self.settings.runtime_path / "php",
                nginx=self.settings.runtime_path / "nginx",
                database=self.settings.runtime_path / "pgsql",
            ),
            install_config=install_config,
            assigned_ports=tx.ports,
        )

        tx.step = "environment"
        self._write_env_file(record)

        tx.step = "provision"
        for step in self._plan_steps(tx.install_path, install_config):
            tx.step = f"provision:{step.label}"
            logger.info("%s: %s", tx.app_id, step.label)
            self.runner.spawn(step.executable, step.args, cwd=tx.install_path).check()

        tx.step = "webserver"
        self._configure_web_server(tx, record)

        tx.step = "register"
        (tx.install_path / APP_CONFIG_NAME).write_text(
            record.model_dump_json(indent=2), encoding="utf-8"
        )
        self.registry.put(tx.app_id, record)
        return record

    def _read_install_config(self, install_path: Path) -> InstallConfig:
        path = install_path / INSTALL_CONFIG_NAME
        if not path.exists():
            raise ArchiveError(f"Package has no {INSTALL_CONFIG_NAME}")
        try:
            return InstallConfig.model_validate_json(path.read_text(encoding="utf-8"))
        except ValidationError as e:
            raise ArchiveError(f"Invalid {INSTALL_CONFIG_NAME}: {e}") from e

    def _write_env_file(self, record: ApplicationRecord) -> None:
        (record.paths.app / ".env").write_text(render_env_file(record), encoding="utf-8")

    def _plan_steps(self, install_path: Path, config: InstallConfig) -> List[ProvisionStep]:
        """Ordered external commands enabled by the install config."""
        php = str(self.php_binary)
        steps: List[ProvisionStep] = []
        if (install_path / "composer.json").exists():
            steps.append(
                ProvisionStep(
                    "composer install",
                    php,
                    [str(self.composer_phar), "install", "--no-dev", "--optimize-autoloader"],
                )
            )
        if config.frontend_build and (install_path / "package.json").exists():
            steps.append(ProvisionStep("npm install", self.npm, ["install"]))
        if config.generate_key:
            steps.append(ProvisionStep("key generation", php, ["artisan", "key:generate", "--force"]))
        if config.migrations:
            steps.append(ProvisionStep("migrations", php, ["artisan", "migrate", "--force"]))
        if config.seeders:
            steps.append(ProvisionStep("seeders", php, ["artisan", "db:seed", "--force"]))
        if config.frontend_build:
            steps.append(ProvisionStep("asset build", self.npm, ["run", "build"]))
        for command in config.post_install:
            argv = shlex.split(command)
            if argv:
                steps.append(ProvisionStep(f"post-install: {command}", argv[0], argv[1:]))
        return steps

    def _configure_web_server(self, tx: _InstallTransaction, record: ApplicationRecord) -> None:
        path = self.vhost_path(record.app_id)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(render_nginx_vhost(record), encoding="utf-8")
        tx.vhost_path = path

    def _rollback(self, tx: _InstallTransaction) -> List[str]:
        """Undo what ``tx`` created; returns descriptions of failed cleanups."""
        errors: List[str] = []

        if tx.vhost_path is not None:
            try:
                tx.vhost_path.unlink(missing_ok=True)
            except OSError as e:
                errors.append(f"removing {tx.vhost_path}: {e}")

        if tx.database is not None:
            logger.info("Rollback: dropping database %s", tx.database.name)
            try:
                self.database.drop_database(tx.database.name, tx.database.user)
            except Exception as e:
                errors.append(f"dropping database {tx.database.name}: {e}")

        for port in tx.ports:
            try:
                self.allocator.release(port, tx.app_id)
            except Exception as e:
                errors.append(f"releasing port {port}: {e}")
        if tx.ports:
            logger.info("Rollback: released ports %s", tx.ports)

        if tx.created_dir and tx.install_path.exists():
            logger.info("Rollback: removing %s", tx.install_path)
            try:
                shutil.rmtree(tx.install_path)
            except OSError as e:
                errors.append(f"removing directory {tx.install_path}: {e}")

        for error in errors:
            logger.error("Rollback of %s incomplete: %s", tx.app_id, error)
        return errors

    # -- uninstall and records ------------------------------------------------

    def uninstall(self, app_id: str) -> ApplicationRecord:
        record = self.registry.get(app_id)
        if record is None:
            raise ApplicationNotFound(app_id)

        vhost = self.vhost_path(app_id)
        if vhost.exists():
            vhost.unlink()
        if record.database is not None:
            self.database.drop_database(record.database.name, record.database.user)
        if record.paths.app.exists():
            shutil.rmtree(record.paths.app)
        self.allocator.release_all(app_id)
        self.registry.delete(app_id)
        logger.info("%s uninstalled", record.display_name)
        return record

    def list_installed(self) -> List[ApplicationRecord]:
        return self.registry.list()

    def get_app(self, app_id: str) -> ApplicationRecord:
        record = self.registry.get(app_id)
        if record is None:
            raise ApplicationNotFound(app_id)
        return record

    def update_app(self, app_id: str, **changes: Any) -> ApplicationRecord:
        return self.registry.update(app_id, **changes)

    def recover(self) -> Dict[str, List]:
        """Reconcile state left behind by an install interrupted by a crash.

        An abandoned install is an owner with reserved ports and an install
        directory but no record and no install in progress. Its ports are
        released; its directory is reported and left for the operator.
        Reservations made outside the installer are never touched.
        """
        known = {record.app_id for record in self.registry.list()}
        with self._in_flight_lock:
            busy = set(self._in_flight)

        orphans: List[Path] = []
        if self.settings.apps_path.is_dir():
            for path in sorted(self.settings.apps_path.iterdir()):
                if path.is_dir() and path.name not in known and path.name not in busy:
                    logger.warning("Install directory without a record: %s", path)
                    orphans.append(path)

        owners = set(self.registry.get_port_owners().values())
        released: List[int] = []
        for path in orphans:
            if path.name in owners:
                logger.warning("Releasing ports of abandoned install %s", path.name)
                released.extend(self.allocator.release_all(path.name))

        return {"released_ports": released, "orphaned_dirs": [str(p) for p in orphans]}
