"""Shared fixtures for the AppStack test suite."""

import json
import sys
import uuid
import zipfile
from pathlib import Path
from typing import Dict, List, Optional

import pytest

from appstack.core.backends import DirectProcessBackend, ServiceDescriptor
from appstack.core.backups import BackupManager
from appstack.core.config import Settings
from appstack.core.errors import DatabaseError
from appstack.core.installer import Installer
from appstack.core.ports import PortAllocator
from appstack.core.process import CommandResult, ProcessRunner
from appstack.core.registry import Registry
from appstack.core.service_manager import ServiceManager


class FakeDatabase:
    """In-memory database collaborator."""

    def __init__(self):
        self.databases: Dict[str, str] = {}
        self.fail_create = False
        self.fail_drop = False
        self.dropped: List[str] = []
        self.restored: List[tuple] = []

    def create_database(self, name: str, user: str, secret: str) -> None:
        if self.fail_create:
            raise DatabaseError(f"Failed to create database {name}: refused")
        self.databases[name] = user

    def drop_database(self, name: str, user: Optional[str] = None) -> None:
        if self.fail_drop:
            raise DatabaseError(f"Failed to drop database {name}: refused")
        self.databases.pop(name, None)
        self.dropped.append(name)

    def dump_database(self, name: str, path: Path) -> Path:
        if name not in self.databases:
            raise DatabaseError(f"Failed to dump database {name}: does not exist")
        path.write_text(f"-- dump of {name}\n")
        return path

    def restore_database(self, name: str, path: Path, clean: bool = True) -> None:
        self.restored.append((name, path.name, clean))

    def check_connection(self):
        return {"success": True, "message": "PostgreSQL 16.2"}


class FakeRunner(ProcessRunner):
    """Records provisioning commands instead of running them.

    Any command whose argv contains a word listed in ``fail_on`` exits 1.
    """

    def __init__(self):
        self.commands: List[List[str]] = []
        self.fail_on: List[str] = []

    def spawn(self, executable, args=(), cwd=None, capture=True, env=None):
        command = [str(executable), *args]
        self.commands.append(command)
        if any(word in command for word in self.fail_on):
            return CommandResult(command, 1, "", "boom")
        return CommandResult(command, 0, "ok", "")


@pytest.fixture
def settings(tmp_path):
    s = Settings(base_dir=tmp_path, restart_grace=0, stop_timeout=5.0)
    s.ensure_directories()
    return s


@pytest.fixture
def registry(settings):
    return Registry(settings.registry_file)


@pytest.fixture
def allocator(registry, settings, monkeypatch):
    """Allocator whose bind probe always succeeds, for deterministic scans."""
    alloc = PortAllocator(registry, settings)
    monkeypatch.setattr(alloc, "_probe", lambda port: True)
    alloc.reload()
    return alloc


@pytest.fixture
def fake_db():
    return FakeDatabase()


@pytest.fixture
def fake_runner():
    return FakeRunner()


@pytest.fixture
def installer(settings, registry, allocator, fake_db, fake_runner):
    return Installer(
        settings=settings,
        registry=registry,
        allocator=allocator,
        database=fake_db,
        runner=fake_runner,
    )


@pytest.fixture
def backups(settings, registry, fake_db):
    return BackupManager(settings, registry, fake_db)


@pytest.fixture
def sleeper():
    """Descriptor for a long-running Python child unique to this test."""
    marker = uuid.uuid4().hex
    return ServiceDescriptor(
        name="sleeper",
        executable=Path(sys.executable),
        args=["-c", f"import time; time.sleep(120)  # {marker}"],
    )


@pytest.fixture
def service_manager(settings, sleeper):
    manager = ServiceManager(
        DirectProcessBackend(ProcessRunner(), stop_timeout=5.0),
        settings,
        catalog={"sleeper": sleeper},
    )
    yield manager
    manager.close()


@pytest.fixture
def make_package(settings):
    """Build an ``.lpkg`` in the packages dir and return its path."""

    def _make(
        name: str = "My Test App",
        version: str = "1.0.0",
        install_config: Optional[dict] = None,
        files: Optional[Dict[str, str]] = None,
        filename: Optional[str] = None,
    ) -> Path:
        path = settings.packages_path / (filename or f"{uuid.uuid4().hex}.lpkg")
        with zipfile.ZipFile(path, "w") as zf:
            zf.writestr("manifest.json", json.dumps({"name": name, "version": version}))
            if install_config is not None:
                zf.writestr("install-config.json", json.dumps(install_config))
            zf.writestr("public/index.php", "<?php echo 'hi';")
            for member, content in (files or {}).items():
                zf.writestr(member, content)
        return path

    return _make
