# AppStack - Core Configuration

import sys
from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """AppStack configuration."""

    model_config = SettingsConfigDict(env_prefix="APPSTACK_")

    # Layout
    base_dir: Path = Field(default_factory=Path.cwd)

    # Ports
    port_range_start: int = 8000
    port_range_end: int = 9000
    bind_host: str = "127.0.0.1"

    # Services
    service_backend: Literal["auto", "windows", "process"] = "auto"
    restart_grace: float = 2.0
    stop_timeout: float = 5.0

    # Database server used for per-application provisioning
    db_host: str = "localhost"
    db_port: int = 5432
    db_admin_user: str = "postgres"
    db_admin_password: str = ""
    db_admin_database: str = "postgres"
    secret_length: int = 16
    backup_retention_days: int = 30

    # Front-ends
    log_level: str = "INFO"
    api_host: str = "127.0.0.1"
    api_port: int = 9100

    @property
    def runtime_path(self) -> Path:
        return self.base_dir / "runtime"

    @property
    def apps_path(self) -> Path:
        return self.base_dir / "apps"

    @property
    def packages_path(self) -> Path:
        return self.base_dir / "packages"

    @property
    def config_path(self) -> Path:
        return self.base_dir / "config"

    @property
    def backups_path(self) -> Path:
        return self.base_dir / "backups"

    @property
    def log_dir(self) -> Path:
        return self.base_dir / "logs"

    @property
    def registry_file(self) -> Path:
        return self.config_path / "registry.json"

    @property
    def exe_suffix(self) -> str:
        return ".exe" if sys.platform == "win32" else ""

    def ensure_directories(self) -> None:
        """Create the on-disk layout if it does not exist yet."""
        for path in (
            self.runtime_path,
            self.apps_path,
            self.packages_path,
            self.config_path,
            self.log_dir,
            self.backups_path,
        ):
            path.mkdir(parents=True, exist_ok=True)


settings = Settings()
