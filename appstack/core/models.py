# AppStack - Domain Models

from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, computed_field


class PackageManifest(BaseModel):
    """Metadata declared by a package in its ``manifest.json``."""

    model_config = ConfigDict(extra="allow")

    name: str
    version: str = "0.0.0"
    description: Optional[str] = None
    author: Optional[str] = None
    requirements: Dict[str, str] = Field(default_factory=dict)


class InstallConfig(BaseModel):
    """Flags from a package's ``install-config.json``."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    requires_database: bool = Field(False, alias="databaseRequired")
    frontend_build: bool = Field(False, alias="frontendBuild")
    migrations: bool = False
    seeders: bool = False
    generate_key: bool = Field(True, alias="generateKey")
    post_install: List[str] = Field(default_factory=list, alias="postInstall")


class DatabaseConfig(BaseModel):
    host: str
    port: int
    name: str
    user: str
    password: str


class AppPaths(BaseModel):
    app: Path
    php: Path
    nginx: Path
    database: Path


class ApplicationRecord(BaseModel):
    """Durable configuration snapshot of one installed application."""

    app_id: str
    display_name: str
    version: str
    port: int
    url: str
    database: Optional[DatabaseConfig] = None
    paths: AppPaths
    install_config: InstallConfig
    assigned_ports: List[int] = Field(default_factory=list)
    installed_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )


class PortRequirements(BaseModel):
    web: int = Field(1, ge=0)
    database: int = Field(0, ge=0)
    cache: int = Field(0, ge=0)
    custom: int = Field(0, ge=0)

    @property
    def total(self) -> int:
        return self.web + self.database + self.cache + self.custom


class PortAllocation(BaseModel):
    owner: str
    web: List[int] = Field(default_factory=list)
    database: List[int] = Field(default_factory=list)
    cache: List[int] = Field(default_factory=list)
    custom: List[int] = Field(default_factory=list)

    @property
    def all_ports(self) -> List[int]:
        return self.web + self.database + self.cache + self.custom


class PortInfo(BaseModel):
    port: int
    available: bool
    reserved: bool
    system: bool
    in_use: bool
    owner: Optional[str] = None


class DatabaseInfo(BaseModel):
    name: str
    size_bytes: int
    encoding: str
    collation: str
    table_count: int

    @computed_field
    @property
    def size_mb(self) -> float:
        return round(self.size_bytes / (1024 * 1024), 2)


class BackupInfo(BaseModel):
    """One database dump in the backups directory."""

    filename: str
    app_id: str
    size: int
    created: datetime
