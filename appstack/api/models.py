# AppStack - Pydantic Models

from datetime import datetime
from enum import Enum
from typing import List, Optional
from pydantic import BaseModel

from appstack.core.models import ApplicationRecord, PackageManifest, PortRequirements


class ServiceState(str, Enum):
    RUNNING = "running"
    STOPPED = "stopped"
    NOT_INSTALLED = "not_installed"


class ServiceStatus(BaseModel):
    name: str
    state: ServiceState
    running: bool
    exists: bool
    pid: Optional[int] = None
    port: Optional[int] = None
    port_in_use: Optional[bool] = None
    healthy: bool = False
    detail: Optional[str] = None
    log_file: str


class ServiceListResponse(BaseModel):
    services: List[ServiceStatus]
    timestamp: datetime


class ActionResponse(BaseModel):
    success: bool
    message: str
    service: Optional[ServiceStatus] = None


class PortsResponse(BaseModel):
    range_start: int
    range_end: int
    reserved: List[int]
    system_reserved: List[int]


class AllocateRequest(BaseModel):
    owner: str
    requirements: PortRequirements = PortRequirements()


class InstallRequest(BaseModel):
    filename: str


class PackageInfo(BaseModel):
    filename: str
    manifest: PackageManifest


class AppListResponse(BaseModel):
    apps: List[ApplicationRecord]
    timestamp: datetime


class RestoreRequest(BaseModel):
    filename: str
    drop_first: bool = False


class CleanupRequest(BaseModel):
    retention_days: Optional[int] = None
