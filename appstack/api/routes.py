# AppStack - API Routes

from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Request

from appstack.api.models import (
    ActionResponse,
    AllocateRequest,
    AppListResponse,
    CleanupRequest,
    InstallRequest,
    PackageInfo,
    PortsResponse,
    RestoreRequest,
    ServiceListResponse,
    ServiceStatus,
)
from appstack.core.models import (
    ApplicationRecord,
    BackupInfo,
    DatabaseInfo,
    PortAllocation,
    PortInfo,
)
from appstack.core.stack import Stack

router = APIRouter()


def get_stack(request: Request) -> Stack:
    return request.app.state.stack


@router.get("/health")
def health(stack: Stack = Depends(get_stack)):
    """Manager health check and aggregate service health."""
    services = stack.services.list_services()
    healthy_count = sum(1 for s in services if s.healthy)
    return {
        "status": "healthy",
        "services_healthy": f"{healthy_count}/{len(services)}",
        "services": [{"name": s.name, "healthy": s.healthy} for s in services],
    }


# ---------------------------------------------------------------------------
# Services
# ---------------------------------------------------------------------------


@router.get("/services", response_model=ServiceListResponse)
def list_services(stack: Stack = Depends(get_stack)):
    """List all services with their status."""
    return ServiceListResponse(
        services=stack.services.list_services(), timestamp=datetime.now()
    )


@router.get("/services/{service}/status", response_model=ServiceStatus)
def get_service_status(service: str, stack: Stack = Depends(get_stack)):
    """Get status of a specific service."""
    return stack.services.get_status(service)


@router.post("/services/start-all", response_model=ServiceListResponse)
def start_all_services(stack: Stack = Depends(get_stack)):
    """Start all services."""
    return ServiceListResponse(services=stack.services.start_all(), timestamp=datetime.now())


@router.post("/services/stop-all", response_model=ServiceListResponse)
def stop_all_services(stack: Stack = Depends(get_stack)):
    """Stop all services."""
    return ServiceListResponse(services=stack.services.stop_all(), timestamp=datetime.now())


@router.post("/services/{service}/{action}", response_model=ActionResponse)
def service_action(service: str, action: str, stack: Stack = Depends(get_stack)):
    """Start, stop or restart a specific service."""
    methods = {
        "start": stack.services.start_service,
        "stop": stack.services.stop_service,
        "restart": stack.services.restart_service,
    }
    if action not in methods:
        raise HTTPException(status_code=404, detail=f"Unknown action: {action}")
    result = methods[action](service)
    return ActionResponse(
        success=result.success,
        message=result.message,
        service=stack.services.get_status(service),
    )


@router.get("/services/{service}/logs")
def get_service_logs(service: str, lines: int = 100, stack: Stack = Depends(get_stack)):
    """Get logs from a specific service."""
    return {"service": service, "lines": stack.services.get_logs(service, lines)}


# ---------------------------------------------------------------------------
# Ports
# ---------------------------------------------------------------------------


@router.get("/ports", response_model=PortsResponse)
def list_ports(stack: Stack = Depends(get_stack)):
    allocator = stack.allocator
    return PortsResponse(
        range_start=allocator.range_start,
        range_end=allocator.range_end,
        reserved=allocator.get_reserved_ports(),
        system_reserved=sorted(allocator.system_reserved),
    )


@router.get("/ports/scan", response_model=List[int])
def scan_ports(
    start: Optional[int] = None,
    end: Optional[int] = None,
    max_results: int = 50,
    stack: Stack = Depends(get_stack),
):
    """Available ports in a range, without reserving them."""
    return stack.allocator.scan_available_ports(start, end, max_results)


@router.get("/ports/suggestions", response_model=List[int])
def suggest_ports(
    count: int = 5, start: Optional[int] = None, stack: Stack = Depends(get_stack)
):
    return stack.allocator.suggest_ports(count, start)


@router.get("/ports/{port}", response_model=PortInfo)
def port_info(port: int, stack: Stack = Depends(get_stack)):
    return stack.allocator.port_info(port)


@router.post("/ports/allocate", response_model=PortAllocation)
def allocate_ports(body: AllocateRequest, stack: Stack = Depends(get_stack)):
    return stack.allocator.allocate_for_requirements(body.owner, body.requirements)


@router.delete("/ports/{port}")
def release_port(
    port: int, owner: Optional[str] = None, stack: Stack = Depends(get_stack)
):
    return {"port": port, "released": stack.allocator.release(port, owner)}


# ---------------------------------------------------------------------------
# Packages and applications
# ---------------------------------------------------------------------------


@router.get("/packages", response_model=list[PackageInfo])
def list_packages(stack: Stack = Depends(get_stack)):
    return [
        PackageInfo(filename=filename, manifest=manifest)
        for filename, manifest in stack.installer.list_available_packages()
    ]


@router.get("/apps", response_model=AppListResponse)
def list_apps(stack: Stack = Depends(get_stack)):
    return AppListResponse(apps=stack.installer.list_installed(), timestamp=datetime.now())


@router.get("/apps/{app_id}", response_model=ApplicationRecord)
def get_app(app_id: str, stack: Stack = Depends(get_stack)):
    return stack.installer.get_app(app_id)


@router.post("/apps", response_model=ApplicationRecord, status_code=201)
def install_app(body: InstallRequest, stack: Stack = Depends(get_stack)):
    """Install a package from the packages directory."""
    return stack.installer.install_package(body.filename)


@router.delete("/apps/{app_id}")
def uninstall_app(app_id: str, stack: Stack = Depends(get_stack)):
    record = stack.installer.uninstall(app_id)
    return {"success": True, "message": f"{record.display_name} uninstalled successfully"}


@router.post("/recover")
def recover(stack: Stack = Depends(get_stack)):
    """Release ports held by installs abandoned in a crash."""
    return stack.recover()


# ---------------------------------------------------------------------------
# Databases and backups
# ---------------------------------------------------------------------------


@router.get("/database/connection")
def check_database_connection(stack: Stack = Depends(get_stack)):
    return stack.database.check_connection()


@router.get("/databases/{name}", response_model=DatabaseInfo)
def database_info(name: str, stack: Stack = Depends(get_stack)):
    return stack.database.get_database_info(name)


@router.get("/backups", response_model=List[BackupInfo])
def list_backups(app_id: Optional[str] = None, stack: Stack = Depends(get_stack)):
    """List database backups, newest first."""
    return stack.backups.list_backups(app_id)


@router.post("/apps/{app_id}/backups", response_model=BackupInfo, status_code=201)
def backup_app(app_id: str, stack: Stack = Depends(get_stack)):
    return stack.backups.backup_app(app_id)


@router.post("/apps/{app_id}/restore", response_model=BackupInfo)
def restore_app(app_id: str, body: RestoreRequest, stack: Stack = Depends(get_stack)):
    return stack.backups.restore_app(app_id, body.filename, body.drop_first)


@router.post("/backups/cleanup")
def cleanup_backups(body: CleanupRequest, stack: Stack = Depends(get_stack)):
    return {"deleted": stack.backups.cleanup_old_backups(body.retention_days)}


@router.delete("/backups/{filename}")
def delete_backup(filename: str, stack: Stack = Depends(get_stack)):
    stack.backups.delete_backup(filename)
    return {"success": True, "message": f"Backup {filename} deleted"}
