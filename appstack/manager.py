#!/usr/bin/env python3
"""
AppStack Manager - CLI and API server for a local web-application stack.

Usage:
    appstack start [service]          # Start services
    appstack stop [service]           # Stop services
    appstack status                   # Show status
    appstack install <package.lpkg>   # Install a package from packages/
    appstack uninstall <app_id>       # Remove an installed application
    appstack backup <app_id>          # Dump an application database
    appstack recover                  # Release ports of abandoned installs
    appstack server                   # Start API server
"""

import argparse
import json
import logging
import sys
from datetime import datetime

import uvicorn

from appstack.core.config import settings
from appstack.core.errors import AppStackError
from appstack.core.stack import Stack, build_stack

logger = logging.getLogger("appstack")

# ---------------------------------------------------------------------------
# CLI Functions
# ---------------------------------------------------------------------------


def _symbol(ok: bool) -> str:
    return "✓" if ok else "✗"


def cli_action(stack: Stack, args, action: str):
    """Generic service action handler."""
    service = getattr(args, "service", None)

    if service in (None, "all"):
        for svc in getattr(stack.services, f"{action}_all")():
            extra = f"(pid={svc.pid})" if svc.pid else ""
            print(f"{_symbol(svc.running)} {svc.name} {svc.state.value} {extra}")
    else:
        result = getattr(stack.services, f"{action}_service")(service)
        extra = f"(pid={result.pid})" if result.pid else ""
        print(f"{_symbol(result.success)} {service}: {result.message} {extra}")


def cli_start(stack, args):
    cli_action(stack, args, "start")


def cli_stop(stack, args):
    cli_action(stack, args, "stop")


def cli_restart(stack, args):
    cli_action(stack, args, "restart")


def cli_status(stack, args):
    services = stack.services.list_services()
    print(
        json.dumps(
            {
                "services": [s.model_dump() for s in services],
                "timestamp": datetime.now().isoformat(),
            },
            indent=2,
            default=str,
        )
    )


def cli_health(stack, args):
    services = stack.services.list_services()
    healthy_count = sum(1 for s in services if s.healthy)
    print(f"Services: {healthy_count}/{len(services)} healthy\n")
    for svc in services:
        print(f"  {_symbol(svc.healthy)} {svc.name:12} {svc.state.value:14} port={svc.port}")


def cli_logs(stack, args):
    for line in stack.services.get_logs(args.service, args.lines):
        print(line, end="")


def cli_install(stack, args):
    record = stack.installer.install_package(args.package)
    print(f"✓ {record.display_name} {record.version} installed as {record.app_id}")
    print(f"  url:  {record.url}")
    print(f"  path: {record.paths.app}")
    if record.database:
        print(f"  db:   {record.database.name} (user {record.database.user})")


def cli_uninstall(stack, args):
    record = stack.installer.uninstall(args.app_id)
    print(f"✓ {record.display_name} uninstalled")


def cli_apps(stack, args):
    apps = stack.installer.list_installed()
    if not apps:
        print("No applications installed")
    for app in apps:
        print(f"  {app.app_id:24} {app.version:10} {app.url}")


def cli_packages(stack, args):
    packages = stack.installer.list_available_packages()
    if not packages:
        print(f"No packages in {stack.settings.packages_path}")
    for filename, manifest in packages:
        print(f"  {filename:32} {manifest.name} {manifest.version}")


def cli_ports(stack, args):
    if args.scan:
        print(" ".join(str(p) for p in stack.allocator.scan_available_ports(max_results=args.limit)))
        return
    if args.suggest:
        print(" ".join(str(p) for p in stack.allocator.suggest_ports(args.limit)))
        return
    print(json.dumps(stack.allocator.statistics(), indent=2))
    for port in stack.allocator.get_reserved_ports():
        info = stack.allocator.port_info(port)
        print(f"  {port:6} owner={info.owner or '-'} in_use={info.in_use}")


def cli_recover(stack, args):
    report = stack.recover()
    for port in report["released_ports"]:
        print(f"✓ released port {port}")
    for path in report["orphaned_dirs"]:
        print(f"! install directory without a record: {path}")
    if not report["released_ports"] and not report["orphaned_dirs"]:
        print("Nothing to recover")


def cli_backup(stack, args):
    backup = stack.backups.backup_app(args.app_id)
    print(f"✓ {args.app_id} backed up to {backup.filename} ({backup.size} bytes)")


def cli_restore(stack, args):
    stack.backups.restore_app(args.app_id, args.filename, drop_first=args.drop_first)
    print(f"✓ {args.app_id} restored from {args.filename}")


def cli_backups(stack, args):
    backups = stack.backups.list_backups(args.app_id)
    if not backups:
        print("No backups")
    for backup in backups:
        print(f"  {backup.filename:48} {backup.size:>10}  {backup.created:%Y-%m-%d %H:%M}")


def cli_delete_backup(stack, args):
    stack.backups.delete_backup(args.filename)
    print(f"✓ {args.filename} deleted")


def cli_cleanup_backups(stack, args):
    deleted = stack.backups.cleanup_old_backups(args.days)
    print(f"✓ removed {len(deleted)} old backups")


def cli_dbcheck(stack, args):
    result = stack.database.check_connection()
    print(f"{_symbol(result['success'])} {result['message']}")
    return 0 if result["success"] else 1


def cli_server(stack, args):
    logger.info("Starting AppStack API on %s:%d", args.host, args.port)
    logger.info("API docs: http://%s:%d/docs", args.host, args.port)

    uvicorn.run(
        "appstack.api.app:create_app",
        factory=True,
        host=args.host,
        port=args.port,
        reload=args.reload,
        log_level=settings.log_level.lower(),
    )


# ---------------------------------------------------------------------------
# Main CLI
# ---------------------------------------------------------------------------


def build_parser(service_choices) -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="AppStack - local web-application stack manager",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    for action, handler in (("start", cli_start), ("stop", cli_stop)):
        sub = subparsers.add_parser(action, help=f"{action.capitalize()} services")
        sub.add_argument(
            "service", nargs="?", default="all", choices=["all"] + service_choices
        )
        sub.set_defaults(func=handler)

    restart_parser = subparsers.add_parser("restart", help="Restart service")
    restart_parser.add_argument("service", choices=service_choices)
    restart_parser.set_defaults(func=cli_restart)

    subparsers.add_parser("status", help="Show service status").set_defaults(func=cli_status)
    subparsers.add_parser("health", help="Health check").set_defaults(func=cli_health)

    logs_parser = subparsers.add_parser("logs", help="Show service logs")
    logs_parser.add_argument("service", choices=service_choices)
    logs_parser.add_argument("lines", type=int, nargs="?", default=100)
    logs_parser.set_defaults(func=cli_logs)

    install_parser = subparsers.add_parser("install", help="Install a package")
    install_parser.add_argument("package", help="Package file name in the packages dir")
    install_parser.set_defaults(func=cli_install)

    uninstall_parser = subparsers.add_parser("uninstall", help="Uninstall an application")
    uninstall_parser.add_argument("app_id")
    uninstall_parser.set_defaults(func=cli_uninstall)

    subparsers.add_parser("apps", help="List installed applications").set_defaults(func=cli_apps)
    subparsers.add_parser("packages", help="List available packages").set_defaults(
        func=cli_packages
    )
    ports_parser = subparsers.add_parser("ports", help="Show port reservations")
    ports_group = ports_parser.add_mutually_exclusive_group()
    ports_group.add_argument("--scan", action="store_true", help="List available ports")
    ports_group.add_argument("--suggest", action="store_true", help="Suggest free ports")
    ports_parser.add_argument("--limit", type=int, default=5)
    ports_parser.set_defaults(func=cli_ports)

    subparsers.add_parser(
        "recover", help="Release ports held by abandoned installs"
    ).set_defaults(func=cli_recover)

    backup_parser = subparsers.add_parser("backup", help="Back up an application database")
    backup_parser.add_argument("app_id")
    backup_parser.set_defaults(func=cli_backup)

    restore_parser = subparsers.add_parser("restore", help="Restore an application database")
    restore_parser.add_argument("app_id")
    restore_parser.add_argument("filename")
    restore_parser.add_argument("--drop-first", action="store_true")
    restore_parser.set_defaults(func=cli_restore)

    backups_parser = subparsers.add_parser("backups", help="List database backups")
    backups_parser.add_argument("app_id", nargs="?")
    backups_parser.set_defaults(func=cli_backups)

    delete_backup_parser = subparsers.add_parser("delete-backup", help="Delete a backup")
    delete_backup_parser.add_argument("filename")
    delete_backup_parser.set_defaults(func=cli_delete_backup)

    cleanup_parser = subparsers.add_parser("cleanup-backups", help="Delete old backups")
    cleanup_parser.add_argument("--days", type=int, default=None)
    cleanup_parser.set_defaults(func=cli_cleanup_backups)

    subparsers.add_parser("dbcheck", help="Test the database connection").set_defaults(
        func=cli_dbcheck
    )

    server_parser = subparsers.add_parser("server", help="Start FastAPI server")
    server_parser.add_argument("--host", default=settings.api_host)
    server_parser.add_argument("--port", type=int, default=settings.api_port)
    server_parser.add_argument("--reload", action="store_true")
    server_parser.set_defaults(func=cli_server)

    return parser


def main(argv=None) -> int:
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s  %(levelname)-8s  %(message)s",
    )
    stack = build_stack(settings)
    parser = build_parser(sorted(stack.services.services))
    args = parser.parse_args(argv)
    if not args.command:
        parser.print_help()
        return 1

    if args.func is cli_server:
        args.func(stack, args)
        return 0

    # No stack.close(): services started from the CLI outlive it.
    stack.reload()
    try:
        return args.func(stack, args) or 0
    except AppStackError as e:
        logger.error("%s", e)
        print(f"✗ {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
