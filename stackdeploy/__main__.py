#!/usr/bin/env python3
"""
API Stack Deployer - Command Line Interface

One-click provisioning of Sub2API with PostgreSQL and Redis on a single
systemd host.

Usage:
    python -m stackdeploy deploy [--mode {full,infra}] [--server-port PORT] [-y]
    python -m stackdeploy deploy --dry-run
    python -m stackdeploy status [--json]
"""

import argparse
import json
import logging
import sys
from pathlib import Path

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from .config import (
    DEFAULT_SERVER_HOST,
    DEFAULT_SERVER_PORT,
    POSTGRES_UNIT,
    REDIS_UNIT,
    SERVICE_NAME,
    DeploymentMode,
    DeployOptions,
    StackConfig,
    StackPaths,
    default_services,
    health_host,
)
from .core import ENDPOINT_SERVICE, StackDeployer
from .errors import DeploymentError
from .health import HealthProber
from .services import CommandRunner, ServiceManager
from .state import FieldSource, StateStore

console = Console()

STATUS_STYLES = {
    "running": "green",
    "healthy": "green",
    "starting": "yellow",
    "stopping": "yellow",
    "unhealthy": "yellow",
    "stopped": "red",
    "failed": "red",
    "unknown": "bright_black",
}


def setup_logging(verbose: bool = False):
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format='%(asctime)s - %(levelname)s - %(message)s',
    )


def print_banner():
    """Print the application banner."""
    console.print(
        Panel.fit(
            "[bold]Sub2API One-Click Deployer[/bold]\n"
            "PostgreSQL + Redis + Sub2API on a single systemd host",
            border_style="cyan",
        )
    )


def paths_for(args) -> StackPaths:
    return StackPaths.under(Path(args.root)) if args.root else StackPaths()


def build_options(args) -> DeployOptions:
    return DeployOptions(
        mode=DeploymentMode(args.mode) if args.mode else None,
        version=args.version,
        server_host=args.server_host,
        server_port=args.server_port,
        admin_email=args.admin_email,
        admin_password=args.admin_password,
        force=args.force,
        skip_upgrade_system=args.skip_upgrade_system,
        dry_run=args.dry_run,
        non_interactive=args.non_interactive,
        config_file=Path(args.config) if args.config else None,
        install_script=Path(args.install_script) if args.install_script else None,
        paths=paths_for(args),
    )


def print_summary(options: DeployOptions):
    table = Table(title="Deployment plan", show_header=False)
    table.add_column("Setting", style="bold")
    table.add_column("Value")
    table.add_row("Mode", options.effective_mode.value)
    table.add_row("Version", options.version or "latest")
    table.add_row("Server", f"{options.server_host or '(state or default)'}:"
                            f"{options.server_port or '(state or default)'}")
    table.add_row("Admin email", options.admin_email or "(state or default)")
    table.add_row("Regenerate secrets", "yes" if options.force else "no")
    table.add_row("Dry run", "yes" if options.dry_run else "no")
    table.add_row("State file", str(options.paths.state_file))
    if options.config_file:
        table.add_row("Config file", str(options.config_file))
    if options.install_script:
        table.add_row("Install script", str(options.install_script))
    console.print(table)


def print_result_summary(config: StackConfig):
    """Where to find the stack and its credentials once it is up."""
    state = config.state
    credentials = config.paths.credentials_file
    lines = [
        f"Mode:        {config.mode.value}",
        f"Credentials: {credentials}",
        f"State:       {config.paths.state_file}",
    ]
    if config.mode == DeploymentMode.FULL:
        lines.insert(1, f"URL:         {config.display_url}")
        lines.append(f"Admin:       {state.admin_email}")
        source = state.source("ADMIN_PASSWORD")
        if source == FieldSource.GENERATED:
            lines.append(f"Password:    {state.admin_password}")
        elif source == FieldSource.OVERRIDDEN:
            lines.append("Password:    (provided via --admin-password)")
        else:
            lines.append("Password:    (reused from previous deployment state)")
    console.print(Panel("\n".join(lines), title="Summary", border_style="green"))

    if config.mode == DeploymentMode.FULL and state.source("ADMIN_PASSWORD") == FieldSource.GENERATED:
        console.print("[bold yellow]Admin password was auto-generated. Save it now.[/bold yellow]")
    console.print("[yellow]Rotate credentials after first login if this is production.[/yellow]")

    console.print("\nUseful commands:")
    if config.mode == DeploymentMode.FULL:
        console.print(f"  sudo systemctl status {SERVICE_NAME}")
        console.print(f"  sudo journalctl -u {SERVICE_NAME} -f")
    else:
        console.print(f"  sudo systemctl status {POSTGRES_UNIT} {REDIS_UNIT}")
    console.print(f"  sudo cat {credentials}")


def confirm(prompt: str) -> bool:
    try:
        response = input(prompt)
    except EOFError:
        return False
    return response.strip().lower() in ("y", "yes")


def cmd_deploy(args):
    """Handle deploy command."""
    options = build_options(args)
    try:
        options.validate()
        plan = options.merged_with_file()
        plan.validate()
    except DeploymentError as e:
        console.print(f"[red]Error:[/red] {e.message}")
        return e.exit_code

    print_banner()
    print_summary(plan)

    if not options.non_interactive and not options.dry_run:
        if not confirm("Proceed with deployment? [y/N] "):
            console.print("Deployment cancelled.")
            return 1

    deployer = StackDeployer(options)

    def progress(msg):
        console.print(f"[cyan]>>[/cyan] {msg}")

    result = deployer.run(progress_callback=progress)

    if not result.success:
        console.print(f"\n[bold red]Deployment failed:[/bold red] {result.message}")
        if result.manual_intervention:
            console.print(
                "[bold red]The host was left in a state that needs manual repair.[/bold red]"
            )
        return result.exit_code or 1

    console.print(f"\n[bold green]{result.message}[/bold green] in {result.duration_seconds:.1f}s")
    if result.warnings:
        for warning in result.warnings:
            console.print(f"[yellow]Warning:[/yellow] {warning}")

    if result.config is not None:
        print_result_summary(result.config)
    return 0


def collect_status(paths: StackPaths) -> dict:
    """One-shot status of the managed units and the readiness endpoint."""
    service_manager = ServiceManager(CommandRunner())
    prober = HealthProber(service_manager)

    host, port = DEFAULT_SERVER_HOST, DEFAULT_SERVER_PORT
    state = StateStore(paths.state_file).load()
    if state is not None and state.get("SERVER_PORT"):
        host, port = state.server_host or host, state.server_port

    report = {}
    for unit in (POSTGRES_UNIT, REDIS_UNIT, SERVICE_NAME):
        info = service_manager.get_info(unit)
        report[unit] = {
            "status": info.status.value,
            "active_state": info.active_state,
            "sub_state": info.sub_state,
            "enabled": info.unit_file_state,
        }

    endpoint = default_services(f"http://{health_host(host)}:{port}/health")[ENDPOINT_SERVICE]
    check = prober.check(endpoint)
    report[ENDPOINT_SERVICE] = {
        "status": check.status.value,
        "endpoint": endpoint.endpoint,
        "message": check.message,
    }
    return report


def cmd_status(args):
    """Handle status command."""
    try:
        report = collect_status(paths_for(args))
    except DeploymentError as e:
        console.print(f"[red]Error:[/red] {e.message}")
        return e.exit_code

    if args.json:
        print(json.dumps(report, indent=2))
    else:
        table = Table(title="Stack status")
        table.add_column("Service", style="bold")
        table.add_column("Status")
        table.add_column("Details")
        for name, info in report.items():
            status = info["status"]
            style = STATUS_STYLES.get(status, "")
            details = info.get("endpoint") or f"{info['sub_state']} ({info['enabled'] or '-'})"
            table.add_row(name, f"[{style}]{status}[/{style}]" if style else status, details)
        console.print(table)

    return 0


def main(argv=None):
    """Main entry point."""
    parser = argparse.ArgumentParser(
        prog="stack-deploy",
        description="One-click deployment of Sub2API with PostgreSQL and Redis",
    )
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    common.add_argument("--root", help="Prefix for every managed path (staging/testing)")
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # Deploy command
    deploy_parser = subparsers.add_parser("deploy", parents=[common], help="Provision the stack")
    deploy_parser.add_argument("--mode", choices=["full", "infra"],
                               help="full (default) or infra (PostgreSQL and Redis only)")
    deploy_parser.add_argument("--version", help="Pin the installed Sub2API release")
    deploy_parser.add_argument("--server-host", help="Address the API server binds to")
    deploy_parser.add_argument("--server-port", help="Port the API server listens on (1-65535)")
    deploy_parser.add_argument("--admin-email", help="Initial administrator email")
    deploy_parser.add_argument("--admin-password", help="Initial administrator password")
    deploy_parser.add_argument("--force", action="store_true",
                               help="Regenerate every secret and reinstall the binary")
    deploy_parser.add_argument("--skip-upgrade-system", action="store_true",
                               help="Skip apt-get update")
    deploy_parser.add_argument("--dry-run", action="store_true",
                               help="Log every action without changing the host")
    deploy_parser.add_argument("-y", "--non-interactive", action="store_true",
                               help="Skip confirmation")
    deploy_parser.add_argument("--config", help="YAML file with option overrides")
    deploy_parser.add_argument("--install-script",
                               help="Sub2API install script to run instead of downloading it")

    # Status command
    status_parser = subparsers.add_parser("status", parents=[common], help="Show service status")
    status_parser.add_argument("--json", action="store_true", help="Output as JSON")

    args = parser.parse_args(argv)
    setup_logging(getattr(args, "verbose", False))

    if not args.command:
        parser.print_help()
        return 1

    commands = {
        "deploy": cmd_deploy,
        "status": cmd_status,
    }

    handler = commands.get(args.command)
    if handler:
        return handler(args) or 0
    parser.print_help()
    return 1


if __name__ == "__main__":
    sys.exit(main())
