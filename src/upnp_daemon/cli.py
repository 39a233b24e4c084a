"""
Command-line interface for the UPnP daemon.
"""
import asyncio
import json
import sys
from pathlib import Path
from typing import Optional

import click
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from upnp_daemon.config import DaemonConfig, LOG_LEVELS
from upnp_daemon.config_source import RuleSource
from upnp_daemon.daemon import Daemon
from upnp_daemon.errors import AlreadyRunningError, ConfigLoadError, UPnPDaemonError
from upnp_daemon.gateway import MiniUPnPGatewayClient
from upnp_daemon.interfaces import PsutilInterfaceEnumerator
from upnp_daemon.lifecycle import PidFile, daemonize, install_signal_handlers
from upnp_daemon.logging_config import setup_logging
from upnp_daemon.scheduler import RunSummary


console = Console(stderr=True)

EXIT_OK = 0
EXIT_RULES_FAILED = 1
EXIT_CONFIG_ERROR = 2
EXIT_ALREADY_RUNNING = 3


@click.group()
def main():
    """UPnP daemon - keeps port forwardings open on your gateways."""
    pass


def _build_config(
    config: Optional[str],
    rules_file: Optional[str],
    foreground: bool,
    oneshot: bool,
    interval: Optional[float],
    pid_file: Optional[str],
    log_level: Optional[str],
    log_file: Optional[str],
    json_logs: bool
) -> DaemonConfig:
    if config:
        daemon_config = DaemonConfig.from_file(config)
    else:
        daemon_config = DaemonConfig()
    daemon_config.apply_environment()

    # Command-line flags override the configuration file
    if rules_file:
        daemon_config.rules_file = rules_file
    if foreground:
        daemon_config.foreground = True
    if oneshot:
        daemon_config.oneshot = True
    if interval is not None:
        daemon_config.interval = interval
    if pid_file:
        daemon_config.pid_file = pid_file
    if log_level:
        daemon_config.log_level = log_level.upper()
    if log_file:
        daemon_config.log_file = log_file
    if json_logs:
        daemon_config.json_logs = True

    # The daemon changes its working directory, so pin paths first
    daemon_config.rules_file = str(Path(daemon_config.rules_file).resolve())
    daemon_config.pid_file = str(Path(daemon_config.pid_file).resolve())
    if daemon_config.log_file:
        daemon_config.log_file = str(Path(daemon_config.log_file).resolve())

    daemon_config.validate()
    return daemon_config


def _save_json(path: str, data: dict):
    with open(path, "w") as f:
        json.dump(data, f, indent=2)
    console.print(f"[green]Report saved to {path}[/green]")


async def _run_daemon(daemon: Daemon) -> RunSummary:
    cancel = asyncio.Event()
    install_signal_handlers(cancel)
    return await daemon.run(cancel)


def _print_summary(summary: RunSummary):
    report = summary.last_report
    if report is None:
        return

    table = Table(title="Port Mappings")
    table.add_column("Rule", style="cyan")
    table.add_column("Comment")
    table.add_column("Status")
    table.add_column("Gateway / Reason")

    for outcome in report:
        if outcome.applied:
            status = "[green]applied[/green]"
            detail = outcome.gateway_used or ""
        else:
            status = "[red]failed[/red]"
            detail = outcome.reason or ""
        table.add_row(outcome.rule.describe(), outcome.rule.comment, status, detail)

    console.print(table)
    if summary.rejected_rows:
        console.print(f"[yellow]{summary.rejected_rows} row(s) rejected, see log output[/yellow]")


@main.command()
@click.option("--file", "-f", "rules_file", type=click.Path(), help="Port mapping file (';'-separated)")
@click.option("--config", "-c", type=click.Path(exists=True), help="Path to JSON configuration file")
@click.option("--foreground", is_flag=True, help="Stay in the foreground instead of daemonizing")
@click.option("--oneshot", is_flag=True, help="Run a single cycle and exit")
@click.option("--interval", "-i", type=float, help="Seconds between cycles (default 60)")
@click.option("--pid-file", type=click.Path(), help="PID file (default /tmp/upnp-daemon.pid)")
@click.option("--log-level", "-l", type=click.Choice(LOG_LEVELS, case_sensitive=False), help="Log level")
@click.option("--log-file", type=click.Path(), help="Append log output to this file")
@click.option("--json-logs", is_flag=True, help="Emit log events as JSON")
@click.option("--output", "-o", type=click.Path(), help="Save the oneshot report as JSON")
def run(rules_file, config, foreground, oneshot, interval, pid_file, log_level, log_file, json_logs, output):
    """Apply the port mappings, once or periodically."""
    try:
        daemon_config = _build_config(
            config, rules_file, foreground, oneshot, interval,
            pid_file, log_level, log_file, json_logs
        )
    except (OSError, ValueError) as e:
        console.print(f"[red]Invalid configuration: {e}[/red]")
        sys.exit(EXIT_CONFIG_ERROR)

    if not rules_file and not config:
        console.print("[red]No port mapping file given (use --file or --config)[/red]")
        sys.exit(EXIT_CONFIG_ERROR)

    if output:
        output = str(Path(output).resolve())

    if not daemon_config.foreground:
        daemonize()

    try:
        with PidFile(daemon_config.pid_file):
            setup_logging(daemon_config.log_level, daemon_config.log_file, daemon_config.json_logs)
            daemon = Daemon(daemon_config)
            summary = asyncio.run(_run_daemon(daemon))
    except AlreadyRunningError as e:
        console.print(f"[red]{e}[/red]")
        sys.exit(EXIT_ALREADY_RUNNING)
    except ConfigLoadError as e:
        console.print(f"[red]Could not load port mappings: {e}[/red]")
        sys.exit(EXIT_CONFIG_ERROR)
    except KeyboardInterrupt:
        console.print("[yellow]Daemon stopped[/yellow]")
        return

    if daemon_config.oneshot:
        _print_summary(summary)
        if output and summary.last_report is not None:
            _save_json(output, summary.last_report.to_dict())
        sys.exit(EXIT_OK if summary.all_applied else EXIT_RULES_FAILED)


@main.command()
@click.option("--file", "-f", "rules_file", type=click.Path(), required=True, help="Port mapping file to validate")
@click.option("--output", "-o", type=click.Path(), help="Save the parsed rules as JSON")
def check(rules_file, output):
    """Validate a port mapping file without contacting any gateway."""
    try:
        result = asyncio.run(RuleSource(rules_file).load())
    except ConfigLoadError as e:
        console.print(f"[red]{e}[/red]")
        sys.exit(EXIT_CONFIG_ERROR)

    table = Table(title=f"Rules in {rules_file}")
    table.add_column("Address", style="cyan")
    table.add_column("Port", style="blue")
    table.add_column("Protocol")
    table.add_column("Lease (s)", style="green")
    table.add_column("Comment")

    for rule in result.rules:
        table.add_row(
            rule.address or "[dim]any interface[/dim]",
            str(rule.external_port),
            rule.protocol.value,
            str(rule.lease_seconds),
            rule.comment,
        )
    console.print(table)

    if output:
        _save_json(output, {
            "rules": [rule.to_dict() for rule in result.rules],
            "rejected": [{"line": row.line_number, "reason": row.reason} for row in result.rejected],
        })

    if result.rejected:
        rejected = Table(title="Rejected Rows", style="red")
        rejected.add_column("Line")
        rejected.add_column("Reason")
        for row in result.rejected:
            rejected.add_row(str(row.line_number), row.reason)
        console.print(rejected)
        sys.exit(EXIT_CONFIG_ERROR)

    console.print(f"[green]{len(result.rules)} rule(s) OK[/green]")


async def _list_mappings(address: Optional[str], discovery_timeout: float):
    client = MiniUPnPGatewayClient(discovery_timeout=discovery_timeout)
    addresses = [address] if address else PsutilInterfaceEnumerator().list_local_addresses()

    for local_address in addresses:
        try:
            gateway = await client.discover(local_address)
        except UPnPDaemonError as e:
            console.print(f"[dim]{local_address}: {e}[/dim]")
            continue
        if gateway is None:
            console.print(f"[dim]{local_address}: no gateway found[/dim]")
            continue
        return gateway, await client.list_mappings(gateway)

    return None, []


@main.command("list-mappings")
@click.option("--address", "-a", help="Local address to discover the gateway from")
@click.option("--discovery-timeout", type=float, default=2.0, help="Seconds to wait for gateways")
def list_mappings(address, discovery_timeout):
    """Show the mapping table of the first gateway found."""
    try:
        gateway, mappings = asyncio.run(_list_mappings(address, discovery_timeout))
    except UPnPDaemonError as e:
        console.print(f"[red]{e}[/red]")
        sys.exit(EXIT_RULES_FAILED)

    if gateway is None:
        console.print("[red]No gateway found[/red]")
        sys.exit(EXIT_RULES_FAILED)

    console.print(Panel.fit(
        f"[bold cyan]Gateway[/bold cyan]\n"
        f"Control URL: {gateway.identifier}\n"
        f"LAN address: {gateway.local_address}\n"
        f"External address: {gateway.external_address or 'unknown'}",
        border_style="cyan"
    ))

    table = Table(title="Mappings")
    table.add_column("External Port", style="blue")
    table.add_column("Protocol")
    table.add_column("Internal Client", style="cyan")
    table.add_column("Internal Port")
    table.add_column("Lease (s)", style="green")
    table.add_column("Description")

    for mapping in mappings:
        table.add_row(
            str(mapping.external_port),
            mapping.protocol.value,
            mapping.internal_client,
            str(mapping.internal_port),
            str(mapping.lease_seconds),
            mapping.description,
        )
    console.print(table)


@main.command()
@click.argument("output", type=click.Path())
@click.option("--file", "-f", "rules_file", default="ports.csv", help="Port mapping file")
@click.option("--interval", "-i", type=float, default=60.0, help="Seconds between cycles")
def generate_config(output, rules_file, interval):
    """Generate a configuration file."""
    config = DaemonConfig(rules_file=str(Path(rules_file).resolve()), interval=interval)
    config.to_file(output)
    console.print(f"[green]Configuration saved to {output}[/green]")


@main.command()
def version():
    """Display version information."""
    from . import __version__
    console.print(f"[cyan]upnp-daemon v{__version__}[/cyan]")


if __name__ == "__main__":
    main()
