"""Command-line interface for the Greengrass provisioning agent."""

import logging
import logging.handlers
import sys
from pathlib import Path
from typing import Optional

import click
import yaml
from pydantic import ValidationError
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.table import Table

from . import __version__
from .config import ProvisionerConfig, apply_overrides, load_config, save_config
from .machine import build_state_machine
from .status import ProvisioningState, read_status
from .verify import InstallationVerifier

console = Console()
logger = logging.getLogger(__name__)

LOG_FILE_MAX_BYTES = 10 * 1024 * 1024
LOG_FILE_BACKUPS = 3


def setup_logging(verbose: bool = False, log_file: Optional[str] = None) -> None:
    """Configure logging.

    Console output goes to stderr through rich; the optional log file always
    records DEBUG.
    """
    console_handler = RichHandler(
        console=Console(stderr=True),
        show_time=True,
        show_path=False,
        rich_tracebacks=True,
    )
    console_handler.setLevel(logging.DEBUG if verbose else logging.INFO)
    handlers: list[logging.Handler] = [console_handler]

    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.handlers.RotatingFileHandler(
            log_file,
            maxBytes=LOG_FILE_MAX_BYTES,
            backupCount=LOG_FILE_BACKUPS,
        )
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(
            logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s")
        )
        handlers.append(file_handler)

    logging.basicConfig(level=logging.DEBUG, format="%(message)s", handlers=handlers, force=True)
    for noisy in ("botocore", "boto3", "urllib3"):
        logging.getLogger(noisy).setLevel(logging.WARNING)


@click.group()
@click.version_option(version=__version__, prog_name="gg-provision")
@click.option("--config", "-c", type=click.Path(exists=True), help="Settings file (YAML or JSON)")
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose output")
@click.option("--log-file", type=click.Path(), help="Also write a rotating debug log to this file")
@click.pass_context
def main(ctx: click.Context, config: Optional[str], verbose: bool, log_file: Optional[str]) -> None:
    """Greengrass Device Provisioning Agent.

    Provisions an edge device for AWS IoT Greengrass v2 from a local device
    database: checks connectivity, writes the certificate bundle and the
    runtime configuration, and reports progress in a JSON status file.
    """
    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose
    setup_logging(verbose, log_file)

    if config:
        try:
            ctx.obj["config"] = load_config(Path(config))
        except (OSError, ValueError, ValidationError, yaml.YAMLError) as e:
            console.print(f"[bold red]Error:[/bold red] Invalid settings file {config}: {escape(str(e))}")
            sys.exit(1)
    else:
        ctx.obj["config"] = ProvisionerConfig()


@main.command()
@click.option("--database-path", "-d", type=click.Path(), help="Device configuration database")
@click.option("--runtime-root", "-g", type=click.Path(), help="Greengrass root directory")
@click.option("--status-file", "-s", type=click.Path(), help="Status document path")
@click.option("--device-id", help="MAC address, serial number or device ID to provision")
@click.option("--endpoint", "endpoints", multiple=True, help="Endpoint to probe (repeatable)")
@click.option("--no-issue", is_flag=True, help="Never request certificates from AWS IoT")
@click.pass_context
def run(
    ctx: click.Context,
    database_path: Optional[str],
    runtime_root: Optional[str],
    status_file: Optional[str],
    device_id: Optional[str],
    endpoints: tuple[str, ...],
    no_issue: bool,
) -> None:
    """Run one provisioning pass and exit with its result."""
    config = apply_overrides(
        ctx.obj["config"],
        database_path=database_path,
        runtime_root=runtime_root,
        status_file=status_file,
        device_identifier=device_id,
        endpoints=endpoints,
        issue=False if no_issue else None,
    )

    console.print(f"[bold blue]Provisioning Greengrass in {config.runtime_root}[/bold blue]")

    machine = build_state_machine(config)
    outcome = machine.run()

    table = Table(title="Provisioning Result")
    table.add_column("Field", style="cyan")
    table.add_column("Value")
    table.add_row("State", outcome.state.value)
    table.add_row("Exit Code", str(int(outcome.exit_code)))
    table.add_row("Detail", escape(outcome.detail))
    table.add_row("Status File", config.status_file)
    console.print(table)

    if outcome.succeeded:
        console.print("[bold green]✓[/bold green] Device provisioned")
    else:
        console.print(f"[bold red]✗[/bold red] Provisioning failed: {escape(outcome.detail)}")
    sys.exit(int(outcome.exit_code))


@main.command()
@click.option("--runtime-root", "-g", type=click.Path(), help="Greengrass root directory")
@click.pass_context
def check(ctx: click.Context, runtime_root: Optional[str]) -> None:
    """Check whether the runtime root is already provisioned."""
    config = apply_overrides(ctx.obj["config"], runtime_root=runtime_root)
    result = InstallationVerifier(config.config_file).check()

    table = Table(title="Installation Check")
    table.add_column("Check", style="cyan")
    table.add_column("Status", style="green")
    table.add_column("Details")
    table.add_row(
        "Bundle + Configuration",
        "✓ VALID" if result.passed else f"✗ {result.verdict.name}",
        escape(result.details),
    )
    if result.thing_name:
        table.add_row("Thing Name", result.thing_name, "")
    console.print(table)

    sys.exit(0 if result.passed else 1)


@main.command()
@click.option("--status-file", "-s", type=click.Path(), help="Status document path")
@click.pass_context
def status(ctx: click.Context, status_file: Optional[str]) -> None:
    """Show the current provisioning status."""
    config = apply_overrides(ctx.obj["config"], status_file=status_file)

    try:
        current = read_status(Path(config.status_file))
    except FileNotFoundError:
        console.print(f"[bold yellow]No status published at {config.status_file}[/bold yellow]")
        sys.exit(1)
    except (OSError, ValueError) as e:
        console.print(f"[bold red]Error:[/bold red] {escape(str(e))}")
        sys.exit(1)

    table = Table(title="Provisioning Status")
    table.add_column("Field", style="cyan")
    table.add_column("Value")
    table.add_row("Status", current.state.value)
    table.add_row("Message", escape(current.message))
    table.add_row("Progress", f"{current.progress_percentage}%")
    table.add_row("Timestamp", current.timestamp)
    if current.error_details:
        table.add_row("Error", escape(current.error_details))
    console.print(table)

    sys.exit(1 if current.state is ProvisioningState.ERROR else 0)


@main.command()
@click.option("--output", "-o", type=click.Path(), required=True, help="Output file path")
@click.option("--format", "fmt", type=click.Choice(["yaml", "json"]), default="yaml", help="Output format")
@click.pass_context
def init_config(ctx: click.Context, output: str, fmt: str) -> None:
    """Write a settings file.

    Starts from the defaults, or from the file given with --config.
    """
    output_path = Path(output)
    save_config(ctx.obj["config"], output_path, fmt)

    console.print(f"[bold green]✓[/bold green] Configuration file created at {output_path}")


if __name__ == "__main__":
    main()
