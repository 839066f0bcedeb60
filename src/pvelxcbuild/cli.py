"""CLI entry point for pvelxcbuild."""

from __future__ import annotations

import signal
import sys
import threading
from pathlib import Path

import click
from pydantic import ValidationError
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from pvelxcbuild import __version__
from pvelxcbuild.config import BuildFile
from pvelxcbuild.errors import BuildCancelled, ConfigError
from pvelxcbuild.utils.logging import log_secret_filter, set_log_level

console = Console()


def safe(text) -> str:
    """Redact registered secrets and escape rich markup."""
    return escape(log_secret_filter.redact(str(text)))


def load_build_file(path: str) -> BuildFile:
    try:
        return BuildFile.from_yaml(path)
    except (OSError, ValidationError) as e:
        console.print(f"[red]Error loading build file {path}: {safe(e)}[/red]")
        sys.exit(1)


def print_config_errors(err: ConfigError) -> None:
    console.print(f"[bold red]❌ Configuration invalid[/bold red] — {len(err.errors)} error(s):")
    for msg in err.errors:
        console.print(f"  ❌ {safe(msg)}")


@click.group()
@click.version_option(version=__version__, prog_name="pvelxcbuild")
@click.option("--log-level", default="INFO", type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"]),
              help="Log verbosity")
def main(log_level: str):
    """Build reusable LXC container templates on Proxmox VE.

    Creates a throwaway container from a base template, provisions it over
    SSH, then exports it with vzdump into a local .tar.gz template.
    """
    set_log_level(log_level)


@main.command()
@click.option("--config", "-c", "config_path", required=True, type=click.Path(exists=True),
              help="Build file (YAML)")
def validate(config_path: str):
    """Check a build file without touching the cluster."""
    from pvelxcbuild.builder import Builder

    build = load_build_file(config_path)
    builder = Builder()
    try:
        warnings = builder.prepare(build.builder)
    except ConfigError as e:
        print_config_errors(e)
        sys.exit(1)

    for w in warnings:
        console.print(f"  ⚠️ {safe(w)}")

    config = builder.config
    table = Table(title=f"Build — {config_path}")
    table.add_column("Setting", style="cyan", no_wrap=True)
    table.add_column("Value")
    table.add_row("Proxmox", config.proxmox_url)
    table.add_row("Node", config.node)
    table.add_row("VMID", str(config.vmid) if config.vmid else "(allocate)")
    table.add_row("Template", config.template_file)
    table.add_row("Root FS", f"{config.filesystem_storage}:{config.filesystem_size}G")
    table.add_row("Memory / Cores", f"{config.memory} MiB / {config.cores}")
    table.add_row("Provision IP", config.provision_ip)
    table.add_row("Backup storage", config.template_storage_pool)
    table.add_row("Output", str(config.output_path))
    table.add_row("Provisioners", str(len(build.provisioners)))
    console.print(table)
    console.print("\n[bold green]✅ Configuration valid[/bold green]")


@main.command()
@click.option("--config", "-c", "config_path", required=True, type=click.Path(exists=True),
              help="Build file (YAML)")
def build(config_path: str):
    """Build a template archive from a build file."""
    from pvelxcbuild.builder import Builder
    from pvelxcbuild.provision import ProvisionerHook
    from pvelxcbuild.ui import Ui

    build_file = load_build_file(config_path)
    builder = Builder()
    try:
        warnings = builder.prepare(build_file.builder)
    except ConfigError as e:
        print_config_errors(e)
        sys.exit(1)
    for w in warnings:
        console.print(f"[yellow]⚠️ {safe(w)}[/yellow]")

    cancel = threading.Event()

    def _interrupt(signum, frame):
        console.print("[yellow]Interrupt received, cancelling build (cleanup will still run)...[/yellow]")
        cancel.set()
        signal.signal(signal.SIGINT, signal.default_int_handler)

    previous = {sig: signal.signal(sig, _interrupt) for sig in (signal.SIGINT, signal.SIGTERM)}

    try:
        artifact = builder.run(cancel=cancel, ui=Ui(), hook=ProvisionerHook(build_file.provisioners))
    except BuildCancelled:
        console.print("\n[bold yellow]Build was cancelled[/bold yellow]")
        sys.exit(1)
    except Exception as e:
        console.print(f"\n[bold red]❌ Build failed[/bold red]: {safe(e)}")
        sys.exit(1)
    finally:
        for sig, handler in previous.items():
            if handler is not None:
                signal.signal(sig, handler)

    console.print(f"\n[bold green]✅ {artifact}[/bold green]")
    console.print(f"  Builder: {artifact.builder_id}")
    generated = artifact.state("generated_data") or {}
    if generated.get("ID"):
        console.print(f"  Source VMID: {generated['ID']}")


@main.command()
@click.argument("template_path", type=click.Path(exists=True, dir_okay=False))
@click.confirmation_option(prompt="Delete this template archive?")
def destroy(template_path: str):
    """Delete a template archive produced by a previous build."""
    from pvelxcbuild.artifact import Artifact

    Artifact(template_path=Path(template_path)).destroy()
    console.print(f"[green]Deleted {template_path}[/green]")


if __name__ == "__main__":
    main()
