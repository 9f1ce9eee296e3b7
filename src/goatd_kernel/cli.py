"""CLI interface for the GOATd build-script patch engine."""

import json
import logging
from pathlib import Path
from typing import Annotated, Optional

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from goatd_kernel import __version__
from goatd_kernel.config import get_settings
from goatd_kernel.exceptions import PatchError
from goatd_kernel.models import BuildConfig
from goatd_kernel.patcher import PatchEngine, PatchResult, default_patterns
from goatd_kernel.patcher.identity import branded_identity, resolve_variant, variant_functions
from goatd_kernel.patcher.scanner import iter_functions

app = typer.Typer(
    name="goatd-patch",
    help="Patch Arch kernel build scripts, .config files, and kernel sources for a build profile",
    no_args_is_help=True,
)

console = Console()


def version_callback(value: bool):
    if value:
        console.print(f"goatd-patch version {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: Annotated[
        bool,
        typer.Option("--version", callback=version_callback, is_eager=True),
    ] = False,
    verbose: Annotated[bool, typer.Option("--verbose", "-v", help="Debug logging")] = False,
):
    """GOATd patch engine - apply a build profile to a PKGBUILD."""
    level = "DEBUG" if verbose else get_settings().log_level.upper()
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, show_path=False)],
    )


# --- Shared helpers ---


def _read_script(script: Path) -> str:
    if not script.exists():
        console.print(f"[red]Build script not found: {script}[/]")
        raise typer.Exit(1)
    return script.read_text(encoding="utf-8", errors="surrogateescape")


def _print_result(result: PatchResult, dry_run: bool) -> None:
    table = Table(title="Dry run" if dry_run else "Patch pass")
    table.add_column("Transform", style="cyan")
    table.add_column("Target")
    table.add_column("Status")
    table.add_column("Detail", style="dim")

    styles = {"applied": "[green]applied[/]", "unchanged": "[dim]unchanged[/]"}
    for outcome in result.outcomes:
        if outcome.status == "failed":
            status = "[red]failed[/]" if outcome.mandatory else "[yellow]skipped[/]"
        else:
            status = styles[outcome.status]
        table.add_row(outcome.id, outcome.target, status, outcome.message)
    console.print(table)

    for path in result.written:
        console.print(f"[green]Wrote[/] {path}")
    for warning in result.warnings:
        console.print(f"[yellow]Warning: {warning}[/]")
    for error in result.errors:
        console.print(f"[red]Error: {error}[/]")


# --- Commands ---


@app.command("patch")
def patch(
    script: Annotated[Path, typer.Argument(help="Path to the PKGBUILD")],
    profile: Annotated[Optional[str], typer.Option("--profile", "-p", help="Build profile name")] = None,
    config_file: Annotated[Optional[Path], typer.Option("--config", "-c", help="Kernel .config to patch")] = None,
    source_dir: Annotated[Optional[Path], typer.Option("--source", "-s", help="Kernel source tree")] = None,
    build_file: Annotated[Optional[Path], typer.Option("--build-config", "-b", help="BuildConfig JSON file")] = None,
    lto: Annotated[Optional[str], typer.Option("--lto", help="none, thin or full")] = None,
    hardening: Annotated[Optional[str], typer.Option("--hardening", help="minimal, standard or hardened")] = None,
    modprobed: Annotated[bool, typer.Option("--modprobed", help="Filter modules through modprobed-db")] = False,
    whitelist: Annotated[bool, typer.Option("--whitelist", help="Keep boot-critical options enabled")] = False,
    polly: Annotated[bool, typer.Option("--polly", help="Enable LLVM Polly loop optimizations")] = False,
    kernel_release: Annotated[Optional[str], typer.Option("--kernel-release", help="e.g. 6.18.6-arch1-1")] = None,
    variant: Annotated[Optional[str], typer.Option("--variant", help="Override the detected variant")] = None,
    dry_run: Annotated[bool, typer.Option("--dry-run", "-n", help="Show what would change, write nothing")] = False,
):
    """Apply a build profile to a build script (and optionally .config and sources).

    Example: goatd-patch patch PKGBUILD --profile gaming --lto thin --config src/linux/.config
    """
    if build_file:
        try:
            build = BuildConfig.load(build_file)
        except (OSError, ValueError) as e:
            console.print(f"[red]Invalid build configuration: {e}[/]")
            raise typer.Exit(1)
    elif profile:
        build = BuildConfig(profile=profile)
    else:
        console.print("[red]Either --profile or --build-config is required[/]")
        raise typer.Exit(1)

    overrides: dict[str, object] = {}
    if profile:
        overrides["profile"] = profile
    if lto:
        overrides["lto"] = lto
    if hardening:
        overrides["hardening"] = hardening
    if modprobed:
        overrides["use_modprobed"] = True
    if whitelist:
        overrides["use_whitelist"] = True
    if polly:
        overrides["use_polly"] = True
    if kernel_release:
        overrides["kernel_release"] = kernel_release
    if variant:
        overrides["variant"] = variant
    if overrides:
        try:
            build = BuildConfig.model_validate({**build.model_dump(), **overrides})
        except ValueError as e:
            console.print(f"[red]Invalid build configuration: {e}[/]")
            raise typer.Exit(1)

    try:
        engine = PatchEngine(script, config_path=config_file, source_dir=source_dir)
        result = engine.run(build, dry_run=dry_run)
    except PatchError as e:
        console.print(f"[red]{e}[/]")
        raise typer.Exit(1)

    _print_result(result, dry_run)
    if not result.success:
        raise typer.Exit(1)
    if not result.written and not dry_run:
        console.print("[dim]Nothing to change, already patched[/]")


@app.command("variant")
def show_variant(
    script: Annotated[Path, typer.Argument(help="Path to the PKGBUILD")],
    profile: Annotated[Optional[str], typer.Option("--profile", "-p", help="Show the branded identity for this profile")] = None,
):
    """Show the kernel variant a build script builds.

    Example: goatd-patch variant PKGBUILD --profile gaming
    """
    settings = get_settings()
    resolution = resolve_variant(_read_script(script), settings, default_patterns())

    table = Table(title="Variant")
    table.add_column("Field", style="cyan")
    table.add_column("Value")
    table.add_row("pkgbase", resolution.raw or "[red]missing[/]")
    fallback = " [yellow](fallback)[/]" if resolution.fell_back else ""
    table.add_row("Variant", resolution.variant + fallback)
    table.add_row("Already branded", "yes" if resolution.branded else "no")

    main_fn, headers_fns = variant_functions(resolution.variant, settings.domain_prefix)
    table.add_row("Package function", main_fn)
    table.add_row("Headers functions", ", ".join(headers_fns))
    if profile:
        table.add_row(
            "Branded identity",
            branded_identity(resolution.variant, settings.brand_tag, profile),
        )
    console.print(table)


@app.command("functions")
def list_functions(
    script: Annotated[Path, typer.Argument(help="Path to the PKGBUILD")],
):
    """List the functions in a build script with their body boundaries."""
    text = _read_script(script)
    patterns = default_patterns()

    table = Table(title=f"Functions in {script.name}")
    table.add_column("Function", style="cyan")
    table.add_column("Lines", justify="right")
    table.add_column("Body offsets", justify="right")

    try:
        boundaries = list(iter_functions(text, patterns.any_function))
    except PatchError as e:
        console.print(f"[red]{e}[/]")
        raise typer.Exit(1)

    if not boundaries:
        console.print("[yellow]No functions found[/]")
        return

    for b in boundaries:
        first = text.count("\n", 0, b.header_start) + 1
        last = text.count("\n", 0, b.body_end) + 1
        table.add_row(b.name, f"{first}-{last}", f"{b.body_start}-{b.body_end}")
    console.print(table)


@app.command("status")
def status(
    script: Annotated[Path, typer.Argument(help="Path to the PKGBUILD")],
):
    """Show the saved state of the last patch pass."""
    _read_script(script)
    engine = PatchEngine(script)
    state = engine.get_state()
    if state is None:
        console.print("[yellow]No patch state found[/]")
        return

    console.print(f"[bold]Profile:[/] {state.get('profile')}  [bold]LTO:[/] {state.get('lto')}")
    console.print(f"[bold]Applied at:[/] {state.get('applied_at')}")
    console.print(f"[bold]Applied:[/] {', '.join(state.get('applied', [])) or 'nothing'}")
    for warning in state.get("warnings", []):
        console.print(f"  [yellow]{warning}[/]")
    for path in state.get("written", []):
        console.print(f"  [dim]{path}[/]")


@app.command("revert")
def revert(
    script: Annotated[Path, typer.Argument(help="Path to the PKGBUILD")],
    config_file: Annotated[Optional[Path], typer.Option("--config", "-c", help="Kernel .config to restore")] = None,
):
    """Restore patched files from their backups.

    Example: goatd-patch revert PKGBUILD --config src/linux/.config
    """
    _read_script(script)
    engine = PatchEngine(script, config_path=config_file)
    restored = engine.revert()
    if not restored:
        console.print("[yellow]No backups found[/]")
        raise typer.Exit(1)
    for path in restored:
        console.print(f"[green]Restored[/] {path}")


@app.command("show-config")
def show_config(
    build_file: Annotated[Path, typer.Argument(help="BuildConfig JSON file")],
):
    """Validate a BuildConfig JSON file and print it normalized."""
    try:
        build = BuildConfig.load(build_file)
    except (OSError, ValueError) as e:
        console.print(f"[red]Invalid build configuration: {e}[/]")
        raise typer.Exit(1)
    console.print_json(json.dumps(build.model_dump()))


if __name__ == "__main__":
    app()
