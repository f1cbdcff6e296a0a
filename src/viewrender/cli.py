from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from .gen.config import CONFIG_FILENAME, ConfigError, VRConfig, find_config, load_config, write_starter_config
from .gen.errors import ConstraintViolationError, RenderError
from .gen.registry import ProviderRegistry, parse_kind
from .gen.session import RenderSession
from .gen.types import GenerationRequest, OutputFormat, ProviderKind

app = typer.Typer(add_completion=False, no_args_is_help=True)
console = Console()
err_console = Console(stderr=True)


def _configure_logging(verbose: bool, log_file: Optional[Path] = None) -> None:
    handlers: list[logging.Handler] = [
        RichHandler(console=err_console, show_path=False, rich_tracebacks=verbose)
    ]
    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setFormatter(logging.Formatter("%(asctime)s %(name)s %(levelname)s: %(message)s"))
        handlers.append(file_handler)
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        handlers=handlers,
        force=True,
    )
    logging.getLogger("httpx").setLevel(logging.DEBUG if verbose else logging.WARNING)


def _load(config_path: Optional[Path]) -> VRConfig:
    if config_path is not None:
        return load_config(config_path)
    found = find_config()
    if found.exists():
        return load_config(found)
    return VRConfig()


def _params(**values: Optional[float]) -> dict[str, float]:
    return {k: v for k, v in values.items() if v is not None}


@app.command()
def render(
    image: Path = typer.Argument(..., exists=True, dir_okay=False, help="Captured view image"),
    prompt: Optional[str] = typer.Option(None, "--prompt", help="Defaults to default_prompt from config"),
    provider: Optional[str] = typer.Option(None, "--provider", "-p", help="structure, queued or edit"),
    negative_prompt: Optional[str] = typer.Option(None, "--negative-prompt"),
    style_preset: Optional[str] = typer.Option(None, "--style-preset"),
    output_format: Optional[OutputFormat] = typer.Option(None, "--format"),
    reference: list[Path] = typer.Option([], "--ref", exists=True, dir_okay=False, help="Reference image (repeatable, edit provider)"),
    model: Optional[str] = typer.Option(None, "--model"),
    control_strength: Optional[float] = typer.Option(None, "--control-strength", min=0.0, max=1.0),
    strength: Optional[float] = typer.Option(None, "--strength", min=0.0, max=1.0),
    steps: Optional[int] = typer.Option(None, "--steps", min=1),
    guidance_scale: Optional[float] = typer.Option(None, "--guidance-scale"),
    lora_strength: Optional[float] = typer.Option(None, "--lora-strength"),
    config_path: Optional[Path] = typer.Option(None, "--config", dir_okay=False),
    verbose: bool = typer.Option(False, "--verbose", "-v"),
):
    """Send a captured view to an image-generation provider and save the result."""
    try:
        config = _load(config_path)
        kind = parse_kind(provider) if provider else config.default_provider
    except ConfigError as e:
        err_console.print(f"[bold red]Config error:[/bold red] {e}")
        raise typer.Exit(code=2) from e

    _configure_logging(verbose or config.verbose_logging, config.log_file)

    if reference and kind is not ProviderKind.EDIT:
        err_console.print(f"[yellow]Reference images are ignored by the {kind.value} provider[/yellow]")
    if output_format not in (None, OutputFormat.PNG) and kind is ProviderKind.EDIT:
        err_console.print("[yellow]--format is ignored by the edit provider; results are PNG[/yellow]")

    request = GenerationRequest(
        source_image_path=image,
        prompt=prompt or config.default_prompt,
        reference_image_paths=tuple(reference),
        negative_prompt=negative_prompt,
        params=_params(
            control_strength=control_strength,
            strength=strength,
            steps=steps,
            guidance_scale=guidance_scale,
            control_lora_strength=lora_strength,
        ),
        output_format=output_format,
        style_preset=style_preset,
        model=model,
    )

    session = RenderSession(ProviderRegistry(config), on_status=lambda msg: console.print(f"[dim]{msg}[/dim]"))
    try:
        outcome = asyncio.run(session.render(request, kind))
    except ConfigError as e:
        err_console.print(f"[bold red]Config error:[/bold red] {e}")
        raise typer.Exit(code=2) from e
    except ConstraintViolationError as e:
        err_console.print("[bold red]Rendering failed[/bold red]")
        err_console.print(f"Image: {e.describe_dimensions()}")
        err_console.print(f"Required aspect ratio: {e.min_aspect:g} to {e.max_aspect:g} (width / height)")
        err_console.print(str(e))
        raise typer.Exit(code=1) from e
    except RenderError as e:
        err_console.print(f"[bold red]Rendering failed:[/bold red] {e}")
        raise typer.Exit(code=1) from e

    table = Table(title="Render")
    table.add_column("Provider")
    table.add_column("Result", style="green")
    table.add_column("Conditioning")
    table.add_row(outcome.provider_id, str(outcome.result_path), "\n".join(outcome.conditioning) or "-")
    console.print(table)


@app.command()
def check(
    provider: Optional[str] = typer.Option(None, "--provider", "-p"),
    config_path: Optional[Path] = typer.Option(None, "--config", dir_okay=False),
    verbose: bool = typer.Option(False, "--verbose", "-v"),
):
    """Test connectivity and credentials for the configured providers."""
    try:
        config = _load(config_path)
        kinds = [parse_kind(provider)] if provider else sorted(config.providers.available(), key=lambda k: k.value)
    except ConfigError as e:
        err_console.print(f"[bold red]Config error:[/bold red] {e}")
        raise typer.Exit(code=2) from e
    _configure_logging(verbose or config.verbose_logging, config.log_file)

    registry = ProviderRegistry(config)
    table = Table(title="Connectivity")
    table.add_column("Provider")
    table.add_column("Status")
    failed = False
    for kind in kinds:
        try:
            ok = asyncio.run(registry.get_provider(kind).check_connectivity())
            status = "[green]OK[/green]" if ok else "[red]unreachable[/red]"
        except ConfigError as e:
            ok = False
            status = f"[yellow]{e}[/yellow]"
        failed = failed or not ok
        table.add_row(kind.value, status)
    console.print(table)
    raise typer.Exit(code=1 if failed else 0)


@app.command()
def init(
    path: Path = typer.Option(Path(CONFIG_FILENAME), "--path", dir_okay=False),
    force: bool = typer.Option(False, "--force", help="Overwrite an existing config"),
):
    """Write a starter config file."""
    try:
        out = write_starter_config(path, force=force)
    except FileExistsError as e:
        err_console.print(f"[bold red]Config already exists:[/bold red] {path}")
        err_console.print("Use --force to overwrite.")
        raise typer.Exit(code=2) from e
    console.print(f"[bold green]Created[/bold green] {out}")


if __name__ == "__main__":
    app()
