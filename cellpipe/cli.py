"""
Command line interface for cellpipe.

    cellpipe run CONFIG            run the pipeline and export artifacts
    cellpipe fetch SOURCE          download and unpack a 10x matrix only
    cellpipe init-config PATH      write the PBMC 3k template configuration
    cellpipe validate-config PATH  check a configuration and show its stage plan

Exit codes: 0 on success, 1 when the pipeline or a download fails, 2 when
the configuration is invalid.
"""

import logging
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table

from cellpipe.config.pipeline_config import PipelineConfig, pbmc3k_template
from cellpipe.config.settings import get_settings
from cellpipe.core.exceptions import CellpipeCoreError, ConfigurationError
from cellpipe.utils.logger import attach_to_root, set_level
from cellpipe.version import __version__

EXIT_FAILED = 1
EXIT_INVALID_CONFIG = 2

console = Console()
error_console = Console(stderr=True)

app = typer.Typer(
    name="cellpipe",
    help="Single-cell RNA-seq clustering pipeline for 10x Genomics data",
    add_completion=False,
    rich_markup_mode="rich",
)


def _setup_logging(level: str) -> None:
    """Install a RichHandler on the root logger (CLI mode)."""
    root = logging.getLogger()
    if not any(isinstance(h, RichHandler) for h in root.handlers):
        rich_handler = RichHandler(
            console=error_console,
            show_time=True,
            show_level=True,
            show_path=False,
            markup=False,
            rich_tracebacks=True,
            tracebacks_show_locals=False,
        )
        rich_handler.setFormatter(logging.Formatter(fmt="%(message)s", datefmt="[%X]"))
        root.addHandler(rich_handler)

    numeric = getattr(logging, level.upper(), logging.INFO)
    root.setLevel(numeric)
    attach_to_root()
    set_level(level)

    for noisy in ("urllib3", "numba", "h5py", "matplotlib", "kaleido", "choreographer"):
        logging.getLogger(noisy).setLevel(logging.WARNING)


def _load_config(path: Path) -> PipelineConfig:
    try:
        return PipelineConfig.load(path)
    except ConfigurationError as e:
        error_console.print(f"[red]❌ Invalid configuration:[/red] {e.message}")
        for error in e.details.get("errors", []):
            error_console.print(f"  [dim]•[/dim] {error}")
        raise typer.Exit(EXIT_INVALID_CONFIG)


def _version_callback(value: bool):
    if value:
        console.print(f"cellpipe {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: Optional[bool] = typer.Option(
        None,
        "--version",
        callback=_version_callback,
        is_eager=True,
        help="Show the version and exit",
    ),
):
    """Single-cell RNA-seq clustering pipeline for 10x Genomics data."""


@app.command()
def run(
    config_path: Path = typer.Argument(..., help="Pipeline configuration (JSON)"),
    output_dir: Optional[Path] = typer.Option(
        None, "--output-dir", "-o", help="Override output.output_dir"
    ),
    data_dir: Optional[Path] = typer.Option(
        None, "--data-dir", "-d", help="Override output.data_dir (download cache)"
    ),
    no_plots: bool = typer.Option(False, "--no-plots", help="Skip figure export"),
    log_level: Optional[str] = typer.Option(
        None, "--log-level", "-l", help="DEBUG, INFO, WARNING or ERROR"
    ),
):
    """Run the full pipeline described by CONFIG and export its artifacts."""
    _setup_logging(log_level or get_settings().LOG_LEVEL)
    config = _load_config(config_path)

    from cellpipe.core.pipeline import run_pipeline

    console.print(
        Panel.fit(
            f"[bold]cellpipe[/bold] {__version__} · dataset [cyan]{config.name}[/cyan]\n"
            f"[dim]{' → '.join(config.stage_plan())}[/dim]",
            border_style="cyan",
        )
    )

    try:
        result = run_pipeline(
            config,
            output_dir=output_dir,
            data_dir=data_dir,
            plots=False if no_plots else None,
        )
    except CellpipeCoreError as e:
        error_console.print(f"[red]❌ {type(e).__name__}:[/red] {e.message}")
        raise typer.Exit(EXIT_FAILED)

    if not result.ok:
        error_console.print(
            f"[red]❌ Stage '{result.failed_stage}' failed "
            f"({type(result.error).__name__}):[/red] {result.error}"
        )
        details = getattr(result.error, "details", None)
        if details:
            for key, value in details.items():
                error_console.print(f"  [dim]{key}:[/dim] {value}")
        error_console.print("[dim]No snapshot was written.[/dim]")
        raise typer.Exit(EXIT_FAILED)

    dataset = result.dataset
    table = Table(title="Run summary", show_header=False, box=None)
    table.add_column(style="bold")
    table.add_column()
    table.add_row("Cells", str(dataset.n_observations))
    table.add_row("Genes", str(dataset.n_features))
    table.add_row("Clusters", str(result.stage_stats["cluster"]["n_clusters"]))
    if "annotate" in result.stage_stats:
        table.add_row("Cell types", str(result.stage_stats["annotate"]["n_cell_types"]))
    if dataset.markers is not None:
        table.add_row("Markers", str(len(dataset.markers)))
    table.add_row("Snapshot", str(result.snapshot_path or "not written"))
    table.add_row("Duration", f"{result.duration_seconds:.1f}s")
    console.print(table)

    for warning in result.warnings:
        console.print(f"[yellow]⚠ {warning}[/yellow]")
    for error in result.export_errors:
        console.print(f"[yellow]⚠ Export failed:[/yellow] {error}")

    console.print(f"[green]✓ Pipeline completed[/green] → {result.snapshot_path or '-'}")


@app.command()
def fetch(
    source: str = typer.Argument(..., help="URL, archive or 10x matrix directory"),
    data_dir: Optional[Path] = typer.Option(
        None, "--data-dir", "-d", help="Download cache (default: CELLPIPE_DATA_DIR)"
    ),
):
    """Download and unpack a 10x matrix without running the pipeline."""
    _setup_logging(get_settings().LOG_LEVEL)

    from cellpipe.services.data_access import TenXDownloader

    downloader = TenXDownloader(
        cache_dir=data_dir or get_settings().DATA_DIR, console=console
    )
    try:
        matrix_dir = downloader.fetch(source)
    except CellpipeCoreError as e:
        error_console.print(f"[red]❌ {type(e).__name__}:[/red] {e.message}")
        raise typer.Exit(EXIT_FAILED)

    console.print(f"[green]✓ Matrix available at[/green] {matrix_dir}")


@app.command("init-config")
def init_config(
    path: Path = typer.Argument(Path("cellpipe.json"), help="Where to write the template"),
    force: bool = typer.Option(False, "--force", "-f", help="Overwrite an existing file"),
):
    """Write a configuration template with the PBMC 3k tutorial values."""
    if path.exists() and not force:
        error_console.print(
            f"[red]❌ {path} already exists.[/red] [dim]Use --force to overwrite.[/dim]"
        )
        raise typer.Exit(EXIT_FAILED)

    pbmc3k_template().save(path)
    console.print(f"[green]✓ Wrote configuration template to[/green] {path}")
    console.print(
        "[dim]Review the annotation labels after inspecting markers.csv; "
        "set \"annotation\": null to skip annotation.[/dim]"
    )


@app.command("validate-config")
def validate_config(
    config_path: Path = typer.Argument(..., help="Pipeline configuration (JSON)"),
):
    """Check a configuration file and print the stages it would run."""
    config = _load_config(config_path)

    table = Table(title=f"Stage plan for '{config.name}'")
    table.add_column("#", justify="right", style="dim")
    table.add_column("Stage", style="cyan")
    table.add_column("Parameters")

    sections = {
        "load": config.loader,
        "qc_filter": config.qc,
        "normalize": config.normalization,
        "variable_features": config.variable_features,
        "scale": config.scaling,
        "pca": config.pca,
        "neighbors": config.neighbors,
        "cluster": config.clustering,
        "umap": config.umap,
        "markers": config.markers,
        "annotate": config.annotation,
    }
    for index, name in enumerate(config.stage_plan(), start=1):
        params = sections[name].model_dump(mode="json")
        if name == "annotate":
            labels = params["labels"]
            params = {"labels": len(labels)}
        table.add_row(
            str(index), name, ", ".join(f"{k}={v}" for k, v in params.items())
        )

    console.print(table)
    if config.annotation is None:
        console.print("[dim]Annotation disabled (annotation: null)[/dim]")
    console.print(f"[green]✓ {config_path} is valid[/green]")


if __name__ == "__main__":
    app()
