#!/usr/bin/env python3
"""
PDSR: Perception-Driven Semantic Restoration
Main CLI entry point for the document image restorer.
"""

import asyncio
import importlib.metadata
import importlib.util
import json
import mimetypes
from pathlib import Path

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from config import (
    validate_config, OUTPUT_DIR, LOGIC_MODEL, VISION_MODEL,
    MAX_REFINEMENT_PASSES, SIMILARITY_THRESHOLD,
)
from pdsr.atlas import AtlasBuilder
from pdsr.models import (
    AspectRatio,
    ColorStyle,
    PDSRConfig,
    PhysicsConfig,
    Resolution,
    RestorationConfig,
    SemanticAtlas,
)
from pdsr.orchestrator import PipelineOrchestrator, PipelineResult, PipelineState
from pdsr.transform import ErrorKind, GeminiTransform, TransformError
from pdsr.usage import get_tracker, reset_tracker

app = typer.Typer(
    name="pdsr",
    help="Restore degraded document images with a perceive-then-restore feedback loop.",
    add_completion=False,
)
console = Console()


def _require_valid_config():
    config_status = validate_config()
    if not config_status["valid"]:
        console.print("[bold red]Configuration Error:[/]")
        for issue in config_status["issues"]:
            console.print(f"  • {issue}")
        console.print("\n[dim]Please check your .env file.[/]")
        raise typer.Exit(1)
    return config_status


def _load_cached_atlas(path: Path) -> SemanticAtlas:
    try:
        with open(path, encoding="utf-8") as f:
            return SemanticAtlas.from_dict(json.load(f))
    except (OSError, ValueError) as e:
        console.print(f"[bold red]Cannot use cached atlas {path}:[/] {e}")
        raise typer.Exit(1)


def _guess_mime_type(path: Path) -> str:
    mime_type, _ = mimetypes.guess_type(path.name)
    return mime_type if mime_type and mime_type.startswith("image/") else "image/png"


def _describe_error(error: Exception) -> str:
    """User-facing explanation of a failed run."""
    if isinstance(error, TransformError):
        if error.kind == ErrorKind.INVALID_AUTH:
            return "The API key was rejected. Check GOOGLE_API_KEY in your .env file."
        if error.is_transient:
            return f"The model service is busy or unavailable ({error.kind.value}). Retry later."
        return f"The restoration model could not produce an image: {error.message}"
    return str(error)


def _print_report(result: PipelineResult):
    if result.report is None or not result.report.results:
        return

    table = Table(title="Critical Regions", show_lines=False)
    table.add_column("Region", style="cyan")
    table.add_column("Status")
    table.add_column("Similarity", justify="right")
    table.add_column("Passes", justify="right")
    table.add_column("Reason", style="dim", overflow="fold")

    for r in result.report.results:
        status = "[green]PASS[/]" if r.passed else "[red]FAIL[/]"
        similarity = f"{r.similarity:.2f}" if r.similarity is not None else "-"
        passes = str(result.refinement_attempts.get(r.region_id, 0))
        table.add_row(r.region_id, status, similarity, passes, r.reason)

    console.print(table)


def _print_usage():
    stages = get_tracker().get_stage_summary()
    if not stages:
        return

    table = Table(title="Transform Usage")
    table.add_column("Stage", style="cyan")
    table.add_column("Calls", justify="right")
    table.add_column("Retries", justify="right")
    table.add_column("Failed", justify="right")
    table.add_column("Tokens", justify="right")
    table.add_column("Cost", justify="right")

    for name, stage in stages.items():
        failed = ", ".join(f"{kind} x{count}" for kind, count in stage["failures_by_kind"].items()) or "0"
        table.add_row(
            name,
            str(stage["calls"]),
            str(stage["retries"]),
            failed,
            f"{stage['input_tokens'] + stage['output_tokens']:,}",
            f"${stage['cost']:.4f}",
        )

    console.print(table)


def _save_outputs(result: PipelineResult, out_dir: Path):
    out_dir.mkdir(parents=True, exist_ok=True)

    if result.result is not None:
        (out_dir / "restored.png").write_bytes(result.result)
    if result.atlas is not None:
        with open(out_dir / "atlas.json", "w", encoding="utf-8") as f:
            json.dump(result.atlas.to_dict(), f, indent=2)
    if result.report is not None:
        with open(out_dir / "report.json", "w", encoding="utf-8") as f:
            json.dump({**result.report.to_dict(), "caveats": result.caveats}, f, indent=2)

    if result.audit is not None:
        with open(out_dir / "audit.json", "w", encoding="utf-8") as f:
            json.dump(result.audit.to_dict(), f, indent=2)

    (out_dir / "run.log").write_text("\n".join(result.log) + "\n", encoding="utf-8")
    with open(out_dir / "usage.json", "w", encoding="utf-8") as f:
        json.dump(get_tracker().to_dict(), f, indent=2)


@app.command()
def restore(
    image_path: Path = typer.Argument(
        ...,
        help="Path to the image to restore",
        exists=True,
        file_okay=True,
        dir_okay=False,
        readable=True,
    ),
    resolution: Resolution = typer.Option(
        Resolution.UHD_4K,
        "--resolution", "-r",
        help="Output resolution",
    ),
    aspect_ratio: AspectRatio = typer.Option(
        AspectRatio.ORIGINAL,
        "--aspect", "-a",
        help="Output aspect ratio",
    ),
    color_style: ColorStyle = typer.Option(
        ColorStyle.TRUE_TONE,
        "--color", "-c",
        help="Color grading style",
    ),
    prompt: str = typer.Option(
        "",
        "--prompt",
        help="Extra instruction passed to the restoration model",
    ),
    atlas_path: Path = typer.Option(
        None,
        "--atlas",
        help="Reuse a previously saved atlas.json instead of running perception",
        exists=True,
        dir_okay=False,
    ),
    max_passes: int = typer.Option(
        MAX_REFINEMENT_PASSES,
        "--max-passes", "-m",
        help="Maximum refinement passes per region",
        min=0,
        max=10,
    ),
    text_priors: bool = typer.Option(True, "--text-priors/--no-text-priors", help="Inject OCR text priors"),
    texture_transfer: bool = typer.Option(True, "--texture/--no-texture", help="Transfer paper grain"),
    semantic_repair: bool = typer.Option(True, "--repair/--no-repair", help="Inpaint stains and damage"),
    audit: bool = typer.Option(False, "--audit/--no-audit", help="Verify figures and detect watermarks before restoring"),
    dewarp: bool = typer.Option(False, "--dewarp", help="Perspective-correct before perception"),
    intrinsic: bool = typer.Option(False, "--intrinsic", help="Remove shadows before perception"),
    output_dir: Path = typer.Option(
        None,
        "--output", "-o",
        help="Output directory (default: ./output/<image_name>)",
    ),
    verbose: bool = typer.Option(
        True,
        "--verbose/--quiet", "-v/-q",
        help="Show detailed progress",
    ),
):
    """
    Restore a degraded document image.

    Builds a Semantic Atlas, renders one restoration, validates critical
    regions against the Atlas and surgically refines the ones that fail.
    """
    _require_valid_config()

    config = RestorationConfig(
        resolution=resolution,
        aspect_ratio=aspect_ratio,
        color_style=color_style,
        custom_prompt=prompt,
        pdsr=PDSRConfig(
            enable_text_priors=text_priors,
            enable_texture_transfer=texture_transfer,
            enable_semantic_repair=semantic_repair,
            enable_audit=audit,
        ),
        physics=PhysicsConfig(enable_dewarping=dewarp, enable_intrinsic=intrinsic),
    )

    cached_atlas = _load_cached_atlas(atlas_path) if atlas_path is not None else None

    console.print(Panel.fit(
        f"[bold]PDSR Pipeline[/]\n"
        f"[dim]Logic model:[/] {LOGIC_MODEL}\n"
        f"[dim]Vision model:[/] {VISION_MODEL}\n"
        f"[dim]Output:[/] {resolution.value} • {aspect_ratio.value} • {color_style.value}\n"
        f"[dim]Refinement:[/] up to {max_passes} pass(es) per region, SSIM ≥ {SIMILARITY_THRESHOLD}",
        title="Configuration",
    ))

    reset_tracker()
    orchestrator = PipelineOrchestrator(
        transform=GeminiTransform(),
        max_refinement_passes=max_passes,
        verbose=verbose,
    )
    out_dir = output_dir or OUTPUT_DIR / image_path.stem

    try:
        result = asyncio.run(orchestrator.run(
            image_path.read_bytes(),
            config,
            mime_type=_guess_mime_type(image_path),
            atlas=cached_atlas,
        ))
    except KeyboardInterrupt:
        console.print("\n[yellow]Interrupted by user[/]")
        raise typer.Exit(130)
    except Exception as e:
        console.print(f"\n[bold red]Error:[/] {e}")
        if verbose:
            console.print_exception()
        raise typer.Exit(1)

    _save_outputs(result, out_dir)
    _print_report(result)
    if verbose:
        _print_usage()

    usage = get_tracker().to_dict()
    usage_line = (
        f"{usage['total_calls']} calls • {usage['total_retries']} retries • "
        f"{usage['total_tokens']:,} tokens • ${usage['total_cost_usd']:.4f}"
    )

    if result.status == PipelineState.COMPLETE and not result.caveats:
        console.print(Panel.fit(
            f"[bold green]✓ Restoration complete[/]\n\n[dim]Usage:[/] {usage_line}",
            title="[bold green]Success[/]",
            border_style="green",
        ))
    elif result.status == PipelineState.COMPLETE:
        console.print(Panel.fit(
            "[yellow]⚠ Restoration delivered with caveats[/]\n\n"
            + "\n".join(f"• {c}" for c in result.caveats)
            + f"\n\n[dim]Usage:[/] {usage_line}",
            title="[bold yellow]Partial Success[/]",
            border_style="yellow",
        ))
    elif result.status == PipelineState.CANCELLED:
        console.print("[yellow]Run cancelled.[/]")
        raise typer.Exit(130)
    else:
        console.print(Panel.fit(
            f"[bold red]✗ Restoration failed[/]\n\n{_describe_error(result.error)}",
            title="[bold red]Failed[/]",
            border_style="red",
        ))
        console.print(f"\n[dim]Run log saved to:[/] {out_dir / 'run.log'}")
        raise typer.Exit(1)

    console.print(f"\n[dim]Output saved to:[/] {out_dir}")
    files = "restored.png, atlas.json, report.json, run.log, usage.json" + (", audit.json" if audit else "")
    console.print(f"[dim]Files:[/] {files}")


@app.command()
def atlas(
    image_path: Path = typer.Argument(
        ...,
        help="Path to the image to analyze",
        exists=True,
        file_okay=True,
        dir_okay=False,
        readable=True,
    ),
    output: Path = typer.Option(
        None,
        "--output", "-o",
        help="Write the atlas JSON to this file",
    ),
):
    """
    Build and print the Semantic Atlas of an image (perception only).
    """
    _require_valid_config()

    builder = AtlasBuilder(GeminiTransform())
    outcome = asyncio.run(builder.build_atlas(image_path.read_bytes(), _guess_mime_type(image_path)))
    semantic_atlas: SemanticAtlas = outcome.data

    physics = semantic_atlas.global_physics
    console.print(Panel.fit(
        f"[dim]Paper white point:[/] {physics.paper_white_point}\n"
        f"[dim]Noise:[/] {physics.noise_profile.value}\n"
        f"[dim]Blur:[/] {physics.blur_kernel.value}\n"
        f"[dim]Lighting:[/] {physics.lighting_condition.value}\n"
        f"[dim]Degradation:[/] {semantic_atlas.degradation_score:.0f}/100",
        title="Global Physics",
        border_style="yellow" if outcome.degraded else "cyan",
    ))

    if semantic_atlas.regions:
        table = Table(title=f"Regions ({len(semantic_atlas.regions)})")
        table.add_column("ID", style="cyan")
        table.add_column("Type")
        table.add_column("Strategy", style="dim")
        table.add_column("Confidence", justify="right")
        table.add_column("Content", overflow="fold")
        for region in semantic_atlas.regions:
            table.add_row(
                region.id,
                region.semantic_type.value,
                region.restoration_strategy.value,
                f"{region.confidence:.2f}",
                region.content,
            )
        console.print(table)
    else:
        console.print("[yellow]⚠ No regions detected[/]")

    if output is not None:
        output.parent.mkdir(parents=True, exist_ok=True)
        with open(output, "w", encoding="utf-8") as f:
            json.dump(semantic_atlas.to_dict(), f, indent=2)
        console.print(f"\n[dim]Atlas saved to:[/] {output}")


# (distribution name, import name, what the pipeline uses it for)
DEPENDENCIES = [
    ("google-generativeai", "google.generativeai", "transform backend"),
    ("google-api-core", "google.api_core", "error classification"),
    ("Pillow", "PIL", "decode, crop, composite"),
    ("numpy", "numpy", "similarity"),
    ("opencv-python-headless", "cv2", "similarity"),
    ("python-dotenv", "dotenv", "configuration"),
]


def _importable(import_name: str) -> bool:
    try:
        return importlib.util.find_spec(import_name) is not None
    except ModuleNotFoundError:
        return False


@app.command()
def check():
    """
    Check configuration and the libraries each pipeline stage needs.
    """
    config_status = validate_config()

    table = Table(title="Configuration", show_header=False)
    table.add_column("Setting", style="dim")
    table.add_column("Value")
    for key, value in config_status["config"].items():
        table.add_row(key, str(value))
    console.print(table)

    for issue in config_status["issues"]:
        console.print(f"[red]✗[/] {issue}")

    missing = []
    deps = Table(title="Dependencies")
    deps.add_column("Package", style="cyan")
    deps.add_column("Version")
    deps.add_column("Used for", style="dim")
    for name, import_name, purpose in DEPENDENCIES:
        if not _importable(import_name):
            missing.append(name)
            deps.add_row(name, "[red]not installed[/]", purpose)
            continue
        try:
            installed = importlib.metadata.version(name)
        except importlib.metadata.PackageNotFoundError:
            installed = "unknown"
        deps.add_row(name, f"[green]{installed}[/]", purpose)
    console.print(deps)

    if missing or not config_status["valid"]:
        console.print("\n[yellow]Some issues need attention.[/]")
        raise typer.Exit(1)
    console.print("\n[bold green]Ready to restore images.[/]")


@app.command()
def version():
    """Show version information."""
    console.print("[bold]PDSR[/] - Perception-Driven Semantic Restoration")
    console.print("[dim]Version 0.1.0[/]")


if __name__ == "__main__":
    app()
