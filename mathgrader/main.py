"""
Math Grader CLI Application.

Provides a command-line interface for grading photographed math homework,
running folders of worksheets as a batch, and inspecting the classifier,
comparator and token pricing.
"""

import asyncio
import base64
import logging
from pathlib import Path
from typing import Annotated, Optional

import typer
from pydantic import ValidationError
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.progress import BarColumn, Progress, SpinnerColumn, TaskProgressColumn, TextColumn
from rich.table import Table

from mathgrader.config import Settings, get_settings
from mathgrader.grading import GradingOrchestrator, classify_with_reason, compare_answers
from mathgrader.ledger import calculate_grading_cost
from mathgrader.models import AnswerKey, GradingOptions, GradingRequest, GradingResult, ImageInput
from mathgrader.service import GradingService, InMemorySubmissionStore

# Create Typer app
app = typer.Typer(
    name="mathgrader",
    help="Grade photographed math homework with OCR, a vision model and symbolic verification",
    add_completion=False,
)

console = Console()

MIME_TYPES = {
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".png": "image/png",
    ".webp": "image/webp",
    ".gif": "image/gif",
}

DOTS = {1: "[red]●○○[/red]", 2: "[yellow]●●○[/yellow]", 3: "[green]●●●[/green]"}


def configure_logging(level: str) -> None:
    """Route library logging through Rich on stderr."""
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), rich_tracebacks=True, show_path=False)],
        force=True,
    )
    for noisy in ("httpx", "httpcore", "openai"):
        logging.getLogger(noisy).setLevel(logging.WARNING)


@app.callback()
def main(
    log_level: Annotated[
        Optional[str],
        typer.Option("--log-level", "-l", help="Logging level (defaults to LOG_LEVEL setting)"),
    ] = None,
) -> None:
    configure_logging((log_level or get_settings().log_level).upper())


def _load_image(path: Path) -> ImageInput:
    mime_type = MIME_TYPES.get(path.suffix.lower())
    if mime_type is None:
        raise typer.BadParameter(f"Unsupported image type: {path.suffix}")
    return ImageInput(data=base64.b64encode(path.read_bytes()).decode("ascii"), mime_type=mime_type)


def _load_answer_key(path: Optional[Path]) -> Optional[AnswerKey]:
    if path is None:
        return None
    if not path.exists():
        console.print(f"[red]Error:[/red] Answer key not found: {path}")
        raise typer.Exit(1)
    return AnswerKey.model_validate_json(path.read_text(encoding="utf-8"))


@app.command()
def grade(
    image_file: Annotated[Path, typer.Argument(help="Path to the worksheet image")],
    answer_key: Annotated[
        Optional[Path],
        typer.Option("--answer-key", "-k", help="JSON answer key file"),
    ] = None,
    feedback: Annotated[
        bool,
        typer.Option("--feedback", help="Generate per-question feedback"),
    ] = False,
    as_json: Annotated[
        bool,
        typer.Option("--json", help="Print the full result as JSON"),
    ] = False,
    verbose: Annotated[
        bool,
        typer.Option("--verbose", "-v", help="Show verification and confidence detail"),
    ] = False,
) -> None:
    """
    Grade one worksheet image.

    OCR and symbolic verification are used when configured; otherwise the
    vision model reads and solves the page alone.
    """
    try:
        settings = get_settings()

        if not image_file.exists():
            console.print(f"[red]Error:[/red] Image file not found: {image_file}")
            raise typer.Exit(1)

        request = GradingRequest(
            submission_id=image_file.stem,
            image=_load_image(image_file),
            answer_key=_load_answer_key(answer_key),
            options=GradingOptions(generate_feedback=feedback),
        )

        with Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            console=console,
            transient=True,
        ) as progress:
            progress.add_task("Grading... (this may take a moment)", total=None)
            result = asyncio.run(_grade_one(settings, request))

        if as_json:
            console.print_json(result.model_dump_json())
        else:
            _display_results(result, verbose)

        if not result.success:
            raise typer.Exit(1)

    except ValidationError as e:
        console.print(f"[red]Input Error:[/red] {e}")
        raise typer.Exit(1)


async def _grade_one(settings: Settings, request: GradingRequest) -> GradingResult:
    orchestrator = GradingOrchestrator(settings)
    try:
        return await orchestrator.grade(request)
    finally:
        await orchestrator.manager.aclose()


@app.command()
def batch(
    directory: Annotated[Path, typer.Argument(help="Folder of worksheet images")],
    answer_key: Annotated[
        Optional[Path],
        typer.Option("--answer-key", "-k", help="JSON answer key applied to every worksheet"),
    ] = None,
    feedback: Annotated[
        bool,
        typer.Option("--feedback", help="Generate per-question feedback"),
    ] = False,
) -> None:
    """
    Grade every image in a folder, one at a time.

    Failed worksheets are retried once; the summary lists what needs review.
    """
    try:
        settings = get_settings()

        if not directory.is_dir():
            console.print(f"[red]Error:[/red] Not a directory: {directory}")
            raise typer.Exit(1)

        images = sorted(p for p in directory.iterdir() if p.suffix.lower() in MIME_TYPES)
        if not images:
            console.print(f"[yellow]No images found in {directory}[/yellow]")
            raise typer.Exit(1)

        key = _load_answer_key(answer_key)
        store = InMemorySubmissionStore()
        for path in images:
            store.add(
                GradingRequest(
                    submission_id=path.stem,
                    image=_load_image(path),
                    answer_key=key,
                    options=GradingOptions(generate_feedback=feedback),
                )
            )

        service = asyncio.run(_run_batch(settings, store, [p.stem for p in images], feedback))
        _display_batch(service)

    except ValidationError as e:
        console.print(f"[red]Input Error:[/red] {e}")
        raise typer.Exit(1)


async def _run_batch(
    settings: Settings, store: InMemorySubmissionStore, ids: list[str], feedback: bool
) -> GradingService:
    orchestrator = GradingOrchestrator(settings)
    service = GradingService(store, orchestrator, settings=settings)
    try:
        with Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            BarColumn(),
            TaskProgressColumn(),
            console=console,
        ) as progress:
            task = progress.add_task("Starting batch...", total=len(ids))
            async for snapshot in service.grade_batch(ids, include_feedback=feedback):
                eta = f" ~{snapshot.eta_seconds / 60:.0f} min left" if snapshot.eta_seconds else ""
                progress.update(
                    task,
                    completed=snapshot.completed + snapshot.failed,
                    description=f"{snapshot.last_event}{eta}",
                )
    except KeyboardInterrupt:
        service.cancel_batch()
        raise
    finally:
        await orchestrator.manager.aclose()
    return service


@app.command()
def classify(
    problem: Annotated[str, typer.Argument(help="Problem text, e.g. '2x + 3 = 11'")],
) -> None:
    """Show the difficulty a problem is routed at and why."""
    result = classify_with_reason(problem)
    console.print(f"[bold]{result.difficulty.value}[/bold]  [dim]{result.reason}[/dim]")


@app.command()
def compare(
    first: Annotated[str, typer.Argument(help="First answer")],
    second: Annotated[str, typer.Argument(help="Second answer")],
) -> None:
    """Check whether two answers are mathematically equivalent."""
    result = compare_answers(first, second, get_settings().answer_tolerance)
    if result.matched:
        console.print(f"[green]✓ Equivalent[/green] ({result.method})")
    else:
        console.print(f"[red]✗ Different[/red] ({result.normalized_a!r} vs {result.normalized_b!r})")
        raise typer.Exit(1)


@app.command()
def cost(
    submissions: Annotated[int, typer.Argument(min=0, help="Number of submissions")],
    feedback: Annotated[
        bool,
        typer.Option("--feedback", help="Include feedback generation"),
    ] = False,
) -> None:
    """Show the token cost of grading a number of submissions."""
    settings = get_settings()
    tokens = calculate_grading_cost(
        submissions,
        feedback,
        submission_cost=settings.submission_token_cost,
        feedback_cost=settings.feedback_token_cost,
        bulk_threshold=settings.bulk_discount_threshold,
        bulk_discount_rate=settings.bulk_discount_rate,
    )
    console.print(f"[bold]{tokens}[/bold] token{'s' if tokens != 1 else ''}")
    if submissions >= settings.bulk_discount_threshold:
        console.print(f"[dim]Includes {settings.bulk_discount_rate:.0%} bulk discount[/dim]")


@app.command()
def health() -> None:
    """
    Check if the grading system is operational.

    Verifies configuration and connectivity to every configured provider.
    """
    try:
        settings = get_settings()
        console.print("[bold]Math Grader Health Check[/bold]\n")

        console.print("[dim]Checking configuration...[/dim]")
        console.print(f"  Fallback order: {', '.join(p.value for p in settings.ai_fallback_order)}")
        console.print(f"  OCR: {'on' if settings.enable_ocr else 'off'}")
        console.print(f"  Symbolic verification: {'on' if settings.enable_symbolic_verification else 'off'}")
        console.print(f"  Pipeline timeout: {settings.pipeline_timeout_seconds}s")

        console.print("\n[dim]Checking provider connectivity...[/dim]")
        results = asyncio.run(_health(settings))
        if not results:
            console.print("[red]✗ No providers configured[/red]")
            raise typer.Exit(1)

        for name, ok in results.items():
            console.print(f"  {'[green]✓' if ok else '[red]✗'} {name}[/]")

        if not any(ok for ok in results.values()):
            raise typer.Exit(1)

        console.print("\n[green]All systems operational[/green]")

    except ValidationError as e:
        console.print(f"[red]Configuration Error:[/red] {e}")
        raise typer.Exit(1)


async def _health(settings: Settings) -> dict[str, bool]:
    orchestrator = GradingOrchestrator(settings)
    try:
        return await orchestrator.health_check()
    finally:
        await orchestrator.manager.aclose()


def _display_results(result: GradingResult, verbose: bool = False) -> None:
    """Display grading results in a formatted table."""
    if not result.success:
        console.print(f"[red]✗ Grading failed:[/red] {result.error}")
        return

    score_color = "green" if result.percentage >= 70 else "yellow" if result.percentage >= 50 else "red"
    name = f"{result.detected_student_name}\n" if result.detected_student_name else ""
    console.print(
        Panel(
            f"{name}[{score_color}][bold]{result.total_score:g} / {result.total_possible:g}[/bold] "
            f"({result.percentage}%)[/{score_color}]",
            title="Final Score",
        )
    )

    if result.needs_review:
        console.print(f"[yellow]⚠ Needs review:[/yellow] {result.review_reason}")

    table = Table(title="Questions")
    table.add_column("#", justify="right")
    table.add_column("Student")
    table.add_column("Answer")
    table.add_column("Points", justify="right")
    table.add_column("Confidence")
    if verbose:
        table.add_column("Difficulty")
        table.add_column("Verification")

    for q in result.questions:
        row = [
            str(q.question_number),
            q.student_answer or "[dim]-[/dim]",
            q.correct_answer,
            f"{q.points_awarded:g}/{q.points_possible:g}",
            DOTS[q.confidence_dots],
        ]
        if verbose:
            row.extend([q.difficulty.value, q.verification_details or q.verification_method.value])
        table.add_row(*row)

    console.print(table)

    for q in result.questions:
        if q.feedback:
            console.print(Panel(q.feedback, title=f"Question {q.question_number}"))

    if verbose:
        console.print(
            f"[dim]{result.provider}/{result.model}, OCR {result.ocr_provider.value}, "
            f"{result.processing_time_ms} ms, ${result.cost_breakdown.total:.4f}[/dim]"
        )


def _display_batch(service: GradingService) -> None:
    state = service.batch.state
    table = Table(title=f"Batch {state.status.value}")
    table.add_column("Submission", style="cyan")
    table.add_column("Score", justify="right")
    table.add_column("Status")

    for submission_id, result in state.results.items():
        if result.success:
            status = "[yellow]needs review[/yellow]" if result.needs_review else "[green]completed[/green]"
            table.add_row(submission_id, f"{result.percentage}%", status)
        else:
            table.add_row(submission_id, "-", f"[red]failed[/red] {result.error or ''}")

    console.print(table)
    console.print(
        f"\n[green]{len(state.completed) - len(state.needs_review)} completed[/green], "
        f"[yellow]{len(state.needs_review)} need review[/yellow], "
        f"[red]{len(state.failed)} failed[/red]"
    )


if __name__ == "__main__":
    app()
