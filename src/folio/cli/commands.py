"""CLI commands for the folio cleanup pipeline.

Commands:
- import: Import a Gutenberg .txt or .epub source
- clean: Run a deterministic cleanup job
- retry-job: Retry a failed cleanup job from its failed stage
- status: Show a book's latest job, revision and review state
- flags: List a book's flags
- resolve: Resolve one flag
- revise: Create an AI-assisted revision
- approve: Approve a revision for export
- check-layout: Report oversized inline bodies
"""

from pathlib import Path

import typer
from rich.console import Console
from rich.table import Table

from folio.config.app_config import get_blobs_dir, get_db_path, load_app_config
from folio.core.ai_cleanup import AiCleanupError, run_ai_revision
from folio.core.book_importer import (
    BookImportError,
    DuplicateBookError,
    import_source,
)
from folio.core.cleanup_job import (
    CleanupJobError,
    StageFailure,
    get_latest_job,
    retry_job as do_retry_job,
    run_cleanup,
    run_job,
)
from folio.core.review_workflow import (
    ApprovalBlockedError,
    ApprovalChecklist,
    ReviewError,
    approve as do_approve,
    get_review_data,
    list_flags,
    resolve_flag,
)
from folio.core.revision_store import (
    RevisionStoreError,
    check_layout as do_check_layout,
    get_latest_revision,
    get_revision_state,
)
from folio.core.source_normalizer import SourceNormalizationError
from folio.db.blob_store import BlobStore
from folio.db.books_repository import get_all_book_ids
from folio.db.database import init_db
from folio.db.jobs_repository import JobRecord
from folio.llm.client import LLMClient, LLMError, LLMTextCorrector
from folio.utils.validators import (
    AmbiguousBookIdError,
    parse_id,
    resolve_book_id,
)

app = typer.Typer(
    name="folio",
    help="Cleanup pipeline for public-domain book interiors.",
    no_args_is_help=True,
)

console = Console()


def _open_store() -> BlobStore:
    """Initialize the database under the data root and open the blob store."""
    init_db(get_db_path())
    return BlobStore(get_blobs_dir())


def _resolve_book_id_or_exit(book_id_prefix: str) -> str:
    """Resolve book_id prefix to full ID, or exit with helpful error."""
    try:
        return resolve_book_id(book_id_prefix, get_all_book_ids())
    except BookImportError as e:
        console.print(f"[red]✗ {e}[/red]")
        if candidates := get_all_book_ids():
            console.print("\nAvailable books:")
            for c in candidates:
                console.print(f"  - {c}")
        raise typer.Exit(code=1)
    except AmbiguousBookIdError as e:
        console.print(f"[red]✗ {e}[/red]")
        raise typer.Exit(code=1)


def _resolve_revision_or_exit(target: str) -> str:
    """Accept a revision ID, or a book prefix meaning its latest revision."""
    try:
        parts = parse_id(target)
    except ValueError as e:
        console.print(f"[red]✗ {e}[/red]")
        raise typer.Exit(code=1)
    if set(parts) == {"book_id", "revision"}:
        return target

    book_id = _resolve_book_id_or_exit(target)
    revision = get_latest_revision(book_id)
    if revision is None:
        console.print(f"[red]✗ No revisions yet for {book_id}[/red]")
        console.print(f"  Run first: folio clean {book_id}")
        raise typer.Exit(code=1)
    return revision.revision_id


def _truncate(text: str, max_len: int = 60) -> str:
    """Truncate text with ellipsis if too long."""
    text = " ".join(text.split())
    if len(text) <= max_len:
        return text
    return text[: max_len - 3] + "..."


def _print_stage(job: JobRecord) -> None:
    console.print(f"  [dim]{job.progress:>3}%[/dim] {job.stage}")


def _print_job_summary(job: JobRecord) -> None:
    console.print(f"[green]✓ Cleanup completed: {job.job_id}[/green]")
    console.print(f"  [dim]revision:[/dim] {job.revision_id}")
    console.print(f"  [dim]chapters:[/dim] {job.chapters_detected}")
    console.print(f"  [dim]flags:[/dim]    {job.flags_created}")


# =============================================================================
# IMPORT
# =============================================================================


@app.command(name="import")
def import_book(
    file: str = typer.Argument(..., help="Path to a .txt or .epub file"),
    title: str | None = typer.Option(None, "--title", "-t", help="Book title"),
    author: str | None = typer.Option(None, "--author", "-a", help="Author name"),
) -> None:
    """Import a Gutenberg text or EPUB source."""
    blob_store = _open_store()
    file_path = Path(file).expanduser().resolve()

    try:
        result = import_source(file_path, blob_store, title=title, author=author)
    except DuplicateBookError as e:
        console.print(f"[yellow]⚠ {e}[/yellow]")
        console.print(f"  [dim]existing book_id:[/dim] {e.existing_book_id}")
        raise typer.Exit(code=1)
    except (BookImportError, SourceNormalizationError, FileNotFoundError) as e:
        console.print(f"[red]✗ {e}[/red]")
        raise typer.Exit(code=1)

    console.print(f"[green]✓ Book imported: {result.book_id}[/green]")
    console.print(f"  [dim]title:[/dim]    {result.title}")
    if result.author:
        console.print(f"  [dim]author:[/dim]   {result.author}")
    console.print(f"  [dim]format:[/dim]   {result.source_format}")
    console.print(f"  [dim]language:[/dim] {result.language or 'unknown'}")
    console.print(f"  [dim]size:[/dim]     {result.size_bytes:,} bytes")


# =============================================================================
# CLEANUP JOBS
# =============================================================================


@app.command()
def clean(
    book_id: str = typer.Argument(..., help="Book ID or unique prefix"),
) -> None:
    """Run a deterministic cleanup job over a book."""
    blob_store = _open_store()
    resolved_id = _resolve_book_id_or_exit(book_id)

    console.print(f"[blue]Cleaning {resolved_id}...[/blue]")
    try:
        job = run_cleanup(resolved_id, blob_store, on_stage=_print_stage)
    except StageFailure as e:
        console.print(f"[red]✗ {e}[/red]")
        console.print(f"  Retry with: folio retry-job {e.job_id}")
        raise typer.Exit(code=1)
    except (CleanupJobError, RevisionStoreError) as e:
        console.print(f"[red]✗ {e}[/red]")
        raise typer.Exit(code=1)

    _print_job_summary(job)


@app.command(name="retry-job")
def retry_job(
    job_id: str = typer.Argument(..., help="ID of a failed cleanup job"),
) -> None:
    """Retry a failed cleanup job from its failed stage."""
    blob_store = _open_store()

    try:
        new_job_id = do_retry_job(job_id)
        console.print(f"[blue]Retrying as {new_job_id}...[/blue]")
        job = run_job(new_job_id, blob_store, on_stage=_print_stage)
    except (CleanupJobError, RevisionStoreError) as e:
        console.print(f"[red]✗ {e}[/red]")
        raise typer.Exit(code=1)

    _print_job_summary(job)


# =============================================================================
# REVIEW
# =============================================================================


@app.command()
def status(
    book_id: str = typer.Argument(..., help="Book ID or unique prefix"),
) -> None:
    """Show the latest job, revision and review state of a book."""
    _open_store()
    resolved_id = _resolve_book_id_or_exit(book_id)
    data = get_review_data(resolved_id)

    console.print(f"[bold]{data.book.title}[/bold] [dim]({resolved_id})[/dim]")

    job = get_latest_job(resolved_id)
    if job is None:
        console.print("  [dim]job:[/dim]      none")
    else:
        color = {"completed": "green", "failed": "red"}.get(job.status, "yellow")
        console.print(
            f"  [dim]job:[/dim]      {job.job_id} [{color}]{job.status}[/{color}] "
            f"({job.stage}, {job.progress}%)"
        )
        if job.error:
            console.print(f"  [dim]error:[/dim]    {job.error}")

    if data.revision is None:
        console.print("  [dim]revision:[/dim] none")
        return

    console.print(
        f"  [dim]revision:[/dim] {data.revision.revision_id} "
        f"({data.revision.provenance}, {get_revision_state(data.revision.revision_id)})"
    )
    console.print(f"  [dim]chapters:[/dim] {len(data.chapters)}")
    console.print(f"  [dim]unresolved:[/dim] {len(data.unresolved_flags)}")
    for flag_type, count in data.unresolved_by_type.items():
        console.print(f"    - {flag_type}: {count}")
    if data.active_approval:
        console.print(
            f"  [green]✓ approved by {data.active_approval.approved_by} "
            f"at {data.active_approval.approved_at}[/green]"
        )
    elif data.can_approve:
        console.print("  [green]ready for approval[/green]")


@app.command()
def flags(
    target: str = typer.Argument(..., help="Revision ID, or book ID for its latest revision"),
    show_all: bool = typer.Option(False, "--all", help="Include resolved flags"),
) -> None:
    """List the flags of a book's latest revision."""
    _open_store()
    revision_id = _resolve_revision_or_exit(target)
    records = list_flags(revision_id=revision_id, status=None if show_all else "unresolved")

    if not records:
        console.print(f"[green]✓ No {'' if show_all else 'unresolved '}flags on {revision_id}[/green]")
        return

    table = Table(show_header=True, header_style="bold")
    table.add_column("Flag", style="cyan")
    table.add_column("Type")
    table.add_column("Status", justify="center")
    table.add_column("Span", justify="right")
    table.add_column("Context", width=60)

    for record in records:
        table.add_row(
            record.flag_id,
            record.flag_type,
            record.status,
            f"{record.start_offset}-{record.end_offset}",
            _truncate(record.context_text),
        )

    console.print(table)


@app.command()
def resolve(
    flag_id: str = typer.Argument(..., help="Flag ID"),
    resolution: str = typer.Argument(..., help="confirmed, rejected or overridden"),
    actor: str = typer.Option(..., "--actor", help="Reviewer name"),
    note: str | None = typer.Option(None, "--note", help="Reviewer note"),
    boundary_offset: int | None = typer.Option(
        None, "--boundary-offset", help="Where an overridden boundary splits"
    ),
    title: str | None = typer.Option(None, "--title", help="Title of the new chapter"),
    section_type: str = typer.Option("chapter", "--section-type", help="Section type of the new chapter"),
) -> None:
    """Resolve one flag."""
    blob_store = _open_store()

    try:
        outcome = resolve_flag(
            flag_id,
            resolution,
            actor,
            note,
            boundary_offset=boundary_offset,
            title=title,
            section_type=section_type,
            blob_store=blob_store,
        )
    except (ReviewError, RevisionStoreError) as e:
        console.print(f"[red]✗ {e}[/red]")
        raise typer.Exit(code=1)

    console.print(f"[green]✓ {flag_id} {outcome.status}[/green]")
    if outcome.new_chapter_number is not None:
        console.print(f"  [dim]new chapter:[/dim] {outcome.new_chapter_number}")


@app.command()
def revise(
    target: str = typer.Argument(..., help="Revision ID, or book ID for its latest revision"),
    provider: str | None = typer.Option(None, "--provider", "-p", help="LLM provider"),
    model: str | None = typer.Option(None, "--model", "-m", help="LLM model"),
    actor: str = typer.Option("ai", "--actor", help="Recorded creator of the revision"),
) -> None:
    """Create an AI-assisted revision from a deterministic one."""
    blob_store = _open_store()
    revision_id = _resolve_revision_or_exit(target)

    corrector = LLMTextCorrector(LLMClient(provider=provider, model=model))
    console.print(f"[blue]Revising {revision_id} with {corrector.client.config.provider}...[/blue]")

    try:
        new_revision_id = run_ai_revision(
            revision_id, corrector, blob_store=blob_store, actor=actor
        )
    except (AiCleanupError, StageFailure, RevisionStoreError, LLMError) as e:
        console.print(f"[red]✗ {e}[/red]")
        raise typer.Exit(code=1)

    console.print(f"[green]✓ AI revision created: {new_revision_id}[/green]")


@app.command()
def approve(
    target: str = typer.Argument(..., help="Revision ID, or book ID for its latest revision"),
    actor: str = typer.Option(..., "--actor", help="Approver name"),
    boilerplate_removed: bool = typer.Option(False, "--boilerplate-removed"),
    boundaries_verified: bool = typer.Option(False, "--boundaries-verified"),
    punctuation_reviewed: bool = typer.Option(False, "--punctuation-reviewed"),
    archaic_preserved: bool = typer.Option(False, "--archaic-preserved"),
) -> None:
    """Approve a revision once every flag is resolved and the checklist is complete."""
    _open_store()
    revision_id = _resolve_revision_or_exit(target)
    checklist = ApprovalChecklist(
        boilerplate_removed=boilerplate_removed,
        boundaries_verified=boundaries_verified,
        punctuation_reviewed=punctuation_reviewed,
        archaic_preserved=archaic_preserved,
    )

    try:
        approval_id = do_approve(revision_id, checklist, actor)
    except ApprovalBlockedError as e:
        console.print(f"[red]✗ Approval blocked for {revision_id}[/red]")
        for reason in e.reasons:
            console.print(f"  - {reason}")
        raise typer.Exit(code=1)
    except (ReviewError, RevisionStoreError) as e:
        console.print(f"[red]✗ {e}[/red]")
        raise typer.Exit(code=1)

    console.print(f"[green]✓ Approved: {approval_id}[/green]")


@app.command(name="check-layout")
def check_layout() -> None:
    """Report records whose inline body exceeds the storage threshold."""
    _open_store()
    threshold = load_app_config().storage.inline_threshold_bytes

    rows = do_check_layout(threshold)

    if not rows:
        console.print(f"[green]✓ No inline bodies above {threshold:,} bytes[/green]")
        return

    console.print(f"[yellow]⚠ {len(rows)} inline bod(ies) above {threshold:,} bytes[/yellow]")
    for table, record_id in rows:
        console.print(f"  - {table}: {record_id}")
    raise typer.Exit(code=1)
