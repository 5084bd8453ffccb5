"""Staged, resumable cleanup jobs.

A job walks a book's source through the deterministic cleanup stages one
at a time:

    queued -> loading_original -> boilerplate_removal -> paragraph_unwrap
           -> chapter_detection -> punctuation_normalization -> completed

The job row's ``stage`` is the last stage whose output is persisted. Each
stage's CleanupState is written to the blob store and recorded in
job_stage_outputs in the transaction that moves the row, so a crashed job
resumes from its last persisted stage and a failed job can be retried from
its failed stage's input. Moving the row is a compare-and-set on the stage
the run started from; a run that lost the race changes nothing.

At most one job per book is active. Ownership is an ``active_jobs`` row
taken when the job is queued and released when it completes or fails.
"""

from __future__ import annotations

import json
import sqlite3
import uuid
from typing import Callable

import structlog

from folio.config.app_config import load_app_config
from folio.config.cleanup_config import CleanupConfig
from folio.core.book_importer import require_book
from folio.core.revision_store import (
    RevisionInvariantViolation,
    capture_original,
    create_revision,
    get_original_text,
    validate_chapters,
    validate_flag_spans,
)
from folio.core.text_cleanup import CleanupState, run_stage
from folio.db import jobs_repository as jobs_repo
from folio.db.blob_store import BlobStore
from folio.db.database import begin_immediate, get_db, utc_now
from folio.db.jobs_repository import JobRecord
from folio.utils.validators import child_id

logger = structlog.get_logger(__name__)

STAGES = (
    "queued",
    "loading_original",
    "boilerplate_removal",
    "paragraph_unwrap",
    "chapter_detection",
    "punctuation_normalization",
    "completed",
)

STAGE_PROGRESS = {
    "queued": 0,
    "loading_original": 10,
    "boilerplate_removal": 30,
    "paragraph_unwrap": 50,
    "chapter_detection": 70,
    "punctuation_normalization": 90,
    "completed": 100,
}

# Stages whose output is a CleanupState blob
OUTPUT_STAGES = STAGES[1:-1]

StageCallback = Callable[[JobRecord], None]


class CleanupJobError(Exception):
    """Base exception for cleanup job errors."""

    pass


class StageFailure(CleanupJobError):
    """Raised when a stage fails; the job has been moved to failed."""

    def __init__(self, stage: str, detail: str, job_id: str | None = None):
        self.stage = stage
        self.detail = detail
        self.job_id = job_id
        owner = f" of job {job_id}" if job_id else ""
        super().__init__(f"Stage '{stage}'{owner} failed: {detail}")


class ActiveJobConflictError(CleanupJobError):
    """Raised when a book already has a queued or running job."""

    def __init__(self, book_id: str, active_job_id: str | None):
        self.book_id = book_id
        self.active_job_id = active_job_id
        super().__init__(
            f"Book '{book_id}' already has an active cleanup job ({active_job_id})"
        )


class JobNotFoundError(CleanupJobError):
    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(f"Cleanup job not found: {job_id}")


class JobStateError(CleanupJobError):
    """Raised when an operation does not fit the job's current state."""

    def __init__(self, job_id: str, detail: str):
        self.job_id = job_id
        self.detail = detail
        super().__init__(f"Job {job_id}: {detail}")


class StageConflictError(JobStateError):
    """Raised when another run moved the job past the stage being advanced.

    The job is left as the other run put it.
    """

    def __init__(self, job_id: str, expected_stage: str):
        self.expected_stage = expected_stage
        super().__init__(job_id, f"job is no longer at stage '{expected_stage}'")


class EmptySourceError(CleanupJobError):
    """Raised when the captured original has no text to clean."""

    def __init__(self, original_id: str):
        self.original_id = original_id
        super().__init__(f"Original {original_id} is empty")


# =============================================================================
# LIFECYCLE
# =============================================================================


def start_cleanup(book_id: str, config: CleanupConfig | None = None) -> str:
    """Queue a cleanup job and take the book's active-job token.

    Args:
        book_id: Book to clean
        config: Engine configuration (defaults to the app config for the
            book's language)

    Returns:
        job_id

    Raises:
        BookNotFoundError: If the book does not exist
        ActiveJobConflictError: If the book already has an active job
    """
    book = require_book(book_id)
    if config is None:
        config = load_app_config().cleanup_config(locale=book.language)

    job_id = child_id(book_id, "job", uuid.uuid4().hex[:8])
    try:
        with get_db() as conn:
            jobs_repo.insert_job(
                job_id=job_id,
                book_id=book_id,
                config_json=json.dumps(config.to_dict(), sort_keys=True),
                conn=conn,
            )
            jobs_repo.acquire_active_job(book_id, job_id, conn=conn)
    except sqlite3.IntegrityError as e:
        raise ActiveJobConflictError(book_id, jobs_repo.get_active_job_id(book_id)) from e

    logger.info("cleanup_job.queued", job_id=job_id, book_id=book_id)
    return job_id


def advance_job(job_id: str, blob_store: BlobStore) -> JobRecord:
    """Run exactly the next stage of a job.

    Stage transitions are compare-and-set on the stage read at the start,
    so of two concurrent advances only one moves the job.

    Returns:
        The updated JobRecord

    Raises:
        JobNotFoundError: If the job does not exist
        JobStateError: If the job is already completed or failed
        StageConflictError: If another run advanced the job first (the job
            is left untouched)
        StageFailure: If the stage failed (the job is now failed)
        RevisionInvariantViolation: If the final revision is invalid
            (the job is now failed)
    """
    job = get_job(job_id)
    if job.is_terminal:
        raise JobStateError(job_id, f"cannot advance a {job.status} job")

    stage = STAGES[STAGES.index(job.stage) + 1]
    if job.status == "queued":
        jobs_repo.update_job(
            job_id, expected_stage=job.stage, status="running", started_at=utc_now()
        )

    logger.info("cleanup_job.stage_started", job_id=job_id, book_id=job.book_id, stage=stage)

    try:
        _run_stage(job, stage, blob_store)
    except StageConflictError:
        logger.warning(
            "cleanup_job.stage_conflict", job_id=job_id, book_id=job.book_id, stage=stage
        )
        raise
    except RevisionInvariantViolation as e:
        _fail_job(job, stage, e)
        raise
    except Exception as e:
        _fail_job(job, stage, e)
        raise StageFailure(stage, _describe(e), job_id) from e

    updated = get_job(job_id)
    logger.info(
        "cleanup_job.stage_completed",
        job_id=job_id,
        stage=stage,
        progress=updated.progress,
        flags=updated.flags_created,
    )
    return updated


def run_job(
    job_id: str, blob_store: BlobStore, on_stage: StageCallback | None = None
) -> JobRecord:
    """Advance a job until it completes or fails.

    Args:
        job_id: Job to run
        blob_store: Blob store for stage outputs and bodies
        on_stage: Called with the job record after every stage

    Returns:
        The completed JobRecord
    """
    job = get_job(job_id)
    while not job.is_terminal:
        job = advance_job(job_id, blob_store)
        if on_stage is not None:
            on_stage(job)
    return job


def run_cleanup(
    book_id: str,
    blob_store: BlobStore,
    config: CleanupConfig | None = None,
    on_stage: StageCallback | None = None,
) -> JobRecord:
    """Queue a job for a book and run it to the end."""
    job_id = start_cleanup(book_id, config)
    return run_job(job_id, blob_store, on_stage=on_stage)


def resume_job(
    job_id: str, blob_store: BlobStore, on_stage: StageCallback | None = None
) -> JobRecord:
    """Continue an interrupted job from its last persisted stage.

    Raises:
        JobStateError: If the job is already completed or failed
    """
    job = get_job(job_id)
    if job.is_terminal:
        raise JobStateError(job_id, f"cannot resume a {job.status} job")

    logger.info("cleanup_job.resumed", job_id=job_id, stage=job.stage)
    return run_job(job_id, blob_store, on_stage=on_stage)


def retry_job(failed_job_id: str) -> str:
    """Queue a new job that continues where a failed job stopped.

    The failed job stays failed. Stage outputs persisted before the failed
    stage are carried over, so the retry starts from the failed stage's
    input with the same configuration.

    Returns:
        The new job_id

    Raises:
        JobStateError: If the job is not failed
        ActiveJobConflictError: If the book has another active job
    """
    failed = get_job(failed_job_id)
    if failed.status != "failed":
        raise JobStateError(failed_job_id, f"only failed jobs can be retried (status {failed.status})")

    outputs = jobs_repo.get_stage_outputs(failed_job_id)
    stop = failed.failed_stage if failed.failed_stage in STAGES else "loading_original"
    carried: list[str] = []
    for stage in OUTPUT_STAGES[: max(0, STAGES.index(stop) - 1)]:
        if stage not in outputs:
            break
        carried.append(stage)
    resume_stage = carried[-1] if carried else "queued"

    job_id = child_id(failed.book_id, "job", uuid.uuid4().hex[:8])
    try:
        with get_db() as conn:
            jobs_repo.insert_job(
                job_id=job_id,
                book_id=failed.book_id,
                config_json=failed.config_json,
                original_id=failed.original_id if carried else None,
                retry_of_job_id=failed_job_id,
                conn=conn,
            )
            for stage in carried:
                jobs_repo.put_stage_output(job_id, stage, outputs[stage], conn=conn)
            fields = {"stage": resume_stage, "progress": STAGE_PROGRESS[resume_stage]}
            if resume_stage == "punctuation_normalization":
                fields["revision_id"] = failed.revision_id
            if carried:
                fields["flags_created"] = failed.flags_created
                fields["chapters_detected"] = failed.chapters_detected
            jobs_repo.update_job(job_id, conn=conn, **fields)
            jobs_repo.acquire_active_job(failed.book_id, job_id, conn=conn)
    except sqlite3.IntegrityError as e:
        raise ActiveJobConflictError(
            failed.book_id, jobs_repo.get_active_job_id(failed.book_id)
        ) from e

    logger.info(
        "cleanup_job.retry_queued",
        job_id=job_id,
        retry_of=failed_job_id,
        resume_after=resume_stage,
    )
    return job_id


# =============================================================================
# QUERIES
# =============================================================================


def get_job(job_id: str) -> JobRecord:
    job = jobs_repo.get_job(job_id)
    if job is None:
        raise JobNotFoundError(job_id)
    return job


def get_latest_job(book_id: str) -> JobRecord | None:
    return jobs_repo.get_latest_job(book_id)


def list_jobs(status: str | None = None, book_id: str | None = None) -> list[JobRecord]:
    return jobs_repo.list_jobs(book_id=book_id, status=status)


def load_stage_state(job_id: str, stage: str, blob_store: BlobStore) -> CleanupState:
    """Read the persisted output of one stage of a job.

    Raises:
        JobStateError: If the stage has no persisted output
    """
    outputs = jobs_repo.get_stage_outputs(job_id)
    if stage not in outputs:
        raise JobStateError(job_id, f"no persisted output for stage '{stage}'")
    return CleanupState.from_json(blob_store.get_bytes(outputs[stage].blob_id))


# =============================================================================
# STAGES
# =============================================================================


def _run_stage(job: JobRecord, stage: str, blob_store: BlobStore) -> None:
    progress = STAGE_PROGRESS[stage]

    if stage == "loading_original":
        original_id = capture_original(job.book_id, blob_store)
        text = get_original_text(original_id, blob_store)
        if not text.strip():
            raise EmptySourceError(original_id)
        blob = blob_store.put_text(CleanupState(text=text).to_json())
        with get_db() as conn:
            _claim_stage(job, conn, stage=stage, progress=progress, original_id=original_id)
            jobs_repo.put_stage_output(job.job_id, stage, blob, conn=conn)
        return

    if stage == "completed":
        with get_db() as conn:
            _claim_stage(
                job,
                conn,
                stage=stage,
                status="completed",
                progress=progress,
                completed_at=utc_now(),
            )
            jobs_repo.release_active_job(job.book_id, job.job_id, conn=conn)
        logger.info("cleanup_job.completed", job_id=job.job_id, revision_id=job.revision_id)
        return

    config = CleanupConfig.from_dict(json.loads(job.config_json))
    previous = STAGES[STAGES.index(stage) - 1]
    state = run_stage(stage, load_stage_state(job.job_id, previous, blob_store), config)

    if stage != "punctuation_normalization":
        blob = blob_store.put_text(state.to_json())
        fields = {"flags_created": len(state.flags)}
        if stage == "chapter_detection":
            fields["chapters_detected"] = len(state.chapters)
        with get_db() as conn:
            _claim_stage(job, conn, stage=stage, progress=progress, **fields)
            jobs_repo.put_stage_output(job.job_id, stage, blob, conn=conn)
        return

    validate_chapters(state.chapters, len(state.text))
    validate_flag_spans(state.flags, len(state.text))
    blob = blob_store.put_text(state.to_json())

    with get_db() as conn:
        # Claim the stage before allocating a revision number
        begin_immediate(conn)
        _claim_stage(
            job,
            conn,
            stage=stage,
            progress=progress,
            flags_created=len(state.flags),
            chapters_detected=len(state.chapters),
        )
        jobs_repo.put_stage_output(job.job_id, stage, blob, conn=conn)
        revision_id = create_revision(
            job.book_id,
            "system",
            state.chapters,
            blob_store=blob_store,
            body=state.text,
            original_id=job.original_id,
            preserve_archaic=config.preserve_archaic,
            flags=state.flags,
            created_by="system",
            conn=conn,
        )
        jobs_repo.update_job(job.job_id, conn=conn, revision_id=revision_id)


def _claim_stage(job: JobRecord, conn: sqlite3.Connection, **fields) -> None:
    """Move the job off the stage it was read at, or raise StageConflictError."""
    if not jobs_repo.update_job(job.job_id, conn=conn, expected_stage=job.stage, **fields):
        raise StageConflictError(job.job_id, job.stage)


def _fail_job(job: JobRecord, stage: str, error: Exception) -> None:
    detail = _describe(error)
    with get_db() as conn:
        _claim_stage(
            job,
            conn,
            stage="failed",
            status="failed",
            failed_stage=stage,
            error=detail,
            failed_at=utc_now(),
        )
        jobs_repo.release_active_job(job.book_id, job.job_id, conn=conn)
    logger.error(
        "cleanup_job.failed", job_id=job.job_id, book_id=job.book_id, stage=stage, error=detail
    )


def _describe(error: Exception) -> str:
    return f"{type(error).__name__}: {error}"
