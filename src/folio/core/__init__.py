"""Core business logic module.

Modules:
- source_normalizer: Source loading and markup annotation
- text_cleanup: Deterministic cleanup stages
- chapter_detector: Heading scoring and chapter spans
- offsets: Offset maps between stage outputs
- book_importer: Book registration
- revision_store: Originals, revisions and their invariants
- review_workflow: Flag resolution and approval
- cleanup_job: Staged, resumable cleanup jobs
- ai_cleanup: Optional AI-assisted revision step
"""

__all__ = [
    "source_normalizer",
    "text_cleanup",
    "chapter_detector",
    "offsets",
    "book_importer",
    "revision_store",
    "review_workflow",
    "cleanup_job",
    "ai_cleanup",
]
