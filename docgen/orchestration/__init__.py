"""Orchestration layer - coordinator, literature mining, chapter chain, finalizer, work queue."""

from docgen.orchestration.cancellation import CancellationGuard, DatabaseCancellationFlags
from docgen.orchestration.chapter_chain import ChapterChain
from docgen.orchestration.coordinator import GenerationCoordinator
from docgen.orchestration.dedup import dedupe_and_rank
from docgen.orchestration.finalizer import Finalizer
from docgen.orchestration.literature import LiteratureAggregator
from docgen.orchestration.progress import (
    InMemoryProgressSink,
    LoggingProgressSink,
    ProgressBroadcaster,
)
from docgen.orchestration.providers import is_medical_field, providers_for
from docgen.orchestration.queue import WorkQueue
from docgen.orchestration.service import GenerationService

__all__ = [
    "CancellationGuard",
    "DatabaseCancellationFlags",
    "ChapterChain",
    "GenerationCoordinator",
    "dedupe_and_rank",
    "Finalizer",
    "LiteratureAggregator",
    "InMemoryProgressSink",
    "LoggingProgressSink",
    "ProgressBroadcaster",
    "is_medical_field",
    "providers_for",
    "WorkQueue",
    "GenerationService",
]
