"""
Pipeline exceptions.

Cancellation is signalled with an exception but is not an error: handlers
catch ``GenerationCancelled`` separately and never report it as a failure.
"""

import uuid
from typing import Optional


class GenerationCancelled(Exception):
    """Raised at a checkpoint once the run's cancellation flag is observed."""

    def __init__(self, run_id: uuid.UUID, checkpoint: str = ""):
        self.run_id = run_id
        self.checkpoint = checkpoint
        where = f" at {checkpoint}" if checkpoint else ""
        super().__init__(f"Generation {run_id} was cancelled{where}")


class PipelineError(Exception):
    """Base class for pipeline errors."""


class StageFailed(PipelineError):
    """A stage could not complete; the run is failed."""

    def __init__(self, stage: str, message: str, chapter_number: Optional[int] = None):
        self.stage = stage
        self.chapter_number = chapter_number
        super().__init__(message)


class DocumentNotFound(PipelineError):
    """The referenced document does not exist."""


class RunNotFound(PipelineError):
    """The referenced generation run does not exist."""


class GenerationAlreadyRunning(PipelineError):
    """A pending or processing run already exists for the document."""

    def __init__(self, run_id: uuid.UUID):
        self.run_id = run_id
        super().__init__(f"Generation {run_id} already in progress")


class NothingToResume(PipelineError):
    """Resume requested but no failed or cancelled run exists."""


class NoActiveGeneration(PipelineError):
    """Cancel requested but no pending or processing run exists."""


class UnknownJobKind(PipelineError):
    """A queued job names a kind the worker has no handler for."""
