"""
Activity logging infrastructure.

Provides best-effort, append-only activity records for generation runs.
"""

from docgen.kernel.events.event_store import ActivityRecorder

__all__ = [
    "ActivityRecorder",
]
