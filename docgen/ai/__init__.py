"""
AI and literature collaborators of the pipeline.

- academic_search: one client per scholarly search provider
- content_generator: chapter text generation (OpenAI streaming)
"""

from docgen.ai.academic_search import (
    DedupedPaper,
    LiteratureRecord,
    LiteratureSource,
    default_sources,
)
from docgen.ai.content_generator import (
    ContentGenerator,
    OpenAIContentGenerator,
    PromptContext,
)

__all__ = [
    "DedupedPaper",
    "LiteratureRecord",
    "LiteratureSource",
    "default_sources",
    "ContentGenerator",
    "OpenAIContentGenerator",
    "PromptContext",
]
