"""Fake collaborators for pipeline tests: literature sources and a content generator."""

from typing import Awaitable, Callable, Dict, List, Optional

from docgen.ai.academic_search import LiteratureRecord
from docgen.ai.content_generator import PromptContext


class FakeSource:
    """Literature source returning canned records (or raising)."""

    def __init__(
        self,
        source_id: str,
        records: Optional[List[LiteratureRecord]] = None,
        error: Optional[Exception] = None,
    ):
        self.source_id = source_id
        self.display_name = source_id.replace("_", " ").title()
        self.records = records or []
        self.error = error
        self.calls = 0

    async def search(self, topic: str) -> List[LiteratureRecord]:
        self.calls += 1
        if self.error is not None:
            raise self.error
        return list(self.records)


class FakeGenerator:
    """
    Content generator producing ``target_word_count`` filler words under a
    Markdown heading. Raises for chapters listed in ``fail_on``.
    """

    def __init__(self, fail_on: Optional[List[int]] = None):
        self.fail_on = set(fail_on or [])
        self.contexts: List[PromptContext] = []
        self.outputs: Dict[int, str] = {}
        self._current: Optional[PromptContext] = None

    @property
    def generated_chapters(self) -> List[int]:
        return [c.chapter_number for c in self.contexts]

    async def build_prompt(self, context: PromptContext) -> str:
        self.contexts.append(context)
        self._current = context
        return f"Write Chapter {context.chapter_number}: {context.chapter_title}"

    async def generate(self, prompt, target_word_count, on_progress) -> str:
        context = self._current
        await on_progress(target_word_count // 2, 50, "Writing...")
        if context.chapter_number in self.fail_on:
            raise RuntimeError(f"model backend unavailable for chapter {context.chapter_number}")
        body = " ".join(["word"] * target_word_count)
        content = f"## Chapter {context.chapter_number}: {context.chapter_title}\n\n{body}"
        self.outputs[context.chapter_number] = content
        await on_progress(target_word_count, 80, "Finishing...")
        return content


def make_records(source: str, count: int, *, start: int = 0, quality: float = 0.6) -> List[LiteratureRecord]:
    """Distinct records with DOIs 10.1000/{source}.{i}."""
    return [
        LiteratureRecord(
            title=f"{source} paper {i}",
            authors=[f"Author {i}"],
            year=2020,
            doi=f"10.1000/{source}.{i}",
            source=source,
            quality_score=quality,
        )
        for i in range(start, start + count)
    ]




class CancellingGenerator(FakeGenerator):
    """
    Requests cancellation while chapter ``cancel_on`` is streaming, then
    reports progress as a real backend would.
    """

    def __init__(self, cancel_on: int, request_cancel: Callable[[], Awaitable[object]]):
        super().__init__()
        self.cancel_on = cancel_on
        self.request_cancel = request_cancel
        self.continued_after_cancel = False

    async def generate(self, prompt, target_word_count, on_progress) -> str:
        if self._current.chapter_number == self.cancel_on:
            await self.request_cancel()
            await on_progress(0, 20, "Writing...")
            self.continued_after_cancel = True
        return await super().generate(prompt, target_word_count, on_progress)
