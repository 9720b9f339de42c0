"""
Content generator -- writes one chapter from a prompt.

The chain only depends on the ContentGenerator contract:

    prompt = await generator.build_prompt(context)
    text = await generator.generate(prompt, target_word_count, on_progress)

``on_progress(words_so_far, local_percent, description)`` is awaited while
text streams in; it may raise to abort generation (cancellation).
"""

from dataclasses import dataclass, field
from typing import Awaitable, Callable, List, Optional, Protocol

from docgen.config import Settings, get_settings
from docgen.logging_config import get_logger

logger = get_logger(__name__)

ProgressCallback = Callable[[int, int, str], Awaitable[None]]

# Local (chapter) percentages covered by the streaming phase
GENERATING_START = 20
GENERATING_END = 80

# Only the tail of earlier chapters goes into the prompt
PRIOR_CONTEXT_WORDS = 2000


@dataclass
class PromptContext:
    """Everything a prompt for one chapter may draw on."""
    topic: str
    chapter_number: int
    chapter_title: str
    target_word_count: int
    document_title: str = ""
    description: Optional[str] = None
    field_of_study: Optional[str] = None
    all_chapter_titles: List[str] = field(default_factory=list)
    prior_content: str = ""
    references: List[str] = field(default_factory=list)  # "Smith et al. (2021): Title"


class ContentGenerator(Protocol):
    """Contract consumed by the chapter chain."""

    async def build_prompt(self, context: PromptContext) -> str:
        ...

    async def generate(
        self,
        prompt: str,
        target_word_count: int,
        on_progress: ProgressCallback,
    ) -> str:
        ...


def local_percent(words_so_far: int, target_word_count: int) -> int:
    """Map streamed words onto the 20-80% generating band of a chapter."""
    if target_word_count <= 0:
        return GENERATING_START
    ratio = min(1.0, words_so_far / target_word_count)
    return GENERATING_START + int((GENERATING_END - GENERATING_START) * ratio)


class StreamingWordCounter:
    """
    Running whitespace word count over streamed chunks.

    A word split across two chunks is counted once.
    """

    def __init__(self):
        self.words = 0
        self._in_word = False

    def feed(self, chunk: str) -> int:
        if not chunk:
            return self.words
        tokens = len(chunk.split())
        if tokens and self._in_word and not chunk[0].isspace():
            tokens -= 1
        self.words += tokens
        self._in_word = not chunk[-1].isspace()
        return self.words


def _build_system_prompt() -> str:
    """The master system prompt for all chapter generation calls."""
    return (
        "You are an experienced academic researcher. "
        "You write rigorous, publication-quality academic prose.\n\n"
        "RULES:\n"
        "1. Write flowing academic paragraphs; use Markdown headings (## and ###) "
        "for the chapter and its sections.\n"
        "2. Support factual claims with (Author, Year) citations from the provided "
        "references only. Never fabricate citations.\n"
        "3. Hedge inferential claims and keep speculation explicitly scoped.\n"
        "4. Continue the argument of earlier chapters without repeating them."
    )


class OpenAIContentGenerator:
    """Streams chapter text from the OpenAI chat completions API."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        key = (self.settings.openai_api_key or "").strip()
        self.is_placeholder = not key or key.startswith("sk-your-")
        self._client = None
        if not self.is_placeholder:
            from openai import AsyncOpenAI
            self._client = AsyncOpenAI(api_key=key)

    async def build_prompt(self, context: PromptContext) -> str:
        references = "\n".join(f"- {r}" for r in context.references[:30]) or "(none collected)"

        prior_text = ""
        if context.prior_content:
            words = context.prior_content.split()
            if len(words) > PRIOR_CONTEXT_WORDS:
                prior_text = (
                    f"\n\nPREVIOUS CONTENT (last ~{PRIOR_CONTEXT_WORDS} words for continuity):\n"
                    "...\n" + " ".join(words[-PRIOR_CONTEXT_WORDS:])
                )
            else:
                prior_text = f"\n\nPREVIOUS CONTENT (for continuity):\n{context.prior_content}"

        structure = ", ".join(context.all_chapter_titles) or context.chapter_title

        return f"""Write Chapter {context.chapter_number}: "{context.chapter_title}".

DOCUMENT: {context.document_title}
TOPIC: {context.topic}
DESCRIPTION: {context.description or '-'}
FIELD OF STUDY: {context.field_of_study or '-'}
FULL STRUCTURE: {structure}

TARGET LENGTH: {context.target_word_count} words

REFERENCES AVAILABLE TO CITE:
{references}
{prior_text}

Start with "## Chapter {context.chapter_number}: {context.chapter_title}" and write the complete chapter."""

    async def generate(
        self,
        prompt: str,
        target_word_count: int,
        on_progress: ProgressCallback,
    ) -> str:
        if self._client is None:
            content = _stub_chapter(prompt, target_word_count)
            await on_progress(
                len(content.split()), GENERATING_END, "Generated placeholder content",
            )
            return content

        interval = max(1, self.settings.progress_words_interval)
        max_tokens = min(16384, max(4096, int(target_word_count * 1.5)))
        stream = await self._client.chat.completions.create(
            model=self.settings.openai_model,
            messages=[
                {"role": "system", "content": _build_system_prompt()},
                {"role": "user", "content": prompt},
            ],
            max_tokens=max_tokens,
            temperature=0.7,
            stream=True,
        )

        parts: List[str] = []
        counter = StreamingWordCounter()
        next_report = interval
        try:
            async for chunk in stream:
                if not chunk.choices:
                    continue
                delta = chunk.choices[0].delta.content or ""
                if not delta:
                    continue
                parts.append(delta)
                words = counter.feed(delta)
                if words >= next_report:
                    next_report = words + interval
                    await on_progress(
                        words,
                        local_percent(words, target_word_count),
                        f"Writing... {words}/{target_word_count} words",
                    )
        finally:
            await stream.close()

        content = "".join(parts).strip()
        logger.info(
            "Chapter generated: %d words (target: %d) [%s]",
            len(content.split()), target_word_count, self.settings.openai_model,
        )
        return content


def _stub_chapter(prompt: str, target_word_count: int) -> str:
    """Fallback when no API key is available."""
    title_line = prompt.splitlines()[0] if prompt else "Chapter"
    return (
        f"## {title_line.replace('Write ', '').rstrip('.')}\n\n"
        f"[This chapter targets {target_word_count} words. "
        "Configure OPENAI_API_KEY to generate full content.]"
    )
