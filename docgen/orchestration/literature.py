"""
Literature aggregation: query every applicable provider, merge, deduplicate,
rank and persist the result as the document's literature set.

Progress for the stage runs from 2% to 20% of the whole run:
  2-17   provider connecting/completed events, spread evenly
  18     deduplicating
  19     storing
  20     stage complete

A provider that errors, times out or finds nothing contributes zero records.
Only a failure in merge, dedup or persist fails the stage.
"""

import asyncio
import uuid
from datetime import datetime, timezone
from typing import Dict, List, Optional, Sequence

from sqlalchemy import delete
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from docgen.ai.academic_search import DedupedPaper, LiteratureRecord, LiteratureSource
from docgen.config import Settings, get_settings
from docgen.kernel.models.document import CollectedPaper
from docgen.logging_config import get_logger
from docgen.orchestration.cancellation import CancellationGuard
from docgen.orchestration.dedup import dedupe_and_rank
from docgen.orchestration.progress import ProgressBroadcaster
from docgen.orchestration.providers import providers_for

logger = get_logger(__name__)

PROVIDERS_START = 2
PROVIDERS_END = 17
DEDUP_PERCENT = 18
STORING_PERCENT = 19
COMPLETE_PERCENT = 20

# Widths of the bounded CollectedPaper columns
VENUE_MAX = 500
IDENTIFIER_MAX = 255
SOURCE_MAX = 50


def _clip(value: Optional[str], limit: int) -> Optional[str]:
    return value[:limit] if value else value


class LiteratureAggregator:
    """Runs the literature-mining stage for one document."""

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        broadcaster: ProgressBroadcaster,
        guard: CancellationGuard,
        sources: Dict[str, LiteratureSource],
        settings: Optional[Settings] = None,
    ):
        self.session_maker = session_maker
        self.broadcaster = broadcaster
        self.guard = guard
        self.sources = sources
        self.settings = settings or get_settings()

    async def collect(
        self,
        run_id: uuid.UUID,
        document_id: uuid.UUID,
        topic: str,
        field_of_study: Optional[str] = None,
    ) -> List[DedupedPaper]:
        """Mine, dedupe and store papers for a document; returns the survivors."""
        provider_ids = self._active_providers(field_of_study)
        await self.guard.check(run_id, "literature_entry")

        if self.settings.parallel_literature_mining:
            records = await self._collect_parallel(run_id, topic, provider_ids)
        else:
            records = await self._collect_sequential(run_id, topic, provider_ids)

        await self.broadcaster.literature_mining(
            run_id,
            percentage=DEDUP_PERCENT,
            message=f"Removing duplicates from {len(records)} papers...",
            papers_total=len(records),
            sub_stage="deduplicating",
        )
        papers = dedupe_and_rank(
            records,
            min_quality=self.settings.paper_min_quality_score,
            max_papers=self.settings.paper_max_papers,
        )

        await self.broadcaster.literature_mining(
            run_id,
            percentage=STORING_PERCENT,
            message=f"Storing {len(papers)} papers...",
            papers_total=len(papers),
            sub_stage="storing",
        )
        await self.store(document_id, papers)

        await self.broadcaster.literature_mining(
            run_id,
            percentage=COMPLETE_PERCENT,
            message=f"Literature review complete: {len(papers)} papers",
            papers_total=len(papers),
            sub_stage="completed",
        )
        logger.info(
            "Literature mining finished: %d raw records, %d stored",
            len(records), len(papers),
        )
        return papers

    async def store(self, document_id: uuid.UUID, papers: Sequence[DedupedPaper]) -> None:
        """Replace the document's literature set in one transaction."""
        collected_at = datetime.now(timezone.utc)
        async with self.session_maker() as session:
            await session.execute(
                delete(CollectedPaper).where(CollectedPaper.document_id == document_id)
            )
            for paper in papers:
                session.add(CollectedPaper(
                    document_id=document_id,
                    title=paper.title,
                    authors=list(paper.authors),
                    year=paper.year,
                    venue=_clip(paper.venue, VENUE_MAX),
                    doi=_clip(paper.doi, IDENTIFIER_MAX),
                    url=paper.url,
                    abstract=paper.abstract,
                    citation_count=paper.citation_count or 0,
                    quality_score=paper.quality_score,
                    source_api=_clip(paper.source, SOURCE_MAX),
                    paper_id=_clip(paper.paper_id, IDENTIFIER_MAX),
                    is_open_access=paper.is_open_access,
                    collected_at=collected_at,
                ))
            await session.commit()

    def _active_providers(self, field_of_study: Optional[str]) -> List[str]:
        active = []
        for provider_id in providers_for(field_of_study):
            if provider_id in self.sources:
                active.append(provider_id)
            else:
                logger.warning("No client configured for provider %s; skipping", provider_id)
        return active

    def _percent_after(self, done: int, total: int) -> int:
        if total <= 0:
            return PROVIDERS_END
        span = PROVIDERS_END - PROVIDERS_START
        return PROVIDERS_START + int(span * done / total)

    async def _collect_sequential(
        self,
        run_id: uuid.UUID,
        topic: str,
        provider_ids: List[str],
    ) -> List[LiteratureRecord]:
        records: List[LiteratureRecord] = []
        total = len(provider_ids)
        for i, provider_id in enumerate(provider_ids):
            source = self.sources[provider_id]
            await self.broadcaster.literature_mining(
                run_id,
                percentage=self._percent_after(i, total),
                message=f"Connecting to {source.display_name}...",
                source=provider_id,
                papers_total=len(records),
                sub_stage="connecting",
            )
            found = await self._query(source, topic)
            records.extend(found)
            await self.broadcaster.literature_mining(
                run_id,
                percentage=self._percent_after(i + 1, total),
                message=f"Found {len(found)} papers from {source.display_name}",
                source=provider_id,
                papers_found=len(found),
                papers_total=len(records),
                sub_stage="completed",
            )
            await self.guard.check(run_id, f"after_{provider_id}")
        return records

    async def _collect_parallel(
        self,
        run_id: uuid.UUID,
        topic: str,
        provider_ids: List[str],
    ) -> List[LiteratureRecord]:
        await self.broadcaster.literature_mining(
            run_id,
            percentage=PROVIDERS_START,
            message=f"Searching {len(provider_ids)} academic databases in parallel...",
            source="all",
            papers_total=0,
            sub_stage="connecting",
        )

        semaphore = asyncio.Semaphore(max(1, self.settings.literature_max_concurrency))

        async def bounded(source: LiteratureSource) -> List[LiteratureRecord]:
            async with semaphore:
                return await self._query(source, topic)

        results = await asyncio.gather(
            *(bounded(self.sources[provider_id]) for provider_id in provider_ids)
        )

        records: List[LiteratureRecord] = []
        total = len(provider_ids)
        for i, (provider_id, found) in enumerate(zip(provider_ids, results)):
            records.extend(found)
            await self.broadcaster.literature_mining(
                run_id,
                percentage=self._percent_after(i + 1, total),
                message=f"Found {len(found)} papers from {self.sources[provider_id].display_name}",
                source=provider_id,
                papers_found=len(found),
                papers_total=len(records),
                sub_stage="completed",
            )
        await self.guard.check(run_id, "after_providers")
        return records

    async def _query(self, source: LiteratureSource, topic: str) -> List[LiteratureRecord]:
        """One provider call under its own timeout; any failure yields []."""
        try:
            found = await asyncio.wait_for(
                source.search(topic),
                timeout=self.settings.literature_provider_timeout,
            )
        except asyncio.TimeoutError:
            logger.warning(
                "%s timed out after %.0fs",
                source.source_id, self.settings.literature_provider_timeout,
            )
            return []
        except Exception as e:
            logger.warning("%s search failed: %s", source.source_id, e)
            return []
        logger.info("%s returned %d papers", source.source_id, len(found))
        return list(found)
