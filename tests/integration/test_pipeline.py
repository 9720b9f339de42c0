"""
End-to-end pipeline tests: service -> queue -> worker -> handlers, against a
real SQLite database with fake literature sources and a fake generator.
"""

import pytest
from sqlalchemy import select

from docgen.kernel.models import (
    ActivityLog,
    ActivityType,
    Chapter,
    ChapterStatus,
    CollectedPaper,
    GenerationRun,
    JobStatus,
    QueuedJob,
    RunStatus,
)
from docgen.orchestration.chapter_chain import count_words
from docgen.schemas.generation import EventKind

from tests.fakes import CancellingGenerator, FakeGenerator, FakeSource, make_records


async def _run(session_maker, run_id) -> GenerationRun:
    async with session_maker() as session:
        return await session.get(GenerationRun, run_id)


async def _chapters(session_maker, document_id):
    async with session_maker() as session:
        result = await session.execute(
            select(Chapter)
            .where(Chapter.document_id == document_id)
            .order_by(Chapter.chapter_number)
        )
        return list(result.scalars().all())


class TestEndToEnd:
    """Fresh run of a three-chapter document."""

    @pytest.mark.asyncio
    async def test_three_chapter_document(
        self, service, make_worker, make_document, three_chapters, sink, session_maker,
    ):
        """Literature 5 + 7 with one DOI overlap gives 11 papers; three chapters complete."""
        s2 = make_records("s2", 5)
        oa = make_records("oa", 7)
        oa[0].doi = s2[2].doi.upper()  # same DOI, different casing
        sources = {
            "semantic_scholar": FakeSource("semantic_scholar", s2),
            "openalex": FakeSource("openalex", oa),
        }
        generator = FakeGenerator()
        worker = make_worker(sources, generator)

        document_id = await make_document(three_chapters)
        run_id = await service.start_pipeline(document_id)
        processed = await worker.run_until_idle()

        # coordinator + 3 chapters + finalizer
        assert processed == 5
        events = sink.for_run(run_id)

        provider_events = [
            e for e in events
            if e.event == EventKind.LITERATURE_MINING and e.extra.sub_stage == "completed"
            and e.extra.source is not None
        ]
        assert [(e.extra.source, e.extra.papers_found) for e in provider_events] == [
            ("semantic_scholar", 5),
            ("openalex", 7),
        ]
        stage_complete = [
            e for e in events
            if e.event == EventKind.LITERATURE_MINING and e.percentage == 20
        ]
        assert stage_complete[-1].extra.papers_total == 11

        completed_chapters = [
            e.extra.chapter_number for e in events if e.event == EventKind.CHAPTER_COMPLETED
        ]
        assert completed_chapters == [1, 2, 3]

        terminal = [e for e in events if e.is_terminal]
        assert len(terminal) == 1
        done = terminal[0]
        assert done.event == EventKind.COMPLETED
        assert done.percentage == 100
        assert done.completed.chapter_count == 3
        expected_words = sum(count_words(text) for text in generator.outputs.values())
        assert done.completed.total_words == expected_words
        assert done.completed.literature_count == 11
        assert set(done.completed.artifact_locators) == {"docx", "pdf"}

        percentages = [e.percentage for e in events]
        assert percentages == sorted(percentages)
        assert percentages[-1] == 100

        async with session_maker() as session:
            papers = (await session.execute(
                select(CollectedPaper).where(CollectedPaper.document_id == document_id)
            )).scalars().all()
        assert len(papers) == 11

        chapters = await _chapters(session_maker, document_id)
        assert [c.chapter_number for c in chapters] == [1, 2, 3]
        assert all(c.status == ChapterStatus.COMPLETED.value for c in chapters)
        assert all(c.html_content and c.html_content.startswith("<h2>") for c in chapters)

        run = await _run(session_maker, run_id)
        assert run.status == RunStatus.COMPLETED.value
        assert run.progress == 100
        assert set(run.run_metadata["chapter_timings"]) == {"1", "2", "3"}

    @pytest.mark.asyncio
    async def test_later_chapters_see_earlier_content_and_references(
        self, service, make_worker, make_document, three_chapters, sources,
    ):
        """Prompts for chapter 2+ include prior chapter text and collected papers."""
        generator = FakeGenerator()
        worker = make_worker(sources, generator)
        document_id = await make_document(three_chapters)

        await service.start_pipeline(document_id)
        await worker.run_until_idle()

        first, second, _ = generator.contexts
        assert first.prior_content == ""
        assert "Chapter 1: Intro" in second.prior_content
        assert len(second.references) == 12
        assert second.all_chapter_titles == ["Intro", "Methods", "Conclusion"]

    @pytest.mark.asyncio
    async def test_failing_provider_contributes_nothing(
        self, service, make_worker, make_document, three_chapters, sink,
    ):
        """A provider error is absorbed; the run still completes."""
        sources = {
            "semantic_scholar": FakeSource("semantic_scholar", error=RuntimeError("503")),
            "openalex": FakeSource("openalex", make_records("oa", 4)),
        }
        worker = make_worker(sources, FakeGenerator())
        document_id = await make_document(three_chapters)

        run_id = await service.start_pipeline(document_id)
        await worker.run_until_idle()

        events = sink.for_run(run_id)
        found = {
            e.extra.source: e.extra.papers_found
            for e in events
            if e.event == EventKind.LITERATURE_MINING and e.extra.sub_stage == "completed"
            and e.extra.source
        }
        assert found == {"semantic_scholar": 0, "openalex": 4}
        assert events[-1].event == EventKind.COMPLETED
        assert events[-1].completed.literature_count == 4

    @pytest.mark.asyncio
    async def test_sequential_mode_emits_connecting_and_completed(
        self, service, make_worker, make_document, three_chapters, sources, sink, settings,
    ):
        """Sequential mining brackets each provider with connecting/completed events."""
        settings.parallel_literature_mining = False
        worker = make_worker(sources, FakeGenerator())
        document_id = await make_document(three_chapters)

        run_id = await service.start_pipeline(document_id)
        await worker.run_until_idle()

        mining = [
            (e.extra.source, e.extra.sub_stage)
            for e in sink.for_run(run_id)
            if e.event == EventKind.LITERATURE_MINING and e.extra.source
        ]
        assert mining == [
            ("semantic_scholar", "connecting"),
            ("semantic_scholar", "completed"),
            ("openalex", "connecting"),
            ("openalex", "completed"),
        ]


class TestResume:
    """Resuming a failed run skips completed work."""

    @pytest.mark.asyncio
    async def test_resume_skips_literature_and_completed_chapters(
        self, service, make_worker, make_document, three_chapters, sources, sink, session_maker,
    ):
        """Stored papers and chapters 1-2 mean only chapter 3 is generated."""
        document_id = await make_document(three_chapters)

        failing = FakeGenerator(fail_on=[3])
        run_id = await service.start_pipeline(document_id)
        await make_worker(sources, failing).run_until_idle()
        assert (await _run(session_maker, run_id)).status == RunStatus.FAILED.value
        assert sources["semantic_scholar"].calls == 1

        resumed_generator = FakeGenerator()
        sink.events.clear()
        resumed_id = await service.start_pipeline(document_id, resume=True)
        assert resumed_id == run_id
        await make_worker(sources, resumed_generator).run_until_idle()

        # Aggregator never invoked again
        assert sources["semantic_scholar"].calls == 1
        assert sources["openalex"].calls == 1
        assert resumed_generator.generated_chapters == [3]

        events = sink.for_run(run_id)
        cached = [
            e for e in events
            if e.event == EventKind.LITERATURE_MINING and e.extra.sub_stage == "cached"
        ]
        assert len(cached) == 1
        assert cached[0].percentage >= 20
        assert events[0].extra.is_resume is True
        assert events[-1].event == EventKind.COMPLETED
        assert events[-1].completed.chapter_count == 3

        run = await _run(session_maker, run_id)
        assert run.status == RunStatus.COMPLETED.value
        assert run.run_metadata["resume_count"] == 1

    @pytest.mark.asyncio
    async def test_resume_with_force_literature_mines_again(
        self, service, make_worker, make_document, three_chapters, sources, session_maker,
    ):
        """force_literature re-runs the aggregator even with stored papers."""
        document_id = await make_document(three_chapters)
        run_id = await service.start_pipeline(document_id)
        await make_worker(sources, FakeGenerator(fail_on=[2])).run_until_idle()

        await service.start_pipeline(document_id, resume=True, force_literature=True)
        generator = FakeGenerator()
        await make_worker(sources, generator).run_until_idle()

        assert sources["openalex"].calls == 2
        assert generator.generated_chapters == [2, 3]
        assert (await _run(session_maker, run_id)).status == RunStatus.COMPLETED.value

    @pytest.mark.asyncio
    async def test_resume_with_all_chapters_done_goes_to_finalizer(
        self, service, make_worker, make_document, three_chapters, sources, sink, session_maker,
    ):
        """Every chapter completed: no generation, straight to completion."""
        document_id = await make_document(three_chapters)
        run_id = await service.start_pipeline(document_id)
        await make_worker(sources, FakeGenerator()).run_until_idle()

        # Mark the finished run failed to make it resumable
        async with session_maker() as session:
            run = await session.get(GenerationRun, run_id)
            run.status = RunStatus.FAILED.value
            await session.commit()

        generator = FakeGenerator()
        sink.events.clear()
        await service.start_pipeline(document_id, resume=True)
        await make_worker(sources, generator).run_until_idle()

        assert generator.generated_chapters == []
        events = sink.for_run(run_id)
        assert events[-1].event == EventKind.COMPLETED
        assert events[-1].completed.chapter_count == 3


class TestChainTermination:
    """A failing chapter stops the chain."""

    @pytest.mark.asyncio
    async def test_failure_in_chapter_three_of_five(
        self, service, make_worker, make_document, five_chapters, sources, sink, session_maker,
    ):
        """Exactly one failed event for chapter 3; nothing for 4, 5 or finalization."""
        generator = FakeGenerator(fail_on=[3])
        worker = make_worker(sources, generator)
        document_id = await make_document(five_chapters)

        run_id = await service.start_pipeline(document_id)
        await worker.run_until_idle()

        events = sink.for_run(run_id)
        failed = [e for e in events if e.event == EventKind.FAILED]
        assert len(failed) == 1
        assert failed[0].failed.chapter_number == 3
        assert failed[0].stage == "chapter_generation_3"
        assert failed[0].failed.can_resume is True
        assert failed[0].failed.last_successful_chapter == 2
        assert events[-1] is failed[0]

        assert not [e for e in events if e.extra.chapter_number in (4, 5)]
        assert not [e for e in events if e.event in (EventKind.HTML_CONVERSION, EventKind.COMPLETED)]
        assert generator.generated_chapters == [1, 2, 3]

        chapters = await _chapters(session_maker, document_id)
        assert [c.chapter_number for c in chapters] == [1, 2]

        run = await _run(session_maker, run_id)
        assert run.status == RunStatus.FAILED.value

        async with session_maker() as session:
            failures = (await session.execute(
                select(ActivityLog).where(
                    ActivityLog.run_id == run_id,
                    ActivityLog.event_type == ActivityType.GENERATION_FAILED.value,
                )
            )).scalars().all()
            jobs = (await session.execute(
                select(QueuedJob).where(QueuedJob.run_id == run_id)
            )).scalars().all()
        assert len(failures) == 1
        assert [j.status for j in jobs].count(JobStatus.FAILED.value) == 1
        assert not [j for j in jobs if j.status in (JobStatus.QUEUED.value, JobStatus.RUNNING.value)]


class TestCancellation:
    """Cancellation is a terminal state, not a failure."""

    @pytest.mark.asyncio
    async def test_cancel_after_chapter_two(
        self, service, make_worker, make_document, five_chapters, sources, sink, session_maker,
    ):
        """Flag set once chapter 2 completes: chapter 3 never starts."""
        document_id = await make_document(five_chapters)
        cancel_requested = []

        original_publish = sink.publish

        async def publish(event):
            await original_publish(event)
            if event.event == EventKind.CHAPTER_COMPLETED and event.extra.chapter_number == 2:
                cancel_requested.append(await service.cancel_generation(document_id))

        sink.publish = publish
        generator = FakeGenerator()
        worker = make_worker(sources, generator)

        run_id = await service.start_pipeline(document_id)
        await worker.run_until_idle()

        assert len(cancel_requested) == 1
        assert cancel_requested[0].can_resume is True

        events = sink.for_run(run_id)
        assert events[-1].event == EventKind.CANCELLED
        assert not [e for e in events if e.event == EventKind.FAILED]
        assert not [
            e for e in events
            if e.event == EventKind.CHAPTER_STARTED and e.extra.chapter_number == 3
        ]
        assert generator.generated_chapters == [1, 2]

        run = await _run(session_maker, run_id)
        assert run.status == RunStatus.CANCELLED.value
        chapters = await _chapters(session_maker, document_id)
        assert [c.chapter_number for c in chapters] == [1, 2]

    @pytest.mark.asyncio
    async def test_cancel_while_chapter_streams(
        self, service, make_worker, make_document, five_chapters, sources, sink, session_maker,
    ):
        """Cancellation seen in the progress callback aborts generation at once."""
        document_id = await make_document(five_chapters)
        generator = CancellingGenerator(2, lambda: service.cancel_generation(document_id))
        worker = make_worker(sources, generator)

        run_id = await service.start_pipeline(document_id)
        await worker.run_until_idle()

        assert generator.continued_after_cancel is False
        assert sorted(generator.outputs) == [1]

        events = sink.for_run(run_id)
        assert events[-1].event == EventKind.CANCELLED
        assert not [e for e in events if e.event == EventKind.FAILED]
        assert not [
            e for e in events
            if e.event == EventKind.CHAPTER_COMPLETED and e.extra.chapter_number == 2
        ]

        run = await _run(session_maker, run_id)
        assert run.status == RunStatus.CANCELLED.value
        chapters = await _chapters(session_maker, document_id)
        assert [c.chapter_number for c in chapters] == [1]

        async with session_maker() as session:
            jobs = (await session.execute(select(QueuedJob))).scalars().all()
        assert not [j for j in jobs if j.status in (JobStatus.QUEUED.value, JobStatus.RUNNING.value)]
        assert not [j for j in jobs if j.chapter_number == 3]

    @pytest.mark.asyncio
    async def test_cancel_before_worker_picks_up(
        self, service, make_worker, make_document, three_chapters, sources, sink,
    ):
        """A run cancelled while queued ends cancelled without mining."""
        document_id = await make_document(three_chapters)
        run_id = await service.start_pipeline(document_id)
        await service.cancel_generation(document_id)

        await make_worker(sources, FakeGenerator()).run_until_idle()

        events = sink.for_run(run_id)
        assert events[-1].event == EventKind.CANCELLED
        assert sources["semantic_scholar"].calls == 0

    @pytest.mark.asyncio
    async def test_cancelled_run_can_be_resumed(
        self, service, make_worker, make_document, three_chapters, sources, sink, session_maker,
    ):
        """Resume after cancel clears the flag and finishes the document."""
        document_id = await make_document(three_chapters)
        run_id = await service.start_pipeline(document_id)
        await service.cancel_generation(document_id)
        await make_worker(sources, FakeGenerator()).run_until_idle()

        await service.start_pipeline(document_id, resume=True)
        await make_worker(sources, FakeGenerator()).run_until_idle()

        run = await _run(session_maker, run_id)
        assert run.status == RunStatus.COMPLETED.value
        assert run.cancel_requested is False
