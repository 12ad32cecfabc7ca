# nexus_records/pipeline/session.py

"""
Session coordinator: the single owner of the accumulated report, record
history, insights and conversation. Everything else reads snapshots.

Insight regeneration is fenced by two counters. Every history mutation
bumps `history_generation`; every regeneration takes a fresh request
number. A finished regeneration is applied only if it is still the latest
request and the history has not moved since it started, so the final
state follows trigger order rather than completion order.
"""

import asyncio
from typing import Any, Awaitable, Iterable, List, Optional, Sequence, Set, Tuple

import logfire
from pydantic import BaseModel, ConfigDict

from nexus_records.config import SessionConfig
from nexus_records.errors import ExtractionFailed, RequestAborted
from nexus_records.llm_api.engine_handler import ReasoningEngine
from nexus_records.llm_api.streaming import Sink
from nexus_records.pipeline.consult import ask_question
from nexus_records.pipeline.extract_report import ExtractionResult, extract_report
from nexus_records.pipeline.insights import generate_insights
from nexus_records.pipeline.timeline import KeywordDateExtractor, RecordExtractor, merge_records, sort_timeline
from nexus_records.schemas.conversation_schema import Conversation, ConversationTurn
from nexus_records.schemas.engine_schema import NormalizedDocument
from nexus_records.schemas.insight_schema import Insight
from nexus_records.schemas.record_schema import ClinicalRecord


class SessionSnapshot(BaseModel):
    """Read-only view of a session at one point in time."""
    model_config = ConfigDict(frozen=True)

    report: str
    records: Tuple[ClinicalRecord, ...]
    insights: Tuple[Insight, ...]
    turns: Tuple[ConversationTurn, ...]
    history_generation: int
    insight_notice: Optional[str] = None
    insights_pending: bool = False


class ClinicalSession:
    """
    :param engine: Engine used for report extraction.
    :param reasoning_engine: Engine used for insights and chat (defaults to `engine`).
    :param config: SessionConfig knobs.
    :param extractor: Record extractor; defaults to KeywordDateExtractor.
    :param auto_insights: Regenerate insights in the background after every history change.
    """

    def __init__(
        self,
        engine: ReasoningEngine,
        *,
        reasoning_engine: Optional[ReasoningEngine] = None,
        config: Optional[SessionConfig] = None,
        extractor: Optional[RecordExtractor] = None,
        auto_insights: bool = True,
    ):
        self.engine = engine
        self.reasoning_engine = reasoning_engine or engine
        self.config = config or SessionConfig()
        self.extractor = extractor or KeywordDateExtractor(label_max_length=self.config.label_max_length)
        self.auto_insights = auto_insights

        self._report = ""
        self._records: List[ClinicalRecord] = []
        self._insights: List[Insight] = []
        self._conversation = Conversation()
        self._insight_notice: Optional[str] = None

        self._history_generation = 0
        self._insight_request = 0
        self._insight_tasks: Set[asyncio.Task] = set()
        self._inflight: Set[asyncio.Task] = set()
        self._aborted: Set[asyncio.Task] = set()

        # bumped by reset(); results issued under an older epoch are dropped
        self._epoch = 0
        # ingests apply in call order: next sequence number to hand out,
        # next one allowed to apply, and finished-but-not-yet-contiguous ones
        self._ingest_issued = 0
        self._ingest_applied = 0
        self._ingest_finished: Set[int] = set()
        self._ingest_advanced = asyncio.Event()

    # ------------------------------------------------------------------
    # Read side
    # ------------------------------------------------------------------

    @property
    def report(self) -> str:
        return self._report

    @property
    def records(self) -> Tuple[ClinicalRecord, ...]:
        return tuple(self._records)

    @property
    def insights(self) -> Tuple[Insight, ...]:
        return tuple(self._insights)

    @property
    def history_generation(self) -> int:
        return self._history_generation

    def timeline(self, newest_first: bool = True) -> List[ClinicalRecord]:
        return sort_timeline(self._records, newest_first=newest_first)

    def snapshot(self) -> SessionSnapshot:
        return SessionSnapshot(
            report=self._report,
            records=tuple(self._records),
            insights=tuple(self._insights),
            turns=tuple(t.model_copy(deep=True) for t in self._conversation.turns),
            history_generation=self._history_generation,
            insight_notice=self._insight_notice,
            insights_pending=any(not t.done() for t in self._insight_tasks),
        )

    # ------------------------------------------------------------------
    # In-flight call tracking
    # ------------------------------------------------------------------

    async def _track(self, coro: Awaitable[Any]) -> Any:
        task = asyncio.ensure_future(coro)
        self._inflight.add(task)
        try:
            return await task
        except asyncio.CancelledError:
            if task in self._aborted:
                raise RequestAborted("Request aborted by the session owner.") from None
            raise
        finally:
            self._inflight.discard(task)
            self._aborted.discard(task)

    def abort(self) -> int:
        """Cancel every in-flight engine call. Returns how many were cancelled."""
        pending = [t for t in self._inflight if not t.done()]
        for task in pending:
            self._aborted.add(task)
            task.cancel()
        if pending:
            logfire.info("aborted in-flight calls", count=len(pending))
        return len(pending)

    async def settle(self) -> None:
        """Wait for background insight regenerations to finish."""
        while True:
            pending = [t for t in self._insight_tasks if not t.done()]
            if not pending:
                return
            results = await asyncio.gather(*pending, return_exceptions=True)
            for result in results:
                if isinstance(result, Exception):
                    raise result

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    async def ingest(
        self,
        documents: Sequence[NormalizedDocument] = (),
        text: Optional[str] = None,
        *,
        sink: Optional[Sink] = None,
    ) -> ExtractionResult:
        """
        Extract a report from the given documents, append it to the session
        report and its records to the history. Raises ExtractionFailed and
        leaves the session untouched on failure.

        Overlapping ingests are applied in the order they were called, not
        the order their engine calls finish. A result that arrives after
        `reset()` is dropped with ExtractionFailed.
        """
        seq = self._ingest_issued
        self._ingest_issued += 1
        epoch = self._epoch
        try:
            try:
                result = await self._track(
                    extract_report(
                        self.engine,
                        documents,
                        text,
                        sink=sink,
                        extractor=self.extractor,
                        max_image_bytes=self.config.max_image_bytes,
                    )
                )
            except RequestAborted as e:
                raise ExtractionFailed(str(e)) from e

            await self._wait_for_ingest_turn(seq)
            if epoch != self._epoch:
                logfire.info("discarding extraction from before reset", ingest=seq)
                raise ExtractionFailed("session was reset")

            if self._report:
                self._report = f"{self._report}{self.config.report_separator}{result.report}"
            else:
                self._report = result.report
            added = self.append_records(result.records)
            return result.model_copy(update={"records": added})
        finally:
            self._ingest_done(seq)

    async def _wait_for_ingest_turn(self, seq: int) -> None:
        while self._ingest_applied < seq:
            await self._ingest_advanced.wait()

    def _ingest_done(self, seq: int) -> None:
        self._ingest_finished.add(seq)
        advanced = False
        while self._ingest_applied in self._ingest_finished:
            self._ingest_finished.discard(self._ingest_applied)
            self._ingest_applied += 1
            advanced = True
        if advanced:
            event, self._ingest_advanced = self._ingest_advanced, asyncio.Event()
            event.set()

    def append_records(self, records: Iterable[ClinicalRecord]) -> List[ClinicalRecord]:
        """
        Append records to the history (merging content duplicates when
        `dedupe_records` is on). Returns the records actually added.
        """
        records = list(records)
        known = {r.id for r in self._records}
        for record in records:
            if record.id in known:
                raise ValueError(f"Duplicate record id: {record.id}")
            known.add(record.id)

        if self.config.dedupe_records:
            records = merge_records(self._records, records)
        if not records:
            return []

        self._records.extend(records)
        self._history_changed()
        return records

    def remove_records(self, ids: Iterable[str]) -> int:
        """Bulk-delete records by id. Returns how many were removed."""
        doomed = set(ids)
        kept = [r for r in self._records if r.id not in doomed]
        removed = len(self._records) - len(kept)
        if removed:
            self._records = kept
            self._history_changed()
        return removed

    def _history_changed(self) -> None:
        self._history_generation += 1
        if not self.auto_insights:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # no loop: the generation bump still fences any stale result
            return
        task = loop.create_task(self.refresh_insights())
        self._insight_tasks.add(task)
        task.add_done_callback(self._insight_tasks.discard)

    async def refresh_insights(self) -> Optional[List[Insight]]:
        """
        Regenerate insights from the current history. Returns the applied
        list, or None if the result was stale or aborted.
        """
        self._insight_request += 1
        request = self._insight_request
        generation = self._history_generation
        errors: List[str] = []

        try:
            insights = await self._track(
                generate_insights(self.reasoning_engine, list(self._records), on_error=errors.append)
            )
        except RequestAborted:
            logfire.info("insight regeneration aborted", request=request)
            return None

        if request != self._insight_request or generation != self._history_generation:
            logfire.info(
                "discarding stale insights",
                request=request,
                latest_request=self._insight_request,
                generation=generation,
                latest_generation=self._history_generation,
            )
            return None

        self._insights = insights
        self._insight_notice = errors[-1] if errors else None
        return insights

    async def ask(
        self,
        question: str,
        *,
        sink: Optional[Sink] = None,
        attachments: Sequence[NormalizedDocument] = (),
    ) -> ConversationTurn:
        """
        Ask a follow-up question grounded in the current report (or the
        record history when there is no report yet). Raises RequestAborted
        if `abort()` cancels it; the conversation still shows the turn.
        """
        return await self._track(
            ask_question(
                self.reasoning_engine,
                self._conversation,
                question,
                report=self._report,
                records=list(self._records),
                attachments=attachments,
                sink=sink,
            )
        )

    def reset(self) -> None:
        """Drop all session state, cancelling anything still running."""
        self.abort()
        for task in list(self._insight_tasks):
            task.cancel()
        self._report = ""
        self._records = []
        self._insights = []
        self._conversation = Conversation()
        self._insight_notice = None
        self._history_generation += 1
        self._epoch += 1
