from __future__ import annotations

import asyncio
import logging
import uuid
from collections import deque
from datetime import datetime
from typing import Any, Awaitable, Callable, List, Optional

from .codex import Codex
from .collaborators import Broadcaster, Datastore, TextSource, get_broadcaster, get_datastore, get_text_source
from .discovery import DiscoveryResult, DiscoveryStage, fallback_words
from .errors import ConfigurationError
from .events import EventStream
from .generation import GenerationResult, GenerationStage, fallback_candidates
from .patterns import PatternStore
from .providers import AnalyticCollaborator, CreativeCollaborator, build_collaborators
from .resilience import Resilience
from .schemas import (
    CeremonySummary,
    CompressionCandidate,
    CycleEvent,
    CycleSession,
    EventKind,
    SchedulerState,
    SourceKind,
    Stage,
    StatusResp,
    ValidationReport,
    utcnow,
)
from .settings import Settings
from .tokenizer import TokenizerOracle, get_tokenizer
from .validation import ValidationStage

logger = logging.getLogger(__name__)


class CycleScheduler:
    """
    Drives Discovery -> Generation -> Validation cycles and the hourly
    ceremony. At most one cycle or ceremony is in flight; the state guard
    is taken before the first await.
    """

    def __init__(
        self,
        settings: Settings,
        oracle: TokenizerOracle,
        text_source: TextSource,
        datastore: Datastore,
        broadcaster: Broadcaster,
        analytic: Optional[AnalyticCollaborator] = None,
        creative: Optional[CreativeCollaborator] = None,
        patterns: Optional[PatternStore] = None,
        events: Optional[EventStream] = None,
        resilience: Optional[Resilience] = None,
        clock: Callable[[], datetime] = utcnow,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.settings = settings
        self.datastore = datastore
        self.broadcaster = broadcaster
        self.patterns = patterns or PatternStore(
            settings.pattern_store_path or None, settings.best_examples_cap, settings.baseline_pattern_weight
        )
        self.events = events or EventStream()
        self.resilience = resilience or Resilience.from_settings(settings)
        self.clock = clock
        self.sleep = sleep

        self.codex = Codex()
        self.discovery = DiscoveryStage(oracle, text_source, settings, self.resilience, analytic)
        self.generation = GenerationStage(self.patterns, settings, self.resilience, creative)
        self.validation = ValidationStage(oracle, self.patterns, settings, self.resilience, analytic, self.events)

        self.state = SchedulerState.IDLE
        self.paused = False
        self._stopped = False
        self.pending: deque = deque(maxlen=settings.max_pending)

        self.cycles_completed = 0
        self.ceremonies_completed = 0
        self.total_approved = 0
        self.total_tokens_saved = 0
        self.last_session: Optional[CycleSession] = None
        self.last_ceremony_at: Optional[datetime] = None
        # last ceremony that closed its hour window (started at or after ceremony_minute)
        self._window_ceremony_at: Optional[datetime] = None
        self._hour_sessions: List[CycleSession] = []
        self._hour_approved: List[CompressionCandidate] = []

    # --- helpers ---

    def _emit(self, kind: EventKind, session_id: Optional[str] = None, stage: Optional[Stage] = None, detail: str = "") -> None:
        self.events.publish(CycleEvent(kind=kind, session_id=session_id, stage=stage, detail=detail))

    async def _run_stage(self, stage: Stage, session_id: str, fallback_stages: List[str], work, fallback):
        self._emit(EventKind.STAGE_STARTED, session_id, stage)
        try:
            return await work()
        except ConfigurationError:
            raise
        except Exception as e:
            logger.exception(f"{stage.value} stage failed; using fallback")
            self._emit(EventKind.STAGE_FAILED, session_id, stage, detail=str(e))
            fallback_stages.append(stage.value)
            return fallback()

    async def refresh_codex(self) -> None:
        try:
            rows = await self.datastore.list_approved_codex()
        except Exception as e:
            logger.warning(f"Could not refresh codex ({e}); keeping {len(self.codex)} cached entries")
            return
        self.codex.load((r.original, r.compressed, r.token_savings or 0) for r in rows)

    async def _persist(self, approved: List[CompressionCandidate], session_id: str) -> None:
        for c in approved:
            try:
                await self.datastore.insert_candidate(c, session_id)
                await self.datastore.publish_approved(c)
            except Exception as e:
                logger.error(f"Failed to persist {c.original!r} -> {c.compressed!r}: {e}")

    async def _close_session(self, session: CycleSession, **counts) -> CycleSession:
        closed = session.model_copy(update={"ended_at": self.clock(), **counts})
        try:
            await self.datastore.save_session(closed)
        except Exception as e:
            logger.error(f"Failed to store session {closed.id}: {e}")
        self.last_session = closed
        self._hour_sessions.append(closed)
        return closed

    def _queue_pending(self, candidates: List[CompressionCandidate]) -> None:
        for c in candidates:
            if c.source == SourceKind.AI:
                if len(self.pending) == self.pending.maxlen:
                    logger.warning(f"Pending queue full; dropping {self.pending[0].original!r}")
                self.pending.append(c)

    # --- cycle ---

    async def run_cycle(self) -> Optional[CycleSession]:
        if self.state != SchedulerState.IDLE:
            logger.info(f"Cycle requested while {self.state.value}; ignoring")
            return None
        self.state = SchedulerState.DISCOVERING
        try:
            return await self._cycle()
        finally:
            self.state = SchedulerState.IDLE

    async def _cycle(self) -> CycleSession:
        session = CycleSession(id=uuid.uuid4().hex, kind="cycle", started_at=self.clock())
        fallback_stages: List[str] = []
        logger.info(f"Cycle {session.id} started")

        found: DiscoveryResult = await self._run_stage(
            Stage.DISCOVERY, session.id, fallback_stages,
            self.discovery.run, lambda: DiscoveryResult(fallback_words(), fallback="fixed"),
        )
        if found.fallback and Stage.DISCOVERY.value not in fallback_stages:
            fallback_stages.append(Stage.DISCOVERY.value)
        words = found.words

        self.state = SchedulerState.GENERATING
        await self.refresh_codex()
        generated: GenerationResult = await self._run_stage(
            Stage.GENERATION, session.id, fallback_stages,
            lambda: self.generation.generate(words, self.codex),
            lambda: GenerationResult(fallback_candidates(words), fallback="fixed"),
        )
        if generated.fallback and Stage.GENERATION.value not in fallback_stages:
            fallback_stages.append(Stage.GENERATION.value)
        candidates = generated.candidates

        self.state = SchedulerState.VALIDATING
        report: ValidationReport = await self._run_stage(
            Stage.VALIDATION, session.id, fallback_stages,
            lambda: self.validation.validate(candidates, self.codex, session.id),
            lambda: ValidationReport(deferred=list(candidates)),
        )
        if report.deferred and Stage.VALIDATION.value not in fallback_stages:
            fallback_stages.append(Stage.VALIDATION.value)
        self._queue_pending(report.deferred)
        await self._persist(report.approved, session.id)

        self._hour_approved.extend(report.approved)
        self.total_approved += len(report.approved)
        self.total_tokens_saved += report.total_savings
        self.cycles_completed += 1

        closed = await self._close_session(
            session,
            words_discovered=len(words),
            candidates_generated=len(candidates),
            candidates_approved=len(report.approved),
            tokens_saved=report.total_savings,
            fallback_stages=fallback_stages,
        )
        self._emit(
            EventKind.CYCLE_COMPLETE, closed.id,
            detail=f"{len(report.approved)} approved, {report.total_savings} tokens saved",
        )
        logger.info(
            f"Cycle {closed.id} complete: {len(words)} words, {len(candidates)} candidates, "
            f"{len(report.approved)} approved"
        )
        return closed

    # --- ceremony ---

    async def run_ceremony(self) -> Optional[CeremonySummary]:
        if self.state != SchedulerState.IDLE:
            logger.info(f"Ceremony requested while {self.state.value}; ignoring")
            return None
        self.state = SchedulerState.CEREMONY
        try:
            return await self._ceremony()
        finally:
            self.state = SchedulerState.IDLE

    async def _ceremony(self) -> CeremonySummary:
        now = self.clock()
        session = CycleSession(id=uuid.uuid4().hex, kind="ceremony", started_at=now)
        fallback_stages: List[str] = []
        logger.info(f"Ceremony {session.id} started with {len(self.pending)} pending AI candidates")

        await self.refresh_codex()
        try:
            submissions = await self.datastore.list_pending_external_submissions()
        except Exception as e:
            logger.error(f"Could not load external submissions: {e}")
            submissions = []

        union = list(self.pending) + submissions
        report: ValidationReport = await self._run_stage(
            Stage.VALIDATION, session.id, fallback_stages,
            lambda: self.validation.validate(union, self.codex, session.id),
            lambda: ValidationReport(deferred=list(union)),
        )
        await self._persist(report.approved, session.id)

        deferred_ids = {c.submission_id for c in report.deferred if c.submission_id is not None}
        tested = [s.submission_id for s in submissions if s.submission_id not in deferred_ids]
        accepted = [c.submission_id for c in report.approved if c.submission_id is not None]
        try:
            await self.datastore.mark_submissions_tested(tested, accepted)
        except Exception as e:
            logger.error(f"Could not mark submissions tested: {e}")

        self.pending.clear()
        self._queue_pending(report.deferred)

        self.total_approved += len(report.approved)
        self.total_tokens_saved += report.total_savings
        self._hour_approved.extend(report.approved)

        await self._close_session(
            session,
            candidates_generated=len(union),
            candidates_approved=len(report.approved),
            tokens_saved=report.total_savings,
            fallback_stages=fallback_stages,
        )
        summary = self.build_summary(now.hour)

        try:
            await self.resilience.call("broadcast", self.broadcaster.announce, summary)
        except Exception as e:
            logger.error(f"Ceremony broadcast failed: {e}")

        self._emit(
            EventKind.CEREMONY_COMPLETE, session.id,
            detail=f"{summary.approved_count} approved this hour, {summary.total_savings} tokens saved",
        )
        self.ceremonies_completed += 1
        self.last_ceremony_at = now
        if now.minute >= self.settings.ceremony_minute:
            self._window_ceremony_at = now
        self._hour_sessions = []
        self._hour_approved = []
        return summary

    def build_summary(self, hour: int) -> CeremonySummary:
        approved = self._hour_approved
        featured = max(approved, key=lambda c: c.token_savings or 0) if approved else None
        return CeremonySummary(
            hour=hour,
            approved_count=sum(s.candidates_approved for s in self._hour_sessions),
            total_savings=sum(s.tokens_saved for s in self._hour_sessions),
            featured_candidate=featured,
            human_wins=sum(1 for c in approved if c.source == SourceKind.HUMAN),
            ai_wins=sum(1 for c in approved if c.source == SourceKind.AI),
        )

    # --- timers ---

    def _ceremony_done_this_hour(self, now: datetime) -> bool:
        last = self._window_ceremony_at
        return last is not None and (last.date(), last.hour) == (now.date(), now.hour)

    async def tick(self, now: Optional[datetime] = None):
        now = now or self.clock()
        if now.minute < self.settings.ceremony_minute:
            return await self.run_cycle()
        if not self._ceremony_done_this_hour(now):
            return await self.run_ceremony()
        return None

    async def run_forever(self) -> None:
        self._stopped = False
        logger.info(f"Scheduler loop started (every {self.settings.cycle_interval_s}s)")
        while not self._stopped:
            if not self.paused:
                await self.tick()
            await self.sleep(self.settings.cycle_interval_s)
        logger.info("Scheduler loop stopped")

    def pause(self) -> None:
        self.paused = True

    def resume(self) -> None:
        self.paused = False

    def stop(self) -> None:
        self._stopped = True

    # --- external surface ---

    async def submit(self, original: str, compressed: str, name: str, email: Optional[str] = None) -> int:
        original = original.strip().lower()
        compressed = compressed.strip()
        if not original or not compressed or not name.strip():
            raise ValueError("original, compressed and name are required")
        sid = await self.datastore.create_submission(original, compressed, name.strip(), email)
        logger.info(f"Queued submission {sid} from {name!r}: {original!r} -> {compressed!r}")
        return sid

    def status(self) -> StatusResp:
        return StatusResp(
            state=self.state,
            paused=self.paused,
            pending_candidates=len(self.pending),
            cycles_completed=self.cycles_completed,
            ceremonies_completed=self.ceremonies_completed,
            total_approved=self.total_approved,
            total_tokens_saved=self.total_tokens_saved,
            codex_size=len(self.codex),
            fallback_mode=bool(self.last_session and self.last_session.used_fallback),
            last_ceremony_hour=self.last_ceremony_at.hour if self.last_ceremony_at else None,
        )


def build_scheduler(settings: Settings, **overrides) -> CycleScheduler:
    """Wire collaborators from settings. Keyword overrides replace any of them."""
    analytic, creative = build_collaborators(settings)
    parts = dict(
        oracle=get_tokenizer(settings),
        text_source=get_text_source(settings),
        datastore=get_datastore(settings),
        broadcaster=get_broadcaster(settings),
        analytic=analytic,
        creative=creative,
    )
    parts.update(overrides)
    return CycleScheduler(settings, **parts)
