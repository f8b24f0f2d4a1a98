import asyncio
from datetime import datetime, timezone

import pytest

from services.compressor.codex import CONFLICT_IN_USE, CONFLICT_WEAKER
from services.compressor.collaborators import Broadcaster, BuiltinCorpusSource, InMemoryDatastore, Sample, TextSource
from services.compressor.errors import ConfigurationError
from services.compressor.resilience import Resilience, RetryPolicy
from services.compressor.scheduler import CycleScheduler
from services.compressor.schemas import (
    CeremonySummary,
    CompressionCandidate,
    CycleSession,
    EventKind,
    SchedulerState,
    SourceKind,
)


class RecordingBroadcaster(Broadcaster):
    def __init__(self, fail=False):
        self.fail = fail
        self.summaries = []

    async def announce(self, summary):
        if self.fail:
            raise RuntimeError("webhook down")
        self.summaries.append(summary)


class BlockingSource(TextSource):
    def __init__(self):
        self.release = asyncio.Event()

    async def fetch_sample(self, topic):
        await self.release.wait()
        return Sample(title="blocked", content="The implementation was approximately comprehensive.")


class Clock:
    def __init__(self, hour=10, minute=10):
        self.now = datetime(2026, 1, 1, hour, minute, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def set(self, hour, minute, day=1):
        self.now = datetime(2026, 1, day, hour, minute, tzinfo=timezone.utc)


async def _no_sleep(_delay):
    return None


def _patient_resilience():
    return Resilience(retry=RetryPolicy(3, 0.0), failure_threshold=1000, timeout=None, sleep=_no_sleep)


def _scheduler(settings, resilience, oracle, **kw):
    kw.setdefault("text_source", BuiltinCorpusSource())
    kw.setdefault("datastore", InMemoryDatastore())
    kw.setdefault("broadcaster", RecordingBroadcaster())
    return CycleScheduler(settings, oracle, resilience=resilience, **kw)


def test_cycle_runs_all_stages_and_persists(settings, resilience, fake_oracle):
    store = InMemoryDatastore()
    s = _scheduler(settings, resilience, fake_oracle(), datastore=store)

    session = asyncio.run(s.run_cycle())

    assert isinstance(session, CycleSession)
    assert session.kind == "cycle" and session.ended_at is not None
    assert session.words_discovered > 0
    assert session.candidates_generated > 0
    assert session.candidates_approved == len(store.codex) > 0
    assert store.sessions == [session]
    assert s.state == SchedulerState.IDLE

    for c in store.codex.values():
        assert c.compressed_tokens < c.original_tokens
        assert c.compressed[0] in settings.safe_symbols
    forms = [c.compressed for c in store.codex.values()]
    assert len(forms) == len(set(forms))
    assert s.codex.snapshot() == {o: c.compressed for o, c in store.codex.items()}
    assert [c.original for c in store.published] == [c.original for c in store.codex.values()]

    kinds = [e.kind for e in s.events.recent(200)]
    assert kinds.count(EventKind.STAGE_STARTED) == 3
    assert kinds[-1] == EventKind.CYCLE_COMPLETE


def test_second_cycle_start_is_a_no_op_while_busy(settings, resilience, fake_oracle):
    store = InMemoryDatastore()
    source = BlockingSource()
    s = _scheduler(settings, resilience, fake_oracle(), text_source=source, datastore=store)

    async def scenario():
        first = asyncio.create_task(s.run_cycle())
        await asyncio.sleep(0)
        assert s.state == SchedulerState.DISCOVERING
        second = await s.run_cycle()
        ceremony = await s.run_ceremony()
        source.release.set()
        return await first, second, ceremony

    first, second, ceremony = asyncio.run(scenario())

    assert isinstance(first, CycleSession)
    assert second is None and ceremony is None
    assert len(store.sessions) == 1
    assert s.cycles_completed == 1


def test_stage_crash_uses_fallback_payload(settings, resilience, fake_oracle):
    s = _scheduler(settings, resilience, fake_oracle())

    async def boom(words, codex):
        raise RuntimeError("generator exploded")

    s.generation.generate = boom
    session = asyncio.run(s.run_cycle())

    assert "generation" in session.fallback_stages
    assert session.candidates_generated == 3
    assert s.status().fallback_mode is True
    failed = [e for e in s.events.recent(200) if e.kind == EventKind.STAGE_FAILED]
    assert failed[0].detail == "generator exploded"


def test_configuration_error_halts_the_cycle(settings, resilience, fake_oracle):
    s = _scheduler(settings, resilience, fake_oracle())

    async def misconfigured():
        raise ConfigurationError("no api key")

    s.discovery.run = misconfigured
    with pytest.raises(ConfigurationError):
        asyncio.run(s.run_cycle())
    assert s.state == SchedulerState.IDLE


def test_deferred_candidates_are_validated_at_the_ceremony(settings, fake_oracle):
    oracle = fake_oracle(fail=True)
    store = InMemoryDatastore()
    broadcaster = RecordingBroadcaster()
    clock = Clock(10, 20)
    s = _scheduler(settings, _patient_resilience(), oracle, datastore=store, broadcaster=broadcaster, clock=clock)

    session = asyncio.run(s.run_cycle())
    assert session.candidates_approved == 0
    assert set(session.fallback_stages) == {"discovery", "validation"}
    assert len(s.pending) == session.candidates_generated == 20

    oracle.fail = False
    sid = asyncio.run(s.submit("However", "λ", "ada"))
    clock.set(10, 56)
    summary = asyncio.run(s.run_ceremony())

    assert isinstance(summary, CeremonySummary)
    assert summary.hour == 10
    assert summary.human_wins == 1
    assert summary.ai_wins >= 1
    assert summary.approved_count == summary.human_wins + summary.ai_wins
    assert summary.featured_candidate.token_savings == max(c.token_savings for c in store.codex.values())
    assert store.codex["however"].source == SourceKind.HUMAN
    assert store.submissions[0]["id"] == sid
    assert store.submissions[0]["tested"] is True and store.submissions[0]["accepted"] is True
    assert len(s.pending) == 0
    assert broadcaster.summaries == [summary]
    assert s.status().last_ceremony_hour == 10
    assert s.events.recent(1)[0].kind == EventKind.CEREMONY_COMPLETE


def test_pending_queue_is_bounded(settings, fake_oracle):
    s = _scheduler(settings._replace(max_pending=3), _patient_resilience(), fake_oracle(fail=True))

    asyncio.run(s.run_cycle())

    assert len(s.pending) == 3


def test_broadcast_failure_does_not_fail_the_ceremony(settings, resilience, fake_oracle):
    s = _scheduler(settings, resilience, fake_oracle(), broadcaster=RecordingBroadcaster(fail=True))

    summary = asyncio.run(s.run_ceremony())

    assert summary is not None
    assert s.ceremonies_completed == 1
    assert s.state == SchedulerState.IDLE


def test_tick_follows_the_wall_clock(settings, resilience, fake_oracle):
    clock = Clock(10, 10)
    s = _scheduler(settings, resilience, fake_oracle(), clock=clock)

    assert isinstance(asyncio.run(s.tick()), CycleSession)
    clock.set(10, 55)
    assert isinstance(asyncio.run(s.tick()), CeremonySummary)
    clock.set(10, 58)
    assert asyncio.run(s.tick()) is None
    clock.set(11, 5)
    assert isinstance(asyncio.run(s.tick()), CycleSession)
    clock.set(11, 59)
    assert isinstance(asyncio.run(s.tick()), CeremonySummary)
    assert s.ceremonies_completed == 2


def test_run_forever_respects_pause_and_stop(settings, resilience, fake_oracle):
    sleeps = []

    async def sleep(delay):
        sleeps.append(delay)
        if len(sleeps) == 2:
            s.resume()
        if len(sleeps) == 4:
            s.stop()

    s = _scheduler(settings, resilience, fake_oracle(), clock=Clock(10, 10), sleep=sleep)
    s.pause()
    asyncio.run(s.run_forever())

    assert sleeps == [settings.cycle_interval_s] * 4
    assert s.cycles_completed == 2


def test_submit_requires_fields(settings, resilience, fake_oracle):
    s = _scheduler(settings, resilience, fake_oracle())
    with pytest.raises(ValueError):
        asyncio.run(s.submit("  ", "λ", "ada"))


def _seeded_store(oldest, compressed, fillers=150):
    store = InMemoryDatastore()

    async def seed():
        await store.insert_candidate(CompressionCandidate(original=oldest, compressed=compressed).with_counts(4, 2))
        for i in range(fillers):
            await store.insert_candidate(CompressionCandidate(original=f"filler{i}", compressed=f"§f{i}").with_counts(3, 1))

    asyncio.run(seed())
    return store


def test_refresh_loads_the_whole_codex(settings, resilience, fake_oracle):
    store = _seeded_store("alphaword", "♦alp")
    s = _scheduler(settings, resilience, fake_oracle(), datastore=store)

    asyncio.run(s.refresh_codex())

    assert len(s.codex) == 151
    assert s.codex.owner_of("♦alp") == "alphaword"
    reuse = CompressionCandidate(original="zephyrlike", compressed="♦alp").with_counts(3, 1)
    assert s.codex.admit(reuse) == CONFLICT_IN_USE
    same_savings = CompressionCandidate(original="alphaword", compressed="†al").with_counts(3, 1)
    assert s.codex.admit(same_savings) == CONFLICT_WEAKER
    assert len(asyncio.run(store.list_approved_codex(10))) == 10


def test_old_codex_entries_keep_their_compressed_form(settings, resilience, fake_oracle):
    store = _seeded_store("integral", "∫")
    s = _scheduler(settings, resilience, fake_oracle(), datastore=store)

    asyncio.run(s.run_cycle())

    forms = [c.compressed for c in store.codex.values()]
    assert len(forms) == len(set(forms))
    assert store.codex["integral"].compressed == "∫"
    assert s.codex.owner_of("∫") == "integral"


def test_manual_ceremony_does_not_cancel_the_scheduled_one(settings, resilience, fake_oracle):
    store = InMemoryDatastore()
    clock = Clock(10, 10)
    s = _scheduler(settings, resilience, fake_oracle(), datastore=store, clock=clock)

    assert isinstance(asyncio.run(s.run_ceremony()), CeremonySummary)
    asyncio.run(s.submit("therefore", "∴", "ada"))
    clock.set(10, 56)

    assert isinstance(asyncio.run(s.tick()), CeremonySummary)
    assert s.ceremonies_completed == 2
    assert store.submissions[0]["tested"] is True
    clock.set(10, 58)
    assert asyncio.run(s.tick()) is None
