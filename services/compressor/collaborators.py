from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from typing import Dict, List, NamedTuple, Optional, Sequence

import httpx

import codex_store
from codex_store import get_engine, get_sessionmaker, init_db

from .errors import CollaboratorError, ConfigurationError
from .schemas import (
    CandidateStatus,
    CeremonySummary,
    CompressionCandidate,
    CycleSession,
    PatternType,
    SourceKind,
)
from .settings import Settings

logger = logging.getLogger(__name__)


# --- Text sources ---

class Sample(NamedTuple):
    title: str
    content: str
    url: str = ""


BUILTIN_ARTICLES = (
    Sample(
        title="AI Research Developments",
        content=(
            "Artificial intelligence research continues to advance rapidly, with new developments in machine "
            "learning algorithms and neural network architectures. The implementation of transformer models has "
            "revolutionized natural language processing capabilities. Researchers are approximately certain that "
            "these advances will accelerate further. Unfortunately, computational requirements remain substantial, "
            "requiring significant infrastructure investments for large-scale deployment."
        ),
        url="builtin:ai-research",
    ),
    Sample(
        title="Technology Implementation Strategies",
        content=(
            "Organizations worldwide are implementing comprehensive digital transformation initiatives to remain "
            "competitive. The development of cloud-native applications has enabled unprecedented scalability and "
            "flexibility. Companies are approximately doubling their technology investments annually. "
            "Unfortunately, many organizations struggle with the complexity of integration across multiple "
            "systems and platforms."
        ),
        url="builtin:tech-strategy",
    ),
)


class TextSource(ABC):
    @abstractmethod
    async def fetch_sample(self, topic: str) -> Sample:
        pass


class BuiltinCorpusSource(TextSource):
    """Offline articles, served round-robin."""

    def __init__(self, articles: Sequence[Sample] = BUILTIN_ARTICLES):
        self.articles = list(articles)
        self._next = 0

    async def fetch_sample(self, topic: str) -> Sample:
        article = self.articles[self._next % len(self.articles)]
        self._next += 1
        return article


class BraveSearchSource(TextSource):
    def __init__(self, url: str, api_key: str, domains: Sequence[str] = (), count: int = 3, timeout: float = 20.0):
        self.url = url
        self.api_key = api_key
        self.domains = list(domains)
        self.count = count
        self.timeout = timeout
        self._next_domain = 0

    def _query(self, topic: str) -> str:
        if not self.domains:
            return topic
        domain = self.domains[self._next_domain % len(self.domains)]
        self._next_domain += 1
        return f"{topic} {domain}"

    async def fetch_sample(self, topic: str) -> Sample:
        query = self._query(topic)
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            resp = await client.get(
                self.url,
                params={"q": query, "count": self.count},
                headers={"Accept": "application/json", "X-Subscription-Token": self.api_key},
            )
            resp.raise_for_status()
            data = resp.json()

        results = (data.get("web") or {}).get("results") or []
        if not results:
            raise CollaboratorError("search", f"no results for {query!r}")
        first = results[0]
        content = " ".join(f"{r.get('title', '')}. {r.get('description', '')}" for r in results)
        return Sample(title=first.get("title", topic), content=content, url=first.get("url", ""))


def get_text_source(settings: Settings) -> TextSource:
    if settings.text_source == "brave":
        return BraveSearchSource(
            settings.search_url, settings.search_api_key, settings.search_domains, timeout=settings.call_timeout_s
        )
    return BuiltinCorpusSource()


# --- Datastores ---

class Datastore(ABC):
    @abstractmethod
    async def insert_candidate(self, candidate: CompressionCandidate, session_id: Optional[str] = None) -> None:
        pass

    @abstractmethod
    async def list_approved_codex(self, limit: Optional[int] = None) -> List[CompressionCandidate]:
        pass

    @abstractmethod
    async def create_submission(self, original: str, compressed: str, name: str, email: Optional[str] = None) -> int:
        pass

    @abstractmethod
    async def list_pending_external_submissions(self) -> List[CompressionCandidate]:
        pass

    @abstractmethod
    async def mark_submissions_tested(self, ids: Sequence[int], accepted_ids: Sequence[int] = ()) -> None:
        pass

    @abstractmethod
    async def publish_approved(self, candidate: CompressionCandidate) -> None:
        """Notification channel for approved candidates."""
        pass

    @abstractmethod
    async def save_session(self, session: CycleSession) -> None:
        pass

    @abstractmethod
    async def list_sessions(self, limit: int = 50) -> List[CycleSession]:
        pass


class InMemoryDatastore(Datastore):
    def __init__(self):
        self.codex: Dict[str, CompressionCandidate] = {}
        self.submissions: List[Dict[str, object]] = []
        self.published: List[CompressionCandidate] = []
        self.sessions: List[CycleSession] = []

    async def insert_candidate(self, candidate: CompressionCandidate, session_id: Optional[str] = None) -> None:
        self.codex.pop(candidate.original, None)
        self.codex[candidate.original] = candidate

    async def list_approved_codex(self, limit: Optional[int] = None) -> List[CompressionCandidate]:
        rows = list(reversed(list(self.codex.values())))
        return rows if limit is None else rows[:limit]

    async def create_submission(self, original: str, compressed: str, name: str, email: Optional[str] = None) -> int:
        sid = len(self.submissions) + 1
        self.submissions.append({
            "id": sid, "name": name, "email": email, "original": original,
            "compressed": compressed, "tested": False, "accepted": None,
        })
        return sid

    async def list_pending_external_submissions(self) -> List[CompressionCandidate]:
        return [_submission_candidate(s["id"], s["name"], s["original"], s["compressed"])
                for s in self.submissions if not s["tested"]]

    async def mark_submissions_tested(self, ids: Sequence[int], accepted_ids: Sequence[int] = ()) -> None:
        accepted = set(accepted_ids)
        for s in self.submissions:
            if s["id"] in ids:
                s["tested"] = True
                s["accepted"] = s["id"] in accepted

    async def publish_approved(self, candidate: CompressionCandidate) -> None:
        self.published.append(candidate)

    async def save_session(self, session: CycleSession) -> None:
        self.sessions.append(session)

    async def list_sessions(self, limit: int = 50) -> List[CycleSession]:
        return list(reversed(self.sessions))[:limit]


class SqlDatastore(Datastore):
    """Datastore over codex_store (SQLAlchemy async). One session per call."""

    def __init__(self, url: Optional[str] = None):
        self.engine = get_engine(url)
        self.sessionmaker = get_sessionmaker()
        self._ready = False

    async def _ensure_schema(self) -> None:
        if not self._ready:
            await init_db(self.engine)
            self._ready = True

    async def insert_candidate(self, candidate: CompressionCandidate, session_id: Optional[str] = None) -> None:
        await self._ensure_schema()
        async with self.sessionmaker() as db:
            await codex_store.insert_candidate(
                db,
                original=candidate.original,
                compressed=candidate.compressed,
                source=candidate.source.value,
                submitter=candidate.identity,
                original_tokens=candidate.original_tokens or 0,
                compressed_tokens=candidate.compressed_tokens or 0,
                token_savings=candidate.token_savings or 0,
                pattern_type=candidate.pattern_type.value,
                session_id=session_id,
            )
            await db.commit()

    async def list_approved_codex(self, limit: Optional[int] = None) -> List[CompressionCandidate]:
        await self._ensure_schema()
        async with self.sessionmaker() as db:
            rows = await codex_store.list_approved_codex(db, limit=limit)
        return [
            CompressionCandidate(
                original=r.original,
                compressed=r.compressed,
                source=SourceKind(r.source) if r.source in ("AI", "Human") else SourceKind.AI,
                identity=r.submitter,
                pattern_type=PatternType(r.pattern_type) if r.pattern_type else PatternType.OTHER,
                original_tokens=r.original_tokens,
                compressed_tokens=r.compressed_tokens,
                token_savings=r.token_savings,
                is_context_safe=True,
                status=CandidateStatus.APPROVED,
            )
            for r in rows
        ]

    async def create_submission(self, original: str, compressed: str, name: str, email: Optional[str] = None) -> int:
        await self._ensure_schema()
        async with self.sessionmaker() as db:
            row = await codex_store.create_submission(db, name=name, original=original, compressed=compressed, email=email)
            await db.commit()
            return row.id

    async def list_pending_external_submissions(self) -> List[CompressionCandidate]:
        await self._ensure_schema()
        async with self.sessionmaker() as db:
            rows = await codex_store.list_pending_external_submissions(db)
        return [_submission_candidate(r.id, r.name, r.original, r.compressed) for r in rows]

    async def mark_submissions_tested(self, ids: Sequence[int], accepted_ids: Sequence[int] = ()) -> None:
        await self._ensure_schema()
        async with self.sessionmaker() as db:
            await codex_store.mark_submissions_tested(db, ids, accepted_ids)
            await db.commit()

    async def publish_approved(self, candidate: CompressionCandidate) -> None:
        await self._ensure_schema()
        async with self.sessionmaker() as db:
            await codex_store.publish_approval(
                db,
                original=candidate.original,
                compressed=candidate.compressed,
                source=candidate.source_label,
                token_savings=candidate.token_savings or 0,
            )
            await db.commit()

    async def save_session(self, session: CycleSession) -> None:
        await self._ensure_schema()
        async with self.sessionmaker() as db:
            await codex_store.save_cycle_session(
                db,
                session_id=session.id,
                kind=session.kind,
                started_at=session.started_at,
                ended_at=session.ended_at,
                words_discovered=session.words_discovered,
                candidates_generated=session.candidates_generated,
                candidates_approved=session.candidates_approved,
                tokens_saved=session.tokens_saved,
                fallback_stages=list(session.fallback_stages),
            )
            await db.commit()

    async def list_sessions(self, limit: int = 50) -> List[CycleSession]:
        await self._ensure_schema()
        async with self.sessionmaker() as db:
            rows = await codex_store.list_cycle_sessions(db, limit=limit)
        return [
            CycleSession(
                id=r.id,
                kind=r.kind,
                started_at=r.started_at,
                ended_at=r.ended_at,
                words_discovered=r.words_discovered,
                candidates_generated=r.candidates_generated,
                candidates_approved=r.candidates_approved,
                tokens_saved=r.tokens_saved,
                fallback_stages=json.loads(r.fallback_stages or "[]"),
            )
            for r in rows
        ]


def _submission_candidate(sid: int, name: str, original: str, compressed: str) -> CompressionCandidate:
    return CompressionCandidate(
        original=original.strip().lower(),
        compressed=compressed.strip(),
        source=SourceKind.HUMAN,
        identity=name,
        submission_id=sid,
        reasoning="external submission",
    )


def get_datastore(settings: Settings) -> Datastore:
    if settings.datastore == "sql":
        return SqlDatastore(settings.database_url)
    elif settings.datastore == "memory":
        return InMemoryDatastore()
    raise ConfigurationError(f"unknown datastore: {settings.datastore}")


# --- Broadcasters ---

def format_announcement(summary: CeremonySummary) -> str:
    lines = [f"Hour {summary.hour:02d}:00 compression ceremony"]
    lines.append(f"{summary.approved_count} approved, {summary.total_savings} tokens saved")
    if summary.featured_candidate:
        c = summary.featured_candidate
        lines.append(f"Featured: {c.original} -> {c.compressed} ({c.token_savings} saved, {c.source_label})")
    lines.append(f"Human wins: {summary.human_wins} | AI wins: {summary.ai_wins}")
    return "\n".join(lines)


class Broadcaster(ABC):
    @abstractmethod
    async def announce(self, summary: CeremonySummary) -> None:
        pass


class LogBroadcaster(Broadcaster):
    async def announce(self, summary: CeremonySummary) -> None:
        logger.info(format_announcement(summary))


class WebhookBroadcaster(Broadcaster):
    def __init__(self, url: str, timeout: float = 20.0):
        self.url = url
        self.timeout = timeout

    async def announce(self, summary: CeremonySummary) -> None:
        payload = summary.model_dump(mode="json")
        payload["text"] = format_announcement(summary)
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            resp = await client.post(self.url, json=payload)
            resp.raise_for_status()


def get_broadcaster(settings: Settings) -> Broadcaster:
    if settings.broadcast_url:
        return WebhookBroadcaster(settings.broadcast_url, timeout=settings.call_timeout_s)
    return LogBroadcaster()
