from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SourceKind(str, Enum):
    AI = "AI"
    HUMAN = "Human"


class CandidateStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class PatternType(str, Enum):
    # Declaration order is the tie-break order for generation strategies.
    SYMBOL_ONLY = "symbol_only"
    SYMBOL_PREFIX = "symbol_prefix"
    ABBREVIATION = "abbreviation"
    VOWEL_ELIDED = "vowel_elided"
    OTHER = "other"


class Stage(str, Enum):
    DISCOVERY = "discovery"
    GENERATION = "generation"
    VALIDATION = "validation"


class SchedulerState(str, Enum):
    IDLE = "idle"
    DISCOVERING = "discovering"
    GENERATING = "generating"
    VALIDATING = "validating"
    CEREMONY = "ceremony"


class CompressionCandidate(BaseModel):
    model_config = ConfigDict(frozen=True)

    original: str
    compressed: str
    source: SourceKind = SourceKind.AI
    identity: Optional[str] = None
    pattern_type: PatternType = PatternType.OTHER
    original_tokens: Optional[int] = None
    compressed_tokens: Optional[int] = None
    token_savings: Optional[int] = None
    is_context_safe: Optional[bool] = None
    status: CandidateStatus = CandidateStatus.PENDING
    rejection_reason: Optional[str] = None
    submission_id: Optional[int] = None
    reasoning: str = ""

    @property
    def source_label(self) -> str:
        if self.source == SourceKind.HUMAN:
            return f"Human: {self.identity or 'anonymous'}"
        return "AI"

    @property
    def is_decided(self) -> bool:
        return self.status != CandidateStatus.PENDING

    def with_counts(self, original_tokens: int, compressed_tokens: int) -> "CompressionCandidate":
        return self.model_copy(update={
            "original_tokens": original_tokens,
            "compressed_tokens": compressed_tokens,
            "token_savings": original_tokens - compressed_tokens,
        })

    def approve(self) -> "CompressionCandidate":
        return self.model_copy(update={"status": CandidateStatus.APPROVED, "rejection_reason": None})

    def reject(self, reason: str) -> "CompressionCandidate":
        return self.model_copy(update={"status": CandidateStatus.REJECTED, "rejection_reason": reason})


class DiscoveredWord(BaseModel):
    word: str
    token_count: int
    frequency: int = 1

    @property
    def compression_potential(self) -> int:
        return (self.token_count - 1) * self.frequency


class PatternExample(BaseModel):
    original: str
    compressed: str
    savings: int


class PatternRecord(BaseModel):
    pattern_type: PatternType
    attempt_count: int = 0
    success_count: int = 0
    total_savings: int = 0
    best_examples: List[PatternExample] = Field(default_factory=list)

    @property
    def success_rate(self) -> float:
        if not self.attempt_count:
            return 0.0
        return self.success_count / self.attempt_count


class CycleSession(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    kind: str = "cycle"  # "cycle" or "ceremony"
    started_at: datetime = Field(default_factory=utcnow)
    ended_at: Optional[datetime] = None
    words_discovered: int = 0
    candidates_generated: int = 0
    candidates_approved: int = 0
    tokens_saved: int = 0
    fallback_stages: List[str] = Field(default_factory=list)

    @property
    def used_fallback(self) -> bool:
        return bool(self.fallback_stages)


class ValidationReport(BaseModel):
    approved: List[CompressionCandidate] = Field(default_factory=list)
    rejected: List[CompressionCandidate] = Field(default_factory=list)
    deferred: List[CompressionCandidate] = Field(default_factory=list)

    @property
    def total_savings(self) -> int:
        return sum(c.token_savings or 0 for c in self.approved)


class CeremonySummary(BaseModel):
    hour: int
    approved_count: int = 0
    total_savings: int = 0
    featured_candidate: Optional[CompressionCandidate] = None
    human_wins: int = 0
    ai_wins: int = 0


class EventKind(str, Enum):
    STAGE_STARTED = "stage_started"
    STAGE_FAILED = "stage_failed"
    CANDIDATE_APPROVED = "candidate_approved"
    CANDIDATE_REJECTED = "candidate_rejected"
    CYCLE_COMPLETE = "cycle_complete"
    CEREMONY_COMPLETE = "ceremony_complete"


class CycleEvent(BaseModel):
    kind: EventKind
    session_id: Optional[str] = None
    stage: Optional[Stage] = None
    candidate: Optional[CompressionCandidate] = None
    detail: str = ""
    at: datetime = Field(default_factory=utcnow)


# HTTP request/response bodies

class SubmissionReq(BaseModel):
    original: str = Field(min_length=1)
    compressed: str = Field(min_length=1)
    name: str = Field(min_length=1)
    email: Optional[str] = None


class SubmissionResp(BaseModel):
    id: int
    status: str = "queued"


class StatusResp(BaseModel):
    state: SchedulerState
    paused: bool
    pending_candidates: int
    cycles_completed: int
    ceremonies_completed: int
    total_approved: int
    total_tokens_saved: int
    codex_size: int
    fallback_mode: bool
    last_ceremony_hour: Optional[int] = None
