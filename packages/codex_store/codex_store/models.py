from __future__ import annotations

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Integer,
    String,
    Text,
)
from sqlalchemy.sql import func

from .db import Base


class Compression(Base):
    """An approved codex entry. One active row per original word."""

    __tablename__ = "compressions"
    id = Column(Integer, primary_key=True, index=True)
    original = Column(String, unique=True, index=True, nullable=False)
    compressed = Column(String, unique=True, index=True, nullable=False)
    source = Column(String, nullable=False, default="AI")  # "AI" or "Human"
    submitter = Column(String, nullable=True)
    original_tokens = Column(Integer, default=0)
    compressed_tokens = Column(Integer, default=0)
    token_savings = Column(Integer, default=0)
    pattern_type = Column(String, nullable=True)
    session_id = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())


class Submission(Base):
    __tablename__ = "submissions"
    id = Column(Integer, primary_key=True, index=True)
    name = Column(String, nullable=False)
    email = Column(String, nullable=True)
    original = Column(String, nullable=False)
    compressed = Column(String, nullable=False)
    tested = Column(Boolean, default=False, index=True)
    accepted = Column(Boolean, nullable=True)  # NULL until tested
    created_at = Column(DateTime(timezone=True), server_default=func.now())


class CycleRecord(Base):
    __tablename__ = "cycle_sessions"
    id = Column(String, primary_key=True)  # uuid hex
    kind = Column(String, nullable=False, default="cycle")  # "cycle" or "ceremony"
    started_at = Column(DateTime(timezone=True), nullable=False)
    ended_at = Column(DateTime(timezone=True), nullable=True)
    words_discovered = Column(Integer, default=0)
    candidates_generated = Column(Integer, default=0)
    candidates_approved = Column(Integer, default=0)
    tokens_saved = Column(Integer, default=0)
    fallback_stages = Column(Text, nullable=False, default="[]")  # JSON list


class ApprovalEvent(Base):
    """Outbox of approved candidates; subscribers poll by id."""

    __tablename__ = "approval_events"
    id = Column(Integer, primary_key=True, index=True)
    original = Column(String, nullable=False)
    compressed = Column(String, nullable=False)
    source = Column(String, nullable=False)
    token_savings = Column(Integer, default=0)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
