from __future__ import annotations

import json
from datetime import datetime
from typing import Iterable, List, Optional

from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from .models import ApprovalEvent, Compression, CycleRecord, Submission


async def insert_candidate(
    db: AsyncSession,
    *,
    original: str,
    compressed: str,
    source: str,
    submitter: Optional[str] = None,
    original_tokens: int = 0,
    compressed_tokens: int = 0,
    token_savings: int = 0,
    pattern_type: Optional[str] = None,
    session_id: Optional[str] = None,
) -> Compression:
    """
    Stores an approved compression.
    An existing row for the same original is replaced; the caller has already
    decided the new entry wins.
    """
    await db.execute(delete(Compression).where(Compression.original == original))
    row = Compression(
        original=original,
        compressed=compressed,
        source=source,
        submitter=submitter,
        original_tokens=original_tokens,
        compressed_tokens=compressed_tokens,
        token_savings=token_savings,
        pattern_type=pattern_type,
        session_id=session_id,
    )
    db.add(row)
    await db.flush()
    return row


async def list_approved_codex(db: AsyncSession, limit: Optional[int] = None) -> List[Compression]:
    """Newest first. No limit returns the whole codex."""
    stmt = select(Compression).order_by(Compression.created_at.desc(), Compression.id.desc())
    if limit is not None:
        stmt = stmt.limit(limit)
    res = await db.execute(stmt)
    return list(res.scalars().all())


async def create_submission(
    db: AsyncSession, *, name: str, original: str, compressed: str, email: Optional[str] = None
) -> Submission:
    row = Submission(name=name, email=email, original=original, compressed=compressed, tested=False)
    db.add(row)
    await db.flush()
    return row


async def list_pending_external_submissions(db: AsyncSession, limit: int = 200) -> List[Submission]:
    res = await db.execute(
        select(Submission).where(Submission.tested == False).order_by(Submission.id).limit(limit)
    )
    return list(res.scalars().all())


async def mark_submissions_tested(
    db: AsyncSession, submission_ids: Iterable[int], accepted_ids: Iterable[int] = ()
) -> None:
    ids = list(submission_ids)
    if not ids:
        return
    accepted = set(accepted_ids)
    for sid in ids:
        await db.execute(
            update(Submission).where(Submission.id == sid).values(tested=True, accepted=sid in accepted)
        )


async def save_cycle_session(
    db: AsyncSession,
    *,
    session_id: str,
    kind: str,
    started_at: datetime,
    ended_at: Optional[datetime],
    words_discovered: int,
    candidates_generated: int,
    candidates_approved: int,
    tokens_saved: int,
    fallback_stages: List[str],
) -> CycleRecord:
    row = CycleRecord(
        id=session_id,
        kind=kind,
        started_at=started_at,
        ended_at=ended_at,
        words_discovered=words_discovered,
        candidates_generated=candidates_generated,
        candidates_approved=candidates_approved,
        tokens_saved=tokens_saved,
        fallback_stages=json.dumps(fallback_stages),
    )
    db.add(row)
    await db.flush()
    return row


async def list_cycle_sessions(db: AsyncSession, limit: int = 50) -> List[CycleRecord]:
    res = await db.execute(select(CycleRecord).order_by(CycleRecord.started_at.desc()).limit(limit))
    return list(res.scalars().all())


async def publish_approval(
    db: AsyncSession, *, original: str, compressed: str, source: str, token_savings: int
) -> ApprovalEvent:
    row = ApprovalEvent(original=original, compressed=compressed, source=source, token_savings=token_savings)
    db.add(row)
    await db.flush()
    return row


async def list_approval_events(db: AsyncSession, after_id: int = 0, limit: int = 100) -> List[ApprovalEvent]:
    res = await db.execute(
        select(ApprovalEvent).where(ApprovalEvent.id > after_id).order_by(ApprovalEvent.id).limit(limit)
    )
    return list(res.scalars().all())
