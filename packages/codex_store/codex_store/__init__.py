from .db import Base, get_engine, get_sessionmaker, init_db
from .models import ApprovalEvent, Compression, CycleRecord, Submission
from .crud import (
    create_submission,
    insert_candidate,
    list_approval_events,
    list_approved_codex,
    list_cycle_sessions,
    list_pending_external_submissions,
    mark_submissions_tested,
    publish_approval,
    save_cycle_session,
)

__all__ = [
    "init_db", "get_engine", "get_sessionmaker",
    "Base", "Compression", "Submission", "CycleRecord", "ApprovalEvent",
    "insert_candidate", "list_approved_codex", "create_submission",
    "list_pending_external_submissions", "mark_submissions_tested",
    "save_cycle_session", "list_cycle_sessions",
    "publish_approval", "list_approval_events",
]
