from __future__ import annotations

import logging
from typing import Dict, Iterable, Optional, Tuple

from .schemas import CompressionCandidate

logger = logging.getLogger(__name__)

CONFLICT_IN_USE = "codex conflict: compressed form in use"
CONFLICT_WEAKER = "codex conflict: existing entry saves as much"


class Codex:
    """
    In-process mirror of the approved original -> compressed mapping.
    No two originals ever share a compressed form.
    """

    def __init__(self, entries: Iterable[Tuple[str, str, int]] = ()):
        self._forward: Dict[str, str] = {}
        self._savings: Dict[str, int] = {}
        self._owners: Dict[str, str] = {}
        self.load(entries)

    def load(self, entries: Iterable[Tuple[str, str, int]]) -> None:
        """Replace the mirror with (original, compressed, savings) rows. Later duplicates lose."""
        self._forward.clear()
        self._savings.clear()
        self._owners.clear()
        for original, compressed, savings in entries:
            if original in self._forward or compressed in self._owners:
                logger.warning(f"Skipping duplicate codex row {original!r} -> {compressed!r}")
                continue
            self._install(original, compressed, savings)

    def _install(self, original: str, compressed: str, savings: int) -> None:
        previous = self._forward.get(original)
        if previous is not None:
            self._owners.pop(previous, None)
        self._forward[original] = compressed
        self._savings[original] = savings
        self._owners[compressed] = original

    def owner_of(self, compressed: str) -> Optional[str]:
        return self._owners.get(compressed)

    def get(self, original: str) -> Optional[str]:
        return self._forward.get(original)

    def conflict(self, candidate: CompressionCandidate) -> Optional[str]:
        owner = self._owners.get(candidate.compressed)
        if owner is not None and owner != candidate.original:
            return CONFLICT_IN_USE
        existing = self._savings.get(candidate.original)
        if existing is not None and existing >= (candidate.token_savings or 0):
            return CONFLICT_WEAKER
        return None

    def admit(self, candidate: CompressionCandidate) -> Optional[str]:
        """Install the candidate, or return the rejection reason."""
        reason = self.conflict(candidate)
        if reason:
            return reason
        self._install(candidate.original, candidate.compressed, candidate.token_savings or 0)
        return None

    def snapshot(self) -> Dict[str, str]:
        return dict(self._forward)

    def __len__(self) -> int:
        return len(self._forward)

    def __contains__(self, original: str) -> bool:
        return original in self._forward
