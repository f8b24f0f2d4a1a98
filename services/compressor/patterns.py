from __future__ import annotations

import json
import logging
import os
from typing import Dict, List, Optional

from pydantic import ValidationError

from .schemas import PatternExample, PatternRecord, PatternType

logger = logging.getLogger(__name__)

VOWELS = set("aeiouAEIOU")


def _is_letter(ch: str) -> bool:
    return ch.isascii() and ch.isalnum()


def classify_pattern(compressed: str) -> PatternType:
    """
    Fixed classifier over the compressed form. ASCII letters/digits count as
    letters, anything else is a marker.
    """
    if not compressed or not any(_is_letter(c) for c in compressed):
        return PatternType.SYMBOL_ONLY
    head, tail = compressed[0], compressed[1:]
    if not _is_letter(head) and tail and all(c.isascii() and c.isalpha() for c in tail):
        return PatternType.SYMBOL_PREFIX
    if all(c.isascii() and c.isalpha() for c in compressed):
        if len(compressed) >= 4 and not any(c in VOWELS for c in tail):
            return PatternType.VOWEL_ELIDED
        return PatternType.ABBREVIATION
    return PatternType.OTHER


class PatternStore:
    """
    Aggregated per-pattern outcomes; the only feedback channel from
    validation back to generation.
    """

    def __init__(self, path: Optional[str] = None, best_examples_cap: int = 5, baseline_weight: float = 0.5):
        self.path = path or None
        self.best_examples_cap = best_examples_cap
        self.baseline_weight = baseline_weight
        self._records: Dict[PatternType, PatternRecord] = {}
        if self.path:
            self._load()

    def get(self, pattern_type: PatternType) -> PatternRecord:
        if pattern_type not in self._records:
            self._records[pattern_type] = PatternRecord(pattern_type=pattern_type)
        return self._records[pattern_type]

    def update(
        self,
        pattern_type: PatternType,
        approved: bool,
        savings: int = 0,
        original: str = "",
        compressed: str = "",
    ) -> PatternRecord:
        record = self.get(pattern_type)
        record.attempt_count += 1
        if approved:
            record.success_count += 1
            record.total_savings += savings
            record.best_examples.append(PatternExample(original=original, compressed=compressed, savings=savings))
            record.best_examples.sort(key=lambda e: e.savings, reverse=True)
            del record.best_examples[self.best_examples_cap:]
        if self.path:
            self._save()
        return record

    def all(self) -> List[PatternRecord]:
        return [self._records[p] for p in PatternType if p in self._records]

    def weight(self, pattern_type: PatternType) -> float:
        record = self._records.get(pattern_type)
        if record is None or not record.attempt_count:
            return self.baseline_weight
        return record.success_count / record.attempt_count

    def summary(self) -> List[Dict[str, object]]:
        return [r.model_dump(mode="json") for r in self.all()]

    def _load(self) -> None:
        if not os.path.exists(self.path):
            return
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                rows = json.load(f)
            for row in rows:
                record = PatternRecord.model_validate(row)
                self._records[record.pattern_type] = record
        except (OSError, ValueError, TypeError, ValidationError) as e:
            logger.warning(f"Ignoring unreadable pattern snapshot {self.path}: {e}")
            self._records.clear()

    def _save(self) -> None:
        tmp = self.path + ".tmp"
        with open(tmp, "w", encoding="utf-8") as f:
            json.dump(self.summary(), f, ensure_ascii=False, indent=2)
        os.replace(tmp, self.path)
