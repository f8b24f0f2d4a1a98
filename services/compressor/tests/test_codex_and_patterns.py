import json

import pytest

from services.compressor.codex import CONFLICT_IN_USE, CONFLICT_WEAKER, Codex
from services.compressor.patterns import PatternStore, classify_pattern
from services.compressor.schemas import CompressionCandidate, PatternType


def _approved(original, compressed, savings):
    return CompressionCandidate(original=original, compressed=compressed).with_counts(savings + 1, 1)


def test_codex_never_shares_a_compressed_form():
    codex = Codex()
    assert codex.admit(_approved("comprehensive", "α", 1)) is None
    assert codex.admit(_approved("analyze", "α", 3)) == CONFLICT_IN_USE
    assert codex.admit(_approved("comprehensive", "∏", 1)) == CONFLICT_WEAKER
    assert codex.admit(_approved("comprehensive", "∏", 2)) is None

    snapshot = codex.snapshot()
    assert snapshot == {"comprehensive": "∏"}
    assert len(set(snapshot.values())) == len(snapshot)
    # replaced form is free again
    assert codex.admit(_approved("analyze", "α", 1)) is None


def test_codex_load_skips_duplicates():
    codex = Codex([("a1", "α", 1), ("a2", "α", 1), ("a1", "β", 1)])
    assert codex.snapshot() == {"a1": "α"}
    assert "a1" in codex and len(codex) == 1


@pytest.mark.parametrize("compressed,expected", [
    ("∂", PatternType.SYMBOL_ONLY),
    ("≈∴", PatternType.SYMBOL_ONLY),
    ("†imp", PatternType.SYMBOL_PREFIX),
    ("imp", PatternType.ABBREVIATION),
    ("comp", PatternType.ABBREVIATION),
    ("implmnttn", PatternType.VOWEL_ELIDED),
    ("§im‡", PatternType.OTHER),
    ("xyz123", PatternType.OTHER),
])
def test_classify_pattern(compressed, expected):
    assert classify_pattern(compressed) == expected


def test_pattern_store_tracks_outcomes_and_best_examples():
    store = PatternStore(best_examples_cap=2)
    store.update(PatternType.SYMBOL_ONLY, True, 1, "comprehensive", "α")
    store.update(PatternType.SYMBOL_ONLY, True, 3, "therefore", "∴")
    store.update(PatternType.SYMBOL_ONLY, True, 2, "however", "λ")
    store.update(PatternType.SYMBOL_ONLY, False)

    record = store.get(PatternType.SYMBOL_ONLY)
    assert (record.attempt_count, record.success_count, record.total_savings) == (4, 3, 6)
    assert [e.savings for e in record.best_examples] == [3, 2]
    assert record.success_rate == 0.75
    assert store.weight(PatternType.SYMBOL_ONLY) == 0.75


def test_pattern_weight_baseline_without_history():
    store = PatternStore(baseline_weight=0.5)
    assert store.weight(PatternType.VOWEL_ELIDED) == 0.5
    store.update(PatternType.VOWEL_ELIDED, False)
    assert store.weight(PatternType.VOWEL_ELIDED) == 0.0


def test_pattern_store_persists_snapshot(tmp_path):
    path = str(tmp_path / "patterns.json")
    store = PatternStore(path)
    store.update(PatternType.SYMBOL_PREFIX, True, 2, "implementation", "†imp")

    reloaded = PatternStore(path)
    record = reloaded.get(PatternType.SYMBOL_PREFIX)
    assert record.success_count == 1
    assert record.best_examples[0].compressed == "†imp"


def test_corrupt_snapshot_is_ignored(tmp_path):
    path = tmp_path / "patterns.json"
    path.write_text("{not json", encoding="utf-8")

    store = PatternStore(str(path))

    assert store.all() == []
    store.update(PatternType.OTHER, False)
    assert json.loads(path.read_text(encoding="utf-8"))[0]["attempt_count"] == 1
