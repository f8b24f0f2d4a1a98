import asyncio

from services.compressor.codex import Codex
from services.compressor.errors import TransientRemoteError
from services.compressor.generation import GenerationStage, fallback_candidates
from services.compressor.patterns import PatternStore, classify_pattern
from services.compressor.schemas import CandidateStatus, DiscoveredWord, PatternType, SourceKind


class FakeCreative:
    def __init__(self, response="", fail=False):
        self.response = response
        self.fail = fail
        self.prompts = []

    async def generate(self, prompt):
        self.prompts.append(prompt)
        if self.fail:
            raise TransientRemoteError("generate", "HTTP 502")
        return self.response


def _word(w, tokens=3, freq=1):
    return DiscoveredWord(word=w, token_count=tokens, frequency=freq)


def test_one_candidate_per_strategy_in_taxonomy_order(settings, resilience):
    stage = GenerationStage(PatternStore(), settings, resilience)

    result = asyncio.run(stage.generate([_word("implementation")], Codex()))

    assert [c.compressed for c in result.candidates] == ["∫", "†imp", "imp", "implmnttn", "♦im†"]
    assert [c.pattern_type for c in result.candidates] == list(PatternType)
    for c in result.candidates:
        assert c.status == CandidateStatus.PENDING
        assert c.source == SourceKind.AI
        assert classify_pattern(c.compressed) == c.pattern_type
    assert result.fallback is None


def test_pattern_weights_reorder_strategies(settings, resilience):
    patterns = PatternStore()
    for _ in range(3):
        patterns.update(PatternType.SYMBOL_PREFIX, True, 2, "x", "†x")
        patterns.update(PatternType.SYMBOL_ONLY, False)
    stage = GenerationStage(patterns, settings, resilience)

    result = asyncio.run(stage.generate([_word("implementation")], Codex()))

    types = [c.pattern_type for c in result.candidates]
    assert types[0] == PatternType.SYMBOL_PREFIX
    assert types[-1] == PatternType.SYMBOL_ONLY


def test_codex_owned_forms_are_skipped(settings, resilience):
    codex = Codex([("integral", "∫", 1)])
    stage = GenerationStage(PatternStore(), settings, resilience)

    result = asyncio.run(stage.generate([_word("implementation")], codex))

    forms = [c.compressed for c in result.candidates]
    assert "∫" not in forms
    assert forms[0] == "∂"


def test_no_form_is_proposed_twice_in_one_run(settings, resilience):
    stage = GenerationStage(PatternStore(), settings, resilience)

    result = asyncio.run(stage.generate([_word("comprehensive"), _word("compression")], Codex()))

    forms = [c.compressed for c in result.candidates]
    assert len(forms) == len(set(forms))
    by_word = {}
    for c in result.candidates:
        by_word.setdefault(c.original, []).append(c.compressed)
    assert "†com" in by_word["comprehensive"]
    assert "‡com" in by_word["compression"]


def test_candidate_cap_per_word(settings, resilience):
    stage = GenerationStage(PatternStore(), settings._replace(max_candidates_per_word=2), resilience)

    result = asyncio.run(stage.generate([_word("approximately"), _word("unfortunately")], Codex()))

    assert len(result.candidates) == 4


def test_creative_suggestions_join_local_candidates(settings, resilience):
    creative = FakeCreative(
        "<compression><original>implementation</original><compressed>◊impl</compressed>"
        "<reasoning>stem</reasoning></compression>"
        "<compression><original>elsewhere</original><compressed>◊els</compressed></compression>"
        "<compression><original>implementation</original><compressed>∂</compressed></compression>"
    )
    codex = Codex([("unfortunately", "∂", 2)])
    stage = GenerationStage(PatternStore(), settings, resilience, creative)

    result = asyncio.run(stage.generate([_word("implementation")], codex))

    forms = [c.compressed for c in result.candidates]
    assert "◊impl" in forms
    assert "◊els" not in forms
    assert "∂" not in forms
    assert len(forms) == settings.max_candidates_per_word
    assert "--- TARGET WORDS ---" in creative.prompts[0]
    assert "- unfortunately -> ∂" in creative.prompts[0]


def test_creative_failure_keeps_local_candidates(settings, resilience):
    stage = GenerationStage(PatternStore(), settings, resilience, FakeCreative(fail=True))

    result = asyncio.run(stage.generate([_word("implementation")], Codex()))

    assert len(result.candidates) == 5
    assert result.fallback == "local"


def test_fallback_candidates_are_fixed():
    words = [_word("implementation"), _word("approximately"), _word("comprehensive"), _word("unfortunately")]

    out = fallback_candidates(words)

    assert [c.compressed for c in out] == ["≈imp", "◊app", "†com"]
    assert all(c.status == CandidateStatus.PENDING for c in out)
