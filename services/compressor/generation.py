from __future__ import annotations

import logging
from typing import Dict, Iterable, List, NamedTuple, Optional, Sequence, Set

from compressor_prompts import parse_compression_blocks, render_generation_prompt, summarize_patterns

from .codex import Codex
from .patterns import VOWELS, PatternStore, classify_pattern
from .providers import CreativeCollaborator
from .resilience import Resilience
from .schemas import CompressionCandidate, DiscoveredWord, PatternType, SourceKind
from .settings import Settings

logger = logging.getLogger(__name__)

# Known-good single-symbol mappings, preferred when free.
BASELINE_SYMBOLS = {
    "unfortunately": "∂",
    "implementation": "∫",
    "comprehensive": "∏",
    "approximately": "≈",
    "communication": "Δ",
    "infrastructure": "Ω",
    "database": "∑",
    "customer": "μ",
    "analyze": "α",
    "however": "λ",
    "therefore": "∴",
    "development": "δ",
    "management": "π",
    "performance": "ρ",
    "configuration": "θ",
}

SINGLE_SYMBOLS = "∂∫∏∑ΔΩαβγδεθλμπρστφψω"
PREFIX_MARKERS = "†‡§¶◊♦"
SUFFIX_MARKERS = "†‡§¶◊♦♠♣♥♪♫"
FALLBACK_PALETTE = "≈◊†§¶♦"

TAXONOMY = list(PatternType)


def fallback_candidates(words: Sequence[DiscoveredWord]) -> List[CompressionCandidate]:
    """Fixed compressions for the first three words, used when generation itself fails."""
    out = []
    for i, w in enumerate(words[:3]):
        compressed = f"{FALLBACK_PALETTE[i % len(FALLBACK_PALETTE)]}{w.word[:3]}"
        out.append(CompressionCandidate(
            original=w.word,
            compressed=compressed,
            pattern_type=classify_pattern(compressed),
            reasoning="fallback generation",
        ))
    return out


class GenerationResult(NamedTuple):
    candidates: List[CompressionCandidate]
    fallback: Optional[str] = None


class GenerationStage:
    """
    Purely combinatorial: proposes candidates per word from a fixed set of
    strategies ordered by pattern success. Never consults the tokenizer.
    """

    def __init__(
        self,
        patterns: PatternStore,
        settings: Settings,
        resilience: Resilience,
        creative: Optional[CreativeCollaborator] = None,
    ):
        self.patterns = patterns
        self.settings = settings
        self.resilience = resilience
        self.creative = creative

    def strategy_order(self) -> List[PatternType]:
        return sorted(TAXONOMY, key=lambda p: (-self.patterns.weight(p), TAXONOMY.index(p)))

    def _forms(self, pattern: PatternType, word: str) -> Iterable[str]:
        if pattern == PatternType.SYMBOL_ONLY:
            if word in BASELINE_SYMBOLS:
                yield BASELINE_SYMBOLS[word]
            yield from SINGLE_SYMBOLS
        elif pattern == PatternType.SYMBOL_PREFIX:
            for m in PREFIX_MARKERS:
                yield m + word[:3]
        elif pattern == PatternType.ABBREVIATION:
            yield word[:3]
            yield word[:4]
        elif pattern == PatternType.VOWEL_ELIDED:
            yield word[0] + "".join(c for c in word[1:] if c not in VOWELS)
        else:
            for head in reversed(PREFIX_MARKERS):
                for tail in SUFFIX_MARKERS:
                    if head != tail:
                        yield head + word[:2] + tail

    def _rejected(self, word: str, compressed: str, taken: Set[str], codex: Codex) -> bool:
        if not compressed or compressed.lower() == word.lower():
            return True
        owner = codex.owner_of(compressed)
        if owner is not None and owner != word:
            return True
        return compressed in taken

    def local_candidates(self, word: str, taken: Set[str], codex: Codex) -> List[CompressionCandidate]:
        out: List[CompressionCandidate] = []
        for pattern in self.strategy_order():
            for form in self._forms(pattern, word):
                # the form must really be what the classifier calls it
                if classify_pattern(form) != pattern or self._rejected(word, form, taken, codex):
                    continue
                taken.add(form)
                out.append(CompressionCandidate(
                    original=word,
                    compressed=form,
                    source=SourceKind.AI,
                    pattern_type=pattern,
                    reasoning=f"{pattern.value} strategy",
                ))
                break
        return out

    async def _suggestions(self, words: Sequence[DiscoveredWord], codex: Codex) -> Optional[List[Dict[str, str]]]:
        if self.creative is None:
            return []
        prompt = render_generation_prompt(
            [w.model_dump() for w in words],
            codex.snapshot(),
            summarize_patterns(self.patterns.summary()),
        )
        try:
            raw = await self.resilience.call("generate", self.creative.generate, prompt)
        except Exception as e:
            logger.warning(f"Creative collaborator failed ({e}); using local strategies only")
            return None
        return parse_compression_blocks(raw)

    async def generate(self, words: Sequence[DiscoveredWord], codex: Codex) -> GenerationResult:
        taken: Set[str] = set()
        by_word: Dict[str, List[CompressionCandidate]] = {}
        for w in words:
            if w.word not in by_word:
                by_word[w.word] = self.local_candidates(w.word, taken, codex)

        suggestions = await self._suggestions(words, codex)
        for s in suggestions or ():
            word = s["original"].strip().lower()
            compressed = s["compressed"].strip()
            if word not in by_word or self._rejected(word, compressed, taken, codex):
                continue
            taken.add(compressed)
            by_word[word].append(CompressionCandidate(
                original=word,
                compressed=compressed,
                source=SourceKind.AI,
                pattern_type=classify_pattern(compressed),
                reasoning=s.get("reasoning", "creative generation"),
            ))

        order = {p: i for i, p in enumerate(self.strategy_order())}
        candidates: List[CompressionCandidate] = []
        for word, proposals in by_word.items():
            proposals.sort(key=lambda c: order[c.pattern_type])
            candidates.extend(proposals[: self.settings.max_candidates_per_word])

        logger.info(f"Generated {len(candidates)} candidates for {len(by_word)} words")
        return GenerationResult(candidates, fallback="local" if suggestions is None else None)
