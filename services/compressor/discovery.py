from __future__ import annotations

import logging
import re
from collections import Counter
from typing import List, NamedTuple, Optional, Tuple

from compressor_prompts import parse_discovery_lines, render_discovery_prompt

from .collaborators import BUILTIN_ARTICLES, Sample, TextSource
from .providers import AnalyticCollaborator
from .resilience import Resilience
from .schemas import DiscoveredWord
from .settings import Settings
from .tokenizer import TokenizerOracle

logger = logging.getLogger(__name__)

_WORD_RE = re.compile(r"[^\W\d_]+")

FALLBACK_WORDS = (
    DiscoveredWord(word="approximately", token_count=3, frequency=2),
    DiscoveredWord(word="implementation", token_count=3, frequency=1),
    DiscoveredWord(word="unfortunately", token_count=3, frequency=1),
    DiscoveredWord(word="comprehensive", token_count=3, frequency=1),
)


def fallback_words() -> List[DiscoveredWord]:
    return [w.model_copy() for w in FALLBACK_WORDS]


def rank_words(words: List[DiscoveredWord], top_k: int) -> List[DiscoveredWord]:
    """Descending compression potential, alphabetical on ties."""
    return sorted(words, key=lambda w: (-w.compression_potential, w.word))[:top_k]


class DiscoveryResult(NamedTuple):
    words: List[DiscoveredWord]
    title: str = ""
    fallback: Optional[str] = None  # which fallback produced the words, if any


class DiscoveryStage:
    def __init__(
        self,
        oracle: TokenizerOracle,
        text_source: TextSource,
        settings: Settings,
        resilience: Resilience,
        analytic: Optional[AnalyticCollaborator] = None,
    ):
        self.oracle = oracle
        self.text_source = text_source
        self.settings = settings
        self.resilience = resilience
        self.analytic = analytic
        self._topic_index = 0

    def next_topic(self) -> str:
        topics = self.settings.search_topics
        topic = topics[self._topic_index % len(topics)]
        self._topic_index += 1
        return topic

    async def analyze(self, sample: str) -> List[DiscoveredWord]:
        """Token-count every distinct word in the sample and rank the multi-token ones."""
        tokens = [t.lower() for t in _WORD_RE.findall(sample or "")]
        frequency = Counter(tokens)

        words: List[DiscoveredWord] = []
        for word in sorted(frequency):
            if len(word) < self.settings.min_word_length:
                continue
            count = await self.resilience.call("tokenize", self.oracle.token_count, word)
            if count >= self.settings.min_tokens:
                words.append(DiscoveredWord(word=word, token_count=count, frequency=frequency[word]))
        return rank_words(words, self.settings.top_k)

    async def _fetch(self, topic: str) -> Tuple[Sample, bool]:
        try:
            return await self.resilience.call("search", self.text_source.fetch_sample, topic), False
        except Exception as e:
            logger.warning(f"Text source failed for {topic!r} ({e}); using built-in article")
            return BUILTIN_ARTICLES[self._topic_index % len(BUILTIN_ARTICLES)], True

    async def _analytic_fallback(self, sample: str) -> List[DiscoveredWord]:
        if self.analytic is None:
            return []
        try:
            raw = await self.resilience.call("analyze", self.analytic.analyze, render_discovery_prompt(sample))
        except Exception as e:
            logger.warning(f"Analytic discovery failed: {e}")
            return []
        parsed = [DiscoveredWord(**w) for w in parse_discovery_lines(raw)]
        return rank_words(parsed, self.settings.top_k)

    async def run(self) -> DiscoveryResult:
        """Never raises for collaborator failures."""
        topic = self.next_topic()
        sample, offline = await self._fetch(topic)
        logger.info(f"Discovery sample: {sample.title!r} ({len(sample.content)} chars)")

        try:
            words = await self.analyze(sample.content)
            return DiscoveryResult(words, sample.title, fallback="builtin" if offline else None)
        except Exception as e:
            logger.warning(f"Tokenizer unavailable during discovery ({e}); asking analytic collaborator")

        words = await self._analytic_fallback(sample.content)
        if words:
            return DiscoveryResult(words, sample.title, fallback="analytic")
        logger.warning("Falling back to fixed discovery word list")
        return DiscoveryResult(fallback_words(), sample.title, fallback="fixed")
