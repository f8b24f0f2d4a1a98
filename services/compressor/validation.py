from __future__ import annotations

import logging
import re
from typing import Dict, List, Optional, Sequence, Tuple

from compressor_prompts import parse_semantic_verdicts, render_semantic_prompt

from .codex import Codex
from .events import EventStream
from .patterns import PatternStore, classify_pattern
from .providers import AnalyticCollaborator
from .resilience import Resilience
from .schemas import CandidateStatus, CompressionCandidate, CycleEvent, EventKind, Stage, ValidationReport
from .settings import Settings
from .tokenizer import TokenizerOracle

logger = logging.getLogger(__name__)

# (register, sentence). Every sentence must survive compress/expand for a sound mapping.
TEST_CORPUS: Tuple[Tuple[str, str], ...] = (
    ("technical", "The implementation of the parser was approximately correct in most test cases."),
    ("technical", "Unfortunately, the comprehensive analysis revealed several performance bottlenecks."),
    ("technical", "The development team needs approximately three more weeks for the implementation work."),
    ("business", "Please provide approximately fifteen examples for the comprehensive product demonstration."),
    ("business", "The customer unfortunately reported implementation issues with the new billing system."),
    ("business", "We need a comprehensive review of all implementation details before proceeding."),
    ("casual", "It takes approximately two hours to finish the comprehensive tutorial."),
    ("casual", "Unfortunately, I can't give a comprehensive answer to your implementation question."),
    ("casual", "The implementation guide has approximately fifty pages of comprehensive instructions."),
    ("edge", "Implementation? Unfortunately, that is approximately impossible to implement comprehensively."),
    ("edge", "The word implementation appears approximately seven times in this comprehensive guide."),
    ("edge", "'Unfortunately,' she said, 'the implementation is only approximately 60% complete.'"),
    ("symbolic", "The integral ∫x²dx equals x³/3, therefore the solution works."),
    ("symbolic", "The partial derivative ∂f/∂x shows the rate unfortunately and clearly."),
)

_MATH_RE = re.compile(r"[∂∫∑∏][a-zA-Z]")

NO_SAVINGS = "no token savings"
NOT_CONTEXT_SAFE = "not context-safe"


def compress_text(text: str, original: str, compressed: str) -> str:
    """Whole-word substitution; inside math expressions a match followed by '/' is left alone."""
    pattern = rf"\b{re.escape(original)}\b"
    if _MATH_RE.search(text):
        pattern += r"(?!/)"
    return re.sub(pattern, lambda _: compressed, text)


def expand_text(text: str, original: str, compressed: str) -> str:
    """Inverse of compress_text: only forms followed by whitespace are expanded."""
    return re.sub(rf"{re.escape(compressed)}(?=\s)", lambda _: original, text)


def failing_register(original: str, compressed: str, corpus=TEST_CORPUS) -> Optional[str]:
    for register, sentence in corpus:
        if expand_text(compress_text(sentence, original, compressed), original, compressed) != sentence:
            return register
    return None


class ValidationStage:
    """
    Adjudicates candidates: token savings, context safety, reversibility,
    an advisory semantic check, then codex admission.
    """

    def __init__(
        self,
        oracle: TokenizerOracle,
        patterns: PatternStore,
        settings: Settings,
        resilience: Resilience,
        analytic: Optional[AnalyticCollaborator] = None,
        events: Optional[EventStream] = None,
    ):
        self.oracle = oracle
        self.patterns = patterns
        self.settings = settings
        self.resilience = resilience
        self.analytic = analytic
        self.events = events

    async def _count(self, text: str) -> int:
        return await self.resilience.call("tokenize", self.oracle.token_count, text)

    async def check_local(self, candidate: CompressionCandidate) -> Optional[CompressionCandidate]:
        """
        Returns the candidate with counts filled in, rejected if a local check
        fails. Returns None when the tokenizer is unavailable (deferred).
        """
        try:
            original_tokens = await self._count(candidate.original)
            compressed_tokens = await self._count(candidate.compressed)
        except Exception as e:
            logger.warning(f"Deferring {candidate.original!r} -> {candidate.compressed!r}: {e}")
            return None

        c = candidate.with_counts(original_tokens, compressed_tokens)
        if compressed_tokens >= original_tokens:
            return c.reject(NO_SAVINGS)

        safe = bool(c.compressed) and c.compressed[0] in self.settings.safe_symbols
        c = c.model_copy(update={"is_context_safe": safe})
        if not safe:
            return c.reject(NOT_CONTEXT_SAFE)

        register = failing_register(c.original, c.compressed)
        if register:
            return c.reject(f"not reversible: {register}")
        return c

    async def semantic_vetoes(self, candidates: Sequence[CompressionCandidate]) -> Dict[Tuple[str, str], str]:
        """Advisory: a collaborator failure or a missing verdict never vetoes."""
        if self.analytic is None or not candidates:
            return {}
        pairs = [(c.original, c.compressed) for c in candidates]
        try:
            raw = await self.resilience.call("analyze", self.analytic.check, render_semantic_prompt(pairs))
        except Exception as e:
            logger.warning(f"Semantic check skipped: {e}")
            return {}
        verdicts = parse_semantic_verdicts(raw)
        return {
            key: str(v.get("reason") or "ambiguous")
            for key, v in verdicts.items()
            if v.get("ambiguous") and key in pairs
        }

    def _record(self, candidate: CompressionCandidate, report: ValidationReport, session_id: Optional[str]) -> None:
        approved = candidate.status == CandidateStatus.APPROVED
        self.patterns.update(
            classify_pattern(candidate.compressed),
            approved,
            candidate.token_savings or 0,
            candidate.original,
            candidate.compressed,
        )
        (report.approved if approved else report.rejected).append(candidate)
        if approved:
            logger.info(f"Approved {candidate.original!r} -> {candidate.compressed!r} (saves {candidate.token_savings})")
        else:
            logger.debug(f"Rejected {candidate.original!r} -> {candidate.compressed!r}: {candidate.rejection_reason}")
        if self.events is not None:
            self.events.publish(CycleEvent(
                kind=EventKind.CANDIDATE_APPROVED if approved else EventKind.CANDIDATE_REJECTED,
                session_id=session_id,
                stage=Stage.VALIDATION,
                candidate=candidate,
                detail=candidate.rejection_reason or "",
            ))

    async def _validate_batch(
        self,
        batch: Sequence[CompressionCandidate],
        codex: Codex,
        report: ValidationReport,
        session_id: Optional[str],
    ) -> None:
        passing: List[CompressionCandidate] = []
        for candidate in batch:
            checked = await self.check_local(candidate)
            if checked is None:
                report.deferred.append(candidate)
            elif checked.is_decided:
                self._record(checked, report, session_id)
            else:
                passing.append(checked)

        vetoes = await self.semantic_vetoes(passing)
        # best savings first so a weaker proposal for the same word never wins admission
        for c in sorted(passing, key=lambda c: -(c.token_savings or 0)):
            reason = vetoes.get((c.original, c.compressed))
            if reason:
                self._record(c.reject(f"semantically ambiguous: {reason}"), report, session_id)
                continue
            conflict = codex.admit(c)
            self._record(c.reject(conflict) if conflict else c.approve(), report, session_id)

    async def validate(
        self,
        candidates: Sequence[CompressionCandidate],
        codex: Codex,
        session_id: Optional[str] = None,
    ) -> ValidationReport:
        report = ValidationReport()
        todo = [c for c in candidates if not c.is_decided]
        size = self.settings.batch_size
        for i in range(0, len(todo), size):
            await self._validate_batch(todo[i:i + size], codex, report, session_id)
        logger.info(
            f"Validation: {len(report.approved)} approved, {len(report.rejected)} rejected, "
            f"{len(report.deferred)} deferred, {report.total_savings} tokens saved"
        )
        return report
