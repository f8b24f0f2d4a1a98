from __future__ import annotations

import importlib.resources
import re
from pathlib import Path
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple


DISCOVERY_FILE = "discovery_system.txt"
GENERATION_FILE = "generation_system.txt"
VALIDATION_FILE = "validation_system.txt"

MAX_SAMPLE_CHARS = 1500

USAGE_TEMPLATES = (
    "The team reviewed the {word} notes before the meeting ended.",
    "Her {word} summary was shared with every new customer.",
    "We expect a {word} answer from the vendor by Friday.",
)


def _load_resource(filename: str) -> str:
    """
    Loads a text file from compressor_prompts/resources.
    Tries relative path first (robust for editable/dev), then importlib (installed).
    """
    local_path = Path(__file__).parent / "resources" / filename
    if local_path.exists():
        return local_path.read_text(encoding="utf-8")

    target = importlib.resources.files("compressor_prompts") / "resources" / filename
    if target.is_file():
        return target.read_text(encoding="utf-8")

    raise FileNotFoundError(f"Resource not found: {filename}")


def get_discovery_system() -> str:
    return _load_resource(DISCOVERY_FILE)


def get_generation_system() -> str:
    return _load_resource(GENERATION_FILE)


def get_validation_system() -> str:
    return _load_resource(VALIDATION_FILE)


def render_discovery_prompt(sample: str) -> str:
    text = (sample or "")[:MAX_SAMPLE_CHARS]
    return (
        "Analyze this text for multi-token words worth compressing.\n\n"
        f"TEXT:\n<<<{text}>>>\n\n"
        "Answer with word|tokens|frequency lines only."
    )


def render_generation_prompt(
    words: Sequence[Mapping[str, object]],
    codex: Mapping[str, str],
    pattern_summary: Sequence[Mapping[str, object]] = (),
) -> str:
    """
    Composes the creative generation prompt:
    target words + existing codex + per-pattern history.
    """
    word_lines = "\n".join(
        f"- {w['word']} ({w.get('token_count', '?')} tokens, frequency {w.get('frequency', 1)})" for w in words
    ) or "- (none)"

    codex_lines = "\n".join(f"- {orig} -> {comp}" for orig, comp in sorted(codex.items())) or "- (empty codex)"

    if pattern_summary:
        history = "\n".join(
            f"- {p['pattern_type']}: {p.get('success_count', 0)}/{p.get('attempt_count', 0)} accepted"
            for p in pattern_summary
        )
    else:
        history = "- (no history yet)"

    return (
        f"--- TARGET WORDS ---\n{word_lines}\n\n"
        f"--- EXISTING CODEX (do not reuse these forms) ---\n{codex_lines}\n\n"
        f"--- PATTERN HISTORY ---\n{history}\n\n"
        "Propose up to three compressions per word using the <compression> format."
    )


def usage_sentences(original: str, compressed: str) -> List[str]:
    """Synthetic sentences using the compressed form in place of the original."""
    return [t.format(word=compressed) for t in USAGE_TEMPLATES]


def render_semantic_prompt(pairs: Iterable[Tuple[str, str]]) -> str:
    blocks = []
    for i, (original, compressed) in enumerate(pairs, start=1):
        sentences = "\n".join(f"   * {s}" for s in usage_sentences(original, compressed))
        blocks.append(f"{i}. \"{original}\" -> \"{compressed}\"\n{sentences}")
    body = "\n".join(blocks) or "(nothing to check)"
    return f"--- COMPRESSIONS TO CHECK ---\n{body}\n\nAnswer with one <verdict> block per compression."


def extract_tag(xml: str, tag: str) -> str:
    m = re.search(rf"<{tag}>(.*?)</{tag}>", xml or "", re.DOTALL)
    return m.group(1).strip() if m else ""


_COMPRESSION_RE = re.compile(r"<compression>(.*?)</compression>", re.DOTALL)
_ARROW_RE = re.compile(r"[\"']([^\"']+)[\"']\s*(?:→|->|=>)\s*[\"']([^\"']+)[\"']")


def parse_compression_blocks(text: str) -> List[Dict[str, str]]:
    """
    Parse <compression> blocks into {original, compressed, reasoning} dicts.
    Falls back to '"word" -> "form"' lines when no block is present.
    """
    out: List[Dict[str, str]] = []
    for block in _COMPRESSION_RE.findall(text or ""):
        original = extract_tag(block, "original")
        compressed = extract_tag(block, "compressed")
        if not original or not compressed or original == compressed:
            continue
        out.append({
            "original": original,
            "compressed": compressed,
            "reasoning": extract_tag(block, "reasoning") or "creative generation",
        })
    if out:
        return out

    for line in (text or "").splitlines():
        m = _ARROW_RE.search(line)
        if not m:
            continue
        original, compressed = m.group(1).strip(), m.group(2).strip()
        if len(original) > 2 and len(compressed) <= 4 and original != compressed:
            out.append({"original": original, "compressed": compressed, "reasoning": "parsed from response"})
    return out


def parse_discovery_lines(text: str) -> List[Dict[str, object]]:
    """
    Parse 'word|tokens|frequency' lines.
    Missing or malformed numbers default to 2 tokens / frequency 1; words of
    two characters or fewer and single-token words are dropped.
    """
    words: List[Dict[str, object]] = []
    for line in (text or "").splitlines():
        if "|" not in line:
            continue
        parts = [p.strip().strip("\"'") for p in line.split("|")]
        if len(parts) < 3:
            continue
        word = parts[0].lower()
        tokens = _to_int(parts[1], 2)
        frequency = _to_int(parts[2], 1)
        if len(word) > 2 and tokens > 1:
            words.append({"word": word, "token_count": tokens, "frequency": max(1, frequency)})
    return words


_VERDICT_RE = re.compile(r"<verdict>(.*?)</verdict>", re.DOTALL)


def parse_semantic_verdicts(text: str) -> Dict[Tuple[str, str], Dict[str, object]]:
    verdicts: Dict[Tuple[str, str], Dict[str, object]] = {}
    for block in _VERDICT_RE.findall(text or ""):
        original = extract_tag(block, "original")
        compressed = extract_tag(block, "compressed")
        if not original or not compressed:
            continue
        ambiguous = extract_tag(block, "ambiguous").lower() == "true"
        verdicts[(original, compressed)] = {
            "ambiguous": ambiguous,
            "reason": extract_tag(block, "reason") or ("ambiguous" if ambiguous else ""),
        }
    return verdicts


def _to_int(value: str, default: int) -> int:
    m = re.search(r"\d+", value or "")
    return int(m.group(0)) if m else default


def summarize_patterns(records: Iterable[Mapping[str, object]], limit: Optional[int] = None) -> List[Mapping[str, object]]:
    ranked = sorted(records, key=lambda r: (-int(r.get("success_count", 0)), str(r.get("pattern_type"))))
    return ranked[:limit] if limit else ranked
