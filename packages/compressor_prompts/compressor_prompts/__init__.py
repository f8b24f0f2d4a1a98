from .core import (
    extract_tag,
    get_discovery_system,
    get_generation_system,
    get_validation_system,
    parse_compression_blocks,
    parse_discovery_lines,
    parse_semantic_verdicts,
    render_discovery_prompt,
    render_generation_prompt,
    render_semantic_prompt,
    summarize_patterns,
    usage_sentences,
)

__all__ = [
    "get_discovery_system",
    "get_generation_system",
    "get_validation_system",
    "render_discovery_prompt",
    "render_generation_prompt",
    "render_semantic_prompt",
    "usage_sentences",
    "extract_tag",
    "parse_compression_blocks",
    "parse_discovery_lines",
    "parse_semantic_verdicts",
    "summarize_patterns",
]
