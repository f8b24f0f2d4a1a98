from __future__ import annotations

import math
import re
from abc import ABC, abstractmethod

import tiktoken

from .errors import ConfigurationError
from .settings import Settings

_PIECE_RE = re.compile(r"[A-Za-z0-9]+|\s+|[^\sA-Za-z0-9]")


class TokenizerOracle(ABC):
    @abstractmethod
    async def token_count(self, text: str) -> int:
        """Number of tokens the target model spends on `text`."""
        pass


class HeuristicTokenizer(TokenizerOracle):
    """
    Offline approximation, deterministic.
    ASCII runs cost 1 up to 4 chars, 2 up to 8, then ceil(len/4);
    every other non-space character costs 1.
    """

    async def token_count(self, text: str) -> int:
        return self.count(text)

    @staticmethod
    def count(text: str) -> int:
        total = 0
        for piece in _PIECE_RE.findall(text or ""):
            if piece.isspace():
                continue
            if piece.isascii() and piece.isalnum():
                n = len(piece)
                total += 1 if n <= 4 else 2 if n <= 8 else math.ceil(n / 4)
            else:
                total += 1
        return total


class TiktokenTokenizer(TokenizerOracle):
    def __init__(self, encoding: str = "cl100k_base"):
        self.encoding_name = encoding
        self._encoding = None

    def _get_encoding(self):
        if self._encoding is None:
            self._encoding = tiktoken.get_encoding(self.encoding_name)
        return self._encoding

    async def token_count(self, text: str) -> int:
        return len(self._get_encoding().encode(text or ""))


def get_tokenizer(settings: Settings) -> TokenizerOracle:
    if settings.tokenizer == "heuristic":
        return HeuristicTokenizer()
    elif settings.tokenizer == "tiktoken":
        return TiktokenTokenizer(settings.tokenizer_encoding)
    raise ConfigurationError(f"unknown tokenizer: {settings.tokenizer}")
