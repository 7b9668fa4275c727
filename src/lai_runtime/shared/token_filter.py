"""Utilities for stripping chat-template control tokens from generated text."""

from __future__ import annotations

import re
from typing import Iterable

DEFAULT_CONTROL_TOKENS: tuple[str, ...] = (
    "<end_of_turn>",
    "</s>",
    "<eos>",
    "<|endoftext|>",
    "<start_of_turn>",
    "<|im_start|>",
    "<|im_end|>",
)


def _compile(tokens: Iterable[str]) -> re.Pattern[str] | None:
    # Longest first so overlapping markers are removed whole.
    literals = sorted({t for t in tokens if t}, key=len, reverse=True)
    if not literals:
        return None
    return re.compile("|".join(re.escape(t) for t in literals))


def _strip(pattern: re.Pattern[str], fragment: str) -> str:
    # Removing one marker can splice two halves into a new one ("<eo<eos>s>"),
    # so repeat until stable.
    while True:
        cleaned = pattern.sub("", fragment)
        if cleaned == fragment:
            return cleaned
        fragment = cleaned


def filter_control_tokens(fragment: str, tokens: Iterable[str] = DEFAULT_CONTROL_TOKENS) -> str:
    """Remove every literal occurrence of each control token from ``fragment``.

    Tokens are matched literally, never as regular expressions. A control
    token split across two fragments is not reassembled and passes through.
    """
    if not fragment:
        return ""
    pattern = _compile(tokens)
    if pattern is None:
        return fragment
    return _strip(pattern, fragment)


class TokenFilter:
    """Precompiled filter bound to one control-token list."""

    def __init__(self, tokens: Iterable[str] | None = None):
        self.tokens: tuple[str, ...] = tuple(tokens) if tokens is not None else DEFAULT_CONTROL_TOKENS
        self._pattern = _compile(self.tokens)

    def __call__(self, fragment: str) -> str:
        return self.filter(fragment)

    def filter(self, fragment: str) -> str:
        if not fragment:
            return ""
        if self._pattern is None:
            return fragment
        return _strip(self._pattern, fragment)
