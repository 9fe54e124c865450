"""
Token estimation for batching decisions.

A cheap, deterministic approximation of how many model tokens a piece
of text will cost. It never calls a tokenizer; the merger only needs a
stable cost unit to pack files into budget-bounded batches.
"""

from __future__ import annotations

import math
import re
import unicodedata

_SPECIAL_CHARS = re.compile(r"[^a-zA-Z0-9\s]")
_CAMEL_CASE = re.compile(r"[A-Z][a-z]+")
_WHITESPACE = re.compile(r"\s+")
_NUMBERS = re.compile(r"\d+")

WORD_WEIGHT = 1.3
WHITESPACE_WEIGHT = 0.3
NUMBER_WEIGHT = 0.5


def _is_separator(char: str) -> bool:
    # Unicode punctuation (P*) splits words; symbols such as "+", "=" and "|" do not
    return char.isspace() or unicodedata.category(char).startswith("P")


def _words(text: str) -> list[str]:
    return "".join(" " if _is_separator(c) else c for c in text).split()


def estimate_tokens(text: str | None) -> int:
    """Estimate the token cost of ``text``.

    The estimate adds up weighted counts of words, special characters,
    camelCase sub-word breaks, whitespace runs and number runs, then
    rounds up. Empty or missing text costs nothing.
    """
    if not text:
        return 0

    words = _words(text)
    special_chars = len(_SPECIAL_CHARS.findall(text))
    subword_breaks = sum(len(_CAMEL_CASE.findall(w)) for w in words)
    whitespace_runs = len(_WHITESPACE.findall(text))
    numbers = len(_NUMBERS.findall(text))

    return math.ceil(
        len(words) * WORD_WEIGHT
        + special_chars
        + subword_breaks
        + whitespace_runs * WHITESPACE_WEIGHT
        + numbers * NUMBER_WEIGHT
    )
