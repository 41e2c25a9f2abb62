"""Parsing of numeric values out of localized tool output."""

from __future__ import annotations

import unicodedata

from basefs.errors import ParseError


def parse_trailing_int(text: str) -> int:
    """Return the last integer token of *text*.

    Tokens are separated by any run of whitespace or Unicode punctuation, so
    both ``"Estimated minimum size of the filesystem: 5813528"`` and its
    zh_CN rendering ``"预计文件系统的最小尺寸：61817"`` yield the block count.
    """
    tokens = _split_fields(text)
    if not tokens:
        raise ParseError(
            "Tool output contains no tokens.",
            hint="Check that the tool ran and produced the expected report.",
            context={"operation": "parse", "output": text[:200]},
        )
    last = tokens[-1]
    if not (last.isascii() and last.isdigit()):
        raise ParseError(
            f"Last token {last!r} of tool output is not an integer.",
            hint="The tool's output format may differ for this version or locale.",
            context={"operation": "parse", "output": text[-200:]},
        )
    return int(last)


def _split_fields(text: str) -> list[str]:
    tokens: list[str] = []
    current: list[str] = []
    for char in text:
        if char.isspace() or unicodedata.category(char).startswith("P"):
            if current:
                tokens.append("".join(current))
                current = []
            continue
        current.append(char)
    if current:
        tokens.append("".join(current))
    return tokens
