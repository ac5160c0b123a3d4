"""
JSON extraction for free-text transform replies.

Replies may be wrapped in markdown fences or surrounded by prose. The first
balanced JSON object or array that parses is returned.
"""

import json
import re
from typing import Any, Iterator, Optional


def strip_code_fences(text: str) -> str:
    s = text.strip()
    if s.startswith("```"):
        lines = s.splitlines()
        if lines and lines[0].startswith("```"):
            lines = lines[1:]
        if lines and lines[-1].strip().startswith("```"):
            lines = lines[:-1]
        s = "\n".join(lines).strip()
    return s


def iter_balanced_json(text: str) -> Iterator[str]:
    """
    Yield balanced {...} or [...] substrings of `text` in order of their
    opening bracket.

    Brackets inside JSON strings (including escaped quotes) are ignored.
    """
    closers = {"{": "}", "[": "]"}

    start = 0
    while True:
        positions = [p for p in (text.find("{", start), text.find("[", start)) if p != -1]
        if not positions:
            return
        begin = min(positions)

        stack = []
        in_string = False
        escaped = False
        end = None
        for index in range(begin, len(text)):
            char = text[index]
            if in_string:
                if escaped:
                    escaped = False
                elif char == "\\":
                    escaped = True
                elif char == '"':
                    in_string = False
                continue

            if char == '"':
                in_string = True
            elif char in closers:
                stack.append(closers[char])
            elif char in ("}", "]"):
                if not stack or stack.pop() != char:
                    break
                if not stack:
                    end = index
                    break

        if end is not None:
            yield text[begin:end + 1]
            start = end + 1
        else:
            start = begin + 1


def _repair(candidate: str) -> str:
    """Remove trailing commas before closing brackets."""
    candidate = re.sub(r",\s*}", "}", candidate)
    return re.sub(r",\s*]", "]", candidate)


def _try_parse(candidate: str) -> Optional[Any]:
    for attempt in (candidate, _repair(candidate)):
        try:
            return json.loads(attempt)
        except json.JSONDecodeError:
            continue
    return None


def extract_json(text: Optional[str]) -> Any:
    """
    Parse the first JSON object or array embedded in a transform reply.

    Raises:
        ValueError: if the reply holds no parseable JSON object or array
    """
    if not text:
        raise ValueError("Empty response text")

    s = strip_code_fences(text)
    for candidate in iter_balanced_json(s):
        data = _try_parse(candidate)
        if data is not None:
            return data

    raise ValueError(f"No JSON found in response: {s[:80]!r}")
