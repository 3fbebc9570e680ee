"""
Best-effort repair of JSON cut off by a provider token limit.

The scanner walks the text once, tracking open containers and whether the
next string is an object key or a value. Every point where the prefix could
be closed into valid JSON (just after an opening bracket, or just after a
complete value) is remembered as a safe cut. At the end of the input:

- inside a value string: drop any half-written escape, close the string,
  close the containers
- inside a key string: nothing usable, give up
- inside a number or literal: keep it if it is already complete, otherwise
  fall back to the last safe cut
- anywhere else (dangling comma, key, colon): fall back to the last safe cut

Only objects and arrays are accepted at the top level.
"""
import json
import re
from typing import Any, List, Optional

_CLOSERS = {"{": "}", "[": "]"}
_HEX = set("0123456789abcdefABCDEF")
_FENCE = re.compile(r"^```[a-zA-Z]*\s*\n?")


def strip_code_fence(text: str) -> str:
    """Remove a leading ```json fence and its closing fence, if present."""
    stripped = text.strip()
    if not stripped.startswith("```"):
        return stripped
    stripped = _FENCE.sub("", stripped, count=1)
    if stripped.rstrip().endswith("```"):
        stripped = stripped.rstrip()[:-3]
    return stripped.strip()


def _close(stack: List[str]) -> str:
    return "".join(_CLOSERS[opener] for opener in reversed(stack))


def _is_complete_scalar(token: str) -> bool:
    try:
        value = json.loads(token)
    except ValueError:
        return False
    return value is None or isinstance(value, (bool, int, float))


class _Scanner:
    """Single pass over truncated JSON text."""

    def __init__(self, text: str):
        self.text = text
        self.stack: List[str] = []
        self.states: List[str] = []    # per container: key, colon, value, after
        self.safe_end: Optional[int] = None
        self.safe_stack: List[str] = []
        self.in_string = False
        self.string_is_key = False
        self.escape_at: Optional[int] = None
        self.unicode_left = 0
        self.literal_start: Optional[int] = None
        self.done = False

    def mark_safe(self, end: int) -> None:
        self.safe_end = end
        self.safe_stack = list(self.stack)

    def scan(self) -> bool:
        """Consume the text. Returns False if it is malformed, not merely cut short."""
        for i, c in enumerate(self.text):
            if self.in_string:
                self._string_char(i, c)
                continue

            if self.literal_start is not None:
                if c not in ",]}" and not c.isspace():
                    continue
                self.literal_start = None
                self.mark_safe(i)

            if c.isspace():
                continue
            if self.done:
                # Trailing text after the top-level value; keep what closed cleanly
                return True
            if not self._structural_char(i, c):
                return False
        return True

    def _string_char(self, i: int, c: str) -> None:
        if self.escape_at is not None:
            if self.unicode_left:
                self.unicode_left -= 1
                if c not in _HEX or self.unicode_left == 0:
                    self.escape_at = None
                    self.unicode_left = 0
            elif c == "u":
                self.unicode_left = 4
            else:
                self.escape_at = None
            return
        if c == "\\":
            self.escape_at = i
        elif c == '"':
            self.in_string = False
            if self.string_is_key:
                self.states[-1] = "colon"
            else:
                self.states[-1] = "after"
                self.mark_safe(i + 1)

    def _structural_char(self, i: int, c: str) -> bool:
        state = self.states[-1] if self.states else "value"

        if c in "{[":
            if state != "value":
                return False
            if self.states:
                self.states[-1] = "after"
            self.stack.append(c)
            self.states.append("key" if c == "{" else "value")
            self.mark_safe(i + 1)
            return True

        if c in "}]":
            if not self.stack or _CLOSERS[self.stack[-1]] != c:
                return False
            self.stack.pop()
            self.states.pop()
            if not self.stack:
                self.done = True
            self.mark_safe(i + 1)
            return True

        if not self.stack:
            return False

        if c == '"':
            if state not in ("key", "value"):
                return False
            self.in_string = True
            self.string_is_key = state == "key"
            return True

        if c == ":":
            if state != "colon":
                return False
            self.states[-1] = "value"
            return True

        if c == ",":
            if state != "after":
                return False
            self.states[-1] = "key" if self.stack[-1] == "{" else "value"
            return True

        if state != "value":
            return False
        self.literal_start = i
        self.states[-1] = "after"
        return True

    def candidate(self) -> Optional[str]:
        """Build the repaired text, or None when nothing usable remains."""
        if self.done:
            return self.text[:self.safe_end]

        if self.in_string:
            if self.string_is_key:
                return None
            end = self.escape_at if self.escape_at is not None else len(self.text)
            return self.text[:end] + '"' + _close(self.stack)

        if self.literal_start is not None and _is_complete_scalar(self.text[self.literal_start:]):
            return self.text + _close(self.stack)

        if self.safe_end is None:
            return None
        return self.text[:self.safe_end] + _close(self.safe_stack)


def repair_truncated_json(text: str) -> Optional[Any]:
    """
    Parse JSON that may have been truncated.

    Returns:
        The parsed object or array, or None if the text cannot be repaired.
    """
    text = strip_code_fence(text)
    if not text or text[0] not in "{[":
        return None

    try:
        value = json.loads(text)
        return value if isinstance(value, (dict, list)) else None
    except ValueError:
        pass

    scanner = _Scanner(text)
    if not scanner.scan():
        return None

    repaired = scanner.candidate()
    if repaired is None:
        return None

    try:
        value = json.loads(repaired)
    except ValueError:
        return None
    return value if isinstance(value, (dict, list)) else None
