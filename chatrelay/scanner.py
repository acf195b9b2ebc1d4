"""Streaming filter for model output.

Two stages run per character so results never depend on how the upstream
split its chunks:

1. A bracket state machine (PASSTHROUGH / BUFFERING) that removes inline tool
   tags such as ``【eco_search: query】`` and remembers the first one. Brackets
   inside a recognised tag's query nest until their own closing bracket.
2. A line filter that drops self-authored signature lines (``Model: ...``,
   ``Search Model: ...``) and separator lines (``---``). A line is held only
   while it could still turn into one of those; otherwise it is forwarded
   immediately.
"""

import re
from dataclasses import dataclass
from typing import List, Optional, Tuple


TOOL_NAMES = ("eco_search", "high_precision_search", "standard_search", "deep_analysis")
OPEN_BRACKETS = "【["
CLOSE_BRACKETS = "】]"
# Unrecognised bracket spans longer than this are plain text.
TAG_PREFIX_BOUND = 50
# Hard cap for a recognised tag whose closing bracket never arrives.
MAX_TAG_LENGTH = 300

PASSTHROUGH = "PASSTHROUGH"
BUFFERING = "BUFFERING"

_NOT_A_TAG = "not_a_tag"
_NAME_PREFIX = "name_prefix"
_RECOGNISED = "recognised"

TAG_RE = re.compile(
    r"^[【\[]\s*(eco_search|high_precision_search|standard_search|deep_analysis)\s*(?:[:：]\s*(.*?))?\s*[】\]]$",
    re.DOTALL,
)
_NAME_RE = re.compile(r"[a-z_]*")
SIGNATURE_LINE_RE = re.compile(r"^\s*[*_]*\s*(?:search\s*)?model\s*[*_]*\s*[:：]", re.IGNORECASE)
SEPARATOR_LINE_RE = re.compile(r"^\s*(?:[-_*=]\s*){3,}$")
_SIGNATURE_KEYS = ("model:", "model：", "searchmodel:", "searchmodel：")
_COMPACT_RE = re.compile(r"[\s*_]")


@dataclass(frozen=True)
class DetectedTag:
    tool: str
    query: str


def _tag_state(buffer: str) -> str:
    body = buffer[1:].lstrip()
    name = _NAME_RE.match(body).group(0)
    rest = body[len(name):]
    if not rest:
        if any(tool.startswith(name) for tool in TOOL_NAMES):
            return _NAME_PREFIX
        return _NOT_A_TAG
    if name in TOOL_NAMES and (rest[0].isspace() or rest[0] in ":："):
        return _RECOGNISED
    return _NOT_A_TAG


def is_signature_line(line: str) -> bool:
    return bool(SIGNATURE_LINE_RE.match(line) or SEPARATOR_LINE_RE.match(line))


def _could_be_signature(partial: str) -> bool:
    compact = _COMPACT_RE.sub("", partial.lower())
    if not compact or all(ch in "-=" for ch in compact):
        return True
    return any(key.startswith(compact) or compact.startswith(key) for key in _SIGNATURE_KEYS)


class _LineFilter:
    def __init__(self) -> None:
        self.line = ""
        self.holding = True

    def push(self, text: str) -> str:
        out: List[str] = []
        for ch in text:
            if ch == "\n":
                if not self.holding:
                    out.append("\n")
                elif not is_signature_line(self.line):
                    out.append(self.line + "\n")
                self.line = ""
                self.holding = True
                continue
            if not self.holding:
                out.append(ch)
                continue
            self.line += ch
            if not _could_be_signature(self.line):
                out.append(self.line)
                self.line = ""
                self.holding = False
        return "".join(out)

    def flush(self) -> str:
        pending = ""
        if self.holding and self.line and not is_signature_line(self.line):
            pending = self.line
        self.line = ""
        self.holding = True
        return pending


class TagScanner:
    """Character-level tag detector and output sanitizer for one model response.

    ``halt_on_tag`` makes the scanner stop consuming input right after the
    first recognised tag, so the caller can cut the upstream stream and run
    the requested search before continuing.

    An ASCII ``[tool]`` span is only committed once the next character is
    known: when it is ``(`` the span is the label of a markdown link and is
    kept as text.
    """

    def __init__(self, halt_on_tag: bool = False) -> None:
        self.halt_on_tag = halt_on_tag
        self.state = PASSTHROUGH
        self.buffer = ""
        self.detected: Optional[DetectedTag] = None
        self.suppressed = 0
        self.halted = False
        self._nested: List[str] = []
        self._pending: Optional[Tuple[str, re.Match]] = None
        self._lines = _LineFilter()

    def feed(self, chunk: str) -> str:
        if self.halted or not chunk:
            return ""
        out: List[str] = []
        for ch in chunk:
            if self.halted:
                break
            if self._pending is not None:
                text, match = self._pending
                if ch == "(":
                    out.append(text)
                    self._pending = None
                else:
                    self._commit(match)
                    if self.halted:
                        break
            if self.state == PASSTHROUGH:
                if ch in OPEN_BRACKETS:
                    self.state = BUFFERING
                    self.buffer = ch
                else:
                    out.append(ch)
                continue
            if ch in OPEN_BRACKETS:
                if _tag_state(self.buffer) != _RECOGNISED:
                    # A new bracket means the previous span was not a tag.
                    out.append(self.buffer)
                    self.buffer = ch
                    self._nested = []
                    continue
                self._nested.append(ch)
            elif ch in CLOSE_BRACKETS:
                if self._nested and _pairs(self._nested[-1], ch):
                    self._nested.pop()
                elif not self._nested or _pairs(self.buffer[0], ch):
                    self.buffer += ch
                    self._resolve(out)
                    continue
            self.buffer += ch
            verdict = _tag_state(self.buffer)
            too_long = len(self.buffer) > MAX_TAG_LENGTH or (
                verdict != _RECOGNISED and len(self.buffer) > TAG_PREFIX_BOUND
            )
            if verdict == _NOT_A_TAG or too_long:
                self._release(out)
        return self._lines.push("".join(out))

    def flush(self) -> str:
        if self._pending is not None:
            self._commit(self._pending[1])
        tail = ""
        if self.state == BUFFERING and not self.halted:
            tail = self.buffer
        self.buffer = ""
        self._nested = []
        self.state = PASSTHROUGH
        return self._lines.push(tail) + self._lines.flush()

    def _release(self, out: List[str]) -> None:
        out.append(self.buffer)
        self.buffer = ""
        self._nested = []
        self.state = PASSTHROUGH

    def _resolve(self, out: List[str]) -> None:
        match = TAG_RE.match(self.buffer)
        if not match:
            self._release(out)
            return
        text = self.buffer
        self.buffer = ""
        self._nested = []
        self.state = PASSTHROUGH
        if text.startswith("["):
            self._pending = (text, match)
        else:
            self._commit(match)

    def _commit(self, match: re.Match) -> None:
        self._pending = None
        self.suppressed += 1
        if self.detected is None:
            self.detected = DetectedTag(tool=match.group(1), query=(match.group(2) or "").strip())
            if self.halt_on_tag:
                self.halted = True


def _pairs(opening: str, closing: str) -> bool:
    return OPEN_BRACKETS.index(opening) == CLOSE_BRACKETS.index(closing)


def sanitize(text: str) -> str:
    """Sanitize a complete string; repeated until stable so the result is idempotent."""
    current = text
    while True:
        scanner = TagScanner()
        cleaned = scanner.feed(current) + scanner.flush()
        if cleaned == current:
            return cleaned
        current = cleaned
