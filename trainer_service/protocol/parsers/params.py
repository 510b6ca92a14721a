import re
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Tuple

from trainer_service.core.types import RawJSON
from trainer_service.core.logging import logger

DEFAULT_RESERVED_FIELDS = ("workout_json",)

_OPENERS = "{["
_CLOSERS = "}]"


class _State(Enum):
    OUTSIDE = "outside"
    IN_KEY = "in_key"
    IN_VALUE = "in_value"
    IN_QUOTE = "in_quote"
    ESCAPE_PENDING = "escape_pending"


def _strip_quotes(value: str) -> str:
    if len(value) >= 2 and value[0] == value[-1] and value[0] in ('"', "'"):
        return value[1:-1]
    return value


def _unescape_quoted(value: str) -> str:
    return RawJSON(value).unescape()


class ParameterParser:
    """
    Turns the text between a directive's outer parentheses into an ordered dict.

    Three payload shapes are recognised, in precedence order:
    - a reserved field (e.g. workout_json) carrying a large escaped JSON
      document; its value is returned verbatim as RawJSON
    - a generic structured list (anything containing braces/brackets),
      split on top-level commas
    - a flat key:value list, scanned by a small state machine

    parse() never raises. Malformed input yields a partial or empty dict.
    """

    def __init__(self, reserved_fields: Iterable[str] = DEFAULT_RESERVED_FIELDS):
        self.reserved_fields = tuple(reserved_fields or ())
        self._reserved_re = None
        if self.reserved_fields:
            names = "|".join(re.escape(f) for f in self.reserved_fields)
            self._reserved_re = re.compile(rf'(?<![\w"])"?({names})"?\s*:')

    def parse(self, params_text: Optional[str]) -> Dict[str, Any]:
        if not params_text or not params_text.strip():
            return {}
        try:
            return self._parse(params_text)
        except Exception as e:  # parser contract: never propagate
            logger.warning(f"Parameter parse failed, returning empty map: {e}")
            return {}

    def _parse(self, text: str) -> Dict[str, Any]:
        reserved = self._extract_reserved(text)
        if reserved is not None:
            name, payload, start, end = reserved
            out = self._parse(text[:start]) if text[:start].strip() else {}
            out[name] = payload
            rest = text[end:]
            if rest.strip():
                out.update(self._parse(rest))
            return out
        if any(c in text for c in _OPENERS + _CLOSERS):
            return self._parse_structured(text)
        return self._parse_flat(text)

    # ---- shape 1: reserved large-payload field ----

    def _extract_reserved(self, text: str) -> Optional[Tuple[str, RawJSON, int, int]]:
        """Return (field, raw payload, segment start, segment end) for the first reserved field."""
        if self._reserved_re is None:
            return None
        for match in self._reserved_re.finditer(text):
            name = match.group(1)
            i = match.end()
            n = len(text)
            # skip to the first unescaped opening quote
            while i < n and text[i] != '"':
                i += 2 if text[i] == "\\" else 1
            if i >= n:
                logger.debug(f"Reserved field '{name}' has no quoted value")
                continue
            start = i + 1
            escaped = False
            j = start
            while j < n:
                ch = text[j]
                if escaped:
                    escaped = False
                elif ch == "\\":
                    escaped = True
                elif ch == '"':
                    break
                j += 1
            if j >= n:
                logger.debug(f"Reserved field '{name}' value is unterminated")
                continue
            logger.debug(f"Extracted reserved field '{name}' ({j - start} chars)")
            return name, RawJSON(text[start:j]), match.start(), j + 1
        return None

    # ---- shape 2: generic structured list ----

    @staticmethod
    def _split_top_level(text: str) -> List[str]:
        segments: List[str] = []
        current: List[str] = []
        depth = 0
        in_quote = False
        escaped = False
        for ch in text:
            if escaped:
                escaped = False
                current.append(ch)
                continue
            if ch == "\\":
                escaped = True
                current.append(ch)
                continue
            if ch == '"':
                in_quote = not in_quote
            elif not in_quote:
                if ch in _OPENERS:
                    depth += 1
                elif ch in _CLOSERS:
                    depth = max(0, depth - 1)
                elif ch == "," and depth == 0:
                    segments.append("".join(current))
                    current = []
                    continue
            current.append(ch)
        segments.append("".join(current))
        return [s for s in segments if s.strip()]

    @staticmethod
    def _find_colon(segment: str) -> int:
        in_quote = False
        escaped = False
        depth = 0
        for i, ch in enumerate(segment):
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_quote = not in_quote
            elif not in_quote:
                if ch in _OPENERS:
                    depth += 1
                elif ch in _CLOSERS:
                    depth = max(0, depth - 1)
                elif ch == ":" and depth == 0:
                    return i
        return -1

    def _parse_structured(self, text: str) -> Dict[str, Any]:
        out: Dict[str, Any] = {}
        for segment in self._split_top_level(text):
            idx = self._find_colon(segment)
            if idx == -1:
                logger.debug(f"Skipping segment without key: {segment[:40]!r}")
                continue
            key = _strip_quotes(segment[:idx].strip())
            value = segment[idx + 1 :].strip()
            if not key:
                continue
            if len(value) >= 2 and value[0] == value[-1] == '"':
                value = _unescape_quoted(value[1:-1])
            out[key] = value
        return out

    # ---- shape 3: flat key:value list ----

    @staticmethod
    def _parse_flat(text: str) -> Dict[str, Any]:
        out: Dict[str, Any] = {}
        key: List[str] = []
        value: List[str] = []
        state = _State.OUTSIDE
        resume = _State.OUTSIDE
        in_value = False

        def emit() -> None:
            if not in_value:
                return
            k = _strip_quotes("".join(key).strip())
            if k:
                out[k] = _strip_quotes("".join(value).strip())

        for ch in text:
            buf = value if in_value else key
            if state is _State.ESCAPE_PENDING:
                buf.append(ch)
                state = resume
                continue
            if ch == "\\":
                if state is _State.IN_QUOTE:
                    resume = _State.IN_QUOTE
                else:
                    resume = _State.IN_VALUE if in_value else _State.IN_KEY
                state = _State.ESCAPE_PENDING
                continue
            if state is _State.IN_QUOTE:
                buf.append(ch)
                if ch == '"':
                    state = _State.IN_VALUE if in_value else _State.IN_KEY
                continue
            if ch == '"':
                buf.append(ch)
                state = _State.IN_QUOTE
                continue
            if ch == ":" and not in_value:
                in_value = True
                state = _State.IN_VALUE
                continue
            if ch == ",":
                emit()
                key, value = [], []
                in_value = False
                state = _State.OUTSIDE
                continue
            if state is _State.OUTSIDE:
                if ch.isspace():
                    continue
                state = _State.IN_KEY
            buf.append(ch)

        emit()
        return out
