import re
from typing import List, Optional, Tuple

from trainer_service.core.errors import ParseFailure
from trainer_service.core.types import DirectiveCall
from trainer_service.core.logging import logger
from trainer_service.protocol.parsers.params import ParameterParser

MARKER = "[TOOL_CALL:"
_NAME_RE = re.compile(r"[A-Za-z_][A-Za-z0-9_]*")


class DirectiveDetector:
    """
    Finds `[TOOL_CALL: name]` / `[TOOL_CALL: name(params)]` directives in a
    model response, left to right.

    Whitespace is allowed only between the marker and the name; `(` must
    follow the name directly and `]` must follow the name or `)` directly.
    The closing paren is located by depth counting that ignores parens inside
    double-quoted strings, so JSON payloads with stray parens stay intact. A
    directive without its closing `]` is never reported.
    """

    def __init__(self, param_parser: Optional[ParameterParser] = None):
        self.param_parser = param_parser or ParameterParser()

    def contains_marker(self, text: str) -> bool:
        return MARKER in text

    def detect(self, text: str) -> List[DirectiveCall]:
        calls: List[DirectiveCall] = []
        if not text:
            return calls
        pos = 0
        while True:
            start = text.find(MARKER, pos)
            if start == -1:
                break
            try:
                name, params_text, end = self._match_at(text, start)
            except ParseFailure as e:
                logger.debug(f"Skipping malformed directive at offset {start} ({e}): {text[start:start + 60]!r}")
                pos = start + len(MARKER)
                continue
            params = self.param_parser.parse(params_text) if params_text is not None else {}
            calls.append(DirectiveCall(name=name, parameters=params, span=(start, end)))
            logger.debug(f"Detected directive '{name}' span=({start}, {end}) params={list(params)}")
            pos = end
        return calls

    def _match_at(self, text: str, start: int) -> Tuple[str, Optional[str], int]:
        """Return (name, params text or None, end offset) for a directive at `start`."""
        i = self._skip_ws(text, start + len(MARKER))
        m = _NAME_RE.match(text, i)
        if not m:
            raise ParseFailure("missing directive name")
        name = m.group(0)
        i = m.end()
        params_text = None
        if i < len(text) and text[i] == "(":
            close = self._find_close_paren(text, i, quote_aware=True)
            if close == -1:
                # unbalanced quote inside the params; fall back to plain depth counting
                close = self._find_close_paren(text, i, quote_aware=False)
            if close == -1:
                raise ParseFailure(f"unclosed parameter list for '{name}'")
            params_text = text[i + 1 : close]
            i = close + 1
        if i < len(text) and text[i] == "]":
            return name, params_text, i + 1
        raise ParseFailure(f"expected ']' after '{name}'")

    @staticmethod
    def _skip_ws(text: str, i: int) -> int:
        while i < len(text) and text[i].isspace():
            i += 1
        return i

    @staticmethod
    def _find_close_paren(text: str, open_idx: int, quote_aware: bool) -> int:
        depth = 0
        in_quote = False
        escaped = False
        for j in range(open_idx, len(text)):
            ch = text[j]
            if escaped:
                escaped = False
                continue
            if ch == "\\":
                escaped = True
                continue
            if quote_aware and ch == '"':
                in_quote = not in_quote
                continue
            if in_quote:
                continue
            if ch == "(":
                depth += 1
            elif ch == ")":
                depth -= 1
                if depth == 0:
                    return j
        return -1
