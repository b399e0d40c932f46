"""Extract tool-call directives from free-form model output.

Models are asked to answer with a ``{"thought": ..., "tool_calls": [...]}``
object. Output is scraped heuristically by an ordered list of strategies;
each returns a :class:`Directive` or ``None``, and the first hit wins. When
every strategy returns ``None`` the reply is a plain-text answer.
"""

import json
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

from vibey.exceptions import MalformedDirectiveError
from vibey.logging import get_logger
from vibey.tools.registry import ToolCall

log = get_logger(__name__)

DIRECTIVE_KEYS = ("thought", "tool_calls")

_FENCE_RE = re.compile(
    r"```(?:json|directive|tool_calls)[ \t]*\r?\n(.*?)```",
    re.DOTALL | re.IGNORECASE,
)
_DECODER = json.JSONDecoder()


@dataclass
class Directive:
    """Structured payload parsed from one model reply."""

    thought: str | None = None
    tool_calls: list[ToolCall] | None = None
    raw: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_object(cls, obj: dict[str, Any]) -> "Directive":
        thought = obj.get("thought")
        calls = obj.get("tool_calls")
        return cls(
            thought=str(thought) if thought not in (None, "") else None,
            tool_calls=(
                [ToolCall.from_payload(item, index) for index, item in enumerate(calls)]
                if isinstance(calls, list)
                else None
            ),
            raw=obj,
        )


def decode_object(candidate: str) -> dict[str, Any]:
    """Strictly decode a JSON object.

    Raises:
        MalformedDirectiveError if the text is not valid JSON or not an object
    """
    try:
        value = json.loads(candidate)
    except json.JSONDecodeError as e:
        raise MalformedDirectiveError(f"Invalid directive JSON: {e}", raw=candidate) from e
    if not isinstance(value, dict):
        raise MalformedDirectiveError(
            f"Directive must be a JSON object, got {type(value).__name__}", raw=candidate
        )
    return value


def _balanced_end(text: str, start: int) -> int:
    """Index just past the brace closing ``text[start]``, or -1 if it never closes."""
    depth = 0
    in_string = False
    escaped = False
    for pos in range(start, len(text)):
        char = text[pos]
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
        elif char == '"':
            in_string = True
        elif char == "{":
            depth += 1
        elif char == "}":
            depth -= 1
            if depth == 0:
                return pos + 1
    return -1


class DirectiveStrategy(ABC):
    """One way of locating a directive inside a reply."""

    name: str = ""

    @abstractmethod
    def parse(self, text: str) -> Directive | None:
        pass


class FencedDirectiveStrategy(DirectiveStrategy):
    """A fenced block tagged ``json``, ``directive`` or ``tool_calls``."""

    name = "fenced"

    def parse(self, text: str) -> Directive | None:
        match = _FENCE_RE.search(text or "")
        if not match:
            return None
        try:
            return Directive.from_object(decode_object(match.group(1).strip()))
        except MalformedDirectiveError as e:
            log.debug("Fenced directive rejected", error=str(e))
            return None


class TrailingObjectStrategy(DirectiveStrategy):
    """The last top-level JSON object carrying ``thought`` or ``tool_calls``."""

    name = "trailing_object"

    @staticmethod
    def _top_level_objects(text: str) -> list[dict[str, Any]]:
        """Decode each top-level ``{...}`` span, never looking inside a span that fails."""
        objects: list[dict[str, Any]] = []
        index = text.find("{")
        while index != -1:
            try:
                value, end = _DECODER.raw_decode(text, index)
            except json.JSONDecodeError:
                end = _balanced_end(text, index)
                if end == -1:
                    # Unterminated, e.g. a truncated reply.
                    break
            else:
                if isinstance(value, dict):
                    objects.append(value)
            index = text.find("{", end)
        return objects

    def parse(self, text: str) -> Directive | None:
        for obj in reversed(self._top_level_objects(text or "")):
            if any(key in obj for key in DIRECTIVE_KEYS):
                return Directive.from_object(obj)
        return None


class DirectiveParser:
    """Try each strategy in order."""

    def __init__(self, strategies: list[DirectiveStrategy] | None = None):
        self.strategies = strategies if strategies is not None else [
            FencedDirectiveStrategy(),
            TrailingObjectStrategy(),
        ]

    def parse(self, text: str) -> Directive | None:
        for strategy in self.strategies:
            directive = strategy.parse(text)
            if directive is not None:
                log.debug("Parsed directive", strategy=strategy.name)
                return directive
        return None
