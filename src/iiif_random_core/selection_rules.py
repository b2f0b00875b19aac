"""Canvas selection rules.

A rule text holds one ``condition => action`` rule per line. The first rule
whose condition matches the canvas count and whose action resolves to a valid
canvas wins; when nothing resolves, a uniformly random canvas is picked.

Conditions: ``5`` (exactly 5), ``1-4`` (inclusive range), ``10+`` (at least 10).
Actions (case-insensitive): ``3`` (1-based canvas), ``last``, ``random``,
``random(2-7)``, ``random(2-last)``, ``random(1-last-1)``.

Rule problems never raise: they are collected as warnings and logged once per
distinct rule text for the life of the process.
"""

from __future__ import annotations

import hashlib
import random
import re
import threading
from collections.abc import Sequence
from dataclasses import dataclass
from secrets import SystemRandom
from typing import Any, Final

from .logger import get_logger

logger = get_logger(__name__)

RULE_SEPARATOR: Final = "=>"

SECURE_RANDOM = SystemRandom()

_LINE_SPLIT_RE: Final = re.compile(r"\r\n|\r|\n")
_EXACT_RE: Final = re.compile(r"\d+", re.ASCII)
_RANGE_RE: Final = re.compile(r"(\d+)-(\d+)", re.ASCII)
_AT_LEAST_RE: Final = re.compile(r"(\d+)\+", re.ASCII)
_RANDOM_RANGE_RE: Final = re.compile(r"random\((\d+)-(\d+|last)(?:-(\d+))?\)", re.ASCII)


@dataclass(frozen=True)
class Exact:
    count: int

    def matches(self, canvas_count: int) -> bool:
        return canvas_count == self.count


@dataclass(frozen=True)
class Range:
    minimum: int
    maximum: int

    def matches(self, canvas_count: int) -> bool:
        return self.minimum <= canvas_count <= self.maximum


@dataclass(frozen=True)
class AtLeast:
    count: int

    def matches(self, canvas_count: int) -> bool:
        return canvas_count >= self.count


Condition = Exact | Range | AtLeast


@dataclass(frozen=True)
class Numeric:
    position: int


@dataclass(frozen=True)
class Last:
    pass


@dataclass(frozen=True)
class RandomAll:
    pass


@dataclass(frozen=True)
class RandomRange:
    """``random(start-end)``; ``end`` is None for ``last``, minus ``offset``."""

    start: int
    end: int | None
    offset: int = 0


@dataclass(frozen=True)
class InvalidAction:
    """An action that could not be parsed; reported only when its rule matches."""

    text: str
    problem: str


Action = Numeric | Last | RandomAll | RandomRange | InvalidAction


@dataclass(frozen=True)
class SelectionRule:
    condition: Condition
    action: Action
    line: str


def parse_condition(text: str) -> Condition | None:
    """Parse ``N``, ``N-M`` or ``N+``; anything else returns None."""
    if _EXACT_RE.fullmatch(text):
        return Exact(int(text))
    if m := _RANGE_RE.fullmatch(text):
        return Range(int(m.group(1)), int(m.group(2)))
    if m := _AT_LEAST_RE.fullmatch(text):
        return AtLeast(int(m.group(1)))
    return None


def parse_action(text: str) -> Action:
    action = text.strip().lower()
    if action == "last":
        return Last()
    if "random" in action:
        if m := _RANDOM_RANGE_RE.fullmatch(action):
            end = None if m.group(2) == "last" else int(m.group(2))
            return RandomRange(int(m.group(1)), end, int(m.group(3) or 0))
        if action == "random":
            return RandomAll()
        return InvalidAction(action, f"Invalid random syntax: {action}")
    if _EXACT_RE.fullmatch(action):
        return Numeric(int(action))
    return InvalidAction(action, f"Unknown action: {action}")


def parse_rules(rule_text: str) -> tuple[list[SelectionRule], list[str]]:
    """Split rule text into ordered rules plus line-level syntax warnings."""
    rules: list[SelectionRule] = []
    warnings: list[str] = []

    for raw_line in _LINE_SPLIT_RE.split(rule_text or ""):
        line = raw_line.strip()
        if not line:
            continue
        if RULE_SEPARATOR not in line:
            warnings.append(f'Invalid rule format (missing "{RULE_SEPARATOR}"): {line}')
            continue

        condition_text, action_text = (part.strip() for part in line.split(RULE_SEPARATOR, 1))
        condition = parse_condition(condition_text)
        if condition is None:
            warnings.append(f"Invalid condition: {condition_text}")
            continue

        rules.append(SelectionRule(condition, parse_action(action_text), line))

    return rules, warnings


class RuleWarningRegistry:
    """Process-wide record of rule texts whose warnings were already logged."""

    def __init__(self):
        self._seen: set[str] = set()
        self._lock = threading.Lock()

    @staticmethod
    def _key(rule_text: str) -> str:
        return hashlib.sha1((rule_text or "").encode("utf-8")).hexdigest()

    def claim(self, rule_text: str) -> bool:
        """Return True the first time `rule_text` is seen, False afterwards."""
        key = self._key(rule_text)
        with self._lock:
            if key in self._seen:
                return False
            self._seen.add(key)
            return True

    def clear(self) -> None:
        with self._lock:
            self._seen.clear()


rule_warnings = RuleWarningRegistry()


class RuleEngine:
    """Pick a zero-based canvas index from a canvas count and a rule text."""

    def __init__(self, rng: random.Random | None = None, warning_registry: RuleWarningRegistry | None = None):
        """Use `rng` for every random pick (a seeded Random makes selection reproducible)."""
        self.rng = rng or SECURE_RANDOM
        self.warning_registry = warning_registry or rule_warnings

    def select_index(self, canvas_count: int, rule_text: str, rng: random.Random | None = None) -> int | None:
        """Return an index in ``[0, canvas_count)``, or None when there are no canvases.

        `rng` overrides the engine's generator for this one selection.
        """
        rng = rng or self.rng
        if canvas_count <= 0:
            return None

        rules, warnings = parse_rules(rule_text)
        selected: int | None = None
        for rule in rules:
            if not rule.condition.matches(canvas_count):
                continue
            selected = self._resolve(rule.action, canvas_count, warnings, rng)
            if selected is not None:
                break

        if selected is None:
            selected = rng.randint(0, canvas_count - 1)

        self._report(rule_text, warnings)
        return selected

    def select_canvas(
        self, canvases: Sequence[Any], rule_text: str, rng: random.Random | None = None
    ) -> tuple[int, Any] | None:
        """Return ``(index, canvas)`` chosen from `canvases`, or None if it is empty."""
        index = self.select_index(len(canvases), rule_text, rng)
        if index is None:
            return None
        return index, canvases[index]

    def _resolve(self, action: Action, canvas_count: int, warnings: list[str], rng: random.Random) -> int | None:
        last_index = canvas_count - 1
        match action:
            case Last():
                return last_index
            case RandomAll():
                return rng.randint(0, last_index)
            case RandomRange(start=start, end=end, offset=offset):
                lower = max(0, start - 1)
                upper = min(last_index, last_index - offset if end is None else end - 1)
                # An empty range falls through silently; only bad syntax is a warning.
                if lower <= upper:
                    return rng.randint(lower, upper)
                return None
            case Numeric(position=position):
                if position <= 0:
                    warnings.append(f"Invalid numeric action (must be >= 1): {position}")
                    return None
                candidate = position - 1
                return candidate if candidate <= last_index else None
            case InvalidAction(problem=problem):
                warnings.append(problem)
                return None
        return None

    def _report(self, rule_text: str, warnings: list[str]) -> None:
        if not warnings or not self.warning_registry.claim(rule_text):
            return
        problems = " | ".join(dict.fromkeys(warnings))
        logger.warning("Selection rules contain errors; using fallbacks. Problems: %s", problems)


__all__ = [
    "RULE_SEPARATOR",
    "AtLeast",
    "Exact",
    "InvalidAction",
    "Last",
    "Numeric",
    "RandomAll",
    "RandomRange",
    "Range",
    "RuleEngine",
    "RuleWarningRegistry",
    "SelectionRule",
    "parse_action",
    "parse_condition",
    "parse_rules",
    "rule_warnings",
]
