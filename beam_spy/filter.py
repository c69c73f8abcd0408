"""
Name filters for the listing commands.

Pattern syntax:

``re:PATTERN`` / ``regex:PATTERN``
    Python regular expression, matched with ``re.search``.
``glob:PATTERN``
    Shell glob over the whole name (``*`` and ``?``).
anything else
    Case-insensitive substring.

Function selectors for ``disasm --function`` are separate: ``name/arity``
is exact, a pattern containing ``*`` is a glob over the name, and
anything else is a substring of the name.
"""

from __future__ import annotations

import fnmatch
import re
from dataclasses import dataclass
from typing import Callable, Iterable, List, Optional, Pattern, TypeVar

from beam_spy.errors import FilterError

T = TypeVar("T")


@dataclass(frozen=True)
class Filter:
    kind: str                 # "substring" | "regex" | "glob"
    pattern: str
    regex: Optional[Pattern[str]] = None

    def matches(self, value: object) -> bool:
        text = str(value)
        if self.kind == "substring":
            return self.pattern in text.lower()
        if self.regex is None:
            return False
        if self.kind == "glob":
            return self.regex.match(text) is not None
        return self.regex.search(text) is not None


def substring(pattern: str) -> Filter:
    return Filter("substring", pattern.lower())


def regex(pattern: str) -> Filter:
    try:
        compiled = re.compile(pattern)
    except re.error as exc:
        raise FilterError(f"invalid regex {pattern!r}: {exc}") from exc
    return Filter("regex", pattern, compiled)


def glob(pattern: str) -> Filter:
    return Filter("glob", pattern, re.compile(fnmatch.translate(pattern)))


def parse_filter(text: str) -> Filter:
    """Build a :class:`Filter` from a prefixed pattern string."""
    for prefix in ("re:", "regex:"):
        if text.startswith(prefix):
            return regex(text[len(prefix):])
    if text.startswith("glob:"):
        return glob(text[len("glob:"):])
    return substring(text)


def apply_filter(
    items: Iterable[T],
    pattern: Optional[str],
    key: Callable[[T], object] = str,
) -> List[T]:
    """Keep the items whose ``key(item)`` matches *pattern* (all if ``None``)."""
    items = list(items)
    if pattern is None:
        return items
    flt = parse_filter(pattern)
    return [item for item in items if flt.matches(key(item))]


# ---------------------------------------------------------------------------
# Function selectors
# ---------------------------------------------------------------------------

def match_function(selector: str, name: str, arity: int) -> bool:
    if "/" in selector:
        return selector == f"{name}/{arity}"
    if "*" in selector:
        return fnmatch.fnmatchcase(name, selector)
    return selector in name


def filter_functions(functions: Iterable[T], selector: Optional[str]) -> List[T]:
    """Functions (anything with ``name``/``arity``) matching *selector*."""
    functions = list(functions)
    if not selector:
        return functions
    return [f for f in functions if match_function(selector, str(f.name), f.arity)]
