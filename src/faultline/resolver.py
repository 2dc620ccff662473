"""Map loosely formatted external references (URLs, scanned labels, typed codes) to defects.

Matching is an ordered list of ``IdMatcher`` strategies; the first strategy
that finds a record wins. No match is a normal outcome and yields ``None``.
"""

from __future__ import annotations

import re
from collections.abc import Callable, Iterable, Sequence
from typing import Protocol

from faultline.models import Defect

# Code widths the system has issued over time, tried in this order.
HISTORICAL_CODE_WIDTHS: tuple[int, ...] = (4, 6)


class IdMatcher(Protocol):
    def match(self, defects: Sequence[Defect], ref: str) -> Defect | None: ...


def _first(defects: Iterable[Defect], predicate: Callable[[Defect], bool]) -> Defect | None:
    return next((d for d in defects if predicate(d)), None)


class DirectIdMatcher:
    """Exact match on the internal id."""

    def match(self, defects: Sequence[Defect], ref: str) -> Defect | None:
        return _first(defects, lambda d: d.id == ref)


class ShortIdMatcher:
    """``def-7`` style short forms matched against internal ids, tolerating zero padding."""

    def __init__(self, id_prefix: str = "def") -> None:
        self.id_prefix = id_prefix
        self._pattern = re.compile(rf"^{re.escape(id_prefix)}-(\d+)$", re.IGNORECASE)
        self._id_pattern = re.compile(rf"^{re.escape(id_prefix)}-0*(\d+)$", re.IGNORECASE)

    def match(self, defects: Sequence[Defect], ref: str) -> Defect | None:
        m = self._pattern.match(ref)
        if m is None:
            return None
        number = int(m.group(1))
        exact = f"{self.id_prefix}-{number}"
        found = _first(defects, lambda d: d.id.lower() == exact.lower())
        if found is not None:
            return found

        def same_number(d: Defect) -> bool:
            id_match = self._id_pattern.match(d.id)
            return id_match is not None and int(id_match.group(1)) == number

        return _first(defects, same_number)


def normalize_code(ref: str, prefix: str = "DEF") -> str:
    """Uppercase *ref* and insert the separator in ``DEF0007`` style input."""
    cleaned = ref.strip().upper()
    upper_prefix = prefix.upper()
    if cleaned.startswith(upper_prefix) and not cleaned.startswith(f"{upper_prefix}-"):
        rest = cleaned[len(upper_prefix) :].lstrip(" _")
        if rest.isdigit():
            return f"{upper_prefix}-{rest}"
    return cleaned


class NormalizedCodeMatcher:
    """Case-insensitive exact match on the human code after normalization."""

    def __init__(self, code_prefix: str = "DEF") -> None:
        self.code_prefix = code_prefix

    def match(self, defects: Sequence[Defect], ref: str) -> Defect | None:
        wanted = normalize_code(ref, self.code_prefix)
        return _first(defects, lambda d: bool(d.code) and d.code.upper() == wanted)


class PaddedNumberMatcher:
    """Extract the number from a code-shaped string and retry at each historical width."""

    def __init__(self, code_prefix: str = "DEF", widths: Sequence[int] = HISTORICAL_CODE_WIDTHS) -> None:
        self.code_prefix = code_prefix.upper()
        self.widths = tuple(widths)
        self._pattern = re.compile(rf"^{re.escape(self.code_prefix)}-(\d+)$", re.IGNORECASE)

    def candidates(self, number: int) -> list[str]:
        padded = [f"{self.code_prefix}-{number:0{width}d}" for width in self.widths]
        return [*padded, f"{self.code_prefix}-{number}"]

    def match(self, defects: Sequence[Defect], ref: str) -> Defect | None:
        m = self._pattern.match(normalize_code(ref, self.code_prefix))
        if m is None:
            return None
        by_code = {d.code.upper(): d for d in defects if d.code}
        for candidate in self.candidates(int(m.group(1))):
            if candidate in by_code:
                return by_code[candidate]
        return None


def default_matchers(*, code_prefix: str = "DEF", id_prefix: str = "def") -> list[IdMatcher]:
    return [
        DirectIdMatcher(),
        ShortIdMatcher(id_prefix),
        NormalizedCodeMatcher(code_prefix),
        PaddedNumberMatcher(code_prefix),
    ]


def resolve(
    defects: Sequence[Defect],
    ref: str,
    *,
    code_prefix: str = "DEF",
    id_prefix: str = "def",
    matchers: Sequence[IdMatcher] | None = None,
) -> Defect | None:
    """Return the first defect any matcher finds for *ref*, or None."""
    if not ref or not ref.strip():
        return None
    ref = ref.strip()
    for matcher in matchers if matchers is not None else default_matchers(code_prefix=code_prefix, id_prefix=id_prefix):
        found = matcher.match(defects, ref)
        if found is not None:
            return found
    return None
