"""Region detection against an authoritative list of region names.

Both the authoritative names and the text being searched (a file name or a
sheet title) are normalized the same way: uppercased, a trailing
extension-like suffix stripped, runs of non-alphanumerics collapsed to a
single space.  A region is found when its normalized form is a substring of
the normalized text; the first region in list order wins.
"""

from __future__ import annotations

import re

_EXT_RE = re.compile(r"\.[A-Z0-9]+$")
_NON_ALNUM_RE = re.compile(r"[^A-Z0-9]+")


def normalize_for_match(text: str | None) -> str:
    """Normalize *text* for substring region matching.

    >>> normalize_for_match("big_south-report.xlsx")
    'BIG SOUTH REPORT'
    """
    if not text:
        return ""
    value = str(text).upper().strip()
    value = _EXT_RE.sub("", value)
    value = _NON_ALNUM_RE.sub(" ", value)
    return value.strip()


class RegionIndex:
    """Lookup of normalized region keys to display names.

    The first display form seen for a normalized key is kept.  Iteration order
    of the source list is preserved and decides which region wins when more
    than one appears in the same text.
    """

    def __init__(self, regions: list[str]) -> None:
        self._by_key: dict[str, str] = {}
        for name in regions:
            if name is None:
                continue
            display = str(name).strip()
            key = normalize_for_match(display)
            if key and key not in self._by_key:
                self._by_key[key] = display

    @classmethod
    def build(cls, regions: list[str] | None) -> RegionIndex | None:
        """Return an index, or None when the list is missing or empty."""
        if not regions:
            return None
        index = cls(regions)
        if not index:
            return None
        return index

    def __len__(self) -> int:
        return len(self._by_key)

    def __contains__(self, name: object) -> bool:
        return normalize_for_match(name) in self._by_key  # type: ignore[arg-type]

    @property
    def names(self) -> list[str]:
        return list(self._by_key.values())

    def canonical(self, name: str | None) -> str | None:
        """Return the display form of *name* if it is a known region."""
        return self._by_key.get(normalize_for_match(name))

    def detect(self, text: str | None) -> str | None:
        """Return the first region whose normalized name occurs in *text*."""
        haystack = normalize_for_match(text)
        if not haystack:
            return None
        for key, display in self._by_key.items():
            if key in haystack:
                return display
        return None


def detect_region(text: str | None, index: RegionIndex | None) -> str | None:
    """Detect a region in *text*; always None when no index is available."""
    if index is None:
        return None
    return index.detect(text)
