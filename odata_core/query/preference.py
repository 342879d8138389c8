"""
odata_core.query.preference - Prefer header handling
====================================================
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import List, Optional


@dataclass
class Preference:
    """
    Preferences parsed from the ``Prefer`` request header.

    Requested preferences only become part of ``Preference-Applied`` once
    the handler honours them (``apply_max_page_size``,
    ``apply_track_changes``).

    Examples
    --------
    >>> pref = Preference.parse("return=minimal, odata.maxpagesize=50")
    >>> pref.max_page_size
    50
    """

    return_representation: bool = False
    return_minimal: bool = False
    max_page_size: Optional[int] = None
    track_changes_requested: bool = False
    max_page_size_applied: bool = False
    track_changes_applied: bool = False

    @classmethod
    def parse(cls, header: Optional[str]) -> "Preference":
        pref = cls()
        if not header:
            return pref
        for item in header.split(","):
            name, _, value = item.strip().partition("=")
            name = name.strip().lower()
            value = value.strip().strip('"').lower()
            if name == "return":
                if value == "representation":
                    pref.return_representation = True
                elif value == "minimal":
                    pref.return_minimal = True
            elif name in ("odata.maxpagesize", "maxpagesize"):
                try:
                    size = int(value)
                except ValueError:
                    continue
                if size > 0:
                    pref.max_page_size = size
            elif name in ("odata.track-changes", "track-changes"):
                pref.track_changes_requested = True
        return pref

    def should_return_content(self, is_create: bool) -> bool:
        """Creates return the entity unless ``return=minimal``; updates only on ``return=representation``."""
        if is_create:
            return not self.return_minimal
        return self.return_representation

    def apply_max_page_size(self) -> None:
        self.max_page_size_applied = self.max_page_size is not None

    def apply_track_changes(self) -> None:
        self.track_changes_applied = self.track_changes_requested

    def preference_applied(self) -> str:
        """Value for the ``Preference-Applied`` response header ("" for none)."""
        applied: List[str] = []
        if self.return_representation:
            applied.append("return=representation")
        if self.return_minimal:
            applied.append("return=minimal")
        if self.max_page_size_applied and self.max_page_size is not None:
            applied.append(f"odata.maxpagesize={self.max_page_size}")
        if self.track_changes_applied:
            applied.append("odata.track-changes")
        return ", ".join(applied)
