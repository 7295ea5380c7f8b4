"""View state: filter, sort and selection over a snapshot."""

import re
from collections.abc import Callable, Sequence

from lsport.models import PortEntry, Snapshot, SortKey

_SORT_VALUES: dict[SortKey, Callable[[PortEntry], object]] = {
    SortKey.PORT: lambda e: e.port,
    SortKey.PROTOCOL: lambda e: e.protocol.rank,
    SortKey.PID: lambda e: -1 if e.pid is None else e.pid,
    SortKey.NAME: lambda e: (e.process_name or "").lower(),
    SortKey.CPU: lambda e: e.cpu_percent,
    SortKey.MEMORY: lambda e: e.memory_bytes,
}


def tiebreak(entry: PortEntry) -> tuple[int, int, int]:
    """Deterministic order for equal sort values: port, protocol, pid."""
    return (entry.port, entry.protocol.rank, -1 if entry.pid is None else entry.pid)


def sort_entries(entries: Sequence[PortEntry], key: SortKey, ascending: bool = True) -> list[PortEntry]:
    """
    Stable sort by key; the direction applies to the key only.

    Ties are always broken by port, protocol and pid ascending, so the
    result does not depend on scan order.
    """
    ordered = sorted(entries, key=tiebreak)
    return sorted(ordered, key=_SORT_VALUES[key], reverse=not ascending)


def compile_filter(pattern: str) -> Callable[[str], bool] | None:
    """
    Build a case-insensitive matcher for a filter pattern.

    A valid regular expression is used as such; anything else falls back to
    a plain substring match. Returns None for an empty pattern.
    """
    if not pattern:
        return None
    try:
        regex = re.compile(pattern, re.IGNORECASE)
    except re.error:
        needle = pattern.lower()
        return lambda text: needle in text.lower()
    return lambda text: regex.search(text) is not None


def filter_entries(entries: Sequence[PortEntry], pattern: str) -> list[PortEntry]:
    """Keep entries whose name, pid or port matches the pattern."""
    matches = compile_filter(pattern)
    if matches is None:
        return list(entries)
    return [
        e
        for e in entries
        if matches(e.process_name or "")
        or (e.pid is not None and matches(str(e.pid)))
        or matches(str(e.port))
    ]


class ViewState:
    """
    Filter, sort and selection for the port table.

    apply() recomputes the visible rows from a full snapshot and re-anchors
    the selection on the same (port, protocol, pid) when it still exists.
    """

    def __init__(self, sort_key: SortKey = SortKey.PORT, ascending: bool = True) -> None:
        """Initialize ViewState."""
        self.filter_pattern: str = ""
        self.sort_key: SortKey = sort_key
        self.sort_ascending: bool = ascending
        self.selected_index: int | None = None
        self.visible: list[PortEntry] = []
        self._snapshot: Snapshot = Snapshot.empty()
        self._selected_key: tuple | None = None

    @property
    def snapshot(self) -> Snapshot:
        return self._snapshot

    @property
    def selected(self) -> PortEntry | None:
        if self.selected_index is None:
            return None
        return self.visible[self.selected_index]

    @property
    def filter_is_regex(self) -> bool:
        if not self.filter_pattern:
            return False
        try:
            re.compile(self.filter_pattern)
        except re.error:
            return False
        return True

    def apply(self, snapshot: Snapshot | None = None) -> list[PortEntry]:
        """Re-filter and re-sort (a new or the current snapshot)."""
        if snapshot is not None:
            self._snapshot = snapshot
        filtered = filter_entries(self._snapshot.entries, self.filter_pattern)
        self.visible = sort_entries(filtered, self.sort_key, self.sort_ascending)
        self._reanchor()
        return self.visible

    def set_filter(self, pattern: str) -> list[PortEntry]:
        self.filter_pattern = pattern
        return self.apply()

    def set_sort(self, key: SortKey) -> list[PortEntry]:
        """Same key flips direction; a different key resets to ascending."""
        if key == self.sort_key:
            self.sort_ascending = not self.sort_ascending
        else:
            self.sort_key = key
            self.sort_ascending = True
        return self.apply()

    def cycle_sort(self) -> SortKey:
        """Move to the next sort key and return it."""
        self.set_sort(self.sort_key.next())
        return self.sort_key

    def select(self, index: int) -> None:
        if not self.visible:
            self._set_selection(None)
            return
        self._set_selection(max(0, min(index, len(self.visible) - 1)))

    def select_next(self) -> None:
        """Move the selection down, wrapping to the top."""
        if not self.visible:
            return
        current = -1 if self.selected_index is None else self.selected_index
        self._set_selection((current + 1) % len(self.visible))

    def select_previous(self) -> None:
        """Move the selection up, wrapping to the bottom."""
        if not self.visible:
            return
        current = 0 if self.selected_index is None else self.selected_index
        self._set_selection((current - 1) % len(self.visible))

    def _set_selection(self, index: int | None) -> None:
        self.selected_index = index
        self._selected_key = None if index is None else self.visible[index].key

    def _reanchor(self) -> None:
        if not self.visible:
            self.selected_index = None
            return
        if self._selected_key is not None:
            for index, entry in enumerate(self.visible):
                if entry.key == self._selected_key:
                    self.selected_index = index
                    return
        previous = 0 if self.selected_index is None else self.selected_index
        self._set_selection(max(0, min(previous, len(self.visible) - 1)))
