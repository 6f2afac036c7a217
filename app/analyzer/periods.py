"""GrowthLab Metrics — Period Set.

The universe of periods for one evaluation: every distinct ``period_date``
present among the loaded source values, sorted ascending. Built once per
evaluation and shared by all time-windowed operations, so a date-filtered
load shrinks every window consistently.

Periods are ISO date strings (``YYYY-MM-DD``, or a zero-padded prefix such as
``YYYY-MM``); ordering is plain string comparison.
"""

from bisect import bisect_right
from typing import Iterable, List, Optional


class PeriodSet:
    """Immutable, sorted, de-duplicated sequence of periods."""

    __slots__ = ("_periods", "_positions")

    def __init__(self, periods: Iterable[str] = ()):
        self._periods: tuple[str, ...] = tuple(sorted(set(periods)))
        self._positions = {p: i for i, p in enumerate(self._periods)}

    @classmethod
    def from_values(cls, rows: Iterable) -> "PeriodSet":
        """Build from rows exposing ``period_date`` (value rows)."""
        return cls(r.period_date for r in rows)

    def __iter__(self):
        return iter(self._periods)

    def __len__(self) -> int:
        return len(self._periods)

    def __contains__(self, period: object) -> bool:
        return period in self._positions

    def __repr__(self) -> str:
        return f"<PeriodSet {len(self._periods)} periods>"

    @property
    def periods(self) -> List[str]:
        return list(self._periods)

    def index_of(self, period: str) -> Optional[int]:
        """Position of ``period`` in the sorted list, None when absent."""
        return self._positions.get(period)

    def up_to(self, period: str) -> List[str]:
        """All periods <= ``period`` (inclusive). Used by cumulative."""
        return list(self._periods[: bisect_right(self._periods, period)])

    def window(self, period: str, count: int) -> List[str]:
        """The ``count`` most recent periods ending at ``period``.

        Counted by position, not calendar distance. Empty when ``period`` is
        not part of the set.
        """
        idx = self.index_of(period)
        if idx is None or count < 1:
            return []
        start = max(0, idx - count + 1)
        return list(self._periods[start : idx + 1])

    def year_to_date(self, period: str) -> List[str]:
        """Periods in ``period``'s calendar year up to and including it."""
        year = period[:4]
        return [p for p in self.up_to(period) if p[:4] == year]

    def previous(self, period: str) -> Optional[str]:
        """The entry immediately before ``period``, None if first or absent."""
        idx = self.index_of(period)
        if not idx:
            return None
        return self._periods[idx - 1]
