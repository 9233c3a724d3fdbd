"""Fixed-width time-bin rollups of screen and app usage for charting."""

from __future__ import annotations

from collections import defaultdict
from typing import Iterable, Iterator, Optional

from .errors import ErrorKind, Result, check_range
from .models import AppUsageEvent, ScreenEvent, UsageStatistics, UsageTimeBin
from .timeline import clip, count_pickups, pair_screen_events, resolve_overlaps


class _Bins:
    """Index arithmetic for consecutive bins over a half-open range."""

    def __init__(self, range_start: int, range_end: int, size: int) -> None:
        self.range_start = range_start
        self.range_end = range_end
        self.size = size
        self.count = -(-(range_end - range_start) // size)

    def bounds(self, index: int) -> tuple[int, int]:
        start = self.range_start + index * self.size
        return start, min(start + self.size, self.range_end)

    def index_of(self, timestamp: int) -> int:
        return (timestamp - self.range_start) // self.size

    def split(self, start: int, end: int) -> Iterator[tuple[int, int]]:
        """Yield ``(bin index, overlap millis)`` for an interval inside the range."""
        for index in range(self.index_of(start), self.index_of(end - 1) + 1):
            overlap = clip(start, end, *self.bounds(index))
            if overlap is not None:
                yield index, overlap[1] - overlap[0]


def aggregate(
    screen_events: Iterable[ScreenEvent],
    app_events: Iterable[AppUsageEvent],
    range_start: int,
    range_end: int,
    bin_size_ms: int,
    now: Optional[int] = None,
) -> Result[UsageStatistics]:
    """Partition ``[range_start, range_end)`` into bins and accumulate usage.

    The last bin may be shorter than ``bin_size_ms``. Bins with no activity
    are kept so chart axes stay contiguous. Open app sessions run until
    ``now`` when given, else until ``range_end``.

    App time is not clipped to screen-on periods, so ``total_usage_per_app``
    can exceed the app segments of :func:`build_timeline` for the same range
    when sessions were recorded while the screen was off. Usage limits are
    checked against this unclipped total.
    """
    invalid = check_range(range_start, range_end)
    if invalid is not None:
        return invalid
    if bin_size_ms <= 0:
        return Result.failure(
            ErrorKind.INVALID_BIN_SIZE, f"bin size must be positive, got {bin_size_ms}"
        )

    bins = _Bins(range_start, range_end, bin_size_ms)
    screen_per_bin = [0] * bins.count
    usage_per_bin: list[defaultdict[str, int]] = [defaultdict(int) for _ in range(bins.count)]
    opens_per_bin: list[defaultdict[str, int]] = [defaultdict(int) for _ in range(bins.count)]

    raw_periods = pair_screen_events(screen_events, range_start, range_end)
    for period in raw_periods:
        bounds = clip(period.on, period.off, range_start, range_end)
        if bounds is None:
            continue
        for index, millis in bins.split(*bounds):
            screen_per_bin[index] += millis

    for session in resolve_overlaps(app_events):
        session_end = session.end
        if session_end is None:
            session_end = now if now is not None else range_end
        bounds = clip(session.start, session_end, range_start, range_end)
        if bounds is not None:
            for index, millis in bins.split(*bounds):
                usage_per_bin[index][session.package_name] += millis
        if range_start <= session.start < range_end:
            opens_per_bin[bins.index_of(session.start)][session.package_name] += 1

    time_bins = []
    total_usage: defaultdict[str, int] = defaultdict(int)
    total_opens: defaultdict[str, int] = defaultdict(int)
    for index in range(bins.count):
        start, end = bins.bounds(index)
        for package, millis in usage_per_bin[index].items():
            total_usage[package] += millis
        for package, opens in opens_per_bin[index].items():
            total_opens[package] += opens
        time_bins.append(
            UsageTimeBin(
                start=start,
                end=end,
                total_screen_on_time=screen_per_bin[index],
                app_usage=dict(usage_per_bin[index]),
                app_opens=dict(opens_per_bin[index]),
            )
        )

    return Result.success(
        UsageStatistics(
            bins=tuple(time_bins),
            total_screen_on_time=sum(screen_per_bin),
            pickup_count=count_pickups(raw_periods, range_start, range_end),
            total_usage_per_app=dict(total_usage),
            total_opens_per_app=dict(total_opens),
        )
    )
