"""Per-app colours and usage limits for whitelisted apps."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Iterable, Optional

from .models import MILLIS_PER_MINUTE
from .normalization import normalize_color, normalize_package_name


class LimitKind(Enum):
    SESSION = "session"
    DAILY = "daily"


@dataclass(frozen=True, slots=True)
class WhitelistedApp:
    package_name: str
    color: str
    daily_limit_minutes: Optional[int] = None
    session_limit_minutes: Optional[int] = None


@dataclass(frozen=True, slots=True)
class LimitBreach:
    package_name: str
    kind: LimitKind
    used_ms: int
    limit_minutes: int


def color_map(apps: Iterable[WhitelistedApp]) -> dict[str, str]:
    """Package name to normalized colour; apps with malformed colours are skipped."""
    colors: dict[str, str] = {}
    for app in apps:
        package = normalize_package_name(app.package_name)
        color = normalize_color(app.color)
        if package and color:
            colors[package] = color
    return colors


def check_usage_limits(
    app: WhitelistedApp,
    usage_today_ms: int,
    session_ms: Optional[int] = None,
    snoozed: bool = False,
) -> Optional[LimitBreach]:
    """Return the first limit the app has reached, session before daily."""
    if snoozed:
        return None
    if (
        session_ms is not None
        and app.session_limit_minutes is not None
        and session_ms >= app.session_limit_minutes * MILLIS_PER_MINUTE
    ):
        return LimitBreach(app.package_name, LimitKind.SESSION, session_ms, app.session_limit_minutes)
    if (
        app.daily_limit_minutes is not None
        and usage_today_ms >= app.daily_limit_minutes * MILLIS_PER_MINUTE
    ):
        return LimitBreach(app.package_name, LimitKind.DAILY, usage_today_ms, app.daily_limit_minutes)
    return None
