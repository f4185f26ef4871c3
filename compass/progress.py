"""Progress and health classification for key results."""
from __future__ import annotations

NO_TARGET = "no_target"
NO_CHECKINS = "no_checkins"
OFF_TRACK = "off_track"
AT_RISK = "at_risk"
ON_TRACK = "on_track"

HEALTH_STATES = (NO_TARGET, NO_CHECKINS, OFF_TRACK, AT_RISK, ON_TRACK)

OFF_TRACK_BELOW = 40.0
AT_RISK_BELOW = 70.0


def has_target(target: float | None) -> bool:
    return target is not None and target > 0


def progress_pct(current: float | None, target: float | None) -> float | None:
    """Return progress toward *target* as a percentage clamped to [0, 100].

    ``None`` when there is no positive target. A missing *current* counts as 0.
    """
    if not has_target(target):
        return None
    if current is None:
        return 0.0
    return max(0.0, min(100.0, current / target * 100))


def band(pct: float) -> str:
    """Bucket a percentage: [0,40) off_track, [40,70) at_risk, [70,..] on_track."""
    if pct < OFF_TRACK_BELOW:
        return OFF_TRACK
    if pct < AT_RISK_BELOW:
        return AT_RISK
    return ON_TRACK


def health(current: float | None, target: float | None) -> str:
    if not has_target(target):
        return NO_TARGET
    if current is None:
        return NO_CHECKINS
    return band(progress_pct(current, target) or 0.0)


def overall_health(counts: dict[str, int]) -> str:
    """Roll KR health counts up to one state; the worst state present wins.

    Order: off_track, at_risk, on_track, no_checkins, then no_target (also
    the answer for an objective with no KRs).
    """
    for state in (OFF_TRACK, AT_RISK, ON_TRACK, NO_CHECKINS):
        if counts.get(state, 0) > 0:
            return state
    return NO_TARGET
