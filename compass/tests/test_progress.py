from __future__ import annotations

import pytest

from compass import progress


class TestProgressPct:
    def test_no_target_is_none(self):
        assert progress.progress_pct(10, None) is None
        assert progress.progress_pct(10, 0) is None
        assert progress.progress_pct(10, -5) is None

    def test_plain_ratio(self):
        assert progress.progress_pct(50, 200) == 25.0

    def test_clamped_to_range(self):
        assert progress.progress_pct(300, 100) == 100.0
        assert progress.progress_pct(-20, 100) == 0.0

    def test_missing_current_counts_as_zero(self):
        assert progress.progress_pct(None, 100) == 0.0


class TestBand:
    @pytest.mark.parametrize("pct, expected", [
        (0, progress.OFF_TRACK),
        (39.9, progress.OFF_TRACK),
        (40, progress.AT_RISK),
        (69.99, progress.AT_RISK),
        (70, progress.ON_TRACK),
        (100, progress.ON_TRACK),
    ])
    def test_boundaries(self, pct, expected):
        assert progress.band(pct) == expected


class TestHealth:
    def test_no_target_wins_over_everything(self):
        assert progress.health(None, None) == progress.NO_TARGET
        assert progress.health(80, 0) == progress.NO_TARGET

    def test_no_checkins(self):
        assert progress.health(None, 100) == progress.NO_CHECKINS

    def test_banded(self):
        assert progress.health(10, 100) == progress.OFF_TRACK
        assert progress.health(50, 100) == progress.AT_RISK
        assert progress.health(75, 100) == progress.ON_TRACK

    def test_zero_current_is_an_observation(self):
        assert progress.health(0, 100) == progress.OFF_TRACK

    def test_always_a_known_state(self):
        for current, target in [(None, None), (1, 1), (0.5, 3), (None, 7)]:
            assert progress.health(current, target) in progress.HEALTH_STATES


class TestOverallHealth:
    @pytest.mark.parametrize("present,expected", [
        ({progress.OFF_TRACK, progress.AT_RISK, progress.ON_TRACK}, progress.OFF_TRACK),
        ({progress.AT_RISK, progress.ON_TRACK, progress.NO_CHECKINS}, progress.AT_RISK),
        ({progress.ON_TRACK, progress.NO_CHECKINS, progress.NO_TARGET}, progress.ON_TRACK),
        ({progress.NO_CHECKINS, progress.NO_TARGET}, progress.NO_CHECKINS),
        ({progress.NO_TARGET}, progress.NO_TARGET),
    ])
    def test_worst_state_wins(self, present, expected):
        counts = {state: (1 if state in present else 0) for state in progress.HEALTH_STATES}
        assert progress.overall_health(counts) == expected

    def test_no_krs(self):
        assert progress.overall_health({}) == progress.NO_TARGET
        assert progress.overall_health({s: 0 for s in progress.HEALTH_STATES}) == progress.NO_TARGET
