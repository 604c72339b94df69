"""
Unit tests for supporting signals and the statistics gateway.
"""

import threading

import pytest

from rumbledore.errors import ExternalSignalUnavailable
from rumbledore.identity.signals import (
    StatisticalProfile,
    StatisticsGateway,
    owner_continuity,
    position_compatibility,
    source_id_continuity,
    statistical_similarity,
    team_continuity,
)


class TestPositionCompatibility:

    @pytest.mark.parametrize("a,b,expected", [
        ("QB", "QB", 1.0),
        ("qb ", "QB", 1.0),
        ("FLEX", "RB", 0.8),
        ("TE", "FLEX", 0.8),
        ("RB", "WR", 0.3),
        ("D/ST", "DST", 1.0),
        ("DEF", "D/ST", 1.0),
        ("QB", "K", 0.0),
        ("QB", None, 0.0),
        ("", "QB", 0.0),
    ])
    def test_compatibility(self, a, b, expected):
        assert position_compatibility(a, b) == expected


class TestStatisticalSimilarity:

    def test_identical(self):
        profile = StatisticalProfile(games_played=16, total_points=192.0)
        assert statistical_similarity(profile, profile) == pytest.approx(1.0)

    def test_very_different(self):
        starter = StatisticalProfile(games_played=16, total_points=192.0)
        backup = StatisticalProfile(games_played=5, total_points=15.0)
        # Points per game 12 vs 3 gives nothing; games played gives 0.3 * 5/16
        assert statistical_similarity(starter, backup) == pytest.approx(0.09375)

    def test_average_points_preferred(self):
        profile = StatisticalProfile(games_played=10, total_points=0.0, average_points=12.0)
        assert profile.points_per_game == 12.0

    def test_both_empty(self):
        empty = StatisticalProfile()
        assert statistical_similarity(empty, empty) == 1.0

    def test_one_empty(self):
        assert statistical_similarity(
            StatisticalProfile(), StatisticalProfile(games_played=4, total_points=40.0)
        ) == 0.0

    def test_missing(self):
        assert statistical_similarity(None, StatisticalProfile()) == 0.0


class TestContinuity:

    def test_same_team(self):
        assert team_continuity("KC", 2022, "kc", 2023) == 1.0

    def test_adjacent_seasons_trade(self):
        assert team_continuity("LAC", 2022, "NYJ", 2023) == 0.3

    def test_distant_seasons(self):
        assert team_continuity("LAC", 2019, "NYJ", 2021) == 0.0

    def test_unknown_team(self):
        assert team_continuity(None, 2022, "KC", 2023) == 0.0

    def test_owner_within_gap(self):
        same = lambda a, b: 1.0 if a == b else 0.0
        assert owner_continuity(same, "Alice", 2021, "Alice", 2023) == 1.0
        assert owner_continuity(same, "Alice", 2020, "Alice", 2023) == 0.0
        assert owner_continuity(same, None, 2022, "Alice", 2023) == 0.0

    def test_source_id_continuity(self):
        assert source_id_continuity(7, [3, 7]) == 1.0
        assert source_id_continuity(8, [3, 7]) == 0.0


class FlakyProvider:
    def __init__(self, failures=0, profile=None):
        self.failures = failures
        self.profile = profile or StatisticalProfile(games_played=10, total_points=100.0)
        self.calls = 0

    def get_profile(self, entity_kind, source_id, season):
        self.calls += 1
        if self.calls <= self.failures:
            raise ConnectionError("provider down")
        return self.profile


class BlockingProvider:
    def __init__(self):
        self.release = threading.Event()

    def get_profile(self, entity_kind, source_id, season):
        self.release.wait(5)
        return StatisticalProfile(games_played=1, total_points=1.0)


class NoProfileProvider:
    calls = 0

    def get_profile(self, entity_kind, source_id, season):
        self.calls += 1
        return None


class TestStatisticsGateway:

    def test_success(self, settings):
        provider = FlakyProvider()
        gateway = StatisticsGateway(provider, settings=settings)
        try:
            assert gateway.fetch("player", 1, 2023) == provider.profile
        finally:
            gateway.close()

    def test_retries_with_backoff(self, settings):
        delays = []
        provider = FlakyProvider(failures=2)
        gateway = StatisticsGateway(
            provider, max_retries=2, base_delay=0.1, settings=settings, sleep=delays.append
        )
        try:
            assert gateway.fetch("player", 1, 2023) == provider.profile
        finally:
            gateway.close()

        assert provider.calls == 3
        assert len(delays) == 2
        assert 0.1 <= delays[0] <= 0.2
        assert 0.2 <= delays[1] <= 0.3

    def test_gives_up_after_retries(self, settings):
        delays = []
        provider = FlakyProvider(failures=10)
        gateway = StatisticsGateway(
            provider, max_retries=2, base_delay=0.1, settings=settings, sleep=delays.append
        )
        try:
            with pytest.raises(ExternalSignalUnavailable, match="after 3 attempts"):
                gateway.fetch("player", 1, 2023)
        finally:
            gateway.close()
        assert provider.calls == 3
        assert len(delays) == 2

    def test_timeout(self, settings):
        provider = BlockingProvider()
        gateway = StatisticsGateway(provider, timeout=0.05, max_retries=0, settings=settings)
        try:
            with pytest.raises(ExternalSignalUnavailable, match="after 1 attempts"):
                gateway.fetch("player", 1, 2023)
        finally:
            provider.release.set()
            gateway.close()

    def test_missing_profile_is_not_retried(self, settings):
        provider = NoProfileProvider()
        gateway = StatisticsGateway(provider, max_retries=3, settings=settings, sleep=lambda s: None)
        try:
            with pytest.raises(ExternalSignalUnavailable):
                gateway.fetch("player", 1, 2023)
        finally:
            gateway.close()
        assert provider.calls == 1
