"""
Supporting signals for confidence scoring.

Name similarity alone cannot tell two "Mike Williams" apart, so the scorer
also looks at:
- Position compatibility (QB vs QB, FLEX vs WR, D/ST spellings)
- Team continuity (same pro team, or a plausible trade between adjacent seasons)
- Statistical similarity (points per game and availability)
- For fantasy teams: source id continuity and owner continuity

Season statistics come from an external provider. Lookups go through
StatisticsGateway, which bounds every call with a timeout and retries with
exponential backoff before giving up with ExternalSignalUnavailable.
"""

import logging
import random
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass
from typing import Callable, Iterable, Optional, Protocol

from rumbledore.config import Settings, get_settings
from rumbledore.errors import ExternalSignalUnavailable

logger = logging.getLogger(__name__)

FLEX_POSITIONS = frozenset({"RB", "WR", "TE"})

# Largest season gap over which a team's owner still counts as continuity
TEAM_MAX_SEASON_GAP = 2


# =============================================================================
# Statistics provider interface
# =============================================================================

@dataclass(frozen=True)
class StatisticalProfile:
    """Season totals for one player or team, as reported by the provider."""
    games_played: int = 0
    total_points: float = 0.0
    average_points: Optional[float] = None

    @property
    def points_per_game(self) -> float:
        if self.average_points is not None:
            return self.average_points
        if self.games_played:
            return self.total_points / self.games_played
        return 0.0

    def to_dict(self) -> dict:
        return {
            "games_played": self.games_played,
            "total_points": self.total_points,
            "average_points": self.points_per_game,
        }


class StatisticsProvider(Protocol):
    """Anything that can answer "how did this source record perform that season"."""

    def get_profile(
        self, entity_kind: str, source_id: int, season: int
    ) -> Optional[StatisticalProfile]:
        ...


class StatisticsGateway:
    """
    Bounded, retrying access to a StatisticsProvider.

    Every attempt runs on a small private thread pool so a hung provider
    can be abandoned after `timeout` seconds. Safe to share across the
    resolver's scoring workers.

    Usage:
        gateway = StatisticsGateway(provider, timeout=2.0, max_retries=2)
        try:
            profile = gateway.fetch("player", 111, 2023)
        except ExternalSignalUnavailable:
            profile = None
    """

    def __init__(
        self,
        provider: StatisticsProvider,
        timeout: Optional[float] = None,
        max_retries: Optional[int] = None,
        base_delay: Optional[float] = None,
        settings: Optional[Settings] = None,
        max_workers: int = 8,
        sleep: Callable[[float], None] = time.sleep,
    ):
        settings = settings or get_settings()
        self.provider = provider
        self.timeout = settings.stats_timeout_seconds if timeout is None else timeout
        self.max_retries = settings.stats_max_retries if max_retries is None else max_retries
        self.base_delay = settings.stats_retry_base_delay if base_delay is None else base_delay
        self._sleep = sleep
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="stats-gateway"
        )

    def fetch(self, entity_kind: str, source_id: int, season: int) -> StatisticalProfile:
        """
        Fetch a profile, retrying failures and timeouts.

        Returns:
            The provider's profile

        Raises:
            ExternalSignalUnavailable: every attempt failed or timed out, or
                the provider has no profile for this record
        """
        attempts = self.max_retries + 1
        last_error: Optional[BaseException] = None

        for attempt in range(attempts):
            future = self._executor.submit(
                self.provider.get_profile, entity_kind, source_id, season
            )
            try:
                profile = future.result(timeout=self.timeout)
            except FutureTimeoutError as e:
                future.cancel()
                last_error = e
                reason = f"timed out after {self.timeout}s"
            except Exception as e:
                last_error = e
                reason = str(e)
            else:
                if profile is None:
                    raise ExternalSignalUnavailable(
                        f"No statistics for {entity_kind} {source_id} in {season}"
                    )
                return profile

            if attempt < attempts - 1:
                # Exponential backoff with jitter
                delay = self.base_delay * (2 ** attempt)
                delay += random.uniform(0, self.base_delay)
                logger.debug(
                    "[Retry %d/%d] statistics for %s %s/%s %s; retrying in %.2fs",
                    attempt + 1, attempts, entity_kind, source_id, season, reason, delay,
                )
                self._sleep(delay)

        raise ExternalSignalUnavailable(
            f"Statistics for {entity_kind} {source_id} in {season} unavailable "
            f"after {attempts} attempts: {last_error}"
        ) from last_error

    def close(self) -> None:
        # Abandoned timed-out calls are left to finish on their own
        self._executor.shutdown(wait=False, cancel_futures=True)


# =============================================================================
# Factor calculations
# =============================================================================

def _is_defense(position: str) -> bool:
    return "D/ST" in position or "DST" in position or position == "DEF"


def position_compatibility(position_a: Optional[str], position_b: Optional[str]) -> float:
    """
    Compatibility of two roster positions.

    Returns:
        1.0 for the same position (or two spellings of team defense),
        0.8 for FLEX against RB/WR/TE, 0.3 for two different FLEX-eligible
        positions, 0.0 otherwise or when either position is unknown
    """
    if not position_a or not position_b:
        return 0.0

    p1 = position_a.strip().upper()
    p2 = position_b.strip().upper()

    if p1 == p2:
        return 1.0
    if (p1 == "FLEX" and p2 in FLEX_POSITIONS) or (p2 == "FLEX" and p1 in FLEX_POSITIONS):
        return 0.8
    if p1 in FLEX_POSITIONS and p2 in FLEX_POSITIONS:
        return 0.3
    if _is_defense(p1) and _is_defense(p2):
        return 1.0
    return 0.0


def statistical_similarity(
    a: Optional[StatisticalProfile], b: Optional[StatisticalProfile]
) -> float:
    """
    Similarity of two season profiles.

    Points per game count for 0.7 and games played for 0.3. Two profiles
    with no games are identical; one empty profile against a real one
    scores 0.
    """
    if a is None or b is None:
        return 0.0
    if a.games_played == 0 and b.games_played == 0:
        return 1.0
    if a.games_played == 0 or b.games_played == 0:
        return 0.0

    ppg_a = a.points_per_game
    ppg_b = b.points_per_game
    mean = (ppg_a + ppg_b) / 2
    if mean <= 0:
        return 0.0
    avg_similarity = max(0.0, 1 - abs(ppg_a - ppg_b) / mean)

    max_games = max(a.games_played, b.games_played)
    games_similarity = 1 - abs(a.games_played - b.games_played) / max_games

    return min(1.0, avg_similarity * 0.7 + games_similarity * 0.3)


def team_continuity(
    team_a: Optional[str], season_a: int, team_b: Optional[str], season_b: int
) -> float:
    """
    Pro team continuity for players.

    Returns:
        1.0 for the same team, 0.3 for different teams in adjacent seasons
        (a plausible trade or signing), 0.0 otherwise
    """
    if not team_a or not team_b:
        return 0.0
    if team_a.strip().upper() == team_b.strip().upper():
        return 1.0
    if abs(season_a - season_b) == 1:
        return 0.3
    return 0.0


def owner_continuity(
    similarity: Callable[[str, str], float],
    owner_a: Optional[str],
    season_a: int,
    owner_b: Optional[str],
    season_b: int,
    max_gap: int = TEAM_MAX_SEASON_GAP,
) -> float:
    """Owner name similarity for fantasy teams, 0 beyond max_gap seasons."""
    if not owner_a or not owner_b:
        return 0.0
    if abs(season_a - season_b) > max_gap:
        return 0.0
    return similarity(owner_a, owner_b)


def source_id_continuity(source_id: int, known_source_ids: Iterable[int]) -> float:
    """1.0 when the candidate already held this source id in another season."""
    return 1.0 if source_id in set(known_source_ids) else 0.0
