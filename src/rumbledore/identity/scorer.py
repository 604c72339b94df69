"""
Confidence scoring and the action policy.

A candidate pairing is described by ConfidenceFactors, each in [0, 1]. The
scorer turns those into one confidence value (a weighted mean) and maps the
confidence onto five non-overlapping action bands:

    >= 0.90  auto_approve_high
    >= 0.75  auto_approve
    >= 0.50  manual_review
    >= 0.25  manual_review_low
    else     skip

Weights and bands come from settings so they can be tuned without touching
this module.
"""

import math
from dataclasses import asdict, dataclass, field
from typing import Optional

from rumbledore.config import Settings, get_settings
from rumbledore.errors import ValidationError
from rumbledore.statuses import AUTO_APPROVE_ACTIONS, Action

OPTIONAL_FACTORS = ("draft_position", "ownership", "seasonal_performance")


def _check_unit(name: str, value: float) -> None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValidationError(f"{name} must be a number, got {value!r}")
    if math.isnan(value) or not 0.0 <= value <= 1.0:
        raise ValidationError(f"{name} must be within [0, 1], got {value}")


@dataclass(frozen=True)
class ConfidenceFactors:
    """
    Independently computed signals for one (record, candidate) pairing.

    stats_available is False when the statistics provider could not be
    reached; stat_similarity is then 0 and the policy refuses to
    auto-approve on the remaining evidence.
    """
    name_similarity: float
    position_match: float
    team_continuity: float
    stat_similarity: float
    draft_position: Optional[float] = None
    ownership: Optional[float] = None
    seasonal_performance: Optional[float] = None
    stats_available: bool = True

    def __post_init__(self) -> None:
        _check_unit("name_similarity", self.name_similarity)
        _check_unit("position_match", self.position_match)
        _check_unit("team_continuity", self.team_continuity)
        _check_unit("stat_similarity", self.stat_similarity)
        for name in OPTIONAL_FACTORS:
            value = getattr(self, name)
            if value is not None:
                _check_unit(name, value)

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "ConfidenceFactors":
        known = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
        return cls(**known)


@dataclass(frozen=True)
class ScoringWeights:
    name_similarity: float = 0.40
    position_match: float = 0.20
    team_continuity: float = 0.15
    stat_similarity: float = 0.25
    draft_position: float = 0.10
    ownership: float = 0.05
    seasonal_performance: float = 0.10

    @classmethod
    def from_settings(cls, settings: Settings) -> "ScoringWeights":
        return cls(
            name_similarity=settings.weight_name_similarity,
            position_match=settings.weight_position_match,
            team_continuity=settings.weight_team_continuity,
            stat_similarity=settings.weight_stat_similarity,
            draft_position=settings.weight_draft_position,
            ownership=settings.weight_ownership,
            seasonal_performance=settings.weight_seasonal_performance,
        )


@dataclass(frozen=True)
class ActionThresholds:
    auto_approve_high: float = 0.90
    auto_approve: float = 0.75
    manual_review: float = 0.50
    manual_review_low: float = 0.25

    def __post_init__(self) -> None:
        bands = [self.auto_approve_high, self.auto_approve, self.manual_review, self.manual_review_low]
        if any(high <= low for high, low in zip(bands, bands[1:])):
            raise ValidationError(f"Action thresholds must be strictly descending: {bands}")

    @classmethod
    def from_settings(cls, settings: Settings) -> "ActionThresholds":
        return cls(
            auto_approve_high=settings.threshold_auto_approve_high,
            auto_approve=settings.threshold_auto_approve,
            manual_review=settings.threshold_manual_review,
            manual_review_low=settings.threshold_manual_review_low,
        )


@dataclass
class Explanation:
    """Human-readable justification of a score, shown to reviewers."""
    score: float
    level: str
    action: Action
    strengths: list[str] = field(default_factory=list)
    weaknesses: list[str] = field(default_factory=list)
    suggestions: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return asdict(self)


class ConfidenceScorer:
    """
    Weighted confidence and action policy.

    Usage:
        scorer = ConfidenceScorer(settings=settings)
        confidence, action = scorer.decide(factors)
    """

    def __init__(
        self,
        weights: Optional[ScoringWeights] = None,
        thresholds: Optional[ActionThresholds] = None,
        settings: Optional[Settings] = None,
    ):
        if weights is None or thresholds is None:
            settings = settings or get_settings()
        self.weights = weights or ScoringWeights.from_settings(settings)
        self.thresholds = thresholds or ActionThresholds.from_settings(settings)

    # =========================================================================
    # Scoring
    # =========================================================================

    def calculate_confidence(self, factors: ConfidenceFactors, include_stats: bool = True) -> float:
        """
        Weighted mean of the factors that are present.

        The four core factors always count. Optional factors add their
        weight only when they are set, and the total is renormalized by the
        weights actually used.

        Args:
            factors: Signals for one pairing
            include_stats: False leaves the statistical factor (and its weight) out
                entirely. Used by the missing-signal guard.

        Returns:
            Confidence in [0, 1]
        """
        w = self.weights
        parts = [
            (factors.name_similarity, w.name_similarity),
            (factors.position_match, w.position_match),
            (factors.team_continuity, w.team_continuity),
        ]
        if include_stats:
            parts.append((factors.stat_similarity, w.stat_similarity))
        for name in OPTIONAL_FACTORS:
            value = getattr(factors, name)
            if value is not None:
                parts.append((value, getattr(w, name)))

        total_weight = sum(weight for _, weight in parts)
        if total_weight <= 0:
            return 0.0
        score = sum(value * weight for value, weight in parts) / total_weight
        return min(1.0, max(0.0, score))

    def determine_action(self, confidence: float) -> Action:
        """
        Map confidence onto an action band, highest band first.

        Raises:
            ValidationError: confidence is NaN or outside [0, 1]
        """
        _check_unit("confidence", confidence)
        t = self.thresholds
        if confidence >= t.auto_approve_high:
            return "auto_approve_high"
        if confidence >= t.auto_approve:
            return "auto_approve"
        if confidence >= t.manual_review:
            return "manual_review"
        if confidence >= t.manual_review_low:
            return "manual_review_low"
        return "skip"

    def decide(self, factors: ConfidenceFactors) -> tuple[float, Action]:
        """
        Confidence and action with the missing-signal guard applied.

        Without statistics the pairing never auto-approves. If it would
        have (with the factor counted as 0, or with it left out entirely),
        it goes to manual_review instead.
        """
        confidence = self.calculate_confidence(factors)
        action = self.determine_action(confidence)

        if not factors.stats_available:
            without_stats = self.determine_action(
                self.calculate_confidence(factors, include_stats=False)
            )
            if action in AUTO_APPROVE_ACTIONS or without_stats in AUTO_APPROVE_ACTIONS:
                action = "manual_review"

        return confidence, action

    # =========================================================================
    # Explanations
    # =========================================================================

    def explain_confidence(self, factors: ConfidenceFactors, score: float) -> Explanation:
        """
        Explain a score in reviewer-friendly terms.

        Pure function of factors and score.
        """
        strengths: list[str] = []
        weaknesses: list[str] = []
        suggestions: list[str] = []

        self._explain_name(factors.name_similarity, strengths, weaknesses, suggestions)
        self._explain_position(factors.position_match, strengths, weaknesses, suggestions)
        self._explain_team(factors.team_continuity, strengths, weaknesses, suggestions)
        if factors.stats_available:
            self._explain_stats(factors.stat_similarity, strengths, weaknesses, suggestions)
        else:
            weaknesses.append("Statistics were unavailable for this comparison")
            suggestions.append("Re-run resolution once the statistics provider is reachable")
        if factors.draft_position is not None:
            self._explain_draft(factors.draft_position, strengths, weaknesses, suggestions)
        if factors.ownership is not None:
            self._explain_ownership(factors.ownership, strengths, weaknesses, suggestions)

        action = self.determine_action(score)
        self._overall(score, weaknesses, suggestions)

        return Explanation(
            score=score,
            level=self.confidence_level(score),
            action=action,
            strengths=strengths,
            weaknesses=weaknesses,
            suggestions=suggestions,
        )

    @staticmethod
    def confidence_level(score: float) -> str:
        if score >= 0.9:
            return "Very High"
        if score >= 0.75:
            return "High"
        if score >= 0.6:
            return "Medium"
        if score >= 0.4:
            return "Low"
        return "Very Low"

    @staticmethod
    def _explain_name(value, strengths, weaknesses, suggestions) -> None:
        if value >= 0.95:
            strengths.append("Names are virtually identical")
        elif value >= 0.85:
            strengths.append("Names are very similar")
        elif value >= 0.70:
            strengths.append("Names have good similarity")
        elif value >= 0.50:
            weaknesses.append("Names have moderate differences")
            suggestions.append("Check for nickname variations or name changes")
        else:
            weaknesses.append("Names are significantly different")
            suggestions.append("Verify this is the same entity despite name differences")
            suggestions.append("Check for data entry errors or official name changes")

    @staticmethod
    def _explain_position(value, strengths, weaknesses, suggestions) -> None:
        if value >= 1.0:
            strengths.append("Exact position match")
        elif value >= 0.5:
            strengths.append("Compatible positions (e.g., FLEX eligible)")
        elif value > 0:
            weaknesses.append("Positions are somewhat different")
            suggestions.append("Verify if the player changed positions")
        else:
            weaknesses.append("Completely different positions")
            suggestions.append("Check if this is actually the same player")

    @staticmethod
    def _explain_team(value, strengths, weaknesses, suggestions) -> None:
        if value >= 0.8:
            strengths.append("Strong team continuity")
        elif value >= 0.5:
            strengths.append("Some team continuity")
        elif value >= 0.3:
            weaknesses.append("Limited team continuity")
            suggestions.append("Player may have been traded or changed teams")
        else:
            weaknesses.append("No team continuity between seasons")
            suggestions.append("Verify team history and trades")

    @staticmethod
    def _explain_stats(value, strengths, weaknesses, suggestions) -> None:
        if value >= 0.85:
            strengths.append("Very consistent statistical performance")
        elif value >= 0.70:
            strengths.append("Similar statistical profile")
        elif value >= 0.50:
            weaknesses.append("Moderate statistical variance")
            suggestions.append("Check for injuries or role changes")
        elif value >= 0.30:
            weaknesses.append("Significant statistical differences")
            suggestions.append("Review playing time and usage differences")
        else:
            weaknesses.append("Completely different statistical profiles")
            suggestions.append("May indicate different players or a major career change")

    @staticmethod
    def _explain_draft(value, strengths, weaknesses, suggestions) -> None:
        if value >= 0.8:
            strengths.append("Consistent draft position across seasons")
        elif value >= 0.5:
            weaknesses.append("Significant draft position variance")
            suggestions.append("Player value may have changed due to performance")
        else:
            weaknesses.append("Very different draft positions")
            suggestions.append("Check for breakout or decline seasons affecting draft stock")

    @staticmethod
    def _explain_ownership(value, strengths, weaknesses, suggestions) -> None:
        if value >= 0.8:
            strengths.append("Similar ownership percentages")
        elif value < 0.3:
            weaknesses.append("Very different ownership levels")
            suggestions.append("Player popularity may have changed significantly")

    def _overall(self, score, weaknesses, suggestions) -> None:
        t = self.thresholds
        if score >= t.auto_approve_high:
            suggestions.append("Highly confident match, safe to auto-approve")
        elif score >= t.auto_approve:
            suggestions.append("Strong match, automatic approval recommended")
        elif score >= t.manual_review:
            suggestions.append("Good match, manual review recommended for verification")
        elif score >= t.manual_review_low:
            suggestions.append("Uncertain match, requires careful manual review")
        else:
            suggestions.append("Low confidence, likely different entities")
            suggestions.append("Only merge with strong external evidence")

        if len(weaknesses) >= 3:
            suggestions.append("Consider checking data quality and completeness")
