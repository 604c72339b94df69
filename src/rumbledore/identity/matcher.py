"""
Fuzzy name similarity and candidate ranking.

similarity() blends two views of a pair of normalized names:
1. Token overlap (Jaccard), where common nicknames count as overlapping
   ("pat" ~ "patrick", "mike" ~ "michael")
2. Levenshtein ratio over the joined token text, which absorbs typos
   and transliteration drift

plus a small bonus when the Metaphone keys agree exactly. Everything here
is pure and thread-safe; the resolver calls it from its scoring workers.
"""

from typing import Any, Callable, Iterable, Optional, Sequence, TypeVar

from rapidfuzz.distance import Levenshtein

from rumbledore.config import Settings, get_settings
from rumbledore.errors import ValidationError
from rumbledore.identity.normalizer import NormalizedName, normalize

T = TypeVar("T")

# Full name first, then the short forms seen in fantasy exports
NICKNAME_GROUPS: tuple[tuple[str, ...], ...] = (
    ("robert", "bob", "rob", "bobby", "robbie"),
    ("william", "bill", "will", "billy", "willie"),
    ("richard", "dick", "rick", "ricky", "richie"),
    ("michael", "mike", "mikey", "mick"),
    ("james", "jim", "jimmy", "jamie"),
    ("jonathan", "jon", "johnny"),
    ("joseph", "joe", "joey"),
    ("daniel", "dan", "danny"),
    ("thomas", "tom", "tommy"),
    ("charles", "charlie", "chuck", "chas"),
    ("christopher", "chris", "kit"),
    ("alexander", "alex", "al"),
    ("benjamin", "ben", "benny", "benji"),
    ("nicholas", "nick", "nicky"),
    ("matthew", "matt", "matty"),
    ("anthony", "tony", "ant"),
    ("patrick", "pat", "paddy"),
    ("edward", "ed", "eddie", "ted"),
    ("andrew", "andy", "drew"),
    ("david", "dave", "davey"),
    ("joshua", "josh"),
    ("zachary", "zach", "zack"),
    ("gabriel", "gabe"),
    ("kenneth", "ken", "kenny"),
)


def _build_nickname_index(groups: Iterable[Sequence[str]]) -> dict[str, frozenset[int]]:
    index: dict[str, set[int]] = {}
    for group_id, group in enumerate(groups):
        for name in group:
            index.setdefault(name, set()).add(group_id)
    return {name: frozenset(ids) for name, ids in index.items()}


_NICKNAME_INDEX = _build_nickname_index(NICKNAME_GROUPS)


def tokens_equivalent(a: str, b: str) -> bool:
    """True for equal tokens or tokens from the same nickname group."""
    if a == b:
        return True
    groups_a = _NICKNAME_INDEX.get(a)
    groups_b = _NICKNAME_INDEX.get(b)
    return bool(groups_a and groups_b and groups_a & groups_b)


def _overlap_count(left: Sequence[str], right: Sequence[str]) -> int:
    used: set[int] = set()
    matched = 0
    for token in left:
        for j, other in enumerate(right):
            if j not in used and tokens_equivalent(token, other):
                used.add(j)
                matched += 1
                break
    return matched


def soft_jaccard(a: NormalizedName, b: NormalizedName) -> float:
    """
    Jaccard index over tokens with nickname-aware overlap.

    Matching is greedy, so it is run in both directions and the larger
    overlap wins; this keeps the measure symmetric.
    """
    if a.is_empty or b.is_empty:
        return 0.0
    matched = max(_overlap_count(a.tokens, b.tokens), _overlap_count(b.tokens, a.tokens))
    union = len(a.tokens) + len(b.tokens) - matched
    return matched / union


def edit_ratio(a: NormalizedName, b: NormalizedName) -> float:
    """Normalized Levenshtein similarity over the joined token text."""
    if a.is_empty or b.is_empty:
        return 0.0
    return Levenshtein.normalized_similarity(a.text, b.text)


class FuzzyMatcher:
    """
    Pairwise name similarity and candidate ranking.

    Usage:
        matcher = FuzzyMatcher(settings)
        matcher.similarity(normalize("Pat Mahomes"), normalize("Patrick Mahomes"))
        matcher.best_matches("Pat Mahomes", identities, key=lambda i: i.name)
    """

    def __init__(self, settings: Optional[Settings] = None):
        settings = settings or get_settings()
        self.token_weight = settings.matcher_token_weight
        self.edit_weight = settings.matcher_edit_weight
        self.phonetic_bonus = settings.matcher_phonetic_bonus
        self.default_threshold = settings.matcher_candidate_threshold
        self.default_max_results = settings.matcher_max_candidates

    # =========================================================================
    # Pairwise
    # =========================================================================

    def similarity(self, a: Any, b: Any) -> float:
        """
        Similarity of two names in [0, 1].

        Reflexive for non-empty names and symmetric for all inputs. An empty
        name scores 0.0 against everything, another empty name included.

        Args:
            a: NormalizedName or raw string
            b: NormalizedName or raw string

        Returns:
            Similarity score from 0.0 (unrelated) to 1.0 (same tokens)

        Examples:
            >>> matcher.similarity("Patrick Mahomes", "MAHOMES, Patrick")
            1.0
            >>> matcher.similarity("Pat Mahomes", "Patrick Mahomes")
            0.84  # approximate
        """
        a = normalize(a)
        b = normalize(b)

        if a.is_empty or b.is_empty:
            return 0.0
        if a.tokens == b.tokens:
            return 1.0

        score = (
            self.token_weight * soft_jaccard(a, b)
            + self.edit_weight * edit_ratio(a, b)
        )
        if a.phonetic_key and a.phonetic_key == b.phonetic_key:
            score += self.phonetic_bonus

        score /= self.token_weight + self.edit_weight
        return min(1.0, max(0.0, score))

    def are_names_equivalent(self, a: Any, b: Any) -> bool:
        """
        Quick yes/no check used by reviewers and the CLI.

        Equivalent when the names normalize to the same tokens, are both a
        single name from one nickname group, one contains the other
        ("tj" in "tj watt"), they share short initials ("t j" vs "tj"),
        or their similarity is at least 0.9.
        """
        a = normalize(a)
        b = normalize(b)
        if a.is_empty or b.is_empty:
            return False
        if a.tokens == b.tokens:
            return True
        if len(a.tokens) == 1 and len(b.tokens) == 1 and tokens_equivalent(a.tokens[0], b.tokens[0]):
            return True
        if a.text in b.text or b.text in a.text:
            return True
        compact_a = "".join(a.tokens)
        compact_b = "".join(b.tokens)
        if len(compact_a) <= 3 and compact_a == compact_b:
            return True
        return self.similarity(a, b) >= 0.9

    # =========================================================================
    # Candidate ranking
    # =========================================================================

    def best_matches(
        self,
        target: Any,
        candidates: Iterable[T],
        threshold: Optional[float] = None,
        max_results: Optional[int] = None,
        key: Optional[Callable[[T], Any]] = None,
    ) -> list[tuple[T, float]]:
        """
        Rank candidates by similarity to target.

        Args:
            target: NormalizedName or raw string
            candidates: Objects to rank, in their original order
            threshold: Minimum score to keep (defaults to settings)
            max_results: Maximum results returned (defaults to settings)
            key: Extracts a name from a candidate; candidates are used as
                 names directly when omitted

        Returns:
            (candidate, score) pairs, highest score first. Equal scores keep
            the candidates' input order.

        Raises:
            ValidationError: threshold outside [0, 1] or negative max_results
        """
        threshold = self.default_threshold if threshold is None else threshold
        max_results = self.default_max_results if max_results is None else max_results

        if not 0.0 <= threshold <= 1.0:
            raise ValidationError(f"threshold must be within [0, 1], got {threshold}")
        if max_results < 0:
            raise ValidationError(f"max_results must be non-negative, got {max_results}")

        target_name = normalize(target)
        scored: list[tuple[T, float]] = []
        for candidate in candidates:
            name = key(candidate) if key else candidate
            score = self.similarity(target_name, name)
            if score >= threshold:
                scored.append((candidate, score))

        # sorted() is stable, so ties stay in input order
        ranked = sorted(scored, key=lambda pair: pair[1], reverse=True)
        return ranked[:max_results]
