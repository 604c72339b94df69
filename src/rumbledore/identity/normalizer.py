"""
Name normalization for identity matching.

Fantasy sources spell the same person in many ways:
- ESPN: "Patrick Mahomes II"
- Yahoo: "Pat Mahomes"
- Legacy exports: "MAHOMES, Patrick"
- With accents or punctuation: "D'André Swift", "T.J. Hockenson"

normalize() turns any of these into an ordered tuple of lowercase tokens
plus a Metaphone key per token. It is total: bad input yields an empty
name, which the matcher scores as 0.0 against everything.
"""

import re
import unicodedata
from dataclasses import dataclass
from typing import Any

import jellyfish

from rumbledore.errors import ValidationError

# Dropped only from the end of the name, and never when it is the last token left
GENERATIONAL_SUFFIXES = frozenset({"jr", "sr", "ii", "iii", "iv"})

_JOINING_PUNCTUATION = re.compile(r"['’‘`.]")
_OTHER_PUNCTUATION = re.compile(r"[\W_]+")


@dataclass(frozen=True)
class NormalizedName:
    """
    Canonical form of a name.

    tokens keep their first-seen order and are unique; phonetic_key is the
    space-joined Metaphone encoding of those tokens.
    """
    tokens: tuple[str, ...] = ()
    phonetic_key: str = ""

    def __post_init__(self) -> None:
        if not isinstance(self.tokens, tuple):
            raise ValidationError("NormalizedName.tokens must be a tuple")
        for token in self.tokens:
            if not isinstance(token, str) or not token:
                raise ValidationError(f"Invalid name token: {token!r}")
            if token != token.lower() or any(ch.isspace() for ch in token):
                raise ValidationError(f"Name token is not normalized: {token!r}")
        if len(set(self.tokens)) != len(self.tokens):
            raise ValidationError(f"Duplicate name tokens: {self.tokens!r}")
        if not isinstance(self.phonetic_key, str):
            raise ValidationError("NormalizedName.phonetic_key must be a string")
        if not self.tokens and self.phonetic_key:
            raise ValidationError("Empty name cannot carry a phonetic key")

    @property
    def text(self) -> str:
        return " ".join(self.tokens)

    @property
    def is_empty(self) -> bool:
        return not self.tokens

    def __str__(self) -> str:
        return self.text


EMPTY_NAME = NormalizedName()


def _strip_accents(text: str) -> str:
    # NFKD splits "é" into "e" + combining acute; Mn drops the combining part
    decomposed = unicodedata.normalize("NFKD", text)
    return "".join(ch for ch in decomposed if unicodedata.category(ch) != "Mn")


def _drop_suffixes(words: list[str]) -> list[str]:
    """Drop trailing Jr/Sr/II/III/IV while another word remains."""
    words = list(words)
    while len(words) > 1 and _JOINING_PUNCTUATION.sub("", words[-1]) in GENERATIONAL_SUFFIXES:
        words.pop()
    return words


def _swap_last_first(text: str) -> str:
    """Turn "mahomes, patrick ii" into "patrick mahomes"."""
    if text.count(",") != 1:
        return text
    last, first = (part.split() for part in text.split(","))
    if not last or not first:
        return text
    # "Mahomes, Jr." is a suffix, not a first name
    if all(_JOINING_PUNCTUATION.sub("", word) in GENERATIONAL_SUFFIXES for word in first):
        return " ".join(last + first)
    return " ".join(_drop_suffixes(first) + _drop_suffixes(last))


def phonetic_key(tokens: tuple[str, ...]) -> str:
    """Space-joined Metaphone codes; tokens without a code are left out."""
    codes = (jellyfish.metaphone(token) for token in tokens)
    return " ".join(code for code in codes if code)


def tokenize(text: str) -> tuple[str, ...]:
    # NFKD can turn compatibility letters into capitals, so lowercase afterwards
    text = _strip_accents(text).lower()
    text = _swap_last_first(text)
    text = _JOINING_PUNCTUATION.sub("", text)
    text = _OTHER_PUNCTUATION.sub(" ", text)

    tokens: list[str] = []
    for token in text.split():
        if token not in tokens:
            tokens.append(token)

    return tuple(_drop_suffixes(tokens))


def normalize(name: Any) -> NormalizedName:
    """
    Normalize a raw name for matching.

    Steps:
    1. Strip accents (é → e), then lowercase
    2. Swap "LAST, First" to "first last", dropping suffixes from both parts
    3. Remove apostrophes and periods ("T.J." → "tj", "D'Andre" → "dandre")
    4. Treat any other punctuation as whitespace and split into tokens
    5. Drop repeated tokens, then trailing Jr/Sr/II/III/IV
    6. Encode each token with Metaphone

    Args:
        name: Raw name from any source. An already normalized name is
              returned unchanged; None or non-strings give the empty name.

    Returns:
        NormalizedName

    Examples:
        >>> normalize("MAHOMES, Patrick II").tokens
        ('patrick', 'mahomes')
        >>> normalize("T.J. Hockenson").tokens
        ('tj', 'hockenson')
        >>> normalize("...").is_empty
        True
    """
    if isinstance(name, NormalizedName):
        return name
    if not isinstance(name, str):
        return EMPTY_NAME

    tokens = tokenize(name)
    if not tokens:
        return EMPTY_NAME
    return NormalizedName(tokens=tokens, phonetic_key=phonetic_key(tokens))
