"""Maps spoken transcript text to the best matching story choice.

Matching priority (first qualifying rule wins):

1. Keyword containment: the transcript contains one of a choice's
   keywords.  Near-certain, fixed confidence 0.9.
2. Best of three similarity scores per choice: whole choice text,
   individual keywords, and the share of the choice's significant words
   (longer than three characters) that were spoken.

Similarity is normalized Levenshtein distance.  Ties go to the choice
listed first.
"""

from __future__ import annotations

import logging
from typing import Protocol, Sequence

from rapidfuzz.distance import Levenshtein

from storyvoice.config import MATCH_THRESHOLD
from storyvoice.stt.types import MatchMethod, MatchResult

logger = logging.getLogger(__name__)

KEYWORD_CONFIDENCE: float = 0.9

# Words this short carry little meaning ("the", "to", "go").
_MIN_SIGNIFICANT_WORD_LENGTH = 4
# Per-word similarity needed to count a choice word as spoken.
_WORD_SIMILARITY_CUTOFF = 0.7


class ChoiceLike(Protocol):
    text: str
    keywords: list[str]


def similarity(first: str, second: str) -> float:
    """Return ``1 - distance / max(len)`` for the case-folded, trimmed strings.

    Equal strings score 1.0; an empty string against a non-empty one
    scores 0.0.
    """
    a = first.lower().strip()
    b = second.lower().strip()
    if a == b:
        return 1.0
    if not a or not b:
        return 0.0
    distance = Levenshtein.distance(a, b)
    return 1.0 - distance / max(len(a), len(b))


class ChoiceMatcher:
    """Picks the choice a listener most likely meant."""

    def __init__(self, threshold: float = MATCH_THRESHOLD) -> None:
        self._threshold = threshold

    @property
    def threshold(self) -> float:
        return self._threshold

    def match(
        self,
        spoken_text: str,
        choices: Sequence[ChoiceLike],
        threshold: float | None = None,
    ) -> MatchResult | None:
        """Return the best match for *spoken_text*, or ``None`` below threshold."""
        spoken = spoken_text.lower().strip()
        if not spoken or not choices:
            return None

        result = self._try_keyword_match(spoken, choices)
        if result is not None:
            return result

        limit = self._threshold if threshold is None else threshold
        result = self._best_similarity_match(spoken, choices)
        if result is None or result.confidence < limit:
            logger.debug(
                "No choice matched %r (best=%s, threshold=%.2f)",
                spoken,
                None if result is None else f"{result.confidence:.2f}",
                limit,
            )
            return None
        return result

    # --------------------------------------------------------------------- #
    # Keyword containment
    # --------------------------------------------------------------------- #

    @staticmethod
    def _try_keyword_match(
        spoken: str, choices: Sequence[ChoiceLike]
    ) -> MatchResult | None:
        for index, choice in enumerate(choices):
            for keyword in choice.keywords:
                needle = keyword.lower().strip()
                if needle and needle in spoken:
                    return MatchResult(
                        index=index,
                        confidence=KEYWORD_CONFIDENCE,
                        method=MatchMethod.KEYWORD,
                    )
        return None

    # --------------------------------------------------------------------- #
    # Similarity scoring
    # --------------------------------------------------------------------- #

    def _best_similarity_match(
        self, spoken: str, choices: Sequence[ChoiceLike]
    ) -> MatchResult | None:
        best: MatchResult | None = None
        spoken_words = spoken.split()

        for index, choice in enumerate(choices):
            candidates = [(similarity(spoken, choice.text), MatchMethod.TEXT)]
            candidates.extend(
                (similarity(spoken, keyword), MatchMethod.KEYWORD_SIMILARITY)
                for keyword in choice.keywords
            )
            candidates.append(
                (self._word_overlap(spoken_words, choice.text), MatchMethod.WORD_OVERLAP)
            )

            for score, method in candidates:
                if best is None or score > best.confidence:
                    best = MatchResult(index=index, confidence=score, method=method)

        return best

    @staticmethod
    def _word_overlap(spoken_words: list[str], choice_text: str) -> float:
        choice_words = [
            word
            for word in choice_text.lower().split()
            if len(word) >= _MIN_SIGNIFICANT_WORD_LENGTH
        ]
        if not choice_words:
            return 0.0
        matched = sum(
            1
            for word in choice_words
            if any(similarity(word, spoken) > _WORD_SIMILARITY_CUTOFF for spoken in spoken_words)
        )
        return matched / len(choice_words)
