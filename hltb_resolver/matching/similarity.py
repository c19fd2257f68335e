from __future__ import annotations

from collections import Counter

from rapidfuzz.distance import Jaro, JaroWinkler, Levenshtein

from ..models import SimilarityScore

DICE_WEIGHT = 0.3
JARO_WINKLER_WEIGHT = 0.4
LEVENSHTEIN_WEIGHT = 0.3
# Pairs with no resembling words never score above this.
DISJOINT_CAP = 0.29
WORD_RESEMBLANCE_MIN = 0.5


def _bigrams(s: str) -> Counter[str]:
    return Counter(s[i : i + 2] for i in range(len(s) - 1))


class SimilarityCalculator:
    """
    String similarity measures, all in [0, 1].

    Edit-distance primitives come from rapidfuzz; Dice and word Jaccard are computed here.
    """

    @staticmethod
    def levenshtein_distance(a: str, b: str) -> int:
        return int(Levenshtein.distance(a or "", b or ""))

    @staticmethod
    def levenshtein_similarity(a: str, b: str) -> float:
        a = a or ""
        b = b or ""
        if not a and not b:
            return 1.0
        return float(Levenshtein.normalized_similarity(a, b))

    @staticmethod
    def dice_coefficient(a: str, b: str) -> float:
        """
        Sorensen-Dice over character bigrams.

        Strings shorter than 2 characters have no bigrams and score 0, even against
        themselves.
        """
        a = a or ""
        b = b or ""
        if len(a) < 2 or len(b) < 2:
            return 0.0
        if a == b:
            return 1.0
        ba = _bigrams(a)
        bb = _bigrams(b)
        overlap = sum((ba & bb).values())
        return 2.0 * overlap / (len(a) - 1 + len(b) - 1)

    @staticmethod
    def jaro(a: str, b: str) -> float:
        return float(Jaro.similarity(a or "", b or ""))

    @staticmethod
    def jaro_winkler(a: str, b: str) -> float:
        # Standard Winkler scaling: prefix weight 0.1, common prefix capped at 4 chars.
        return float(JaroWinkler.similarity(a or "", b or "", prefix_weight=0.1))

    @staticmethod
    def word_similarity(a: str, b: str) -> float:
        wa = set((a or "").casefold().split())
        wb = set((b or "").casefold().split())
        if not wa and not wb:
            return 1.0
        if not wa or not wb:
            return 0.0
        return len(wa & wb) / len(wa | wb)

    def _words_disjoint(self, a: str, b: str) -> bool:
        wa = set(a.casefold().split())
        wb = set(b.casefold().split())
        if not wa or not wb or wa & wb:
            return False
        return all(
            self.levenshtein_similarity(x, y) < WORD_RESEMBLANCE_MIN for x in wa for y in wb
        )

    def combined_similarity(self, a: str, b: str) -> float:
        a = a or ""
        b = b or ""
        if a == b:
            return 1.0 if a else 0.0
        score = (
            DICE_WEIGHT * self.dice_coefficient(a, b)
            + JARO_WINKLER_WEIGHT * self.jaro_winkler(a, b)
            + LEVENSHTEIN_WEIGHT * self.levenshtein_similarity(a, b)
        )
        if score > DISJOINT_CAP and self._words_disjoint(a, b):
            score = DISJOINT_CAP
        return max(0.0, min(1.0, score))

    def all_scores(self, a: str, b: str) -> tuple[SimilarityScore, ...]:
        return (
            SimilarityScore(self.dice_coefficient(a, b), "dice"),
            SimilarityScore(self.jaro(a, b), "jaro"),
            SimilarityScore(self.jaro_winkler(a, b), "jaro_winkler"),
            SimilarityScore(self.levenshtein_similarity(a, b), "levenshtein"),
            SimilarityScore(self.word_similarity(a, b), "word"),
            SimilarityScore(self.combined_similarity(a, b), "combined"),
        )

    def fuzzy_match(self, a: str, b: str) -> SimilarityScore:
        """Best single measure for a pair."""
        best = max(self.all_scores(a, b), key=lambda s: s.value)
        return best

    def is_match(self, a: str, b: str, threshold: float = 0.8) -> bool:
        return self.combined_similarity(a, b) >= threshold

    @staticmethod
    def percentage(score: float) -> str:
        return f"{max(0.0, min(1.0, float(score))) * 100:.1f}%"
