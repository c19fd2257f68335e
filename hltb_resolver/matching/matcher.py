from __future__ import annotations

import logging
import time
from typing import Any, Iterable, Sequence

from ..config import MATCHING, MatchingConfig
from ..models import MatchCandidate, MatchMethod, MatchResult, NormalizationLevel
from .mappings import MappingTables, load_mapping_tables
from .normalizer import TitleNormalizer
from .similarity import SimilarityCalculator


def candidate_name(candidate: Any, name_key: str = "name") -> str:
    if isinstance(candidate, dict):
        value = candidate.get(name_key)
    else:
        value = getattr(candidate, name_key, None)
    return str(value or "")


class TitleMatcher:
    """
    Pick the best candidate for a title using a fixed strategy order.

    Candidates are supplied by the caller (API client or scraper). The first strategy that
    clears its floor wins:

    1. skip list
    2. year-specific mapping
    3. manual mapping
    4. exact match at minimal normalization
    5. fuzzy match at standard normalization
    6. fuzzy match at aggressive normalization
    7. core-word overlap
    """

    def __init__(
        self,
        tables: MappingTables | None = None,
        *,
        normalizer: TitleNormalizer | None = None,
        calculator: SimilarityCalculator | None = None,
        config: MatchingConfig = MATCHING,
        name_key: str = "name",
    ):
        self.tables = tables if tables is not None else load_mapping_tables()
        self.normalizer = normalizer or TitleNormalizer(self.tables)
        self.calculator = calculator or SimilarityCalculator()
        self.config = config
        self.name_key = name_key

    def _name(self, candidate: Any) -> str:
        return candidate_name(candidate, self.name_key)

    def skip_reason(self, title: str) -> str | None:
        std = self.normalizer.standard(title)
        reason = self.tables.skip_reason(std)
        if reason is None:
            no_year = self.normalizer.standard(self.normalizer.remove_year(title))
            reason = self.tables.skip_reason(no_year)
        return reason

    def find_best_match(self, title: str, candidates: Sequence[Any] | None) -> MatchResult | None:
        start = time.perf_counter()
        if not title or not title.strip():
            return None

        norm = self.normalizer
        std_title = norm.standard(title)

        reason = self.skip_reason(title)
        if reason:
            return MatchResult(
                candidate=None,
                confidence=1.0,
                method=MatchMethod.SKIP,
                reason=reason,
                normalized_query=std_title,
            )

        items = tuple(candidates or ())
        if not items:
            return None

        std_names = tuple(norm.standard(self._name(c)) for c in items)

        year = norm.extract_year(title)
        if year:
            std_no_year = norm.standard(norm.remove_year(title))
            target = self.tables.year_mapping(std_no_year, year)
            if target:
                hit = self._find_standard(target, items, std_names)
                if hit is not None:
                    logging.debug(f"[MATCH] Year-specific: {title!r} -> {self._name(hit)!r}")
                    return MatchResult(hit, 1.0, MatchMethod.YEAR_SPECIFIC, None, std_title, target)

        target = self.tables.manual_mapping(std_title)
        if target is None and year:
            target = self.tables.manual_mapping(norm.standard(norm.remove_year(title)))
        if target:
            hit = self._find_standard(target, items, std_names)
            if hit is not None:
                logging.debug(f"[MATCH] Manual mapping: {title!r} -> {self._name(hit)!r}")
                return MatchResult(hit, 1.0, MatchMethod.MANUAL_MAPPING, None, std_title, target)

        min_title = norm.minimal(title)
        for c in items:
            min_name = norm.minimal(self._name(c))
            if min_name and min_name == min_title:
                return MatchResult(c, 1.0, MatchMethod.EXACT, None, min_title, min_name)

        result = self._fuzzy(title, items, NormalizationLevel.STANDARD)
        if result is not None and result.confidence >= self.config.fuzzy_standard_min:
            return result

        result = self._fuzzy(title, items, NormalizationLevel.AGGRESSIVE)
        if result is not None and result.confidence >= self.config.fuzzy_aggressive_min:
            return result

        result = self._word_match(title, items, std_names)
        if result is not None and result.confidence >= self.config.word_match_min:
            return result

        elapsed_ms = (time.perf_counter() - start) * 1000.0
        logging.info(
            f"[MATCH] No match for {title!r} among {len(items)} candidates ({elapsed_ms:.1f}ms)"
        )
        return None

    @staticmethod
    def _find_standard(target: str, items: tuple[Any, ...], std_names: tuple[str, ...]) -> Any:
        for c, std in zip(items, std_names):
            if std == target:
                return c
        return None

    def _fuzzy(
        self, title: str, items: tuple[Any, ...], level: NormalizationLevel
    ) -> MatchResult | None:
        query = self.normalizer.normalize(title, level)
        if not query:
            return None
        best: tuple[float, Any, str] | None = None
        for c in items:
            name = self.normalizer.normalize(self._name(c), level)
            if not name:
                continue
            score = self.calculator.combined_similarity(query, name)
            if best is None or score > best[0]:
                best = (score, c, name)
        if best is None:
            return None
        method = (
            MatchMethod.FUZZY_STANDARD
            if level is NormalizationLevel.STANDARD
            else MatchMethod.FUZZY_AGGRESSIVE
        )
        return MatchResult(best[1], best[0], method, None, query, best[2])

    def _word_score(self, query: str, query_words: set[str], name: str) -> float:
        words = set(self.normalizer.get_core_words(name, self.config.core_word_min_length))
        if not words:
            return 0.0
        jaccard = len(query_words & words) / len(query_words | words)
        w = self.config.word_jaccard_weight
        return jaccard * w + self.calculator.combined_similarity(query, name) * (1.0 - w)

    def _word_match(
        self, title: str, items: tuple[Any, ...], std_names: tuple[str, ...]
    ) -> MatchResult | None:
        query = self.normalizer.standard(title)
        query_words = set(self.normalizer.get_core_words(query, self.config.core_word_min_length))
        if not query_words:
            return None
        best: tuple[float, Any, str] | None = None
        for c, name in zip(items, std_names):
            score = self._word_score(query, query_words, name)
            if score > 0 and (best is None or score > best[0]):
                best = (score, c, name)
        if best is None:
            return None
        return MatchResult(best[1], best[0], MatchMethod.WORD_MATCH, None, query, best[2])

    def rank(self, title: str, candidates: Iterable[Any]) -> tuple[MatchCandidate, ...]:
        """Score every candidate at standard normalization, best first."""
        query = self.normalizer.standard(title)
        ranked = []
        for c in candidates:
            name = self._name(c)
            scores = self.calculator.all_scores(query, self.normalizer.standard(name))
            combined = next(s.value for s in scores if s.method == "combined")
            ranked.append(MatchCandidate(name=name, record=c, scores=scores, combined=combined))
        return tuple(sorted(ranked, key=lambda m: m.combined, reverse=True))

    def match_details(self, title: str, candidates: Iterable[Any]) -> dict[str, Any]:
        """
        Diagnostic breakdown for debugging a match.

        Returns the query's three normalized forms and, per candidate, its normalized forms,
        every raw similarity score, the combined score and the word-overlap score.
        """
        query = self.normalizer.standard(title)
        query_words = set(self.normalizer.get_core_words(query, self.config.core_word_min_length))
        rows = []
        for m in self.rank(title, candidates):
            std = self.normalizer.standard(m.name)
            rows.append(
                {
                    "name": m.name,
                    "normalized": self.normalizer.forms(m.name),
                    "scores": {s.method: round(s.value, 4) for s in m.scores},
                    "combined": round(m.combined, 4),
                    "word_match": round(self._word_score(query, query_words, std), 4)
                    if query_words
                    else 0.0,
                }
            )
        return {
            "title": title,
            "normalized": self.normalizer.forms(title),
            "year": self.normalizer.extract_year(title),
            "skip_reason": self.skip_reason(title),
            "candidates": rows,
        }

    def batch_match(
        self, items: Iterable[tuple[str, Sequence[Any]]]
    ) -> dict[str, MatchResult | None]:
        return {title: self.find_best_match(title, candidates) for title, candidates in items}
