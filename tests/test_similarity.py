from __future__ import annotations

import time

import pytest


def test_edit_distance_primitives():
    from hltb_resolver.matching.similarity import SimilarityCalculator

    calc = SimilarityCalculator()
    assert calc.levenshtein_distance("kitten", "sitting") == 3
    assert calc.jaro_winkler("martha", "marhta") == pytest.approx(0.9611, abs=1e-3)
    assert calc.levenshtein_similarity("", "") == 1.0


def test_dice_coefficient():
    from hltb_resolver.matching.similarity import SimilarityCalculator

    calc = SimilarityCalculator()
    assert calc.dice_coefficient("night", "nacht") == pytest.approx(0.25)
    assert calc.dice_coefficient("ab", "ab") == 1.0
    # Single characters have no bigrams.
    assert calc.dice_coefficient("a", "a") == 0.0


def test_combined_similarity_bounds_and_symmetry():
    from hltb_resolver.matching.similarity import SimilarityCalculator

    calc = SimilarityCalculator()
    assert calc.combined_similarity("portal 2", "portal 2") == 1.0
    assert calc.combined_similarity("", "") == 0.0
    pairs = [
        ("hollow knight", "hollow knigt"),
        ("portal 2", "portal two"),
        ("celeste", "terraria"),
        ("a", "abc"),
    ]
    for a, b in pairs:
        s = calc.combined_similarity(a, b)
        assert 0.0 <= s <= 1.0
        assert s == pytest.approx(calc.combined_similarity(b, a))


def test_word_similarity_and_helpers():
    from hltb_resolver.matching.similarity import SimilarityCalculator

    calc = SimilarityCalculator()
    assert calc.word_similarity("portal 2", "portal two") == pytest.approx(1 / 3)
    assert calc.is_match("hollow knight", "hollow knigt")
    assert not calc.is_match("portal", "celeste")
    assert SimilarityCalculator.percentage(0.8123) == "81.2%"


def test_all_scores_reports_every_measure():
    from hltb_resolver.matching.similarity import SimilarityCalculator

    calc = SimilarityCalculator()
    methods = [s.method for s in calc.all_scores("doom", "doom eternal")]
    assert methods == ["dice", "jaro", "jaro_winkler", "levenshtein", "word", "combined"]
    assert calc.fuzzy_match("doom", "doom").value == 1.0


def test_combined_similarity_is_fast_enough_for_result_pages():
    from hltb_resolver.matching.similarity import SimilarityCalculator

    calc = SimilarityCalculator()
    t0 = time.perf_counter()
    for _ in range(200):
        calc.combined_similarity(
            "the elder scrolls v skyrim special edition", "the elder scrolls v skyrim"
        )
    assert time.perf_counter() - t0 < 1.0


def test_disjoint_vocabulary_scores_stay_low():
    from hltb_resolver.matching.similarity import SimilarityCalculator

    calc = SimilarityCalculator()
    for a, b in [("celeste", "stardew valley"), ("celeste", "terraria"), ("hades", "portal 2")]:
        assert calc.combined_similarity(a, b) < 0.3
        assert calc.combined_similarity(b, a) < 0.3
    # A misspelled single word still resembles its target.
    assert calc.combined_similarity("celest", "celeste") > 0.8
