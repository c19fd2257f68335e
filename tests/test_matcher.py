from __future__ import annotations


def _names(*names):
    return [{"name": n} for n in names]


def test_acronym_title_resolves_through_manual_mapping():
    from hltb_resolver.matching.matcher import TitleMatcher
    from hltb_resolver.models import MatchMethod

    m = TitleMatcher()
    result = m.find_best_match(
        "CS:GO", _names("Counter-Strike 2", "Counter-Strike: Global Offensive")
    )
    assert result is not None
    assert result.method is MatchMethod.MANUAL_MAPPING
    assert result.candidate["name"] == "Counter-Strike: Global Offensive"
    assert result.confidence == 1.0


def test_year_picks_the_right_release():
    from hltb_resolver.matching.matcher import TitleMatcher
    from hltb_resolver.models import MatchMethod

    m = TitleMatcher()
    candidates = _names("DOOM", "DOOM (2016)", "DOOM Eternal")

    r2016 = m.find_best_match("DOOM (2016)", candidates)
    assert r2016 is not None
    assert r2016.method is MatchMethod.YEAR_SPECIFIC
    assert r2016.candidate["name"] == "DOOM (2016)"

    r1993 = m.find_best_match("DOOM (1993)", candidates)
    assert r1993 is not None
    assert r1993.method is MatchMethod.YEAR_SPECIFIC
    assert r1993.candidate["name"] == "DOOM"


def test_skip_list_wins_even_without_candidates():
    from hltb_resolver.matching.matcher import TitleMatcher
    from hltb_resolver.models import MatchMethod

    m = TitleMatcher()
    for candidates in ([], _names("Team Fortress 2")):
        result = m.find_best_match("Team Fortress 2", candidates)
        assert result is not None
        assert result.method is MatchMethod.SKIP
        assert result.candidate is None
        assert not result.matched
        assert result.reason


def test_empty_inputs_give_no_match():
    from hltb_resolver.matching.matcher import TitleMatcher

    m = TitleMatcher()
    assert m.find_best_match("Portal", []) is None
    assert m.find_best_match("Portal", None) is None
    assert m.find_best_match("   ", _names("Portal")) is None


def test_exact_match_at_minimal_level():
    from hltb_resolver.matching.matcher import TitleMatcher
    from hltb_resolver.models import MatchMethod

    result = TitleMatcher().find_best_match(
        "Hollow Knight", _names("Hollow Knight: Silksong", "Hollow Knight")
    )
    assert result is not None
    assert result.method is MatchMethod.EXACT
    assert result.candidate["name"] == "Hollow Knight"


def test_typo_resolves_by_standard_fuzzy_match():
    from hltb_resolver.matching.matcher import TitleMatcher
    from hltb_resolver.models import MatchMethod

    result = TitleMatcher().find_best_match("Hollow Knigt", _names("Celeste", "Hollow Knight"))
    assert result is not None
    assert result.method is MatchMethod.FUZZY_STANDARD
    assert result.candidate["name"] == "Hollow Knight"
    assert result.confidence >= 0.80


def test_edition_suffix_resolves_by_aggressive_fuzzy_match():
    from hltb_resolver.matching.matcher import TitleMatcher
    from hltb_resolver.models import MatchMethod

    result = TitleMatcher().find_best_match(
        "Hollow Knight Definitive Edition", _names("Hollow Knight")
    )
    assert result is not None
    assert result.method is MatchMethod.FUZZY_AGGRESSIVE
    assert result.normalized_query == "hollow knight"


def test_reordered_words_resolve_by_word_overlap():
    from hltb_resolver.matching.matcher import TitleMatcher
    from hltb_resolver.models import MatchMethod

    result = TitleMatcher().find_best_match("Knight Hollow", _names("Celeste", "Hollow Knight"))
    assert result is not None
    assert result.method is MatchMethod.WORD_MATCH
    assert result.candidate["name"] == "Hollow Knight"
    assert result.confidence >= 0.75


def test_unrelated_candidates_are_rejected():
    from hltb_resolver.matching.matcher import TitleMatcher

    assert TitleMatcher().find_best_match("Portal", _names("Celeste", "Terraria")) is None


def test_candidates_can_be_objects():
    from hltb_resolver.matching.matcher import TitleMatcher
    from hltb_resolver.models import HLTBGame

    games = [HLTBGame(game_id="1", name="Celeste"), HLTBGame(game_id="2", name="Hades")]
    result = TitleMatcher().find_best_match("hades", games)
    assert result is not None
    assert result.candidate.game_id == "2"


def test_rank_and_details():
    from hltb_resolver.matching.matcher import TitleMatcher

    m = TitleMatcher()
    ranked = m.rank("Hollow Knight", _names("Celeste", "Hollow Knight"))
    assert [c.name for c in ranked] == ["Hollow Knight", "Celeste"]
    assert ranked[0].score("combined") == 1.0

    details = m.match_details("Team Fortress 2", _names("Team Fortress 2"))
    assert details["skip_reason"]
    assert details["normalized"]["standard"] == "team fortress 2"
    assert details["candidates"][0]["combined"] == 1.0

    batch = m.batch_match([("Hades", _names("Hades")), ("Portal", [])])
    assert batch["Hades"] is not None
    assert batch["Portal"] is None


def test_no_match_search_over_a_result_page_is_fast():
    import time

    from hltb_resolver.matching.matcher import TitleMatcher

    m = TitleMatcher()
    for size, limit_s in ((20, 0.05), (100, 0.1)):
        candidates = _names(*(f"Stardew Valley Chapter {i}" for i in range(size)))
        assert m.find_best_match("Hollow Knight", candidates) is None
        best = None
        for _ in range(5):
            t0 = time.perf_counter()
            m.find_best_match("Hollow Knight", candidates)
            elapsed = time.perf_counter() - t0
            best = elapsed if best is None else min(best, elapsed)
        assert best < limit_s
