from specmate.shared.fuzzy_matcher import (
    combined_similarity,
    contains_either_way,
    find_best_match,
    names_equal,
    rank_containment_matches,
)


NAMES = [
    "AMD 라이젠5-5세대 5600X (버미어)",
    "MSI 지포스 RTX 4060 벤투스 2X 블랙 OC D6 8GB",
    "MSI 지포스 RTX 4060 Ti 게이밍 X D6 8GB",
]


def test_names_equal_ignores_case_and_spacing():
    assert names_equal("  amd 라이젠5-5세대   5600x (버미어) ", NAMES[0])
    assert not names_equal("", "")
    assert not names_equal("RTX 4060", NAMES[1])


def test_contains_either_way_uses_compacted_form():
    assert contains_either_way("RTX4060", "RTX 4060 Gaming")
    assert contains_either_way("MSI 지포스 RTX 4060 벤투스 2X 블랙 OC D6 8GB 정품", NAMES[1])
    assert not contains_either_way("RX 7600", NAMES[1])
    assert not contains_either_way("", NAMES[1])


def test_exact_match_wins_over_containment():
    idx, how = find_best_match(NAMES[2].upper(), NAMES)
    assert (idx, how) == (2, "exact")


def test_best_containment_match_is_fuzzy():
    idx, how = find_best_match("RTX 4060 벤투스", NAMES)
    assert how == "fuzzy"
    assert idx == 1


def test_no_match():
    assert find_best_match("인텔 코어 i5-13400F", NAMES) == (None, "none")


def test_ranking_is_stable_for_equal_scores():
    names = ["RTX 4060", "RTX 4060"]
    ranked = rank_containment_matches("RTX 4060 OC", names)
    assert [idx for idx, _ in ranked] == [0, 1]


def test_combined_similarity_bounds():
    assert combined_similarity(NAMES[0], NAMES[0]) == 1.0
    assert 0.0 <= combined_similarity("abc", "xyz") < 0.5
