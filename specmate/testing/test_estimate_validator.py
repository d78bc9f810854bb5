from specmate.app.models import (
    CandidateProduct,
    CandidateSet,
    EstimateComponent,
    EstimateResult,
    MatchConfidence,
)
from specmate.app.services.estimate_validator import match_candidate, normalize_pool, validate_estimate


CPU = CandidateProduct(id="c1", name="Ryzen 5 5600X", category="cpu", price=180000, image="http://img/c1.jpg")
VGA = CandidateProduct(id="g1", name="RTX 4060", category="vga", price=450000, image="http://img/g1.jpg")
VGA_GAMING = CandidateProduct(id="g2", name="RTX 4060 Gaming", category="vga", price=470000)


def _draft(*components, **kwargs) -> EstimateResult:
    return EstimateResult(build_name="게이밍 PC", components=tuple(components), **kwargs)


def _proposed(category, name, price=0, description=""):
    return EstimateComponent(category=category, raw_name=name, name=name, price=price, description=description)


def test_components_without_candidates_are_dropped():
    draft = _draft(
        _proposed("cpu", "Ryzen 5 5600X", 999999, "6코어"),
        _proposed("vga", "RTX 4060", 1),
        _proposed("hdd", "WD BLUE 2TB", 70000),
    )
    result = validate_estimate(draft, {"cpu": [CPU], "vga": [VGA], "hdd": []})

    assert result.categories() == ["cpu", "vga"]
    assert result.total_price == 630000
    assert [c.confidence for c in result.components] == [MatchConfidence.EXACT, MatchConfidence.EXACT]
    assert result.components[0].description == "6코어"
    assert result.components[0].image == "http://img/c1.jpg"


def test_category_labels_are_normalized_on_both_sides():
    draft = _draft(_proposed("그래픽카드", "RTX 4060"))
    result = validate_estimate(draft, {"GPU": CandidateSet("vga", (VGA,))})
    assert result.components[0].category == "vga"
    assert result.components[0].name == "RTX 4060"
    assert result.components[0].price == 450000


def test_containment_match_is_fuzzy_not_fallback():
    result = validate_estimate(_draft(_proposed("vga", "RTX4060")), {"vga": [VGA_GAMING]})
    component = result.components[0]
    assert component.confidence is MatchConfidence.FUZZY
    assert component.name == "RTX 4060 Gaming"
    assert component.raw_name == "RTX4060"
    assert component.price == 470000


def test_exact_match_beats_earlier_containment():
    product, confidence = match_candidate("rtx 4060", [VGA_GAMING, VGA])
    assert product is VGA
    assert confidence is MatchConfidence.EXACT


def test_unmatched_name_falls_back_to_first_candidate():
    result = validate_estimate(_draft(_proposed("vga", "Radeon RX 7800 XT", 700000)), {"vga": [VGA, VGA_GAMING]})
    component = result.components[0]
    assert component.confidence is MatchConfidence.FALLBACK
    assert component.name == VGA.name
    assert component.price == VGA.price
    assert component.raw_name == "Radeon RX 7800 XT"


def test_every_validated_name_comes_from_the_pool():
    pool = {"cpu": [CPU], "vga": [VGA, VGA_GAMING]}
    draft = _draft(
        _proposed("cpu", "Intel Core i9-14900K"),
        _proposed("vga", "RTX 4060 Gaming OC Edition"),
        _proposed("vga", "GeForce RTX 5090"),
    )
    result = validate_estimate(draft, pool)
    names = {p.name for products in pool.values() for p in products}
    assert all(c.name in names for c in result.components)
    assert result.total_price == sum(c.price for c in result.components)


def test_validation_is_idempotent():
    pool = {"cpu": [CPU], "vga": [VGA_GAMING]}
    once = validate_estimate(_draft(_proposed("cpu", "ryzen 5 5600x"), _proposed("vga", "RTX4060")), pool)
    twice = validate_estimate(once, pool)
    assert [(c.name, c.price) for c in twice.components] == [(c.name, c.price) for c in once.components]
    assert [c.raw_name for c in twice.components] == [c.raw_name for c in once.components]
    assert all(c.confidence is MatchConfidence.EXACT for c in twice.components)


def test_empty_pool_drops_everything():
    draft = _draft(_proposed("cpu", "Ryzen 5 5600X", 180000))
    result = validate_estimate(draft, {})
    assert result.is_empty
    assert result.build_name == draft.build_name


def test_draft_is_left_untouched():
    draft = _draft(_proposed("vga", "RTX4060", 1), notes="메모", follow_up_questions=("다음은?",))
    result = validate_estimate(draft, {"vga": [VGA_GAMING]})
    assert draft.components[0].name == "RTX4060"
    assert draft.components[0].price == 1
    assert result is not draft
    assert result.notes == "메모"
    assert result.follow_up_questions == ("다음은?",)


def test_normalize_pool_merges_aliases_in_order():
    pool = normalize_pool({"vga": [VGA], "그래픽카드": CandidateSet("vga", (VGA_GAMING,)), "ssd": None, "ram": []})
    assert pool == {"vga": [VGA, VGA_GAMING]}
