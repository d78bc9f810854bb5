import logging

import pytest

from specmate.shared.normalize import (
    CANONICAL_CATEGORIES,
    UNKNOWN,
    category_aliases,
    compact_key,
    is_canonical,
    load_category_table,
    normalize_category,
    normalize_query,
    tokenize,
)


@pytest.mark.parametrize(
    "raw,expected",
    [
        ("그래픽카드", "vga"),
        ("GPU", "vga"),
        ("  Graphics   Card ", "vga"),
        ("메인보드", "mainboard"),
        ("Motherboard", "mainboard"),
        ("PSU", "power"),
        ("파워", "power"),
        ("메모리", "ram"),
        ("CPU 쿨러", "cooler"),
        ("하드디스크", "hdd"),
        ("NVMe", "ssd"),
        ("케이스", "case"),
        ("CPU", "cpu"),
    ],
)
def test_normalize_category_synonyms(raw, expected):
    assert normalize_category(raw) == expected


def test_normalize_category_is_idempotent():
    for category in CANONICAL_CATEGORIES:
        assert normalize_category(category) == category
        assert normalize_category(normalize_category(category.upper())) == category
    assert normalize_category(normalize_category("그래픽 카드")) == "vga"


def test_normalize_category_blank_and_none():
    assert normalize_category(None) == UNKNOWN
    assert normalize_category("") == UNKNOWN
    assert normalize_category("   ") == UNKNOWN


def test_unknown_label_is_lowercased_and_logged(caplog):
    with caplog.at_level(logging.WARNING, logger="specmate.normalize"):
        result = normalize_category("  Sound Card ")
    assert result == "sound card"
    assert not is_canonical(result)
    assert any("Unrecognized category label" in rec.message for rec in caplog.records)


def test_compacted_label_falls_back_to_table():
    assert normalize_category("메인 보드") == "mainboard"
    assert normalize_category("하드 디스크") == "hdd"
    assert normalize_category("공랭 쿨러") == "cooler"


def test_vga_aliases_include_gpu():
    assert category_aliases("vga") == frozenset({"vga", "gpu"})
    assert category_aliases("그래픽카드") == frozenset({"vga", "gpu"})
    assert category_aliases("cpu") == frozenset({"cpu"})


def test_table_rejects_unknown_canonical_key(tmp_path):
    path = tmp_path / "bad.yaml"
    path.write_text("soundcard:\n  - 사운드카드\n", encoding="utf-8")
    with pytest.raises(ValueError):
        load_category_table(str(path))


def test_table_rejects_conflicting_label(tmp_path):
    path = tmp_path / "conflict.yaml"
    path.write_text("cpu:\n  - 칩\nvga:\n  - 칩\n", encoding="utf-8")
    with pytest.raises(ValueError):
        load_category_table(str(path))


def test_text_helpers():
    assert normalize_query("  RTX-4060, Ti!! ") == "rtx 4060 ti"
    assert normalize_query("") == ""
    assert compact_key("RTX 4060-Ti") == "rtx4060ti"
    assert tokenize("삼성 DDR5_16GB") == ["삼성", "ddr5", "16gb"]
    assert tokenize("   ") == []
