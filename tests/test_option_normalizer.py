"""
Option normalization tests
"""
import pytest

from services.option_normalizer import (
    FALLBACK_OPTIONS,
    fallback_options,
    normalize_option_label,
    normalize_options,
)

NOISY_LABELS = ["A", "b", "选项C", "1", "2)", " 3 ", "", "Z", None, 7]


def noisy_options(count):
    return [
        {"label": NOISY_LABELS[i % len(NOISY_LABELS)], "text": f"选择 {i}"}
        for i in range(count)
    ]


@pytest.mark.unit
class TestNormalizeOptionLabel:
    @pytest.mark.parametrize("raw,expected", [
        ("A", "A"),
        ("b", "B"),
        ("选项C", "C"),
        ("1", "A"),
        ("2)", "B"),
        (" 3 ", "C"),
    ])
    def test_letters_and_digits(self, raw, expected):
        assert normalize_option_label(raw, 0) == expected

    def test_unknown_label_uses_position(self):
        assert normalize_option_label("Z", 1) == "B"
        assert normalize_option_label("", 2) == "C"
        assert normalize_option_label("", 5) == "A"


@pytest.mark.unit
class TestNormalizeOptions:
    @pytest.mark.parametrize("count", range(0, 11))
    def test_always_three_labeled_options(self, count):
        options = normalize_options(noisy_options(count), is_game_over=False)

        assert len(options) == 3
        assert [option.label for option in options] == ["A", "B", "C"]
        assert all(option.text for option in options)

    @pytest.mark.parametrize("count", range(0, 11))
    def test_game_over_has_no_options(self, count):
        assert normalize_options(noisy_options(count), is_game_over=True) == []

    def test_first_three_survivors_are_kept_in_order(self):
        raw = [
            {"label": "C", "text": "第一"},
            {"label": "A", "text": "   "},
            "第二",
            {"label": "B", "content": "第三"},
            {"label": "A", "text": "第四"},
        ]
        options = normalize_options(raw, is_game_over=False)

        assert [option.text for option in options] == ["第一", "第二", "第三"]
        assert [option.label for option in options] == ["A", "B", "C"]

    def test_too_few_survivors_fall_back(self):
        raw = [{"label": "A", "text": "唯一的选择"}, {"label": "B"}, 42, None]
        options = normalize_options(raw, is_game_over=False)

        assert [option.text for option in options] == list(FALLBACK_OPTIONS)
        assert options == fallback_options()

    def test_non_list_falls_back(self):
        assert normalize_options({"A": "去左边"}, is_game_over=False) == fallback_options()
        assert normalize_options(None, is_game_over=False) == fallback_options()
