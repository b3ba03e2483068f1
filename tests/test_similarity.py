"""Tests for title similarity and keyword extraction."""

from types import SimpleNamespace

import pytest

from shelf.similarity import (
    are_similar, extract_terms, levenshtein, ordered_terms, similarity, term_overlap,
)


def rec(title, project_id="p1"):
    return SimpleNamespace(title=title, project_id=project_id)


class TestLevenshtein:

    def test_identical(self):
        assert levenshtein("kitten", "kitten") == 0

    def test_classic_example(self):
        assert levenshtein("kitten", "sitting") == 3

    def test_empty_sides(self):
        assert levenshtein("", "abc") == 3
        assert levenshtein("abc", "") == 3


class TestSimilarity:

    @pytest.mark.parametrize("a,b", [
        ("Fix login bug", "Fix login bug on dashboard"),
        ("abc", "xyz"),
        ("", "something"),
        ("Deploy API", "deploy api v2"),
    ])
    def test_symmetric(self, a, b):
        assert similarity(a, b) == similarity(b, a)

    def test_self_is_one(self):
        assert similarity("Refactor router", "Refactor router") == 1.0

    def test_both_empty_is_one(self):
        assert similarity("", "") == 1.0

    def test_empty_vs_nonempty_is_zero(self):
        assert similarity("", "abc") == 0.0

    def test_case_and_whitespace_insensitive(self):
        assert similarity("  Fix Login ", "fix login") == 1.0

    def test_edit_distance_ratio(self):
        # one substitution over four characters
        assert similarity("abcd", "abce") == pytest.approx(0.75)


class TestExtractTerms:

    def test_drops_short_words_and_stop_words(self):
        assert extract_terms("Fix the login on the dashboard") == {"fix", "login", "dashboard"}

    def test_strips_punctuation(self):
        assert extract_terms("login, logout; dashboard!") == {"login", "logout", "dashboard"}

    def test_empty(self):
        assert extract_terms("") == set()

    def test_ordered_terms_keeps_first_appearance(self):
        assert ordered_terms("cache cache warmup cache") == ["cache", "warmup"]


class TestAreSimilar:

    def test_different_projects_never_match(self):
        assert are_similar(rec("Fix login bug", "a"), rec("Fix login bug", "b")) == 0.0

    def test_identical_titles(self):
        assert are_similar(rec("Fix login bug"), rec("Fix login bug")) == pytest.approx(1.0)

    def test_weighted_score(self):
        a, b = rec("Fix login bug"), rec("Fix login bug on dashboard")
        expected = 0.6 * similarity(a.title, b.title) + 0.4 * term_overlap(
            extract_terms(a.title), extract_terms(b.title))
        assert are_similar(a, b) == pytest.approx(expected)

    def test_term_overlap_uses_larger_set(self):
        assert term_overlap({"a", "b"}, {"a", "b", "c", "d"}) == 0.5
        assert term_overlap(set(), set()) == 0.0
