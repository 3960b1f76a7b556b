"""
Tests for ranking extraction, match rules and best-rank selection.
"""

import pytest

from fakes import organic, paid, serp_page
from rank_pipeline import MatchRule, RankingEntry, extract_ranking_data, select_best_ranking

DOMAIN = MatchRule(mode="domain", target="aaacwildliferemoval.com")
GARLAND = "https://dallas.aaacwildliferemoval.com/service-area/garland/"


@pytest.mark.unit
class TestMatchRule:
    """Domain and exact matching."""

    def test_domain_matches_any_subdomain_page(self):
        assert DOMAIN.matches(GARLAND)
        assert DOMAIN.matches("https://aaacwildliferemoval.com/")

    def test_domain_rejects_other_sites(self):
        assert not DOMAIN.matches("https://critterpros.com/garland")

    def test_domain_without_target_matches_nothing(self):
        assert not MatchRule(mode="domain", target="").matches(GARLAND)

    def test_exact_uses_configured_url(self):
        rule = MatchRule(mode="exact", target=GARLAND)

        assert rule.matches(GARLAND)
        assert not rule.matches(GARLAND + "bats/")

    def test_exact_falls_back_to_tracked_url(self):
        rule = MatchRule(mode="exact")

        assert rule.matches(GARLAND, tracked_url=GARLAND)
        assert not rule.matches("https://dallas.aaacwildliferemoval.com/", tracked_url=GARLAND)

    def test_exact_without_any_url_matches_nothing(self):
        assert not MatchRule(mode="exact").matches(GARLAND)

    def test_empty_url_never_matches(self):
        assert not DOMAIN.matches("")
        assert not DOMAIN.matches(None)


@pytest.mark.unit
class TestExtractRankingData:
    """Organic filtering across result pages."""

    def test_keeps_matching_organic_in_order(self):
        results = [
            serp_page(
                organic(1, "https://critterpros.com/"),
                organic(3, GARLAND),
                organic(7, "https://aaacwildliferemoval.com/bats/"),
            )
        ]

        rankings = extract_ranking_data(results, DOMAIN)

        assert rankings == [RankingEntry(3, GARLAND), RankingEntry(7, "https://aaacwildliferemoval.com/bats/")]

    def test_paid_and_other_types_excluded(self):
        results = [
            serp_page(
                paid(1, GARLAND),
                {"type": "local_pack", "rank_group": 1, "url": GARLAND},
                {"type": "featured_snippet", "rank_group": 1, "url": GARLAND},
                organic(5, GARLAND),
            )
        ]

        assert extract_ranking_data(results, DOMAIN) == [RankingEntry(5, GARLAND)]

    def test_items_without_rank_or_url_skipped(self):
        results = [serp_page({"type": "organic", "url": GARLAND}, {"type": "organic", "rank_group": 2}, organic(4, GARLAND))]

        assert extract_ranking_data(results, DOMAIN) == [RankingEntry(4, GARLAND)]

    def test_flattens_multiple_pages(self):
        results = [serp_page(organic(2, GARLAND)), serp_page(organic(12, GARLAND))]

        assert [entry.rank for entry in extract_ranking_data(results, DOMAIN)] == [2, 12]

    def test_pages_without_items_tolerated(self):
        results = [{"items": None}, {}, "garbage", serp_page(organic(9, GARLAND))]

        assert extract_ranking_data(results, DOMAIN) == [RankingEntry(9, GARLAND)]

    def test_no_results(self):
        assert extract_ranking_data([], DOMAIN) == []
        assert extract_ranking_data(None, DOMAIN) == []

    def test_exact_mode_with_tracked_url(self):
        results = [serp_page(organic(1, "https://aaacwildliferemoval.com/"), organic(6, GARLAND))]

        rankings = extract_ranking_data(results, MatchRule(mode="exact"), tracked_url=GARLAND)

        assert rankings == [RankingEntry(6, GARLAND)]


@pytest.mark.unit
class TestSelectBestRanking:
    """Lowest rank wins."""

    def test_minimum_rank(self):
        rankings = [RankingEntry(5, "A"), RankingEntry(2, "B"), RankingEntry(8, "C")]

        assert select_best_ranking(rankings) == RankingEntry(2, "B")

    def test_tie_keeps_first(self):
        rankings = [RankingEntry(4, "first"), RankingEntry(4, "second")]

        assert select_best_ranking(rankings).url == "first"

    def test_empty_is_none(self):
        assert select_best_ranking([]) is None
