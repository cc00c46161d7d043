"""
tests/test_ranking_service.py — Ranking Read Model
===================================================
"""

from __future__ import annotations

import pytest

from progression.errors import NotFoundError, ValidationError
from progression.services import ranking_service, reward_service
from progression.services.ranking_service import RankingScope


@pytest.fixture
def populated(db_engine, make_user):
    """Six members across two schools and two districts."""
    members = [
        ("alice", 120, "s1", "Seoul", "Gangnam"),
        ("bob", 90, "s1", "Seoul", "Gangnam"),
        ("carol", 90, "s2", "Seoul", "Mapo"),
        ("dave", 40, "s2", "Busan", "Haeundae"),
        ("erin", 10, "s1", "Seoul", "Gangnam"),
        ("frank", 0, None, None, None),
    ]
    for user_id, xp, school, sido, sigungu in members:
        make_user(
            user_id,
            school_id=school,
            school_name=f"School {school}" if school else None,
            sido=sido,
            sigungu=sigungu,
        )
        if xp:
            reward_service.award(db_engine, user_id, "referral", xp)
    return db_engine


class TestNationalRanking:
    def test_order_and_tie_break(self, populated):
        page = ranking_service.get_ranking(populated, "national")
        assert [e.user_id for e in page.entries] == [
            "alice", "bob", "carol", "dave", "erin", "frank",
        ]
        assert page.has_more is False
        assert page.next_cursor is None

    def test_ties_share_rank(self, populated):
        page = ranking_service.get_ranking(populated, RankingScope.NATIONAL)
        assert [e.rank for e in page.entries] == [1, 2, 2, 4, 5, 6]

    def test_entry_fields(self, populated):
        top = ranking_service.get_ranking(populated, "national", limit=1).entries[0]
        assert top.to_dict() == {
            "user_id": "alice",
            "user_name": "alice",
            "rank": 1,
            "level": 5,
            "current_exp": 20,
            "total_experience": 120,
            "school_id": "s1",
            "school_name": "School s1",
            "sido": "Seoul",
            "sigungu": "Gangnam",
        }


class TestPagination:
    def test_walks_all_pages(self, populated):
        seen, ranks, cursor = [], [], None
        while True:
            page = ranking_service.get_ranking(populated, "national", cursor=cursor, limit=2)
            seen += [e.user_id for e in page.entries]
            ranks += [e.rank for e in page.entries]
            if not page.has_more:
                break
            cursor = page.next_cursor
        assert seen == ["alice", "bob", "carol", "dave", "erin", "frank"]
        # The tie straddling a page boundary keeps its shared rank
        assert ranks == [1, 2, 2, 4, 5, 6]

    def test_malformed_cursor(self, populated):
        with pytest.raises(ValidationError):
            ranking_service.get_ranking(populated, "national", cursor="not-a-cursor")

    @pytest.mark.parametrize("limit,expected", [(0, 1), (-3, 1), (1000, 6)])
    def test_limit_clamped(self, populated, limit, expected):
        page = ranking_service.get_ranking(populated, "national", limit=limit)
        assert len(page.entries) == expected


class TestScopes:
    def test_school(self, populated):
        page = ranking_service.get_ranking(populated, "school", school_id="s1")
        assert [e.user_id for e in page.entries] == ["alice", "bob", "erin"]

    def test_regional(self, populated):
        page = ranking_service.get_ranking(
            populated, "regional", sido="Seoul", sigungu="Gangnam",
        )
        assert [e.user_id for e in page.entries] == ["alice", "bob", "erin"]

    def test_empty_scope(self, populated):
        page = ranking_service.get_ranking(populated, "school", school_id="nowhere")
        assert page.entries == []
        assert page.has_more is False

    def test_school_requires_id(self, populated):
        with pytest.raises(ValidationError):
            ranking_service.get_ranking(populated, "school")

    def test_regional_requires_both_parts(self, populated):
        with pytest.raises(ValidationError):
            ranking_service.get_ranking(populated, "regional", sido="Seoul")

    def test_unknown_scope(self, populated):
        with pytest.raises(ValidationError):
            ranking_service.get_ranking(populated, "galactic")


class TestReadAfterWrite:
    def test_own_award_visible_immediately(self, populated):
        reward_service.award(populated, "frank", "adReward", 500)
        page = ranking_service.get_ranking(populated, "national", limit=1)
        assert page.entries[0].user_id == "frank"
        assert page.entries[0].total_experience == 500


class TestUserRank:
    def test_national(self, populated):
        rank = ranking_service.get_user_rank(populated, "carol")
        assert rank["rank"] == 2
        assert rank["total_users"] == 6

    def test_scope_defaults_to_own_school(self, populated):
        rank = ranking_service.get_user_rank(populated, "erin", "school")
        assert rank["rank"] == 3
        assert rank["total_users"] == 3

    def test_unknown_user(self, populated):
        with pytest.raises(NotFoundError):
            ranking_service.get_user_rank(populated, "ghost")

    def test_user_without_school(self, populated):
        with pytest.raises(ValidationError):
            ranking_service.get_user_rank(populated, "frank", "school")


class TestStatsAndAggregates:
    def test_stats(self, populated):
        stats = ranking_service.get_ranking_stats(populated, "school", school_id="s1")
        assert stats["total_users"] == 3
        assert stats["total_experience"] == 220
        assert stats["average_experience"] == 73.3
        assert stats["top_level"] == 5

    def test_stats_empty_scope(self, populated):
        stats = ranking_service.get_ranking_stats(populated, "school", school_id="none")
        assert stats["total_users"] == 0
        assert stats["average_experience"] == 0.0

    def test_regions(self, populated):
        rows = ranking_service.get_aggregated_regions(populated)
        assert [(r["sido"], r["sigungu"], r["total_experience"]) for r in rows] == [
            ("Seoul", "Gangnam", 220),
            ("Seoul", "Mapo", 90),
            ("Busan", "Haeundae", 40),
        ]
        assert rows[0]["user_count"] == 3

    def test_schools_with_offset(self, populated):
        rows = ranking_service.get_aggregated_schools(populated, limit=1, offset=1)
        assert rows == [{
            "rank": 2,
            "school_id": "s2",
            "school_name": "School s2",
            "total_experience": 130,
            "user_count": 2,
        }]

    def test_region_keyword_keeps_overall_rank(self, populated):
        rows = ranking_service.get_aggregated_regions(populated, keyword="haeun")
        assert [(r["rank"], r["sigungu"]) for r in rows] == [(3, "Haeundae")]

    def test_region_keyword_matches_sido_and_full_name(self, populated):
        by_sido = ranking_service.get_aggregated_regions(populated, keyword="seoul")
        assert [r["sigungu"] for r in by_sido] == ["Gangnam", "Mapo"]
        full = ranking_service.get_aggregated_regions(populated, keyword="Seoul Mapo")
        assert [(r["rank"], r["sigungu"]) for r in full] == [(2, "Mapo")]

    def test_blank_keyword_returns_everything(self, populated):
        assert len(ranking_service.get_aggregated_regions(populated, keyword="  ")) == 3

    def test_school_keyword(self, populated):
        rows = ranking_service.get_aggregated_schools(populated, keyword="S2")
        assert [(r["rank"], r["school_id"]) for r in rows] == [(2, "s2")]
        assert ranking_service.get_aggregated_schools(populated, keyword="nowhere") == []


class TestSearch:
    @pytest.fixture
    def searchable(self, populated, make_user):
        make_user("albert", school_id="s2", school_name="School s2",
                  sido="Busan", sigungu="Haeundae")
        reward_service.award(populated, "albert", "referral", 90)
        return populated

    def test_prefix_hits_carry_real_rank(self, searchable):
        hits = ranking_service.search_users(searchable, "national", "al")
        assert [(e.user_id, e.rank) for e in hits] == [("alice", 1), ("albert", 2)]

    def test_ignores_case(self, searchable):
        hits = ranking_service.search_users(searchable, "national", "AL")
        assert [e.user_id for e in hits] == ["alice", "albert"]

    def test_rank_is_within_scope(self, searchable):
        hits = ranking_service.search_users(searchable, "school", "al", school_id="s2")
        assert [(e.user_id, e.rank) for e in hits] == [("albert", 1)]

    def test_matches_get_user_rank(self, searchable):
        [hit] = ranking_service.search_users(searchable, "national", "carol")
        rank = ranking_service.get_user_rank(searchable, "carol", "national")
        assert hit.rank == rank["rank"] == 2

    def test_wildcards_are_literal(self, searchable):
        assert ranking_service.search_users(searchable, "national", "%") == []
        assert ranking_service.search_users(searchable, "national", "_") == []

    def test_no_hits(self, searchable):
        assert ranking_service.search_users(searchable, "national", "zed") == []

    def test_limit(self, searchable):
        hits = ranking_service.search_users(searchable, "national", "a", limit=1)
        assert [e.user_id for e in hits] == ["alice"]

    @pytest.mark.parametrize("query", ["", "   ", None])
    def test_blank_query_rejected(self, searchable, query):
        with pytest.raises(ValidationError):
            ranking_service.search_users(searchable, "national", query)

    def test_scope_params_required(self, searchable):
        with pytest.raises(ValidationError):
            ranking_service.search_users(searchable, "regional", "al", sido="Seoul")


class TestPreview:
    def test_national_only_without_params(self, populated):
        preview = ranking_service.get_ranking_preview(populated)
        assert [e.user_id for e in preview.national] == [
            "alice", "bob", "carol", "dave", "erin",
        ]
        assert preview.regional == []
        assert preview.school == []

    def test_all_scopes(self, populated):
        preview = ranking_service.get_ranking_preview(
            populated, school_id="s2", sido="Seoul", sigungu="Gangnam",
        )
        assert [e.user_id for e in preview.regional] == ["alice", "bob", "erin"]
        assert [(e.user_id, e.rank) for e in preview.school] == [("carol", 1), ("dave", 2)]

    def test_regional_needs_both_parts(self, populated):
        preview = ranking_service.get_ranking_preview(populated, sido="Seoul")
        assert preview.regional == []

    def test_to_dict(self, populated):
        data = ranking_service.get_ranking_preview(populated, school_id="s1").to_dict()
        assert set(data) == {"national", "regional", "school"}
        assert data["school"][0]["user_id"] == "alice"
