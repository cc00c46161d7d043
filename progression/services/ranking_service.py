"""
progression.services.ranking_service — Ranking Read Model
==========================================================

Read-only views over ``users`` ordered by ``total_experience DESC, id ASC``.
Three scopes:

* ``national`` — everyone;
* ``regional`` — one ``(sido, sigungu)`` district;
* ``school``  — one ``school_id``.

Pages use keyset pagination: the opaque cursor carries the sort key of the
last row served plus its rank, so each page is a single indexed range scan
no matter how deep the client scrolls.  Ranks are competition ranks
(``1 + users with strictly more XP``), so tied users share a rank.

Besides paging there are name search within a scope, a top-five preview of
every scope, and district / school leaderboards built from summed XP.

Queries read committed rows from the same store the reward service writes,
so a user sees their own fresh award on the next request.
"""

from __future__ import annotations

import base64
import binascii
import enum
import json
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from sqlalchemy import and_, func, or_, select
from sqlalchemy.orm import Session, aliased

from progression.constants import (
    DEFAULT_RANKING_LIMIT,
    MAX_RANKING_LIMIT,
    RANKING_PREVIEW_SIZE,
    level_progress,
)
from progression.database.models import User
from progression.errors import NotFoundError, ValidationError
from progression.services.reward_service import validate_user_id

if TYPE_CHECKING:
    from sqlalchemy import ColumnElement, Engine

logger = logging.getLogger(__name__)


class RankingScope(enum.StrEnum):
    NATIONAL = "national"
    REGIONAL = "regional"
    SCHOOL = "school"


@dataclass
class RankingEntry:
    user_id: str
    user_name: str
    rank: int
    level: int
    current_exp: int
    total_experience: int
    school_id: str | None = None
    school_name: str | None = None
    sido: str | None = None
    sigungu: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "user_id": self.user_id,
            "user_name": self.user_name,
            "rank": self.rank,
            "level": self.level,
            "current_exp": self.current_exp,
            "total_experience": self.total_experience,
            "school_id": self.school_id,
            "school_name": self.school_name,
            "sido": self.sido,
            "sigungu": self.sigungu,
        }


@dataclass
class RankingPage:
    entries: list[RankingEntry] = field(default_factory=list)
    next_cursor: str | None = None
    has_more: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "entries": [e.to_dict() for e in self.entries],
            "next_cursor": self.next_cursor,
            "has_more": self.has_more,
        }


# ---------------------------------------------------------------------------
# Scope & cursor helpers
# ---------------------------------------------------------------------------
def parse_scope(scope: RankingScope | str) -> RankingScope:
    try:
        return RankingScope(scope)
    except ValueError:
        raise ValidationError(
            f"Unknown ranking scope {scope!r}; expected one of "
            f"{[s.value for s in RankingScope]}"
        ) from None


def scope_filters(
    scope: RankingScope | str,
    *,
    school_id: str | None = None,
    sido: str | None = None,
    sigungu: str | None = None,
    model: Any = User,
) -> list[ColumnElement[bool]]:
    """WHERE clauses restricting ``users`` (or an alias of it, *model*) to *scope*.

    Raises
    ------
    ValidationError
        ``school`` without ``school_id`` or ``regional`` without both
        ``sido`` and ``sigungu``.
    """
    scope = parse_scope(scope)
    if scope is RankingScope.SCHOOL:
        if not school_id:
            raise ValidationError("school ranking requires school_id")
        return [model.school_id == school_id]
    if scope is RankingScope.REGIONAL:
        if not sido or not sigungu:
            raise ValidationError("regional ranking requires both sido and sigungu")
        return [model.sido == sido, model.sigungu == sigungu]
    return []


def clamp_limit(limit: int | None) -> int:
    if limit is None:
        return DEFAULT_RANKING_LIMIT
    return max(1, min(int(limit), MAX_RANKING_LIMIT))


def encode_cursor(total_experience: int, user_id: str, position: int, rank: int) -> str:
    raw = json.dumps(
        {"x": total_experience, "i": user_id, "p": position, "r": rank},
        separators=(",", ":"),
    ).encode()
    return base64.urlsafe_b64encode(raw).decode().rstrip("=")


def decode_cursor(cursor: str) -> dict[str, Any]:
    padded = cursor + "=" * (-len(cursor) % 4)
    try:
        data = json.loads(base64.urlsafe_b64decode(padded.encode()))
        parsed = {
            "x": int(data["x"]),
            "i": str(data["i"]),
            "p": int(data["p"]),
            "r": int(data["r"]),
        }
    except (binascii.Error, UnicodeDecodeError, json.JSONDecodeError,
            KeyError, TypeError, ValueError):
        raise ValidationError("Malformed ranking cursor") from None
    return parsed


def _entry(user: User, rank: int) -> RankingEntry:
    # Derived fields are recomputed so a drifted row never ranks oddly
    progress = level_progress(user.total_experience)
    return RankingEntry(
        user_id=user.id,
        user_name=user.user_name,
        rank=rank,
        level=progress.level,
        current_exp=progress.current_exp,
        total_experience=user.total_experience,
        school_id=user.school_id,
        school_name=user.school_name,
        sido=user.sido,
        sigungu=user.sigungu,
    )


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------
def get_ranking(
    engine: Engine,
    scope: RankingScope | str,
    *,
    school_id: str | None = None,
    sido: str | None = None,
    sigungu: str | None = None,
    cursor: str | None = None,
    limit: int | None = DEFAULT_RANKING_LIMIT,
) -> RankingPage:
    """One page of the leaderboard for *scope*."""
    filters = scope_filters(scope, school_id=school_id, sido=sido, sigungu=sigungu)
    limit = clamp_limit(limit)

    position = 0
    prev_rank = 0
    prev_xp: int | None = None
    stmt = select(User).where(*filters)
    if cursor:
        after = decode_cursor(cursor)
        position, prev_rank, prev_xp = after["p"], after["r"], after["x"]
        stmt = stmt.where(or_(
            User.total_experience < after["x"],
            and_(User.total_experience == after["x"], User.id > after["i"]),
        ))
    stmt = stmt.order_by(User.total_experience.desc(), User.id.asc()).limit(limit + 1)

    with Session(engine) as session:
        rows = session.scalars(stmt).all()

    has_more = len(rows) > limit
    rows = rows[:limit]

    entries: list[RankingEntry] = []
    for user in rows:
        position += 1
        rank = prev_rank if user.total_experience == prev_xp else position
        entries.append(_entry(user, rank))
        prev_rank, prev_xp = rank, user.total_experience

    next_cursor = None
    if has_more and entries:
        last = entries[-1]
        next_cursor = encode_cursor(last.total_experience, last.user_id, position, last.rank)
    return RankingPage(entries=entries, next_cursor=next_cursor, has_more=has_more)


def get_user_rank(
    engine: Engine,
    user_id: str,
    scope: RankingScope | str = RankingScope.NATIONAL,
    *,
    school_id: str | None = None,
    sido: str | None = None,
    sigungu: str | None = None,
) -> dict[str, Any]:
    """Rank of one user within *scope*.

    Scope parameters left empty default to the user's own school or
    district.
    """
    user_id = validate_user_id(user_id)
    scope = parse_scope(scope)

    with Session(engine) as session:
        user = session.get(User, user_id)
        if user is None:
            raise NotFoundError(f"User {user_id} not found")
        filters = scope_filters(
            scope,
            school_id=school_id or user.school_id,
            sido=sido or user.sido,
            sigungu=sigungu or user.sigungu,
        )
        ahead = session.scalar(
            select(func.count()).select_from(User).where(
                *filters, User.total_experience > user.total_experience,
            )
        ) or 0
        total = session.scalar(select(func.count()).select_from(User).where(*filters)) or 0
        progress = level_progress(user.total_experience)
        return {
            "user_id": user.id,
            "scope": scope.value,
            "rank": ahead + 1,
            "total_users": total,
            "total_experience": user.total_experience,
            "level": progress.level,
        }


def search_users(
    engine: Engine,
    scope: RankingScope | str,
    query: str,
    *,
    school_id: str | None = None,
    sido: str | None = None,
    sigungu: str | None = None,
    limit: int | None = DEFAULT_RANKING_LIMIT,
) -> list[RankingEntry]:
    """Members of *scope* whose name starts with *query*.

    Matching ignores case.  Hits come back in leaderboard order, each with
    the competition rank :func:`get_user_rank` would report for it.
    """
    if not isinstance(query, str) or not query.strip():
        raise ValidationError("Search query must not be empty")
    query = query.strip()
    params = {"school_id": school_id, "sido": sido, "sigungu": sigungu}
    filters = scope_filters(scope, **params)
    limit = clamp_limit(limit)

    rival = aliased(User)
    ahead = (
        select(func.count(rival.id))
        .where(
            *scope_filters(scope, **params, model=rival),
            rival.total_experience > User.total_experience,
        )
        .scalar_subquery()
    )
    stmt = (
        select(User, ahead)
        .where(*filters, User.user_name.istartswith(query, autoescape=True))
        .order_by(User.total_experience.desc(), User.id.asc())
        .limit(limit)
    )
    with Session(engine) as session:
        rows = session.execute(stmt).all()
    logger.debug("Name search %r in %s matched %d users", query, scope, len(rows))
    return [_entry(user, n_ahead + 1) for user, n_ahead in rows]


@dataclass
class RankingPreview:
    national: list[RankingEntry] = field(default_factory=list)
    regional: list[RankingEntry] = field(default_factory=list)
    school: list[RankingEntry] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "national": [e.to_dict() for e in self.national],
            "regional": [e.to_dict() for e in self.regional],
            "school": [e.to_dict() for e in self.school],
        }


def get_ranking_preview(
    engine: Engine,
    *,
    school_id: str | None = None,
    sido: str | None = None,
    sigungu: str | None = None,
) -> RankingPreview:
    """Top few of every scope for the home screen.

    The regional list needs both ``sido`` and ``sigungu`` and the school
    list needs ``school_id``; either stays empty without them.
    """
    def top(scope: RankingScope, **params: str | None) -> list[RankingEntry]:
        return get_ranking(engine, scope, limit=RANKING_PREVIEW_SIZE, **params).entries

    return RankingPreview(
        national=top(RankingScope.NATIONAL),
        regional=top(RankingScope.REGIONAL, sido=sido, sigungu=sigungu) if sido and sigungu else [],
        school=top(RankingScope.SCHOOL, school_id=school_id) if school_id else [],
    )


def get_ranking_stats(
    engine: Engine,
    scope: RankingScope | str,
    *,
    school_id: str | None = None,
    sido: str | None = None,
    sigungu: str | None = None,
) -> dict[str, Any]:
    """Head count and XP totals for *scope*."""
    scope = parse_scope(scope)
    filters = scope_filters(scope, school_id=school_id, sido=sido, sigungu=sigungu)
    with Session(engine) as session:
        row = session.execute(
            select(
                func.count(User.id),
                func.coalesce(func.sum(User.total_experience), 0),
                func.coalesce(func.max(User.total_experience), 0),
            ).where(*filters)
        ).one()
    total_users, total_xp, top_xp = int(row[0]), int(row[1]), int(row[2])
    return {
        "scope": scope.value,
        "total_users": total_users,
        "total_experience": total_xp,
        "average_experience": round(total_xp / total_users, 1) if total_users else 0.0,
        "top_level": level_progress(top_xp).level if total_users else 0,
    }


def _clean_keyword(keyword: str | None) -> str | None:
    if keyword is None or not keyword.strip():
        return None
    return keyword.strip()


def get_aggregated_regions(
    engine: Engine,
    limit: int | None = DEFAULT_RANKING_LIMIT,
    offset: int = 0,
    keyword: str | None = None,
) -> list[dict[str, Any]]:
    """Districts ranked by the summed XP of their members.

    *keyword* keeps districts whose ``sido``, ``sigungu`` or
    ``"<sido> <sigungu>"`` contains it, ignoring case.  Ranks are still
    positions in the full district list.
    """
    limit = clamp_limit(limit)
    offset = max(0, offset)
    grouped = (
        select(
            User.sido,
            User.sigungu,
            func.sum(User.total_experience).label("total_experience"),
            func.count(User.id).label("user_count"),
        )
        .where(User.sido.is_not(None), User.sigungu.is_not(None))
        .group_by(User.sido, User.sigungu)
        .subquery()
    )
    ranked = select(
        grouped,
        func.row_number().over(
            order_by=(grouped.c.total_experience.desc(), grouped.c.sido, grouped.c.sigungu),
        ).label("row_rank"),
    ).subquery()

    stmt = select(ranked)
    keyword = _clean_keyword(keyword)
    if keyword:
        stmt = stmt.where(or_(
            ranked.c.sido.icontains(keyword, autoescape=True),
            ranked.c.sigungu.icontains(keyword, autoescape=True),
            (ranked.c.sido + " " + ranked.c.sigungu).icontains(keyword, autoescape=True),
        ))
    stmt = stmt.order_by(ranked.c.row_rank).limit(limit).offset(offset)

    with Session(engine) as session:
        rows = session.execute(stmt).all()
    return [
        {
            "rank": r.row_rank,
            "sido": r.sido,
            "sigungu": r.sigungu,
            "total_experience": int(r.total_experience),
            "user_count": r.user_count,
        }
        for r in rows
    ]


def get_aggregated_schools(
    engine: Engine,
    limit: int | None = DEFAULT_RANKING_LIMIT,
    offset: int = 0,
    keyword: str | None = None,
) -> list[dict[str, Any]]:
    """Schools ranked by the summed XP of their members.

    *keyword* keeps schools whose name contains it, ignoring case.
    """
    limit = clamp_limit(limit)
    offset = max(0, offset)
    grouped = (
        select(
            User.school_id,
            func.max(User.school_name).label("school_name"),
            func.sum(User.total_experience).label("total_experience"),
            func.count(User.id).label("user_count"),
        )
        .where(User.school_id.is_not(None))
        .group_by(User.school_id)
        .subquery()
    )
    ranked = select(
        grouped,
        func.row_number().over(
            order_by=(grouped.c.total_experience.desc(), grouped.c.school_id),
        ).label("row_rank"),
    ).subquery()

    stmt = select(ranked)
    keyword = _clean_keyword(keyword)
    if keyword:
        stmt = stmt.where(ranked.c.school_name.icontains(keyword, autoescape=True))
    stmt = stmt.order_by(ranked.c.row_rank).limit(limit).offset(offset)

    with Session(engine) as session:
        rows = session.execute(stmt).all()
    return [
        {
            "rank": r.row_rank,
            "school_id": r.school_id,
            "school_name": r.school_name,
            "total_experience": int(r.total_experience),
            "user_count": r.user_count,
        }
        for r in rows
    ]
