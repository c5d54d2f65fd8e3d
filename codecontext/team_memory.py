"""
Team Memory Store
=================

Team-scoped knowledge layered on top of the project memory store: team
members, shared memories, votes, comments and usage tracking.

Team tables live in the same project database as the project history.
Access control is not enforced here; callers consult the PermissionEngine
before mutating security-sensitive state.

Usage:
    from codecontext.team_memory import TeamMemoryStore, MemberRole

    team = TeamMemoryStore("team-1", project_dir)
    await team.initialize()

    alice = await team.add_team_member("alice@example.com", "Alice", MemberRole.ADMIN)
    memory_id = await team.create_team_memory(
        type="best_practice",
        title="Retry idempotent calls",
        content="Wrap outbound HTTP calls in a retry with jitter",
        created_by=alice,
        tags=["http", "resilience"],
    )
    await team.vote_on_memory(memory_id, alice, "upvote")
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Optional

from sqlalchemy import select, update, delete, func
from sqlalchemy.dialects.sqlite import insert as sqlite_insert

from codecontext.db.models import (
    TeamMember as DBTeamMember,
    TeamMemory as DBTeamMemory,
    TeamMemoryVote as DBVote,
    TeamMemoryComment as DBComment,
    TeamMemoryUsage as DBUsage,
)
from codecontext.errors import NotFound
from codecontext.project_memory import ProjectMemoryStore, as_utc, _enum_value
from codecontext.recall import extract_search_terms, contains_term, deduplicate_by

logger = logging.getLogger(__name__)

SEARCH_PER_TERM_LIMIT = 20
SEARCH_RESULT_LIMIT = 15
NEUTRAL_SUCCESS_SCORE = 0.5


class MemberRole(Enum):
    ADMIN = "admin"
    DEVELOPER = "developer"
    OBSERVER = "observer"


class Action(Enum):
    """Capabilities a member may hold on a resource."""
    READ = "read"
    WRITE = "write"
    DELETE = "delete"
    SHARE = "share"
    VOTE = "vote"
    COMMENT = "comment"
    MODERATE = "moderate"
    ADMIN = "admin"


# Default permission matrix for each role
ROLE_PERMISSIONS: dict[str, dict[str, bool]] = {
    MemberRole.ADMIN.value: {a.value: True for a in Action},
    MemberRole.DEVELOPER.value: {
        "read": True,
        "write": True,
        "delete": False,
        "share": True,
        "vote": True,
        "comment": True,
        "moderate": False,
        "admin": False,
    },
    MemberRole.OBSERVER.value: {
        "read": True,
        "write": False,
        "delete": False,
        "share": False,
        "vote": True,
        "comment": True,
        "moderate": False,
        "admin": False,
    },
}


def role_capabilities(role: MemberRole | str) -> list[str]:
    """Actions granted to a role by default."""
    matrix = ROLE_PERMISSIONS[_enum_value(role, MemberRole)]
    return [action for action, granted in matrix.items() if granted]


class Visibility(Enum):
    PRIVATE = "private"         # creator only
    TEAM_ONLY = "team_only"
    PUBLIC = "public"


class MemoryType(Enum):
    """Common memory types. Stored as free-form strings."""
    DECISION = "decision"
    PATTERN = "pattern"
    CONVERSATION = "conversation"
    BEST_PRACTICE = "best_practice"
    LESSON = "lesson"


class VoteType(Enum):
    UPVOTE = "upvote"
    DOWNVOTE = "downvote"


def success_score(upvotes: int, downvotes: int) -> float:
    """Share of upvotes; neutral 0.5 when nobody has voted."""
    total = upvotes + downvotes
    return upvotes / total if total > 0 else NEUTRAL_SUCCESS_SCORE


# =============================================================================
# Records
# =============================================================================

@dataclass
class TeamMember:
    id: str
    team_id: str
    email: str
    name: str
    role: str                           # MemberRole value
    joined_at: datetime
    last_active: datetime
    permissions: list[str] = field(default_factory=list)


@dataclass
class MemoryVote:
    member_id: str
    vote: str                           # VoteType value
    timestamp: datetime


@dataclass
class MemoryComment:
    id: str
    memory_id: str
    member_id: str
    content: str
    timestamp: datetime
    parent_comment_id: Optional[str] = None
    replies: list["MemoryComment"] = field(default_factory=list)


@dataclass
class UsageEvent:
    id: str
    memory_id: str
    member_id: str
    used_at: datetime
    context: str
    success: bool


@dataclass
class TeamMemory:
    """A shared memory with its votes and comments."""
    id: str
    team_id: str
    type: str
    title: str
    content: str
    context: str
    created_by: str
    created_at: datetime
    updated_at: datetime
    tags: list[str] = field(default_factory=list)
    visibility: str = Visibility.TEAM_ONLY.value
    project_id: Optional[str] = None
    metadata: dict = field(default_factory=dict)
    usage_count: int = 0
    success_score: float = NEUTRAL_SUCCESS_SCORE
    votes: list[MemoryVote] = field(default_factory=list)
    comments: list[MemoryComment] = field(default_factory=list)

    def visible_to(self, member_id: Optional[str]) -> bool:
        """Private memories are visible to their creator only."""
        if self.visibility == Visibility.PRIVATE.value:
            return member_id is not None and member_id == self.created_by
        return self.visibility in (Visibility.TEAM_ONLY.value, Visibility.PUBLIC.value)


@dataclass
class TeamMemoryFilter:
    """Optional filters for get_team_memories (all must match)."""
    type: Optional[str] = None
    created_by: Optional[str] = None
    project_id: Optional[str] = None
    visibility: Optional[str] = None


# =============================================================================
# Store
# =============================================================================

class TeamMemoryStore(ProjectMemoryStore):
    """
    Team memory for one team, stored alongside the project memory.
    """

    def __init__(self, team_id: str, project_path: Path | str, **kwargs):
        """
        Initialize the team store.

        Args:
            team_id: Team every member and memory belongs to
            project_path: Project root holding the memory database
            **kwargs: Passed to ProjectMemoryStore (config, database, clock, id_factory)
        """
        super().__init__(project_path, **kwargs)
        self.team_id = team_id

    async def _touch_member(self, session, member_id: str) -> None:
        await session.execute(
            update(DBTeamMember)
            .where(DBTeamMember.member_id == member_id)
            .values(last_active=self._now())
        )

    async def _require_member(self, session, member_id: str) -> None:
        found = await session.scalar(
            select(DBTeamMember.id).where(
                DBTeamMember.member_id == member_id,
                DBTeamMember.team_id == self.team_id,
            )
        )
        if found is None:
            raise NotFound("member", member_id)

    async def _require_memory(self, session, memory_id: str) -> DBTeamMemory:
        result = await session.execute(
            select(DBTeamMemory).where(
                DBTeamMemory.memory_id == memory_id,
                DBTeamMemory.team_id == self.team_id,
            )
        )
        row = result.scalar_one_or_none()
        if row is None:
            raise NotFound("memory", memory_id)
        return row

    # =========================================================================
    # Members
    # =========================================================================

    async def add_team_member(
        self,
        email: str,
        name: str,
        role: MemberRole | str,
        permissions: Optional[list[str]] = None,
    ) -> str:
        """
        Add a member to the team. Emails are unique per team.

        Args:
            permissions: Capability overrides; defaults to the role's capabilities

        Returns:
            The new member id
        """
        self._require_initialized()
        role_value = _enum_value(role, MemberRole)
        member_id = self.new_id()
        now = self._now()

        async with self.db.session("add_team_member") as session:
            session.add(DBTeamMember(
                member_id=member_id,
                team_id=self.team_id,
                email=email,
                name=name,
                role=role_value,
                joined_at=now,
                last_active=now,
                permissions=permissions if permissions is not None else role_capabilities(role_value),
            ))
            await session.commit()

        logger.info("Added %s %s to team %s", role_value, email, self.team_id)
        return member_id

    async def get_team_members(self) -> list[TeamMember]:
        """Team members in join order."""
        self._require_initialized()
        async with self.db.session("get_team_members") as session:
            result = await session.execute(
                select(DBTeamMember)
                .where(DBTeamMember.team_id == self.team_id)
                .order_by(DBTeamMember.joined_at.asc(), DBTeamMember.id.asc())
            )
            return [self._db_to_member(row) for row in result.scalars().all()]

    async def get_team_member(self, member_id: str) -> Optional[TeamMember]:
        self._require_initialized()
        async with self.db.session("get_team_member") as session:
            result = await session.execute(
                select(DBTeamMember).where(
                    DBTeamMember.member_id == member_id,
                    DBTeamMember.team_id == self.team_id,
                )
            )
            row = result.scalar_one_or_none()
            return self._db_to_member(row) if row else None

    # =========================================================================
    # Memories
    # =========================================================================

    async def create_team_memory(
        self,
        type: str,
        title: str,
        content: str,
        created_by: str,
        context: str = "",
        tags: Optional[list[str]] = None,
        visibility: Visibility | str = Visibility.TEAM_ONLY,
        project_id: Optional[str] = None,
        metadata: Optional[dict] = None,
    ) -> str:
        """Create a shared memory. Returns its id.

        Raises NotFound if ``created_by`` is not a member of this team.
        """
        self._require_initialized()
        memory_id = self.new_id()
        now = self._now()
        memory_type = type.value if isinstance(type, MemoryType) else str(type)

        async with self.db.session("create_team_memory") as session:
            await self._require_member(session, created_by)
            session.add(DBTeamMemory(
                memory_id=memory_id,
                team_id=self.team_id,
                type=memory_type,
                title=title,
                content=content,
                context=context or "",
                created_by=created_by,
                created_at=now,
                updated_at=now,
                tags=sorted(set(tags or [])),
                visibility=_enum_value(visibility, Visibility),
                project_id=project_id,
                memory_metadata=metadata or {},
                usage_count=0,
                success_score=NEUTRAL_SUCCESS_SCORE,
            ))
            await self._touch_member(session, created_by)
            await session.commit()

        logger.info("Created %s memory %s in team %s", memory_type, memory_id, self.team_id)
        return memory_id

    async def update_team_memory(
        self,
        memory_id: str,
        title: Optional[str] = None,
        content: Optional[str] = None,
        context: Optional[str] = None,
        tags: Optional[list[str]] = None,
        visibility: Optional[Visibility | str] = None,
    ) -> TeamMemory:
        """Edit a memory's text, tags or visibility and bump updated_at."""
        self._require_initialized()
        async with self.db.session("update_team_memory") as session:
            row = await self._require_memory(session, memory_id)
            if title is not None:
                row.title = title
            if content is not None:
                row.content = content
            if context is not None:
                row.context = context
            if tags is not None:
                row.tags = sorted(set(tags))
            if visibility is not None:
                row.visibility = _enum_value(visibility, Visibility)
            row.updated_at = self._now()
            await session.commit()

        logger.info("Updated memory %s", memory_id)
        return await self.get_team_memory(memory_id)

    async def delete_team_memory(self, memory_id: str) -> None:
        """Delete a memory together with its votes, comments and usage."""
        self._require_initialized()
        async with self.db.session("delete_team_memory") as session:
            await self._require_memory(session, memory_id)
            for model in (DBVote, DBComment, DBUsage):
                await session.execute(delete(model).where(model.memory_id == memory_id))
            await session.execute(delete(DBTeamMemory).where(DBTeamMemory.memory_id == memory_id))
            await session.commit()

        logger.warning("Deleted memory %s", memory_id)

    async def get_team_memory(self, memory_id: str) -> TeamMemory:
        """A single memory with votes and comments. Raises NotFound."""
        self._require_initialized()
        async with self.db.session("get_team_memory") as session:
            row = await self._require_memory(session, memory_id)
            memories = await self._populate(session, [row])
        return memories[0]

    async def get_team_memories(self, filter: Optional[TeamMemoryFilter] = None) -> list[TeamMemory]:
        """Team memories matching ``filter``, newest first, with votes and comments."""
        self._require_initialized()
        stmt = select(DBTeamMemory).where(DBTeamMemory.team_id == self.team_id)
        if filter is not None:
            if filter.type:
                stmt = stmt.where(DBTeamMemory.type == filter.type)
            if filter.created_by:
                stmt = stmt.where(DBTeamMemory.created_by == filter.created_by)
            if filter.project_id:
                stmt = stmt.where(DBTeamMemory.project_id == filter.project_id)
            if filter.visibility:
                stmt = stmt.where(DBTeamMemory.visibility == _enum_value(filter.visibility, Visibility))
        stmt = stmt.order_by(DBTeamMemory.created_at.desc(), DBTeamMemory.id.desc())

        async with self.db.session("get_team_memories") as session:
            result = await session.execute(stmt)
            return await self._populate(session, list(result.scalars().all()))

    async def search_team_memories(self, query: str, member_id: Optional[str] = None) -> list[TeamMemory]:
        """
        Search memories visible to ``member_id`` by per-term substring match
        on title, content and context.

        Visible means public, team_only, or private and created by the caller.
        Results are ranked by usage count then success score, de-duplicated
        and limited to the top 15. Votes and comments are not populated.
        """
        self._require_initialized()
        terms = extract_search_terms(query)
        if not terms:
            return []

        async with self.db.session("search_team_memories") as session:
            result = await session.execute(
                select(DBTeamMemory)
                .where(DBTeamMemory.team_id == self.team_id)
                .order_by(DBTeamMemory.id.asc())
            )
            candidates = [
                m for m in (self._db_to_memory(row) for row in result.scalars().all())
                if m.visible_to(member_id)
            ]

        def rank(memory: TeamMemory) -> tuple[int, float]:
            return -memory.usage_count, -memory.success_score

        matches: list[TeamMemory] = []
        for term in terms:
            hits = [m for m in candidates if contains_term(term, m.title, m.content, m.context)]
            hits.sort(key=rank)
            matches.extend(hits[:SEARCH_PER_TERM_LIMIT])

        unique = deduplicate_by(matches, key=lambda m: (m.type, m.content))
        unique.sort(key=rank)
        logger.debug("Team search %r matched %d memories", query, len(unique))
        return unique[:SEARCH_RESULT_LIMIT]

    # =========================================================================
    # Votes
    # =========================================================================

    async def vote_on_memory(self, memory_id: str, member_id: str, vote: VoteType | str) -> float:
        """
        Cast or replace a member's vote and recompute the success score.

        Idempotent per (memory, member); the last vote wins. Only members
        of this team may vote.

        Returns:
            The memory's new success score
        """
        self._require_initialized()
        vote_value = _enum_value(vote, VoteType)

        async with self.db.session("vote_on_memory") as session:
            memory = await self._require_memory(session, memory_id)
            await self._require_member(session, member_id)

            stmt = sqlite_insert(DBVote).values(
                memory_id=memory_id,
                member_id=member_id,
                vote=vote_value,
                timestamp=self._now(),
            )
            stmt = stmt.on_conflict_do_update(
                index_elements=[DBVote.memory_id, DBVote.member_id],
                set_={"vote": stmt.excluded.vote, "timestamp": stmt.excluded.timestamp},
            )
            await session.execute(stmt)

            result = await session.execute(
                select(DBVote.vote, func.count())
                .where(DBVote.memory_id == memory_id)
                .group_by(DBVote.vote)
            )
            counts = dict(result.all())
            score = success_score(
                counts.get(VoteType.UPVOTE.value, 0),
                counts.get(VoteType.DOWNVOTE.value, 0),
            )
            memory.success_score = score
            await self._touch_member(session, member_id)
            await session.commit()

        logger.info("Member %s voted %s on %s (score %.2f)", member_id, vote_value, memory_id, score)
        return score

    async def get_memory_votes(self, memory_id: str) -> list[MemoryVote]:
        self._require_initialized()
        async with self.db.session("get_memory_votes") as session:
            votes = await self._load_votes(session, [memory_id])
        return votes.get(memory_id, [])

    # =========================================================================
    # Comments
    # =========================================================================

    async def add_memory_comment(
        self,
        memory_id: str,
        member_id: str,
        content: str,
        parent_comment_id: Optional[str] = None,
    ) -> str:
        """
        Comment on a memory, optionally replying to a comment on the same memory.

        Raises NotFound for an unknown memory, member or parent comment.
        """
        self._require_initialized()
        comment_id = self.new_id()

        async with self.db.session("add_memory_comment") as session:
            await self._require_memory(session, memory_id)
            await self._require_member(session, member_id)
            if parent_comment_id is not None:
                parent = await session.scalar(
                    select(DBComment.id).where(
                        DBComment.comment_id == parent_comment_id,
                        DBComment.memory_id == memory_id,
                    )
                )
                if parent is None:
                    raise NotFound("comment", parent_comment_id)

            session.add(DBComment(
                comment_id=comment_id,
                memory_id=memory_id,
                member_id=member_id,
                content=content,
                timestamp=self._now(),
                parent_comment_id=parent_comment_id,
            ))
            await self._touch_member(session, member_id)
            await session.commit()

        logger.debug("Member %s commented on %s", member_id, memory_id)
        return comment_id

    async def get_memory_comments(self, memory_id: str, threaded: bool = False) -> list[MemoryComment]:
        """
        Comments on a memory in chronological order.

        With ``threaded=True`` only top-level comments are returned, each
        carrying its replies (recursively) in ``replies``.
        """
        self._require_initialized()
        async with self.db.session("get_memory_comments") as session:
            comments = (await self._load_comments(session, [memory_id])).get(memory_id, [])

        if not threaded:
            return comments

        by_id = {c.id: c for c in comments}
        roots: list[MemoryComment] = []
        for comment in comments:
            parent = by_id.get(comment.parent_comment_id) if comment.parent_comment_id else None
            if parent is None:
                roots.append(comment)
            else:
                parent.replies.append(comment)
        return roots

    # =========================================================================
    # Usage
    # =========================================================================

    async def track_memory_usage(
        self,
        memory_id: str,
        member_id: str,
        context: str = "",
        success: bool = True,
    ) -> str:
        """
        Record that a member applied a memory and bump its usage counter.

        Telemetry only: no permission check happens here, but the member
        must belong to this team.
        """
        self._require_initialized()
        usage_id = self.new_id()

        async with self.db.session("track_memory_usage") as session:
            memory = await self._require_memory(session, memory_id)
            await self._require_member(session, member_id)
            session.add(DBUsage(
                usage_id=usage_id,
                memory_id=memory_id,
                used_by=member_id,
                used_at=self._now(),
                context=context or "",
                success=success,
            ))
            memory.usage_count = DBTeamMemory.usage_count + 1
            await self._touch_member(session, member_id)
            await session.commit()

        logger.debug("Member %s used memory %s (success=%s)", member_id, memory_id, success)
        return usage_id

    async def get_usage_events(
        self,
        memory_id: Optional[str] = None,
        member_id: Optional[str] = None,
    ) -> list[UsageEvent]:
        """Usage events for this team's memories, oldest first."""
        self._require_initialized()
        stmt = (
            select(DBUsage)
            .join(DBTeamMemory, DBUsage.memory_id == DBTeamMemory.memory_id)
            .where(DBTeamMemory.team_id == self.team_id)
        )
        if memory_id is not None:
            stmt = stmt.where(DBUsage.memory_id == memory_id)
        if member_id is not None:
            stmt = stmt.where(DBUsage.used_by == member_id)
        stmt = stmt.order_by(DBUsage.used_at.asc(), DBUsage.id.asc())

        async with self.db.session("get_usage_events") as session:
            result = await session.execute(stmt)
            return [
                UsageEvent(
                    id=row.usage_id,
                    memory_id=row.memory_id,
                    member_id=row.used_by,
                    used_at=as_utc(row.used_at),
                    context=row.context or "",
                    success=bool(row.success),
                )
                for row in result.scalars().all()
            ]

    # =========================================================================
    # Loading helpers
    # =========================================================================

    async def _populate(self, session, rows: list[DBTeamMemory]) -> list[TeamMemory]:
        memory_ids = [row.memory_id for row in rows]
        votes = await self._load_votes(session, memory_ids)
        comments = await self._load_comments(session, memory_ids)

        memories = []
        for row in rows:
            memory = self._db_to_memory(row)
            memory.votes = votes.get(memory.id, [])
            memory.comments = comments.get(memory.id, [])
            memories.append(memory)
        return memories

    async def _load_votes(self, session, memory_ids: list[str]) -> dict[str, list[MemoryVote]]:
        if not memory_ids:
            return {}
        result = await session.execute(
            select(DBVote).where(DBVote.memory_id.in_(memory_ids)).order_by(DBVote.id.asc())
        )
        votes: dict[str, list[MemoryVote]] = {}
        for row in result.scalars().all():
            votes.setdefault(row.memory_id, []).append(
                MemoryVote(member_id=row.member_id, vote=row.vote, timestamp=as_utc(row.timestamp))
            )
        return votes

    async def _load_comments(self, session, memory_ids: list[str]) -> dict[str, list[MemoryComment]]:
        if not memory_ids:
            return {}
        result = await session.execute(
            select(DBComment)
            .where(DBComment.memory_id.in_(memory_ids))
            .order_by(DBComment.timestamp.asc(), DBComment.id.asc())
        )
        comments: dict[str, list[MemoryComment]] = {}
        for row in result.scalars().all():
            comments.setdefault(row.memory_id, []).append(MemoryComment(
                id=row.comment_id,
                memory_id=row.memory_id,
                member_id=row.member_id,
                content=row.content,
                timestamp=as_utc(row.timestamp),
                parent_comment_id=row.parent_comment_id,
            ))
        return comments

    def _db_to_member(self, row: DBTeamMember) -> TeamMember:
        return TeamMember(
            id=row.member_id,
            team_id=row.team_id,
            email=row.email,
            name=row.name,
            role=row.role,
            joined_at=as_utc(row.joined_at),
            last_active=as_utc(row.last_active),
            permissions=list(row.permissions or []),
        )

    def _db_to_memory(self, row: DBTeamMemory) -> TeamMemory:
        return TeamMemory(
            id=row.memory_id,
            team_id=row.team_id,
            type=row.type,
            title=row.title,
            content=row.content,
            context=row.context or "",
            created_by=row.created_by,
            created_at=as_utc(row.created_at),
            updated_at=as_utc(row.updated_at),
            tags=list(row.tags or []),
            visibility=row.visibility,
            project_id=row.project_id,
            metadata=row.memory_metadata or {},
            usage_count=row.usage_count or 0,
            success_score=row.success_score if row.success_score is not None else NEUTRAL_SUCCESS_SCORE,
        )
