"""
Team Analytics
==============

Read-only aggregation over a team's memories, members and usage events.
Nothing computed here is persisted.

Composite scores are on a 0-100 scale and use fixed weights:

- productivity: 60% activity ratio (memories updated in the last 30 days)
  + 40% volume, normalized against 100 memories
- knowledge health: 70% average contributor success score
  + 30% contribution evenness, 1 - (top contributor's share of all memories)
- collaboration: 60% cross-utilization (usage events per created memory)
  + 40% share of members who created at least one memory
- utilization: memories per member, normalized against 10

Usage:
    from codecontext.analytics import AnalyticsEngine

    analytics = AnalyticsEngine(team_store)
    snapshot = await analytics.get_team_analytics()
    print(snapshot.knowledge_health_score)
"""

import logging
from dataclasses import dataclass, field, asdict
from datetime import datetime, timedelta
from typing import Optional

from codecontext.project_memory import Clock, as_utc
from codecontext.team_memory import MemberRole, TeamMember, TeamMemory, TeamMemoryStore

logger = logging.getLogger(__name__)

ACTIVE_WINDOW = timedelta(days=30)
VOLUME_CEILING = 100
MEMORIES_PER_MEMBER_CEILING = 10
TOP_MEMORY_LIMIT = 10
TREND_THRESHOLD = 5.0
KNOWLEDGE_HEALTH_ALERT = 60
COLLABORATION_ALERT = 50

# Badge thresholds
KNOWLEDGE_CREATOR_MIN = 50
QUALITY_EXPERT_MIN = 0.8
ACTIVE_LEARNER_MIN = 100


@dataclass
class ContributorStats:
    """Per-member contribution totals."""
    member_id: str
    name: str
    email: str
    memories_created: int = 0
    memories_used: int = 0
    success_score: float = 0.0              # mean over created memories
    last_contribution: Optional[datetime] = None


@dataclass
class TeamAnalytics:
    """Snapshot of a team's knowledge base."""
    total_memories: int = 0
    active_memories: int = 0
    top_contributors: list[ContributorStats] = field(default_factory=list)
    memory_growth_rate: float = 0.0         # percent, last 30 days vs the 30 before
    team_productivity_score: float = 0.0
    knowledge_health_score: float = 0.0
    collaboration_index: float = 0.0
    memory_utilization_rate: float = 0.0

    def to_dict(self) -> dict:
        data = asdict(self)
        for contributor in data["top_contributors"]:
            if contributor["last_contribution"] is not None:
                contributor["last_contribution"] = contributor["last_contribution"].isoformat()
        return data


@dataclass
class MemberStats:
    member: TeamMember
    memories_created: int
    memories_used: int
    success_rate: float
    collaboration_score: int
    recent_activity: float
    badges: list[str] = field(default_factory=list)


@dataclass
class TeamOverview:
    team_id: str
    member_count: int
    total_memories: int
    team_score: int
    trend: str                              # up, down, stable
    last_updated: datetime


@dataclass
class TeamAlert:
    id: str
    type: str
    severity: str
    title: str
    message: str
    suggested_action: str
    timestamp: datetime


# =============================================================================
# Scores
# =============================================================================

def productivity_score(total: int, active: int) -> float:
    if total == 0:
        return 0.0
    activity_rate = active / total
    volume = min(total / VOLUME_CEILING, 1.0)
    return (activity_rate * 0.6 + volume * 0.4) * 100


def knowledge_health_score(contributors: list[ContributorStats]) -> float:
    if not contributors:
        return 0.0
    avg_success = sum(c.success_score for c in contributors) / len(contributors)
    total_created = sum(c.memories_created for c in contributors)
    if len(contributors) > 1 and total_created > 0:
        distribution = 1 - max(c.memories_created for c in contributors) / total_created
    else:
        distribution = 0.0
    return (avg_success * 0.7 + distribution * 0.3) * 100


def collaboration_index(contributors: list[ContributorStats]) -> float:
    if not contributors:
        return 0.0
    total_created = sum(c.memories_created for c in contributors)
    if total_created == 0:
        return 0.0
    total_used = sum(c.memories_used for c in contributors)
    cross_utilization = total_used / total_created
    creators = sum(1 for c in contributors if c.memories_created > 0) / len(contributors)
    return (cross_utilization * 0.6 + creators * 0.4) * 100


def utilization_rate(total_memories: int, team_size: int) -> float:
    if team_size == 0:
        return 0.0
    return min(total_memories / team_size / MEMORIES_PER_MEMBER_CEILING, 1.0) * 100


def growth_rate(recent: int, previous: int) -> float:
    if previous == 0:
        return 0.0
    return (recent - previous) / previous * 100


def overall_team_score(analytics: TeamAnalytics) -> int:
    return round(
        analytics.team_productivity_score * 0.3
        + analytics.knowledge_health_score * 0.3
        + analytics.collaboration_index * 0.2
        + analytics.memory_utilization_rate * 0.2
    )


def trend_for(growth: float) -> str:
    if growth > TREND_THRESHOLD:
        return "up"
    if growth < -TREND_THRESHOLD:
        return "down"
    return "stable"


# =============================================================================
# Engine
# =============================================================================

class AnalyticsEngine:
    """
    Derives team and member scores from a TeamMemoryStore.
    """

    def __init__(self, store: TeamMemoryStore, clock: Optional[Clock] = None):
        self.store = store
        self.clock = clock or store.clock

    def _now(self) -> datetime:
        return as_utc(self.clock())

    async def get_team_analytics(self) -> TeamAnalytics:
        """Compute the full analytics snapshot for the team."""
        members = await self.store.get_team_members()
        memories = await self.store.get_team_memories()
        usage = await self.store.get_usage_events()
        now = self._now()

        contributors = self._contributor_stats(members, memories, usage)
        total = len(memories)
        active = sum(1 for m in memories if m.updated_at > now - ACTIVE_WINDOW)
        recent = sum(1 for m in memories if m.created_at > now - ACTIVE_WINDOW)
        previous = sum(
            1 for m in memories
            if now - 2 * ACTIVE_WINDOW <= m.created_at <= now - ACTIVE_WINDOW
        )

        analytics = TeamAnalytics(
            total_memories=total,
            active_memories=active,
            top_contributors=contributors,
            memory_growth_rate=growth_rate(recent, previous),
            team_productivity_score=productivity_score(total, active),
            knowledge_health_score=knowledge_health_score(contributors),
            collaboration_index=collaboration_index(contributors),
            memory_utilization_rate=utilization_rate(total, len(members)),
        )
        logger.debug(
            "Team %s analytics: %d memories, %d contributors",
            self.store.team_id, total, len(contributors),
        )
        return analytics

    def _contributor_stats(self, members, memories, usage) -> list[ContributorStats]:
        stats = []
        for member in members:
            created = [m for m in memories if m.created_by == member.id]
            used = sum(1 for u in usage if u.member_id == member.id)
            stats.append(ContributorStats(
                member_id=member.id,
                name=member.name,
                email=member.email,
                memories_created=len(created),
                memories_used=used,
                success_score=(
                    sum(m.success_score for m in created) / len(created) if created else 0.0
                ),
                last_contribution=max((m.created_at for m in created), default=None),
            ))
        # Stable sort keeps join order among equal contributors
        stats.sort(key=lambda c: c.memories_created, reverse=True)
        return stats

    async def get_member_stats(self, member_id: str) -> Optional[MemberStats]:
        """Detailed stats for one member, or None if the member is unknown."""
        member = await self.store.get_team_member(member_id)
        if member is None:
            return None

        analytics = await self.get_team_analytics()
        return self._member_stats(member, analytics)

    async def get_all_member_stats(self) -> list[MemberStats]:
        members = await self.store.get_team_members()
        analytics = await self.get_team_analytics()
        return [self._member_stats(member, analytics) for member in members]

    def _member_stats(self, member: TeamMember, analytics: TeamAnalytics) -> MemberStats:
        contributor = next(
            (c for c in analytics.top_contributors if c.member_id == member.id), None
        )
        created = contributor.memories_created if contributor else 0
        used = contributor.memories_used if contributor else 0
        success = contributor.success_score if contributor else 0.0
        days_idle = (self._now() - member.last_active).total_seconds() / 86400

        badges = []
        if created > KNOWLEDGE_CREATOR_MIN:
            badges.append("Knowledge Creator")
        if success > QUALITY_EXPERT_MIN:
            badges.append("Quality Expert")
        if used > ACTIVE_LEARNER_MIN:
            badges.append("Active Learner")
        if member.role == MemberRole.ADMIN.value:
            badges.append("Team Lead")

        return MemberStats(
            member=member,
            memories_created=created,
            memories_used=used,
            success_rate=success,
            collaboration_score=round(created * 0.4 + used * 0.6),
            recent_activity=max(0.0, 10 - days_idle),
            badges=badges,
        )

    async def get_top_memories(self, limit: int = TOP_MEMORY_LIMIT) -> list[TeamMemory]:
        """Memories ranked by usage count times success score."""
        memories = await self.store.get_team_memories()
        memories.sort(key=lambda m: m.usage_count * m.success_score, reverse=True)
        return memories[:limit]

    async def get_team_overview(self) -> TeamOverview:
        members = await self.store.get_team_members()
        analytics = await self.get_team_analytics()
        return TeamOverview(
            team_id=self.store.team_id,
            member_count=len(members),
            total_memories=analytics.total_memories,
            team_score=overall_team_score(analytics),
            trend=trend_for(analytics.memory_growth_rate),
            last_updated=self._now(),
        )

    async def generate_alerts(self) -> list[TeamAlert]:
        """Warnings for low knowledge health and low collaboration."""
        analytics = await self.get_team_analytics()
        now = self._now()
        alerts = []

        if analytics.knowledge_health_score < KNOWLEDGE_HEALTH_ALERT:
            alerts.append(TeamAlert(
                id="knowledge_gap",
                type="knowledge_gap",
                severity="warning",
                title="Knowledge Quality Below Target",
                message=(
                    f"Team knowledge health score is {analytics.knowledge_health_score:.1f}%. "
                    "Consider reviewing and improving low-quality memories."
                ),
                suggested_action="Review memories with low success scores",
                timestamp=now,
            ))

        if analytics.collaboration_index < COLLABORATION_ALERT:
            alerts.append(TeamAlert(
                id="low_engagement",
                type="low_engagement",
                severity="warning",
                title="Low Team Collaboration",
                message=(
                    f"Collaboration index is {analytics.collaboration_index:.1f}%. "
                    "Team members aren't sharing knowledge effectively."
                ),
                suggested_action="Encourage team members to use and vote on memories",
                timestamp=now,
            ))

        if alerts:
            logger.info("Team %s raised %d alerts", self.store.team_id, len(alerts))
        return alerts

    async def generate_dashboard_data(self) -> dict:
        """Everything a dashboard needs in one call."""
        return {
            "overview": await self.get_team_overview(),
            "analytics": await self.get_team_analytics(),
            "top_memories": await self.get_top_memories(),
            "member_stats": await self.get_all_member_stats(),
            "alerts": await self.generate_alerts(),
        }
