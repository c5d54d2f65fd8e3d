"""
Database Models for the Memory Engine
=====================================

SQLAlchemy models for the per-project memory store: project history
(conversations, decisions, file changes, code patterns) and the team layer
(members, shared memories, votes, comments, usage).
"""

from datetime import datetime
from typing import Optional, List, Dict, Any

from sqlalchemy import String, Integer, Float, DateTime, ForeignKey, JSON, Text, Boolean, UniqueConstraint
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


class Base(DeclarativeBase):
    pass


# =============================================================================
# Project Memory
# =============================================================================

class Project(Base):
    """The single project a memory store belongs to."""
    __tablename__ = "projects"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    project_id: Mapped[str] = mapped_column(String(32), unique=True, index=True)  # md5(root_path)[:16]
    name: Mapped[str] = mapped_column(String(255))
    root_path: Mapped[str] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    last_active: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    project_metadata: Mapped[Dict[str, Any]] = mapped_column(JSON, default=dict)


class Conversation(Base):
    """A recorded exchange with an AI assistant."""
    __tablename__ = "conversations"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    conversation_id: Mapped[str] = mapped_column(String(36), unique=True, index=True)
    project_id: Mapped[str] = mapped_column(ForeignKey("projects.project_id"), index=True)
    ai_assistant: Mapped[str] = mapped_column(String(100))
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    context: Mapped[Dict[str, Any]] = mapped_column(JSON, default=dict)  # active file, cursor, open files
    summary: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    messages: Mapped[List["Message"]] = relationship(
        back_populates="conversation",
        cascade="all, delete-orphan",
        order_by="Message.id",
    )


class Message(Base):
    """A single turn within a conversation."""
    __tablename__ = "messages"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    message_id: Mapped[str] = mapped_column(String(36), unique=True, index=True)
    conversation_id: Mapped[str] = mapped_column(ForeignKey("conversations.conversation_id"), index=True)
    role: Mapped[str] = mapped_column(String(20))  # user, assistant
    content: Mapped[str] = mapped_column(Text)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    message_metadata: Mapped[Dict[str, Any]] = mapped_column(JSON, default=dict)

    conversation: Mapped["Conversation"] = relationship(back_populates="messages")


class ArchitecturalDecision(Base):
    """An immutable architectural decision with its rationale."""
    __tablename__ = "architectural_decisions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    decision_id: Mapped[str] = mapped_column(String(36), unique=True, index=True)
    project_id: Mapped[str] = mapped_column(ForeignKey("projects.project_id"), index=True)
    decision: Mapped[str] = mapped_column(Text)
    rationale: Mapped[str] = mapped_column(Text, default="")
    alternatives: Mapped[List[str]] = mapped_column(JSON, default=list)
    impact: Mapped[List[str]] = mapped_column(JSON, default=list)
    files_affected: Mapped[List[str]] = mapped_column(JSON, default=list)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True))


class FileChange(Base):
    """A created/modified/deleted event for a project file."""
    __tablename__ = "file_changes"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    change_id: Mapped[str] = mapped_column(String(36), unique=True, index=True)
    project_id: Mapped[str] = mapped_column(ForeignKey("projects.project_id"), index=True)
    file_path: Mapped[str] = mapped_column(Text)
    change_type: Mapped[str] = mapped_column(String(20))  # created, modified, deleted
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    # Weak reference: the conversation may be pruned without invalidating this row
    conversation_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)


class CodePattern(Base):
    """A code snippet observed in the project."""
    __tablename__ = "code_patterns"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    pattern_id: Mapped[str] = mapped_column(String(36), unique=True, index=True)
    project_id: Mapped[str] = mapped_column(ForeignKey("projects.project_id"), index=True)
    pattern: Mapped[str] = mapped_column(Text)
    frequency: Mapped[int] = mapped_column(Integer, default=1)
    # JSON text of {language, context, success}; kept as text so substring search sees it verbatim
    context: Mapped[str] = mapped_column(Text, default="{}")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))


# =============================================================================
# Team Memory
# =============================================================================

class TeamMember(Base):
    """A member of a team sharing memories."""
    __tablename__ = "team_members"
    __table_args__ = (UniqueConstraint("team_id", "email", name="uq_team_member_email"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    member_id: Mapped[str] = mapped_column(String(36), unique=True, index=True)
    team_id: Mapped[str] = mapped_column(String(100), index=True)
    email: Mapped[str] = mapped_column(String(255))
    name: Mapped[str] = mapped_column(String(255))
    role: Mapped[str] = mapped_column(String(20))  # admin, developer, observer
    joined_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    last_active: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    permissions: Mapped[List[str]] = mapped_column(JSON, default=list)


class TeamMemory(Base):
    """A piece of knowledge shared within a team."""
    __tablename__ = "team_memories"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    memory_id: Mapped[str] = mapped_column(String(36), unique=True, index=True)
    team_id: Mapped[str] = mapped_column(String(100), index=True)
    type: Mapped[str] = mapped_column(String(50))  # decision, pattern, conversation, best_practice, lesson
    title: Mapped[str] = mapped_column(String(500))
    content: Mapped[str] = mapped_column(Text)
    context: Mapped[str] = mapped_column(Text, default="")
    created_by: Mapped[str] = mapped_column(ForeignKey("team_members.member_id"), index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    tags: Mapped[List[str]] = mapped_column(JSON, default=list)
    visibility: Mapped[str] = mapped_column(String(20), default="team_only")  # private, team_only, public
    project_id: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    memory_metadata: Mapped[Dict[str, Any]] = mapped_column(JSON, default=dict)
    usage_count: Mapped[int] = mapped_column(Integer, default=0)
    success_score: Mapped[float] = mapped_column(Float, default=0.5)


class TeamMemoryVote(Base):
    """One member's vote on one memory (last vote wins)."""
    __tablename__ = "team_memory_votes"
    __table_args__ = (UniqueConstraint("memory_id", "member_id", name="uq_vote_memory_member"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    memory_id: Mapped[str] = mapped_column(ForeignKey("team_memories.memory_id"), index=True)
    member_id: Mapped[str] = mapped_column(ForeignKey("team_members.member_id"))
    vote: Mapped[str] = mapped_column(String(10))  # upvote, downvote
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True))


class TeamMemoryComment(Base):
    """A comment on a memory, optionally replying to another comment."""
    __tablename__ = "team_memory_comments"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    comment_id: Mapped[str] = mapped_column(String(36), unique=True, index=True)
    memory_id: Mapped[str] = mapped_column(ForeignKey("team_memories.memory_id"), index=True)
    member_id: Mapped[str] = mapped_column(ForeignKey("team_members.member_id"))
    content: Mapped[str] = mapped_column(Text)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    parent_comment_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)


class TeamMemoryUsage(Base):
    """A record of a member applying a memory."""
    __tablename__ = "team_memory_usage"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    usage_id: Mapped[str] = mapped_column(String(36), unique=True, index=True)
    memory_id: Mapped[str] = mapped_column(ForeignKey("team_memories.memory_id"), index=True)
    used_by: Mapped[str] = mapped_column(ForeignKey("team_members.member_id"), index=True)
    used_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    context: Mapped[str] = mapped_column(Text, default="")
    success: Mapped[bool] = mapped_column(Boolean, default=True)
