"""
Project Memory Store
====================

Persists a project's development history in the project's memory database:
conversations with AI assistants, architectural decisions, file-change
history and observed code patterns.

All data is stored in the SQLite database under ``.codecontext/memory.db``.

Usage:
    from codecontext.project_memory import ProjectMemoryStore, Message

    store = ProjectMemoryStore(project_dir)
    await store.initialize()

    conversation_id = await store.record_conversation(
        "claude",
        [Message(role="user", content="Why is login slow?"),
         Message(role="assistant", content="The session lookup is not indexed.")],
        context={"active_file": "auth/session.py"},
    )

    await store.record_architectural_decision(
        decision="Use JWT for API auth",
        rationale="Stateless scaling",
        alternatives=["Session cookies"],
    )

    memory = await store.get_project_memory()
"""

import hashlib
import json
import logging
import uuid
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Callable, Optional

from sqlalchemy import select, update, delete, func
from sqlalchemy.orm import selectinload

from codecontext.config import MemoryConfig
from codecontext.db.connection import MemoryDatabase
from codecontext.db.models import (
    Project as DBProject,
    Conversation as DBConversation,
    Message as DBMessage,
    ArchitecturalDecision as DBDecision,
    FileChange as DBFileChange,
    CodePattern as DBCodePattern,
)
from codecontext.errors import NotInitialized, StorageFailure

logger = logging.getLogger(__name__)

FILE_HISTORY_LIMIT = 100

SCAN_EXTENSIONS = (".js", ".ts", ".jsx", ".tsx", ".py", ".go", ".rs", ".java", ".cpp", ".c", ".h")
SCAN_SKIP_DIRS = {"node_modules"}


Clock = Callable[[], datetime]
IdFactory = Callable[[], str]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite drops tzinfo on the way in; timestamps are always stored as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def project_id_for(root_path: Path | str) -> str:
    """Stable id for a project root: the same path always maps to the same id."""
    return hashlib.md5(str(root_path).encode("utf-8")).hexdigest()[:16]


class ChangeType(Enum):
    """Kinds of file change tracked in project history."""
    CREATED = "created"
    MODIFIED = "modified"
    DELETED = "deleted"


class MessageRole(Enum):
    USER = "user"
    ASSISTANT = "assistant"


def _enum_value(value: Enum | str, enum_cls: type[Enum]) -> str:
    """Normalize an enum member or raw string, rejecting unknown values."""
    if isinstance(value, enum_cls):
        return value.value
    return enum_cls(str(value)).value


# =============================================================================
# Records
# =============================================================================

@dataclass
class Message:
    """One turn of a conversation."""
    role: str                           # MessageRole value
    content: str
    id: Optional[str] = None            # generated when absent
    timestamp: Optional[datetime] = None
    metadata: dict = field(default_factory=dict)


@dataclass
class Conversation:
    """A conversation with its messages in timestamp order."""
    id: str
    timestamp: datetime
    ai_assistant: str
    context: dict
    messages: list[Message] = field(default_factory=list)
    summary: Optional[str] = None


@dataclass
class ArchitecturalDecision:
    """An architectural decision. Immutable once written."""
    id: str
    timestamp: datetime
    decision: str
    rationale: str
    alternatives: list[str] = field(default_factory=list)
    impact: list[str] = field(default_factory=list)
    files_affected: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        data = asdict(self)
        data["timestamp"] = self.timestamp.isoformat()
        return data


@dataclass
class FileChangeRecord:
    id: str
    file_path: str
    change_type: str                    # ChangeType value
    timestamp: datetime
    conversation_id: Optional[str] = None


@dataclass
class CodePattern:
    """
    A code pattern observed in the project.

    ``context`` is the raw JSON text of ``{language, context, success}``.
    """
    id: str
    pattern: str
    frequency: int
    context: str

    @property
    def context_data(self) -> dict:
        try:
            data = json.loads(self.context or "{}")
        except json.JSONDecodeError:
            return {}
        return data if isinstance(data, dict) else {}

    @property
    def language(self) -> str:
        return self.context_data.get("language", "unknown")

    @property
    def success(self) -> Optional[bool]:
        return self.context_data.get("success")


@dataclass
class ProjectMemory:
    """Materialized view of everything stored for a project."""
    id: str
    name: str
    root_path: str
    created_at: datetime
    last_active: datetime
    conversations: list[Conversation] = field(default_factory=list)
    decisions: list[ArchitecturalDecision] = field(default_factory=list)
    patterns: list[CodePattern] = field(default_factory=list)
    file_history: list[FileChangeRecord] = field(default_factory=list)


@dataclass
class MemoryStatistics:
    conversation_count: int = 0
    message_count: int = 0
    decision_count: int = 0
    file_count: int = 0
    pattern_count: int = 0
    last_activity: Optional[datetime] = None
    database_size_bytes: int = 0

    @property
    def database_size(self) -> str:
        """Human-readable database size."""
        return f"{self.database_size_bytes / 1024:.1f} KB"

    def to_dict(self) -> dict:
        return {
            "conversation_count": self.conversation_count,
            "message_count": self.message_count,
            "decision_count": self.decision_count,
            "file_count": self.file_count,
            "pattern_count": self.pattern_count,
            "last_activity": self.last_activity.isoformat() if self.last_activity else None,
            "database_size": self.database_size,
        }


# =============================================================================
# Store
# =============================================================================

class ProjectMemoryStore:
    """
    Reads and writes one project's memory (DB-backed).

    Exactly one Project row exists per store, keyed by a hash of the root
    path. Every other row is scoped to that project id.
    """

    def __init__(
        self,
        project_path: Path | str,
        config: Optional[MemoryConfig] = None,
        database: Optional[MemoryDatabase] = None,
        clock: Optional[Clock] = None,
        id_factory: Optional[IdFactory] = None,
    ):
        """
        Initialize the store for a project.

        Args:
            project_path: Project root directory
            config: Memory configuration (defaults to MemoryConfig.load())
            database: Pre-built database handle, mainly for sharing one file
            clock: Returns the current time; injectable for tests
            id_factory: Generates opaque record ids
        """
        self.project_path = Path(project_path).resolve()
        self.config = config or MemoryConfig.load(self.project_path)
        self.db = database or MemoryDatabase(
            self.config.db_path(self.project_path), echo=self.config.echo_sql
        )
        self.clock = clock or utc_now
        self.new_id = id_factory or new_id
        self.project_id = project_id_for(self.project_path)
        self._initialized = False

    @property
    def db_path(self) -> Path:
        return self.db.db_path

    def _now(self) -> datetime:
        return as_utc(self.clock())

    def _require_initialized(self) -> None:
        if not self._initialized:
            raise NotInitialized()

    async def initialize(self) -> None:
        """Create the datastore and tables if needed and upsert the project row."""
        await self.db.initialize()

        async with self.db.session("initialize") as session:
            result = await session.execute(
                select(DBProject).where(DBProject.project_id == self.project_id)
            )
            project = result.scalar_one_or_none()
            now = self._now()
            if project is None:
                session.add(DBProject(
                    project_id=self.project_id,
                    name=self.project_path.name,
                    root_path=str(self.project_path),
                    created_at=now,
                    last_active=now,
                    project_metadata={},
                ))
                logger.info("Created project memory for %s", self.project_path)
            else:
                project.name = self.project_path.name
                project.root_path = str(self.project_path)
            await session.commit()

        self._initialized = True

    async def close(self) -> None:
        """Close database connections."""
        await self.db.dispose()
        self._initialized = False

    async def _touch_project(self, session) -> None:
        await session.execute(
            update(DBProject)
            .where(DBProject.project_id == self.project_id)
            .values(last_active=self._now())
        )

    # =========================================================================
    # Writes
    # =========================================================================

    async def record_conversation(
        self,
        ai_assistant: str,
        messages: list[Message],
        context: Optional[dict] = None,
        summary: Optional[str] = None,
    ) -> str:
        """
        Record a conversation and its messages.

        The conversation row and all message rows are written in one
        transaction; on failure nothing is kept and StorageFailure is raised.

        Returns:
            The new conversation id
        """
        self._require_initialized()
        conversation_id = self.new_id()
        now = self._now()

        async with self.db.session("record_conversation") as session:
            conversation = DBConversation(
                conversation_id=conversation_id,
                project_id=self.project_id,
                ai_assistant=ai_assistant,
                timestamp=now,
                context=context or {},
                summary=summary,
            )
            session.add(conversation)
            for message in messages:
                session.add(DBMessage(
                    message_id=message.id or self.new_id(),
                    conversation_id=conversation_id,
                    role=_enum_value(message.role, MessageRole),
                    content=message.content,
                    timestamp=as_utc(message.timestamp) or now,
                    message_metadata=message.metadata or {},
                ))
            await self._touch_project(session)
            await session.commit()

        logger.info("Recorded conversation %s (%d messages)", conversation_id, len(messages))
        return conversation_id

    async def store_conversation(
        self,
        message: str,
        response: str,
        ai_provider: Optional[str] = None,
        timestamp: Optional[datetime] = None,
    ) -> str:
        """Record a single prompt/response exchange as a two-message conversation."""
        when = as_utc(timestamp) or self._now()
        return await self.record_conversation(
            ai_provider or "unknown",
            [
                Message(role=MessageRole.USER.value, content=message, timestamp=when),
                Message(role=MessageRole.ASSISTANT.value, content=response, timestamp=when),
            ],
        )

    async def record_architectural_decision(
        self,
        decision: str,
        rationale: str = "",
        alternatives: Optional[list[str]] = None,
        impact: Optional[list[str]] = None,
        files_affected: Optional[list[str]] = None,
    ) -> str:
        """Record an architectural decision. Returns its id."""
        self._require_initialized()
        decision_id = self.new_id()

        async with self.db.session("record_architectural_decision") as session:
            session.add(DBDecision(
                decision_id=decision_id,
                project_id=self.project_id,
                decision=decision,
                rationale=rationale,
                alternatives=alternatives or [],
                impact=impact or [],
                files_affected=files_affected or [],
                timestamp=self._now(),
            ))
            await self._touch_project(session)
            await session.commit()

        logger.info("Recorded decision %s", decision_id)
        return decision_id

    async def track_file_change(
        self,
        file_path: str,
        change_type: ChangeType | str,
        conversation_id: Optional[str] = None,
    ) -> str:
        """Record a created/modified/deleted event for a file. Returns its id."""
        self._require_initialized()
        change_id = self.new_id()
        kind = _enum_value(change_type, ChangeType)

        async with self.db.session("track_file_change") as session:
            session.add(DBFileChange(
                change_id=change_id,
                project_id=self.project_id,
                file_path=str(file_path),
                change_type=kind,
                timestamp=self._now(),
                conversation_id=conversation_id,
            ))
            await self._touch_project(session)
            await session.commit()

        logger.debug("Tracked %s of %s", kind, file_path)
        return change_id

    async def store_code_pattern(
        self,
        pattern: str,
        language: str,
        context: str,
        success: bool,
    ) -> str:
        """
        Store an observed code pattern with frequency 1.

        Every call inserts a new row; similar patterns are not merged.
        """
        self._require_initialized()
        pattern_id = self.new_id()
        context_text = json.dumps(
            {"language": language, "context": context, "success": success}, ensure_ascii=False
        )

        async with self.db.session("store_code_pattern") as session:
            session.add(DBCodePattern(
                pattern_id=pattern_id,
                project_id=self.project_id,
                pattern=pattern,
                frequency=1,
                context=context_text,
                created_at=self._now(),
            ))
            await session.commit()

        logger.debug("Stored %s code pattern %s", language, pattern_id)
        return pattern_id

    async def perform_initial_scan(self) -> int:
        """
        Record every source file in the project tree as ``created``.

        Dot-entries, node_modules and symlinks are skipped. An unreadable
        directory raises StorageFailure.

        Returns:
            Number of files recorded
        """
        self._require_initialized()
        try:
            files = self._scan_project_files()
        except OSError as e:
            logger.warning("Initial scan of %s failed: %s", self.project_path, e)
            raise StorageFailure("perform_initial_scan", e) from e
        now = self._now()

        async with self.db.session("perform_initial_scan") as session:
            for relative in files:
                session.add(DBFileChange(
                    change_id=self.new_id(),
                    project_id=self.project_id,
                    file_path=relative,
                    change_type=ChangeType.CREATED.value,
                    timestamp=now,
                ))
            if files:
                await self._touch_project(session)
            await session.commit()

        logger.info("Initial scan recorded %d files", len(files))
        return len(files)

    def _scan_project_files(self) -> list[str]:
        files: list[str] = []

        def scan_dir(directory: Path) -> None:
            for entry in sorted(directory.iterdir()):
                if entry.name.startswith(".") or entry.name in SCAN_SKIP_DIRS:
                    continue
                if entry.is_symlink():
                    continue
                if entry.is_dir():
                    scan_dir(entry)
                elif entry.name.endswith(SCAN_EXTENSIONS):
                    files.append(entry.relative_to(self.project_path).as_posix())

        scan_dir(self.project_path)
        return files

    async def clear_all_memory(self) -> None:
        """
        Delete every row scoped to this project except the project itself.

        Destructive and irreversible. Safe to call on an empty project.
        """
        self._require_initialized()

        async with self.db.session("clear_all_memory") as session:
            project_conversations = select(DBConversation.conversation_id).where(
                DBConversation.project_id == self.project_id
            )
            await session.execute(
                delete(DBMessage).where(DBMessage.conversation_id.in_(project_conversations))
            )
            for model in (DBConversation, DBDecision, DBFileChange, DBCodePattern):
                await session.execute(delete(model).where(model.project_id == self.project_id))
            await session.commit()

        logger.warning("Cleared all memory for project %s", self.project_id)

    # =========================================================================
    # Reads
    # =========================================================================

    async def get_project_memory(self) -> ProjectMemory:
        """
        Get the full materialized view of the project.

        Conversations are newest first with messages in timestamp order,
        decisions newest first, and the last 100 file changes newest first.
        """
        self._require_initialized()

        async with self.db.session("get_project_memory") as session:
            result = await session.execute(
                select(DBProject).where(DBProject.project_id == self.project_id)
            )
            project = result.scalar_one()

            conversations = await self._load_conversations(session)

            result = await session.execute(
                select(DBFileChange)
                .where(DBFileChange.project_id == self.project_id)
                .order_by(DBFileChange.timestamp.desc(), DBFileChange.id.desc())
                .limit(FILE_HISTORY_LIMIT)
            )
            file_history = [self._db_to_file_change(row) for row in result.scalars().all()]

        return ProjectMemory(
            id=project.project_id,
            name=project.name,
            root_path=project.root_path,
            created_at=as_utc(project.created_at),
            last_active=as_utc(project.last_active),
            conversations=conversations,
            decisions=await self.get_decisions(),
            patterns=await self.get_patterns(),
            file_history=file_history,
        )

    async def _load_conversations(self, session) -> list[Conversation]:
        stmt = (
            select(DBConversation)
            .where(DBConversation.project_id == self.project_id)
            .options(selectinload(DBConversation.messages))
            .order_by(DBConversation.timestamp.desc(), DBConversation.id.desc())
        )
        result = await session.execute(stmt)
        return [self._db_to_conversation(row) for row in result.scalars().all()]

    async def get_decisions(self) -> list[ArchitecturalDecision]:
        """All architectural decisions, newest first."""
        self._require_initialized()
        async with self.db.session("get_decisions") as session:
            result = await session.execute(
                select(DBDecision)
                .where(DBDecision.project_id == self.project_id)
                .order_by(DBDecision.timestamp.desc(), DBDecision.id.desc())
            )
            return [self._db_to_decision(row) for row in result.scalars().all()]

    async def get_patterns(self, limit: Optional[int] = None) -> list[CodePattern]:
        """Code patterns, most frequent first (oldest first among equals)."""
        self._require_initialized()
        async with self.db.session("get_patterns") as session:
            stmt = (
                select(DBCodePattern)
                .where(DBCodePattern.project_id == self.project_id)
                .order_by(DBCodePattern.frequency.desc(), DBCodePattern.id.asc())
            )
            if limit is not None:
                stmt = stmt.limit(limit)
            result = await session.execute(stmt)
            return [
                CodePattern(id=row.pattern_id, pattern=row.pattern, frequency=row.frequency, context=row.context)
                for row in result.scalars().all()
            ]

    async def get_recent_turns(self, limit: int) -> list[tuple[Conversation, Message]]:
        """
        The most recent conversation turns.

        Conversations are taken newest first; messages inside one
        conversation keep their recorded order.
        """
        self._require_initialized()
        async with self.db.session("get_recent_turns") as session:
            result = await session.execute(
                select(DBConversation, DBMessage)
                .join(DBMessage, DBMessage.conversation_id == DBConversation.conversation_id)
                .where(DBConversation.project_id == self.project_id)
                .order_by(DBConversation.timestamp.desc(), DBConversation.id.desc(), DBMessage.id.asc())
                .limit(limit)
            )
            return [
                (self._db_to_conversation(conv, with_messages=False), self._db_to_message(msg))
                for conv, msg in result.all()
            ]

    async def search_conversations(self, query: str) -> list[Conversation]:
        """
        Conversations containing ``query`` (case-insensitive) in any message
        or in the conversation summary, newest first.
        """
        self._require_initialized()
        needle = query.lower()

        async with self.db.session("search_conversations") as session:
            conversations = await self._load_conversations(session)

        return [
            conv for conv in conversations
            if needle in (conv.summary or "").lower()
            or any(needle in msg.content.lower() for msg in conv.messages)
        ]

    async def get_recent_conversations(self, limit: int = 10) -> list[dict]:
        """Newest conversation turns flattened for display."""
        turns = await self.get_recent_turns(limit)
        return [
            {
                "message": msg.content or "No message",
                "ai_provider": conv.ai_assistant or "unknown",
                "timestamp": conv.timestamp,
            }
            for conv, msg in turns
        ]

    async def get_successful_patterns(self, limit: int = 10) -> list[dict]:
        """Most frequent patterns with their decoded context."""
        patterns = await self.get_patterns(limit=limit)
        return [
            {
                "language": p.context_data.get("language") or "unknown",
                "context": p.context_data.get("context") or "No context",
                "pattern": p.pattern or "No pattern",
            }
            for p in patterns
        ]

    async def get_statistics(self) -> MemoryStatistics:
        """Counts, last activity and on-disk size."""
        self._require_initialized()

        async with self.db.session("get_statistics") as session:
            conversation_count = await session.scalar(
                select(func.count()).select_from(DBConversation)
                .where(DBConversation.project_id == self.project_id)
            )
            message_count = await session.scalar(
                select(func.count()).select_from(DBMessage)
                .join(DBConversation, DBMessage.conversation_id == DBConversation.conversation_id)
                .where(DBConversation.project_id == self.project_id)
            )
            decision_count = await session.scalar(
                select(func.count()).select_from(DBDecision)
                .where(DBDecision.project_id == self.project_id)
            )
            file_count = await session.scalar(
                select(func.count(func.distinct(DBFileChange.file_path)))
                .where(DBFileChange.project_id == self.project_id)
            )
            pattern_count = await session.scalar(
                select(func.count()).select_from(DBCodePattern)
                .where(DBCodePattern.project_id == self.project_id)
            )
            last_active = await session.scalar(
                select(DBProject.last_active).where(DBProject.project_id == self.project_id)
            )

        return MemoryStatistics(
            conversation_count=conversation_count or 0,
            message_count=message_count or 0,
            decision_count=decision_count or 0,
            file_count=file_count or 0,
            pattern_count=pattern_count or 0,
            last_activity=as_utc(last_active),
            database_size_bytes=self.db.size_bytes(),
        )

    # =========================================================================
    # Conversions
    # =========================================================================

    def _db_to_message(self, row: DBMessage) -> Message:
        return Message(
            id=row.message_id,
            role=row.role,
            content=row.content,
            timestamp=as_utc(row.timestamp),
            metadata=row.message_metadata or {},
        )

    def _db_to_conversation(self, row: DBConversation, with_messages: bool = True) -> Conversation:
        return Conversation(
            id=row.conversation_id,
            timestamp=as_utc(row.timestamp),
            ai_assistant=row.ai_assistant,
            context=row.context or {},
            messages=[self._db_to_message(m) for m in row.messages] if with_messages else [],
            summary=row.summary,
        )

    def _db_to_decision(self, row: DBDecision) -> ArchitecturalDecision:
        return ArchitecturalDecision(
            id=row.decision_id,
            timestamp=as_utc(row.timestamp),
            decision=row.decision,
            rationale=row.rationale or "",
            alternatives=row.alternatives or [],
            impact=row.impact or [],
            files_affected=row.files_affected or [],
        )

    def _db_to_file_change(self, row: DBFileChange) -> FileChangeRecord:
        return FileChangeRecord(
            id=row.change_id,
            file_path=row.file_path,
            change_type=row.change_type,
            timestamp=as_utc(row.timestamp),
            conversation_id=row.conversation_id,
        )
