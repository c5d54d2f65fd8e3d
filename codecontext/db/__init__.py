"""
Database Package
================

Exports key database components.
"""

from codecontext.db.models import (
    Base,
    # Project memory
    Project, Conversation, Message, ArchitecturalDecision, FileChange, CodePattern,
    # Team memory
    TeamMember, TeamMemory, TeamMemoryVote, TeamMemoryComment, TeamMemoryUsage,
)
from codecontext.db.connection import MemoryDatabase
