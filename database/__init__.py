"""
Database package for the CRM knowledge store
Provides connection management, models, repositories, vector search and migrations
"""

from .connection import (
    DatabaseConfig,
    DatabaseManager,
    init_database,
    Base
)

from .models import (
    SourceType,
    EntryStatus,
    KnowledgeBaseEntry,
    KnowledgeChunk,
    QueryRecord
)

from .migration_manager import MigrationManager

__all__ = [
    # Connection utilities
    'DatabaseConfig',
    'DatabaseManager',
    'init_database',
    'Base',

    # Models
    'SourceType',
    'EntryStatus',
    'KnowledgeBaseEntry',
    'KnowledgeChunk',
    'QueryRecord',

    # Migration management
    'MigrationManager'
]
