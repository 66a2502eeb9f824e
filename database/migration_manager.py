"""
Database migration management for the knowledge store
Applies versioned SQL files and tracks them in schema_migrations
"""

import asyncio
import hashlib
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

from sqlalchemy import text

from database.connection import DatabaseManager

logger = logging.getLogger(__name__)

MIGRATIONS_DIR = Path(__file__).resolve().parent / "migrations"


def file_checksum(path: Path) -> str:
    return hashlib.sha256(path.read_bytes()).hexdigest()


def split_sql_statements(sql_content: str) -> List[str]:
    """
    Split SQL into statements on top-level semicolons.

    Semicolons inside single-quoted strings and $$-quoted function bodies are
    kept; `--` line comments are dropped.
    """
    statements = []
    current: List[str] = []
    in_dollar = False
    in_quote = False
    i = 0
    length = len(sql_content)

    while i < length:
        char = sql_content[i]

        if not in_dollar and not in_quote and sql_content.startswith('--', i):
            newline = sql_content.find('\n', i)
            i = length if newline == -1 else newline
            continue

        if not in_quote and sql_content.startswith('$$', i):
            in_dollar = not in_dollar
            current.append('$$')
            i += 2
            continue

        if not in_dollar and char == "'":
            in_quote = not in_quote

        if char == ';' and not in_dollar and not in_quote:
            statement = ''.join(current).strip()
            if statement:
                statements.append(statement + ';')
            current = []
        else:
            current.append(char)
        i += 1

    remainder = ''.join(current).strip()
    if remainder:
        statements.append(remainder)
    return statements


class MigrationManager:
    """Manages database schema migrations"""

    def __init__(self, db_manager: DatabaseManager, migrations_dir: Optional[Path] = None):
        self.db_manager = db_manager
        self.migrations_dir = Path(migrations_dir) if migrations_dir else MIGRATIONS_DIR
        self.migrations_table = "schema_migrations"

    async def initialize_migrations_table(self):
        """Create migrations tracking table if it doesn't exist"""
        async with self.db_manager.get_async_session() as session:
            await session.execute(text(f"""
                CREATE TABLE IF NOT EXISTS {self.migrations_table} (
                    version VARCHAR(255) PRIMARY KEY,
                    filename VARCHAR(255) NOT NULL,
                    applied_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                    checksum VARCHAR(64)
                )
            """))

    def get_migration_files(self) -> List[Dict[str, str]]:
        """Get all migration files sorted by version"""
        if not self.migrations_dir.exists():
            logger.warning(f"Migrations directory {self.migrations_dir} does not exist")
            return []

        migrations = []
        for file_path in sorted(self.migrations_dir.glob("*.sql")):
            if file_path.stem.endswith('_rollback'):
                continue
            # "001_knowledge_base.sql" -> "001"
            migrations.append({
                'version': file_path.stem.split('_')[0],
                'filename': file_path.name,
                'filepath': str(file_path),
            })
        return migrations

    async def get_applied_checksums(self) -> Dict[str, Optional[str]]:
        """Applied versions mapped to the checksum recorded when they ran"""
        async with self.db_manager.get_async_session() as session:
            result = await session.execute(
                text(f"SELECT version, checksum FROM {self.migrations_table} ORDER BY version")
            )
            return {row[0]: row[1] for row in result.fetchall()}

    async def get_applied_migrations(self) -> List[str]:
        return list(await self.get_applied_checksums())

    def find_modified_migrations(self, applied: Dict[str, Optional[str]]) -> List[str]:
        """Applied versions whose file on disk no longer matches the recorded checksum"""
        modified = []
        for migration in self.get_migration_files():
            recorded = applied.get(migration['version'])
            if recorded and recorded != file_checksum(Path(migration['filepath'])):
                modified.append(migration['version'])
        return modified

    async def apply_migration(self, migration: Dict[str, str]) -> bool:
        """Apply a single migration in one transaction"""
        try:
            sql_content = Path(migration['filepath']).read_text(encoding='utf-8')
            checksum = file_checksum(Path(migration['filepath']))

            async with self.db_manager.get_async_session() as session:
                for statement in split_sql_statements(sql_content):
                    await session.execute(text(statement))

                await session.execute(text(f"""
                    INSERT INTO {self.migrations_table} (version, filename, checksum)
                    VALUES (:version, :filename, :checksum)
                """), {
                    'version': migration['version'],
                    'filename': migration['filename'],
                    'checksum': checksum,
                })

            logger.info(f"Applied migration {migration['version']}: {migration['filename']}")
            return True

        except Exception as e:
            logger.error(f"Failed to apply migration {migration['version']}: {e}")
            return False

    async def run_migrations(self) -> bool:
        """Apply pending migrations in version order; stops at the first failure"""
        try:
            await self.initialize_migrations_table()

            applied = await self.get_applied_checksums()
            modified = self.find_modified_migrations(applied)
            if modified:
                logger.warning(
                    f"Applied migrations changed on disk since they ran: {', '.join(modified)}. "
                    f"Add a new migration instead of editing an applied one."
                )

            pending = [m for m in self.get_migration_files() if m['version'] not in applied]
            if not pending:
                logger.info("No pending migrations")
                return True

            logger.info(f"Found {len(pending)} pending migrations")
            for migration in pending:
                if not await self.apply_migration(migration):
                    logger.error(f"Migration failed at {migration['version']}")
                    return False

            logger.info("All migrations applied successfully")
            return True

        except Exception as e:
            logger.error(f"Migration process failed: {e}")
            return False

    async def get_migration_status(self) -> Dict[str, Any]:
        all_migrations = self.get_migration_files()
        applied = await self.get_applied_checksums()
        pending = [m['version'] for m in all_migrations if m['version'] not in applied]

        return {
            'total_migrations': len(all_migrations),
            'applied_count': len(applied),
            'pending_count': len(pending),
            'applied_versions': list(applied),
            'pending_migrations': pending,
            'modified_migrations': self.find_modified_migrations(applied),
        }


if __name__ == "__main__":
    # CLI interface for running migrations
    import sys

    async def main():
        manager = DatabaseManager()
        migrations = MigrationManager(manager)
        command = sys.argv[1] if len(sys.argv) > 1 else None
        try:
            if command == "migrate":
                return 0 if await migrations.run_migrations() else 1
            if command == "status":
                status = await migrations.get_migration_status()
                print("Migration Status:")
                print(f"  Total migrations: {status['total_migrations']}")
                print(f"  Applied: {status['applied_count']}")
                print(f"  Pending: {status['pending_count']}")
                if status['pending_migrations']:
                    print(f"  Pending versions: {', '.join(status['pending_migrations'])}")
                if status['modified_migrations']:
                    print(f"  Modified since applied: {', '.join(status['modified_migrations'])}")
                return 0
            print("Usage: python -m database.migration_manager [migrate|status]")
            return 1
        finally:
            await manager.close()

    sys.exit(asyncio.run(main()))
