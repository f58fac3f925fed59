"""Database schema management module.

This module handles schema versioning and migrations for the settlement
tables. Schema versions live in database/schema/vN.py, each exporting a
`schema` dict with tables (columns, indexes, foreign keys), triggers and
incremental migrations.
"""
import importlib
import logging
from pathlib import Path
from typing import Any, Dict, List

from ..exceptions import DatabaseSchemaError

logger = logging.getLogger(__name__)

SCHEMA_DIR = Path(__file__).resolve().parent.parent / 'schema'


class SchemaManager:
    """Manages database schema versioning and migrations."""

    def __init__(self, pool, schema_dir: Path = SCHEMA_DIR) -> None:
        """Initialize schema manager.

        Args:
            pool: Database connection pool
            schema_dir: Directory containing schema version files
        """
        self.pool = pool
        self._schema_dir = Path(schema_dir)
        self.current_version = 0

    async def initialize(self, force_recreate: bool = False) -> None:
        """Create the version table and apply pending migrations.

        Args:
            force_recreate: Drop every table and install the latest schema

        Raises:
            DatabaseSchemaError: If schema initialization fails or no valid schema files are found
        """
        try:
            async with self.pool.acquire() as conn:
                await conn.execute('''
                    CREATE TABLE IF NOT EXISTS schema_version (
                        version INT8 PRIMARY KEY,
                        applied_at TIMESTAMPTZ NOT NULL DEFAULT now()
                    )
                ''')
                if force_recreate:
                    await conn.execute('DELETE FROM schema_version')

                row = await conn.fetchrow(
                    'SELECT version FROM schema_version ORDER BY version DESC LIMIT 1'
                )
                self.current_version = row['version'] if row else 0

            schema_files = self._load_schema_files()
            if not schema_files:
                raise DatabaseSchemaError("No valid schema files found in schema directory")

            await self._apply_migrations(schema_files)

        except DatabaseSchemaError:
            raise
        except Exception as e:
            logger.error(f"Schema initialization failed: {e}")
            raise DatabaseSchemaError(f"Failed to initialize schema: {e}")

    def _load_schema_files(self) -> Dict[int, Dict[str, Any]]:
        """Load all schema version files.

        Returns:
            Dict mapping version numbers to schema definitions, sorted by version
        """
        schema_files = {}

        for file in self._schema_dir.glob('v*.py'):
            try:
                version = int(file.stem[1:])
            except ValueError:
                logger.warning(f"Invalid schema filename: {file}")
                continue

            module = importlib.import_module(f"database.schema.{file.stem}")
            schema = getattr(module, 'schema', None)
            if schema is None:
                raise DatabaseSchemaError(f"Schema file {file} missing 'schema' definition")
            if schema['version'] != version:
                raise DatabaseSchemaError(
                    f"Schema version mismatch in {file}: "
                    f"Expected v{version}, got v{schema['version']}"
                )
            schema_files[version] = schema

        return dict(sorted(schema_files.items()))

    async def _apply_migrations(self, schema_files: Dict[int, Dict[str, Any]]) -> None:
        """Apply any pending schema migrations.

        Args:
            schema_files: Dict mapping version numbers to schema definitions
        """
        latest_version = max(schema_files.keys())
        if self.current_version >= latest_version:
            logger.info("Schema is up to date")
            return

        logger.info(
            f"Updating schema from version {self.current_version} to {latest_version}"
        )

        async with self.pool.acquire() as conn:
            if self.current_version == 0:
                await self._create_fresh_schema(conn, schema_files[latest_version])
                return

            for version in range(self.current_version + 1, latest_version + 1):
                if version not in schema_files:
                    continue
                async with conn.transaction():
                    for migration in schema_files[version].get('migrations', []):
                        await conn.execute(migration)
                    await conn.execute(
                        'INSERT INTO schema_version (version) VALUES ($1)',
                        version
                    )
                logger.info(f"Successfully migrated to version {version}")

    async def _create_fresh_schema(self, conn, schema: Dict[str, Any]) -> None:
        """Install the latest schema from scratch."""
        tables = schema.get('tables', [])
        await self._drop_tables(conn, tables)

        # Tables first, then constraints so foreign keys can point anywhere
        for table in tables:
            await self._create_table(conn, table)
        for table in tables:
            await self._add_constraints(conn, table)
        for trigger in schema.get('triggers', []):
            await self._create_trigger(conn, trigger)

        await conn.execute(
            'INSERT INTO schema_version (version) VALUES ($1)',
            schema['version']
        )
        logger.info(f"Installed settlement schema v{schema['version']} ({len(tables)} tables)")

    async def _drop_tables(self, conn, tables: List[Dict[str, Any]]) -> None:
        """Drop the tables this schema owns; other tables in the database are left alone."""
        for table in reversed(tables):
            await conn.execute(f"DROP TABLE IF EXISTS {table['name']} CASCADE")
        logger.debug(f"Dropped {len(tables)} settlement tables")

    @staticmethod
    def _column_sql(col: Dict[str, Any]) -> str:
        parts = [col['name'], col['type']]
        if 'default' in col:
            parts.append(f"DEFAULT {col['default']}")
        if col.get('nullable') is False:
            parts.append("NOT NULL")
        return ' '.join(parts)

    async def _create_table(self, conn, table: Dict[str, Any]) -> None:
        """Create one table with its primary key and checks."""
        definitions = [self._column_sql(col) for col in table['columns']]

        primary_key = table.get('primary_key') or [
            col['name'] for col in table['columns'] if col.get('primary_key')
        ]
        if primary_key:
            definitions.append(f"PRIMARY KEY ({', '.join(primary_key)})")
        definitions.extend(f"CHECK ({check})" for check in table.get('checks', []))

        await conn.execute(
            f"CREATE TABLE IF NOT EXISTS {table['name']} ({', '.join(definitions)})"
        )
        logger.info(f"Created table {table['name']}")

    async def _add_constraints(self, conn, table: Dict[str, Any]) -> None:
        """Add foreign keys and indexes; an index with `where` is partial."""
        name = table['name']
        for fk in table.get('foreign_keys', []):
            await conn.execute(
                f"ALTER TABLE {name} ADD CONSTRAINT fk_{name}_{fk['columns'][0]} "
                f"FOREIGN KEY ({', '.join(fk['columns'])}) REFERENCES {fk['references']}"
            )

        for idx in table.get('indexes', []):
            statement = (
                f"CREATE {'UNIQUE ' if idx.get('unique') else ''}INDEX IF NOT EXISTS {idx['name']} "
                f"ON {name} ({', '.join(idx['columns'])})"
            )
            if 'where' in idx:
                statement += f" WHERE {idx['where']}"
            await conn.execute(statement)

        logger.debug(
            f"Added {len(table.get('foreign_keys', []))} foreign keys and "
            f"{len(table.get('indexes', []))} indexes to {name}"
        )

    async def _create_trigger(self, conn, trigger: Dict[str, Any]) -> None:
        """Create a plpgsql trigger function and attach it to its table."""
        await conn.execute(
            f"CREATE OR REPLACE FUNCTION {trigger['function_name']}() RETURNS TRIGGER "
            f"AS $${trigger['function_body']}$$ LANGUAGE plpgsql"
        )
        await conn.execute(
            f"CREATE TRIGGER {trigger['name']} {trigger['timing']} {trigger['event']} "
            f"ON {trigger['table']} FOR EACH ROW EXECUTE FUNCTION {trigger['function_name']}()"
        )
        logger.info(f"Created trigger {trigger['name']} on {trigger['table']}")
