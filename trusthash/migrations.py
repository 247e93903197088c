"""
Versioned schema migrations for the manifest index.

Applied versions are recorded in ``schema_migrations`` and are the source of
truth on startup. Each pending migration runs inside one IMMEDIATE
transaction together with its bookkeeping row, so a migration is either
fully applied and recorded or not visible at all. SQLite DDL is
transactional, which is what makes the table rewrites below all-or-nothing.

Every migration declares a precondition (``needed``) checked by schema
introspection. A migration whose work is already present is recorded as
applied without touching the schema.

SQLite cannot drop a column that is indexed or change nullability in place,
so those migrations rewrite the table: create a shadow table in the target
shape, copy rows with one INSERT...SELECT, drop the old table, rename the
shadow into place, recreate indexes, and resynchronize the AUTOINCREMENT
sequence.
"""

import logging
import sqlite3
from dataclasses import dataclass
from typing import Callable

from .errors import MigrationError

logger = logging.getLogger(__name__)

MIGRATIONS_TABLE = "schema_migrations"


@dataclass(frozen=True)
class Migration:
    """A single schema upgrade step."""
    version: int
    name: str
    apply: Callable[[sqlite3.Connection], None]
    needed: Callable[[sqlite3.Connection], bool]


# ---------------------------------------------------------------------------
# Introspection helpers
# ---------------------------------------------------------------------------

def table_exists(conn: sqlite3.Connection, table: str) -> bool:
    row = conn.execute(
        "SELECT 1 FROM sqlite_master WHERE type = 'table' AND name = ?", (table,)
    ).fetchone()
    return row is not None


def table_columns(conn: sqlite3.Connection, table: str) -> dict[str, dict]:
    """Column name -> {type, notnull, default, pk} for an existing table."""
    rows = conn.execute(f"PRAGMA table_info({table})").fetchall()
    return {
        row[1]: {"type": row[2], "notnull": bool(row[3]), "default": row[4], "pk": row[5]}
        for row in rows
    }


def has_column(conn: sqlite3.Connection, table: str, column: str) -> bool:
    return column in table_columns(conn, table)


def is_column_not_null(conn: sqlite3.Connection, table: str, column: str) -> bool:
    info = table_columns(conn, table).get(column)
    return bool(info and info["notnull"])


# ---------------------------------------------------------------------------
# Manifest table shapes
# ---------------------------------------------------------------------------

# Current shape of the manifests table
MANIFEST_COLUMNS: list[tuple[str, str]] = [
    ("id", "INTEGER PRIMARY KEY AUTOINCREMENT"),
    ("manifest_tx_id", "TEXT NOT NULL UNIQUE"),
    ("manifest_id", "TEXT"),
    ("original_hash", "TEXT"),
    ("content_type", "TEXT NOT NULL"),
    ("phash", "TEXT NOT NULL"),
    ("has_prior_manifest", "INTEGER NOT NULL DEFAULT 0"),
    ("claim_generator", "TEXT"),
    ("owner_address", "TEXT NOT NULL"),
    ("block_height", "INTEGER"),
    ("block_timestamp", "TEXT"),
    ("indexed_at", "TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP"),
]

# Name-system columns carried by the first schema, removed in v4
ARNS_COLUMNS: list[tuple[str, str]] = [
    ("arns_undername", "TEXT NOT NULL"),
    ("arns_full_url", "TEXT NOT NULL"),
]

MANIFEST_INDEXES = (
    "CREATE UNIQUE INDEX IF NOT EXISTS idx_manifests_manifest_id ON manifests(manifest_id)",
    "CREATE INDEX IF NOT EXISTS idx_manifests_owner ON manifests(owner_address)",
    "CREATE INDEX IF NOT EXISTS idx_manifests_content_type ON manifests(content_type)",
)


def _create_table_sql(table: str, columns: list[tuple[str, str]]) -> str:
    body = ",\n    ".join(f"{name} {decl}" for name, decl in columns)
    return f"CREATE TABLE {table} (\n    {body}\n)"


def _sequence_value(conn: sqlite3.Connection, table: str) -> int:
    if not table_exists(conn, "sqlite_sequence"):
        return 0
    row = conn.execute("SELECT seq FROM sqlite_sequence WHERE name = ?", (table,)).fetchone()
    return int(row[0]) if row and row[0] is not None else 0


def resync_sequence(conn: sqlite3.Connection, table: str, floor: int = 0) -> int:
    """Set the AUTOINCREMENT sequence so the next id is max(id)+1 or later.

    ``floor`` is the sequence value observed before a rewrite; ids handed out
    previously are never reissued. Returns the sequence value written.
    """
    row = conn.execute(f"SELECT MAX(id) FROM {table}").fetchone()
    max_id = int(row[0]) if row and row[0] is not None else 0
    target = max(max_id, floor)
    if target == 0:
        return 0
    updated = conn.execute(
        "UPDATE sqlite_sequence SET seq = ? WHERE name = ?", (target, table)
    ).rowcount
    if not updated:
        conn.execute("INSERT INTO sqlite_sequence (name, seq) VALUES (?, ?)", (table, target))
    return target


def rewrite_table(
    conn: sqlite3.Connection,
    table: str,
    columns: list[tuple[str, str]],
    indexes: tuple[str, ...] | list[str],
) -> int:
    """
    Rebuild ``table`` in the shape given by ``columns``.

    Columns present in both the old and new shape are copied; columns absent
    from the new shape are dropped. Must run inside the caller's transaction.

    Returns:
        Number of rows copied
    """
    shadow = f"{table}_new"
    old_columns = set(table_columns(conn, table))
    shared = [name for name, _ in columns if name in old_columns]
    seq_before = _sequence_value(conn, table)

    conn.execute(f"DROP TABLE IF EXISTS {shadow}")
    conn.execute(_create_table_sql(shadow, columns))
    col_list = ", ".join(shared)
    copied = conn.execute(
        f"INSERT INTO {shadow} ({col_list}) SELECT {col_list} FROM {table}"
    ).rowcount
    conn.execute(f"DROP TABLE {table}")
    conn.execute(f"ALTER TABLE {shadow} RENAME TO {table}")
    for statement in indexes:
        conn.execute(statement)
    resync_sequence(conn, table, floor=seq_before)
    return copied


# ---------------------------------------------------------------------------
# Migrations
# ---------------------------------------------------------------------------

def _base_schema_needed(conn: sqlite3.Connection) -> bool:
    return not table_exists(conn, "manifests")


def _base_schema(conn: sqlite3.Connection) -> None:
    legacy = [
        ("id", "INTEGER PRIMARY KEY AUTOINCREMENT"),
        ("manifest_tx_id", "TEXT NOT NULL UNIQUE"),
        *ARNS_COLUMNS,
        ("original_hash", "TEXT NOT NULL"),
        ("content_type", "TEXT NOT NULL"),
        ("phash", "TEXT NOT NULL"),
        ("has_prior_manifest", "INTEGER NOT NULL DEFAULT 0"),
        ("claim_generator", "TEXT"),
        ("owner_address", "TEXT NOT NULL"),
        ("block_height", "INTEGER"),
        ("block_timestamp", "TEXT"),
        ("indexed_at", "TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP"),
    ]
    conn.execute(_create_table_sql("manifests", legacy))
    conn.execute("CREATE INDEX IF NOT EXISTS idx_manifests_arns ON manifests(arns_undername)")
    conn.execute("CREATE INDEX IF NOT EXISTS idx_manifests_owner ON manifests(owner_address)")
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_manifests_content_type ON manifests(content_type)"
    )
    conn.execute("""
        CREATE TABLE IF NOT EXISTS sync_state (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            last_webhook_id TEXT,
            updated_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
        )
    """)


def _soft_bindings_needed(conn: sqlite3.Connection) -> bool:
    return (
        not has_column(conn, "manifests", "manifest_id")
        or not table_exists(conn, "soft_bindings")
    )


def _soft_bindings(conn: sqlite3.Connection) -> None:
    if not has_column(conn, "manifests", "manifest_id"):
        conn.execute("ALTER TABLE manifests ADD COLUMN manifest_id TEXT")
    conn.execute(
        "CREATE UNIQUE INDEX IF NOT EXISTS idx_manifests_manifest_id ON manifests(manifest_id)"
    )
    conn.execute("""
        CREATE TABLE IF NOT EXISTS soft_bindings (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            manifest_id TEXT NOT NULL REFERENCES manifests(manifest_id),
            alg TEXT NOT NULL,
            value_b64 TEXT NOT NULL,
            scope_json TEXT,
            created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
        )
    """)
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_soft_bindings_manifest ON soft_bindings(manifest_id)"
    )
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_soft_bindings_value ON soft_bindings(alg, value_b64)"
    )


def _original_hash_nullable_needed(conn: sqlite3.Connection) -> bool:
    return (
        table_exists(conn, "manifests")
        and is_column_not_null(conn, "manifests", "original_hash")
    )


def _original_hash_nullable(conn: sqlite3.Connection) -> None:
    present = table_columns(conn, "manifests")
    columns = list(MANIFEST_COLUMNS)
    indexes = list(MANIFEST_INDEXES)
    # Keep name-system columns until v4 drops them
    arns = [col for col in ARNS_COLUMNS if col[0] in present]
    if arns:
        columns[2:2] = arns
        indexes.append(
            "CREATE INDEX IF NOT EXISTS idx_manifests_arns ON manifests(arns_undername)"
        )
    logger.info("Migrating manifests.original_hash to nullable (table rewrite)")
    rewrite_table(conn, "manifests", columns, indexes)


def _remove_arns_needed(conn: sqlite3.Connection) -> bool:
    if not table_exists(conn, "manifests"):
        return False
    present = table_columns(conn, "manifests")
    return any(name in present for name, _ in ARNS_COLUMNS)


def _remove_arns(conn: sqlite3.Connection) -> None:
    logger.info("Removing name-system columns from manifests (table rewrite)")
    rewrite_table(conn, "manifests", MANIFEST_COLUMNS, MANIFEST_INDEXES)


MIGRATIONS: tuple[Migration, ...] = (
    Migration(1, "base_schema", _base_schema, _base_schema_needed),
    Migration(2, "manifest_id_and_soft_bindings", _soft_bindings, _soft_bindings_needed),
    Migration(3, "original_hash_nullable", _original_hash_nullable, _original_hash_nullable_needed),
    Migration(4, "remove_arns_columns", _remove_arns, _remove_arns_needed),
)

SCHEMA_VERSION = MIGRATIONS[-1].version


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------

class MigrationEngine:
    """
    Applies pending migrations in ascending version order.

    The connection must be in autocommit mode (``isolation_level=None``);
    the engine issues BEGIN/COMMIT/ROLLBACK itself.
    """

    def __init__(
        self,
        conn: sqlite3.Connection,
        migrations: tuple[Migration, ...] | list[Migration] = MIGRATIONS,
    ):
        versions = [m.version for m in migrations]
        if versions != sorted(set(versions)):
            raise MigrationError("Migration versions must be unique and ascending")
        if conn.isolation_level is not None:
            raise MigrationError("MigrationEngine requires an autocommit connection")
        self._conn = conn
        self._migrations = tuple(migrations)

    def _ensure_table(self) -> None:
        self._conn.execute(f"""
            CREATE TABLE IF NOT EXISTS {MIGRATIONS_TABLE} (
                version INTEGER PRIMARY KEY,
                name TEXT NOT NULL,
                applied_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
            )
        """)

    def applied_versions(self) -> set[int]:
        if not table_exists(self._conn, MIGRATIONS_TABLE):
            return set()
        rows = self._conn.execute(f"SELECT version FROM {MIGRATIONS_TABLE}").fetchall()
        return {int(row[0]) for row in rows}

    def applied_migrations(self) -> list[dict]:
        """Recorded migrations, oldest first."""
        if not table_exists(self._conn, MIGRATIONS_TABLE):
            return []
        rows = self._conn.execute(
            f"SELECT version, name, applied_at FROM {MIGRATIONS_TABLE} ORDER BY version"
        ).fetchall()
        return [{"version": r[0], "name": r[1], "appliedAt": r[2]} for r in rows]

    def pending(self) -> list[Migration]:
        applied = self.applied_versions()
        return [m for m in self._migrations if m.version not in applied]

    def run(self) -> list[int]:
        """
        Apply every pending migration.

        Returns:
            Versions applied by this call (empty when already current)

        Raises:
            MigrationError: on any failure; the failing migration is rolled back
        """
        applied = self.applied_versions()
        known = {m.version for m in self._migrations}
        unknown = sorted(v for v in applied if v not in known)
        if unknown and max(unknown) > max(known, default=0):
            raise MigrationError(
                f"Database schema version {max(unknown)} is newer than supported "
                f"({max(known, default=0)})"
            )

        pending = [m for m in self._migrations if m.version not in applied]
        if not pending:
            return []

        self._ensure_table()
        done: list[int] = []
        for migration in pending:
            self._apply_one(migration)
            done.append(migration.version)
        return done

    def _apply_one(self, migration: Migration) -> None:
        conn = self._conn
        logger.info("Applying migration %d: %s", migration.version, migration.name)
        conn.execute("BEGIN IMMEDIATE")
        try:
            if migration.needed(conn):
                migration.apply(conn)
            else:
                logger.info(
                    "Migration %d already reflected in schema; recording only",
                    migration.version,
                )
            conn.execute(
                f"INSERT INTO {MIGRATIONS_TABLE} (version, name) VALUES (?, ?)",
                (migration.version, migration.name),
            )
            conn.execute("COMMIT")
        except Exception as e:
            try:
                conn.execute("ROLLBACK")
            except sqlite3.Error as rollback_error:
                logger.error("Rollback of migration %d failed: %s",
                             migration.version, rollback_error)
            raise MigrationError(
                f"Migration {migration.version} ({migration.name}) failed: {e}",
                version=migration.version,
            ) from e
        logger.info("Migration %d applied", migration.version)


def run_migrations(conn: sqlite3.Connection) -> list[int]:
    """Apply all pending migrations on an autocommit connection."""
    return MigrationEngine(conn).run()
