"""
Manifest index using SQLite.

Stores manifest records indexed from the ledger, their soft bindings, and
the 64-float pHash vector used for similarity search.

The manifest index is the source of truth for:
- Manifest identity (ledger transaction id, optional C2PA manifest id)
- Soft-binding sets, replaced atomically as a whole
- Nearest-neighbor search by Hamming distance

Vectors are stored as JSON float arrays. Distance is computed by a SQL
function registered on the connection: squared L2 distance, which equals
Hamming distance on 0/1 vectors.
"""

import json
import logging
import sqlite3
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterator, Optional

from .bit_vector import PHASH_BITS
from .errors import ConflictError, FormatError, NotFoundError, ValidationError
from .migrations import MigrationEngine

logger = logging.getLogger(__name__)

DEFAULT_THRESHOLD = 10
DEFAULT_LIMIT = 10
MAX_THRESHOLD = PHASH_BITS
MAX_LIMIT = 100


@dataclass
class SoftBindingRecord:
    """One algorithm-identified binding value attached to a manifest."""
    alg: str
    value_b64: str
    scope_json: Optional[str] = None

    def to_dict(self) -> dict:
        return {"alg": self.alg, "value": self.value_b64, "scope": self.scope_json}


@dataclass
class ManifestRecord:
    """
    A manifest indexed from the ledger.

    ``phash`` always holds exactly 64 values, each 0.0 or 1.0.
    """
    manifest_tx_id: str
    content_type: str
    phash: list[float]
    owner_address: str
    manifest_id: Optional[str] = None
    original_hash: Optional[str] = None
    has_prior_manifest: bool = False
    claim_generator: Optional[str] = None
    block_height: Optional[int] = None
    block_timestamp: Optional[str] = None
    indexed_at: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "manifestTxId": self.manifest_tx_id,
            "manifestId": self.manifest_id,
            "originalHash": self.original_hash,
            "contentType": self.content_type,
            "hasPriorManifest": self.has_prior_manifest,
            "claimGenerator": self.claim_generator,
            "ownerAddress": self.owner_address,
            "blockHeight": self.block_height,
            "blockTimestamp": self.block_timestamp,
            "indexedAt": self.indexed_at,
        }


@dataclass
class SearchMatch:
    """A manifest within the search threshold and its Hamming distance."""
    record: ManifestRecord
    distance: int

    def to_dict(self) -> dict:
        return {
            "manifestTxId": self.record.manifest_tx_id,
            "manifestId": self.record.manifest_id,
            "distance": self.distance,
            "contentType": self.record.content_type,
            "ownerAddress": self.record.owner_address,
        }


def validate_vector(vector: list[float]) -> list[float]:
    """Check a pHash vector has 64 components, each exactly 0.0 or 1.0."""
    if len(vector) != PHASH_BITS:
        raise FormatError(f"Expected {PHASH_BITS} floats, got {len(vector)}")
    out = []
    for v in vector:
        f = float(v)
        if f not in (0.0, 1.0):
            raise FormatError(f"pHash vector components must be 0.0 or 1.0, got {v!r}")
        out.append(f)
    return out


def _l2_squared(stored: str, query: str) -> Optional[float]:
    """SQL function: squared L2 distance between two JSON float arrays."""
    if stored is None or query is None:
        return None
    a = json.loads(stored)
    b = json.loads(query)
    if len(a) != len(b):
        return None
    return float(sum((x - y) * (x - y) for x, y in zip(a, b)))


def _check_search_bounds(threshold: int, limit: int) -> None:
    if not isinstance(threshold, int) or not 0 <= threshold <= MAX_THRESHOLD:
        raise ValidationError(f"threshold must be an integer between 0 and {MAX_THRESHOLD}")
    if not isinstance(limit, int) or not 1 <= limit <= MAX_LIMIT:
        raise ValidationError(f"limit must be an integer between 1 and {MAX_LIMIT}")


class ManifestStore:
    """
    SQLite-backed manifest index.

    One connection is shared by all request handlers. Multi-statement writes
    run in explicit IMMEDIATE transactions under a lock, so no partially
    indexed manifest is ever visible. Schema migrations run in the
    constructor, before the store is handed to anyone.
    """

    def __init__(self, db_path: Path):
        """
        Args:
            db_path: Path to SQLite database file (":memory:" for tests)

        Raises:
            MigrationError: if the schema cannot be brought up to date
        """
        self._db_path = db_path
        self._conn: Optional[sqlite3.Connection] = None
        self._lock = threading.RLock()
        self._init_db()

    def _init_db(self) -> None:
        """Open the database and apply pending migrations."""
        if str(self._db_path) != ":memory:":
            Path(self._db_path).parent.mkdir(parents=True, exist_ok=True)
        # isolation_level=None gives us manual transaction control
        self._conn = sqlite3.connect(
            str(self._db_path), check_same_thread=False, isolation_level=None,
        )
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA busy_timeout=5000")
        self._conn.create_function("l2_squared", 2, _l2_squared, deterministic=True)

        engine = MigrationEngine(self._conn)
        applied = engine.run()
        if applied:
            logger.info("Applied schema migrations: %s", applied)

    @property
    def migrations(self) -> MigrationEngine:
        return MigrationEngine(self._conn)

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        with self._lock:
            self._conn.execute("BEGIN IMMEDIATE")
            try:
                yield self._conn
            except BaseException:
                self._conn.execute("ROLLBACK")
                raise
            else:
                self._conn.execute("COMMIT")

    # -------------------------------------------------------------------------
    # Write Operations
    # -------------------------------------------------------------------------

    def insert(
        self,
        record: ManifestRecord,
        bindings: Optional[list[SoftBindingRecord]] = None,
    ) -> ManifestRecord:
        """
        Insert a manifest and replace its binding set in one transaction.

        Raises:
            ConflictError: manifest_tx_id (or manifest_id) already indexed
            ValidationError: bindings given for a manifest without manifest_id
        """
        bindings = bindings or []
        if bindings and not record.manifest_id:
            raise ValidationError("manifest_id is required to store soft bindings")
        phash = validate_vector(record.phash)

        try:
            with self._transaction() as conn:
                conn.execute("""
                    INSERT INTO manifests (
                        manifest_tx_id, manifest_id, original_hash, content_type,
                        phash, has_prior_manifest, claim_generator, owner_address,
                        block_height, block_timestamp
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """, (
                    record.manifest_tx_id,
                    record.manifest_id or None,
                    record.original_hash,
                    record.content_type,
                    json.dumps(phash),
                    1 if record.has_prior_manifest else 0,
                    record.claim_generator,
                    record.owner_address,
                    record.block_height,
                    record.block_timestamp,
                ))
                if record.manifest_id:
                    self._replace_bindings(conn, record.manifest_id, bindings)
        except sqlite3.IntegrityError as e:
            raise ConflictError(
                f"Manifest already indexed: {record.manifest_tx_id}"
            ) from e

        logger.debug("Manifest inserted: %s (%d bindings)",
                     record.manifest_tx_id, len(bindings))
        return self.get_by_tx_id(record.manifest_tx_id)

    def replace_bindings(self, manifest_id: str, bindings: list[SoftBindingRecord]) -> None:
        """Replace the full binding set of a manifest (delete-then-insert)."""
        if not manifest_id:
            raise ValidationError("manifest_id is required to store soft bindings")
        with self._transaction() as conn:
            self._replace_bindings(conn, manifest_id, bindings)

    @staticmethod
    def _replace_bindings(
        conn: sqlite3.Connection, manifest_id: str, bindings: list[SoftBindingRecord],
    ) -> None:
        conn.execute("DELETE FROM soft_bindings WHERE manifest_id = ?", (manifest_id,))
        conn.executemany(
            "INSERT INTO soft_bindings (manifest_id, alg, value_b64, scope_json) "
            "VALUES (?, ?, ?, ?)",
            [(manifest_id, b.alg, b.value_b64, b.scope_json) for b in bindings],
        )

    # -------------------------------------------------------------------------
    # Read Operations
    # -------------------------------------------------------------------------

    @staticmethod
    def _row_to_record(row: sqlite3.Row) -> ManifestRecord:
        return ManifestRecord(
            manifest_tx_id=row["manifest_tx_id"],
            manifest_id=row["manifest_id"] or None,
            original_hash=row["original_hash"],
            content_type=row["content_type"],
            phash=[float(v) for v in json.loads(row["phash"])],
            has_prior_manifest=bool(row["has_prior_manifest"]),
            claim_generator=row["claim_generator"],
            owner_address=row["owner_address"],
            block_height=row["block_height"],
            block_timestamp=row["block_timestamp"],
            indexed_at=row["indexed_at"],
        )

    def get_by_tx_id(self, tx_id: str) -> Optional[ManifestRecord]:
        with self._lock:
            row = self._conn.execute(
                "SELECT * FROM manifests WHERE manifest_tx_id = ?", (tx_id,)
            ).fetchone()
        return self._row_to_record(row) if row else None

    def get_by_manifest_id(self, manifest_id: str) -> Optional[ManifestRecord]:
        with self._lock:
            row = self._conn.execute(
                "SELECT * FROM manifests WHERE manifest_id = ?", (manifest_id,)
            ).fetchone()
        return self._row_to_record(row) if row else None

    def exists(self, tx_id: str) -> bool:
        with self._lock:
            row = self._conn.execute(
                "SELECT 1 FROM manifests WHERE manifest_tx_id = ?", (tx_id,)
            ).fetchone()
        return row is not None

    def get_bindings(self, manifest_id: str) -> list[SoftBindingRecord]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT alg, value_b64, scope_json FROM soft_bindings "
                "WHERE manifest_id = ? ORDER BY id",
                (manifest_id,),
            ).fetchall()
        return [SoftBindingRecord(r["alg"], r["value_b64"], r["scope_json"]) for r in rows]

    def find_by_binding(self, alg: str, value_b64: str) -> list[ManifestRecord]:
        """Manifests carrying an exact (alg, value) binding, newest first."""
        with self._lock:
            rows = self._conn.execute("""
                SELECT m.* FROM manifests m
                JOIN soft_bindings b ON b.manifest_id = m.manifest_id
                WHERE b.alg = ? AND b.value_b64 = ?
                GROUP BY m.id
                ORDER BY m.block_height DESC, m.manifest_tx_id ASC
            """, (alg, value_b64)).fetchall()
        return [self._row_to_record(r) for r in rows]

    def count(self) -> int:
        with self._lock:
            row = self._conn.execute("SELECT COUNT(*) FROM manifests").fetchone()
        return int(row[0])

    # -------------------------------------------------------------------------
    # Similarity Search
    # -------------------------------------------------------------------------

    def search_by_vector(
        self,
        vector: list[float],
        threshold: int = DEFAULT_THRESHOLD,
        limit: int = DEFAULT_LIMIT,
    ) -> list[SearchMatch]:
        """
        Manifests with a manifest_id within ``threshold`` Hamming distance.

        Ordered by ascending distance, then by manifest_tx_id so ties are
        reproducible.
        """
        _check_search_bounds(threshold, limit)
        query = json.dumps(validate_vector(vector))
        with self._lock:
            rows = self._conn.execute("""
                WITH candidates AS (
                    SELECT *, l2_squared(phash, ?) AS l2_sq
                    FROM manifests
                    WHERE manifest_id IS NOT NULL
                )
                SELECT * FROM candidates
                WHERE l2_sq IS NOT NULL AND l2_sq <= ?
                ORDER BY l2_sq ASC, manifest_tx_id ASC
                LIMIT ?
            """, (query, threshold, limit)).fetchall()
        return [
            SearchMatch(record=self._row_to_record(r), distance=int(round(r["l2_sq"])))
            for r in rows
        ]

    def search_by_tx_id(
        self,
        tx_id: str,
        threshold: int = DEFAULT_THRESHOLD,
        limit: int = DEFAULT_LIMIT,
    ) -> list[SearchMatch]:
        """Search using the stored vector of an indexed transaction.

        Raises:
            NotFoundError: tx_id is not indexed
        """
        record = self.get_by_tx_id(tx_id)
        if record is None:
            raise NotFoundError(f"Manifest not found: {tx_id}")
        return self.search_by_vector(record.phash, threshold, limit)

    def ping(self) -> bool:
        """True if the database answers a trivial query."""
        if self._conn is None:
            return False
        try:
            with self._lock:
                self._conn.execute("SELECT 1 FROM manifests LIMIT 1").fetchall()
            return True
        except sqlite3.Error:
            return False

    def close(self) -> None:
        if self._conn is not None:
            self._conn.close()
            self._conn = None
