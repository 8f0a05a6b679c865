"""
Vector service adapters.

Two implementations of the same three-call surface (upsert / query /
delete_ids), where every query is scoped to exactly one namespace and
record ids are global:

  - PgVectorIndex: PostgreSQL + pgvector, used when DATABASE_URL is set
  - InMemoryVectorIndex: process-local cosine search, used when no
    database is configured and in tests
"""

import logging
import math
import threading
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)


@dataclass
class VectorRecord:
    id: str
    values: list[float]
    namespace: str
    metadata: dict = field(default_factory=dict)


@dataclass
class VectorMatch:
    id: str
    score: float
    metadata: dict = field(default_factory=dict)


def _cosine(a: list[float], b: list[float]) -> float:
    dot = sum(x * y for x, y in zip(a, b))
    norm_a = math.sqrt(sum(x * x for x in a))
    norm_b = math.sqrt(sum(y * y for y in b))
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return dot / (norm_a * norm_b)


class InMemoryVectorIndex:
    """Process-local vector index with namespace-scoped cosine search."""

    def __init__(self):
        self._records: dict[str, VectorRecord] = {}
        self._lock = threading.Lock()

    def upsert(self, records: list[VectorRecord]) -> None:
        with self._lock:
            for record in records:
                # Re-inserting an id replaces it (last write wins)
                self._records.pop(record.id, None)
                self._records[record.id] = VectorRecord(
                    id=record.id,
                    values=list(record.values),
                    namespace=record.namespace,
                    metadata=dict(record.metadata),
                )

    def query(
        self,
        vector: list[float],
        top_k: int,
        namespace: str,
        include_metadata: bool = True,
    ) -> list[VectorMatch]:
        with self._lock:
            candidates = [r for r in self._records.values() if r.namespace == namespace]
        scored = [(_cosine(vector, r.values), r) for r in candidates]
        scored.sort(key=lambda pair: pair[0], reverse=True)
        return [
            VectorMatch(
                id=r.id,
                score=score,
                metadata=dict(r.metadata) if include_metadata else {},
            )
            for score, r in scored[: max(top_k, 0)]
        ]

    def delete_ids(self, ids: list[str]) -> int:
        deleted = 0
        with self._lock:
            for vector_id in ids:
                if self._records.pop(vector_id, None) is not None:
                    deleted += 1
        return deleted

    def count(self, namespace: str) -> int:
        with self._lock:
            return sum(1 for r in self._records.values() if r.namespace == namespace)


class PgVectorIndex:
    """
    Vector index stored in PostgreSQL using the pgvector extension.

    Expects a psycopg connection opened with autocommit and dict_row.
    """

    def __init__(self, pg_conn, dimensions: int = 768):
        self._pg_conn = pg_conn
        self._dimensions = dimensions
        self._setup_table()

    def _setup_table(self):
        """Create memory_vectors table with pgvector extension."""
        with self._pg_conn.cursor() as cur:
            cur.execute("CREATE EXTENSION IF NOT EXISTS vector")
            cur.execute(f"""
                CREATE TABLE IF NOT EXISTS memory_vectors (
                    id TEXT PRIMARY KEY,
                    namespace TEXT NOT NULL,
                    role TEXT,
                    content TEXT,
                    embedding vector({int(self._dimensions)}) NOT NULL,
                    updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
                )
            """)
            cur.execute("""
                CREATE INDEX IF NOT EXISTS idx_memory_vectors_namespace
                ON memory_vectors (namespace)
            """)

    def upsert(self, records: list[VectorRecord]) -> None:
        if not records:
            return
        with self._pg_conn.cursor() as cur:
            cur.executemany(
                """
                INSERT INTO memory_vectors (id, namespace, role, content, embedding, updated_at)
                VALUES (%s, %s, %s, %s, %s::vector, now())
                ON CONFLICT (id) DO UPDATE SET
                    namespace = EXCLUDED.namespace,
                    role = EXCLUDED.role,
                    content = EXCLUDED.content,
                    embedding = EXCLUDED.embedding,
                    updated_at = now()
                """,
                [
                    (
                        r.id,
                        r.namespace,
                        r.metadata.get("role"),
                        r.metadata.get("content"),
                        r.values,
                    )
                    for r in records
                ],
            )

    def query(
        self,
        vector: list[float],
        top_k: int,
        namespace: str,
        include_metadata: bool = True,
    ) -> list[VectorMatch]:
        with self._pg_conn.cursor() as cur:
            cur.execute(
                """
                SELECT id, role, content,
                       1 - (embedding <=> %s::vector) AS score
                FROM memory_vectors
                WHERE namespace = %s
                ORDER BY embedding <=> %s::vector
                LIMIT %s
                """,
                (vector, namespace, vector, top_k),
            )
            rows = cur.fetchall()
        return [self._row_to_match(row, include_metadata) for row in rows]

    @staticmethod
    def _row_to_match(row, include_metadata: bool) -> VectorMatch:
        if isinstance(row, dict):
            vector_id, role, content, score = (
                row["id"], row.get("role"), row.get("content"), row.get("score"),
            )
        else:
            vector_id, role, content, score = row[0], row[1], row[2], row[3]
        # A zero query vector yields NaN cosine distances
        score = float(score) if score is not None else 0.0
        if math.isnan(score):
            score = 0.0
        metadata = {}
        if include_metadata:
            metadata = {"role": role, "content": content}
        return VectorMatch(id=vector_id, score=score, metadata=metadata)

    def delete_ids(self, ids: list[str]) -> int:
        if not ids:
            return 0
        with self._pg_conn.cursor() as cur:
            cur.execute("DELETE FROM memory_vectors WHERE id = ANY(%s)", (list(ids),))
            return cur.rowcount
