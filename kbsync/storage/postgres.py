from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Any, Iterator, List, Optional, Sequence

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from kbsync.logging import get_logger
from kbsync.storage.errors import ConstraintViolation, StoreUnavailable
from kbsync.storage.models import (
    FileAsset,
    KnowledgeRule,
    OwnerConfiguration,
    ToneRule,
    UnansweredQuestion,
)

_RULE_COLUMNS = "id, owner_id, content, created_at, updated_at"
_FILE_COLUMNS = "id, owner_id, name, content_type, size, content, created_at"
_TONE_COLUMNS = "id, owner_id, content, created_at"
_QUESTION_COLUMNS = "id, owner_id, question, context, asked_at, created_at"


def _rule_from_row(row: dict) -> KnowledgeRule:
    return KnowledgeRule(
        id=str(row["id"]),
        owner_id=str(row["owner_id"]),
        content=row.get("content") or "",
        created_at=row.get("created_at") or datetime.utcnow(),
        updated_at=row.get("updated_at") or datetime.utcnow(),
    )


def _file_from_row(row: dict) -> FileAsset:
    return FileAsset(
        id=str(row["id"]),
        owner_id=str(row["owner_id"]),
        name=row["name"],
        content_type=row.get("content_type") or "",
        size=int(row.get("size") or 0),
        content=row.get("content") or "",
        created_at=row.get("created_at") or datetime.utcnow(),
    )


def _tone_rule_from_row(row: dict) -> ToneRule:
    return ToneRule(
        id=str(row["id"]),
        owner_id=str(row["owner_id"]),
        content=row.get("content") or "",
        created_at=row.get("created_at") or datetime.utcnow(),
    )


def _question_from_row(row: dict) -> UnansweredQuestion:
    return UnansweredQuestion(
        id=str(row["id"]),
        owner_id=str(row["owner_id"]),
        question=row.get("question") or "",
        context=row.get("context"),
        asked_at=row.get("asked_at") or datetime.utcnow(),
        created_at=row.get("created_at") or datetime.utcnow(),
    )


def _ensure_owner_row(conn: Any, owner_id: str) -> None:
    conn.execute(
        "INSERT INTO owner_configuration (owner_id) VALUES (%s) ON CONFLICT (owner_id) DO NOTHING",
        (owner_id,),
    )


class _PostgresTransaction:
    """Statements issued on a single connection inside ``conn.transaction()``."""

    def __init__(self, conn: Any) -> None:
        self.conn = conn

    def list_rules(self, owner_id: str) -> List[KnowledgeRule]:
        rows = self.conn.execute(
            f"SELECT {_RULE_COLUMNS} FROM knowledge_rule WHERE owner_id = %s ORDER BY created_at, id",
            (owner_id,),
        ).fetchall()
        return [_rule_from_row(row) for row in rows]

    def list_files(self, owner_id: str) -> List[FileAsset]:
        rows = self.conn.execute(
            f"SELECT {_FILE_COLUMNS} FROM file_asset WHERE owner_id = %s ORDER BY created_at, id",
            (owner_id,),
        ).fetchall()
        return [_file_from_row(row) for row in rows]

    def file_names(self, owner_id: str) -> List[str]:
        rows = self.conn.execute(
            "SELECT name FROM file_asset WHERE owner_id = %s", (owner_id,)
        ).fetchall()
        return [row["name"] for row in rows]

    def delete_all_rules(self, owner_id: str) -> List[KnowledgeRule]:
        rows = self.conn.execute(
            f"DELETE FROM knowledge_rule WHERE owner_id = %s RETURNING {_RULE_COLUMNS}",
            (owner_id,),
        ).fetchall()
        return [_rule_from_row(row) for row in rows]

    def delete_rules(self, owner_id: str, ids: Sequence[str]) -> List[KnowledgeRule]:
        if not ids:
            return []
        rows = self.conn.execute(
            f"DELETE FROM knowledge_rule WHERE owner_id = %s AND id = ANY(%s) RETURNING {_RULE_COLUMNS}",
            (owner_id, list(ids)),
        ).fetchall()
        return [_rule_from_row(row) for row in rows]

    def delete_all_files(self, owner_id: str) -> List[FileAsset]:
        rows = self.conn.execute(
            f"DELETE FROM file_asset WHERE owner_id = %s RETURNING {_FILE_COLUMNS}",
            (owner_id,),
        ).fetchall()
        return [_file_from_row(row) for row in rows]

    def delete_files(self, owner_id: str, ids: Sequence[str]) -> List[FileAsset]:
        if not ids:
            return []
        rows = self.conn.execute(
            f"DELETE FROM file_asset WHERE owner_id = %s AND id = ANY(%s) RETURNING {_FILE_COLUMNS}",
            (owner_id, list(ids)),
        ).fetchall()
        return [_file_from_row(row) for row in rows]

    def insert_rule(self, rule: KnowledgeRule) -> KnowledgeRule:
        if not rule.owner_id:
            raise ConstraintViolation("rule owner required", {"rule_id": rule.id})
        _ensure_owner_row(self.conn, rule.owner_id)
        try:
            self.conn.execute(
                "INSERT INTO knowledge_rule (id, owner_id, content, created_at, updated_at) VALUES (%s, %s, %s, %s, %s)",
                (rule.id, rule.owner_id, rule.content, rule.created_at, rule.updated_at),
            )
        except errors.UniqueViolation:
            raise ConstraintViolation("rule id already exists", {"rule_id": rule.id})
        return rule

    def insert_file(self, asset: FileAsset) -> FileAsset:
        if not asset.owner_id:
            raise ConstraintViolation("file owner required", {"file_id": asset.id})
        _ensure_owner_row(self.conn, asset.owner_id)
        try:
            self.conn.execute(
                """
                INSERT INTO file_asset (id, owner_id, name, content_type, size, content, created_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    asset.id,
                    asset.owner_id,
                    asset.name,
                    asset.content_type,
                    asset.size,
                    asset.content,
                    asset.created_at,
                ),
            )
        except errors.UniqueViolation:
            raise ConstraintViolation(
                "file already exists", {"file_id": asset.id, "name": asset.name}
            )
        return asset


class PostgresStore:
    """Postgres-backed relational store for rules, files and owner rows."""

    def __init__(self, dsn: str) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=1,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._verify_required_schema()

    def _connect(self):
        return self.pool.connection()

    def _verify_required_schema(self) -> None:
        """Ensure the configuration tables exist before serving requests."""

        required_tables = [
            "owner_configuration",
            "knowledge_rule",
            "file_asset",
            "tone_rule",
            "unanswered_question",
        ]
        with self._connect() as conn:
            missing_tables = []
            for table in required_tables:
                row = conn.execute(
                    "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                ).fetchone()
                if not row or not row.get("oid"):
                    missing_tables.append(table)
            if missing_tables:
                raise RuntimeError(
                    "Missing required Postgres tables: {}. Apply sql/schema.sql first.".format(
                        ", ".join(sorted(missing_tables))
                    )
                )

    def verify_connection(self) -> None:
        try:
            with self._connect() as conn:
                conn.execute("SELECT 1").fetchone()
        except errors.OperationalError as exc:
            raise StoreUnavailable("postgres unreachable", {"error": str(exc)}) from exc

    @contextmanager
    def transaction(self) -> Iterator[_PostgresTransaction]:
        with self._connect() as conn, conn.transaction():
            yield _PostgresTransaction(conn)

    # -- reads -----------------------------------------------------------

    def list_rules(self, owner_id: str) -> List[KnowledgeRule]:
        with self._connect() as conn:
            return _PostgresTransaction(conn).list_rules(owner_id)

    def list_files(self, owner_id: str) -> List[FileAsset]:
        with self._connect() as conn:
            return _PostgresTransaction(conn).list_files(owner_id)

    def get_rules_by_ids(self, owner_id: str, ids: Sequence[str]) -> List[KnowledgeRule]:
        if not ids:
            return []
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT {_RULE_COLUMNS} FROM knowledge_rule WHERE owner_id = %s AND id = ANY(%s) ORDER BY created_at, id",
                (owner_id, list(ids)),
            ).fetchall()
        return [_rule_from_row(row) for row in rows]

    def get_files_by_ids(self, owner_id: str, ids: Sequence[str]) -> List[FileAsset]:
        if not ids:
            return []
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT {_FILE_COLUMNS} FROM file_asset WHERE owner_id = %s AND id = ANY(%s) ORDER BY created_at, id",
                (owner_id, list(ids)),
            ).fetchall()
        return [_file_from_row(row) for row in rows]

    def list_rules_page(self, owner_id: str, skip: int, take: int) -> List[KnowledgeRule]:
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT {_RULE_COLUMNS} FROM knowledge_rule WHERE owner_id = %s ORDER BY created_at, id OFFSET %s LIMIT %s",
                (owner_id, max(0, skip), max(0, take)),
            ).fetchall()
        return [_rule_from_row(row) for row in rows]

    def list_files_page(self, owner_id: str, skip: int, take: int) -> List[FileAsset]:
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT {_FILE_COLUMNS} FROM file_asset WHERE owner_id = %s ORDER BY created_at, id OFFSET %s LIMIT %s",
                (owner_id, max(0, skip), max(0, take)),
            ).fetchall()
        return [_file_from_row(row) for row in rows]

    def owner_storage_bytes(self, owner_id: str) -> int:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT
                    (SELECT COALESCE(SUM(size), 0) FROM file_asset WHERE owner_id = %s)
                    + (SELECT COALESCE(SUM(octet_length(content)), 0) FROM knowledge_rule WHERE owner_id = %s)
                    AS total
                """,
                (owner_id, owner_id),
            ).fetchone()
        return int(row["total"]) if row and row.get("total") is not None else 0

    def list_owner_ids(self) -> List[str]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT owner_id FROM owner_configuration
                UNION SELECT owner_id FROM knowledge_rule
                UNION SELECT owner_id FROM file_asset
                ORDER BY owner_id
                """
            ).fetchall()
        return [str(row["owner_id"]) for row in rows]

    def get_owner(self, owner_id: str) -> Optional[OwnerConfiguration]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT owner_id, is_processing, processing_started_at, created_at FROM owner_configuration WHERE owner_id = %s",
                (owner_id,),
            ).fetchone()
        if not row:
            return None
        return OwnerConfiguration(
            owner_id=str(row["owner_id"]),
            is_processing=bool(row.get("is_processing")),
            processing_started_at=row.get("processing_started_at"),
            created_at=row.get("created_at") or datetime.utcnow(),
        )

    # -- tone rules ------------------------------------------------------

    def list_tone_rules(self, owner_id: str) -> List[ToneRule]:
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT {_TONE_COLUMNS} FROM tone_rule WHERE owner_id = %s ORDER BY created_at, id",
                (owner_id,),
            ).fetchall()
        return [_tone_rule_from_row(row) for row in rows]

    def get_tone_rule(self, owner_id: str, rule_id: str) -> Optional[ToneRule]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_TONE_COLUMNS} FROM tone_rule WHERE owner_id = %s AND id = %s",
                (owner_id, rule_id),
            ).fetchone()
        return _tone_rule_from_row(row) if row else None

    def insert_tone_rule(self, rule: ToneRule) -> ToneRule:
        try:
            with self._connect() as conn, conn.transaction():
                _ensure_owner_row(conn, rule.owner_id)
                conn.execute(
                    "INSERT INTO tone_rule (id, owner_id, content, created_at) VALUES (%s, %s, %s, %s)",
                    (rule.id, rule.owner_id, rule.content, rule.created_at),
                )
        except errors.UniqueViolation as exc:
            raise ConstraintViolation("tone rule id already exists", {"rule_id": rule.id}) from exc
        return rule

    def delete_tone_rule(self, owner_id: str, rule_id: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "DELETE FROM tone_rule WHERE owner_id = %s AND id = %s RETURNING id",
                (owner_id, rule_id),
            ).fetchone()
        return row is not None

    # -- unanswered questions --------------------------------------------

    def list_questions(self, owner_id: str) -> List[UnansweredQuestion]:
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT {_QUESTION_COLUMNS} FROM unanswered_question WHERE owner_id = %s ORDER BY asked_at DESC, id DESC",
                (owner_id,),
            ).fetchall()
        return [_question_from_row(row) for row in rows]

    def get_question(self, owner_id: str, question_id: str) -> Optional[UnansweredQuestion]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_QUESTION_COLUMNS} FROM unanswered_question WHERE owner_id = %s AND id = %s",
                (owner_id, question_id),
            ).fetchone()
        return _question_from_row(row) if row else None

    def insert_question(self, question: UnansweredQuestion) -> UnansweredQuestion:
        try:
            with self._connect() as conn, conn.transaction():
                _ensure_owner_row(conn, question.owner_id)
                conn.execute(
                    """
                    INSERT INTO unanswered_question (id, owner_id, question, context, asked_at, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    """,
                    (
                        question.id,
                        question.owner_id,
                        question.question,
                        question.context,
                        question.asked_at,
                        question.created_at,
                    ),
                )
        except errors.UniqueViolation as exc:
            raise ConstraintViolation(
                "question id already exists", {"question_id": question.id}
            ) from exc
        return question

    def delete_question(self, owner_id: str, question_id: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "DELETE FROM unanswered_question WHERE owner_id = %s AND id = %s RETURNING id",
                (owner_id, question_id),
            ).fetchone()
        return row is not None

    # -- advisory update flag -------------------------------------------

    def try_mark_processing(self, owner_id: str, *, stale_after: timedelta) -> bool:
        with self._connect() as conn, conn.transaction():
            _ensure_owner_row(conn, owner_id)
            row = conn.execute(
                """
                UPDATE owner_configuration
                SET is_processing = TRUE, processing_started_at = now()
                WHERE owner_id = %s
                  AND (
                    is_processing = FALSE
                    OR processing_started_at IS NULL
                    OR processing_started_at < now() - %s
                  )
                RETURNING owner_id
                """,
                (owner_id, stale_after),
            ).fetchone()
        return row is not None

    def clear_processing(self, owner_id: str) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE owner_configuration SET is_processing = FALSE, processing_started_at = NULL WHERE owner_id = %s",
                (owner_id,),
            )
