from __future__ import annotations

from pathlib import Path
import sqlite3
from typing import Callable, List, Optional, Tuple

import pydantic
from sanic.log import logger

from lifeline.errors import RequestNotFound, VersionConflict
from lifeline.model import utcnow
from lifeline.storage.types import DeliveryRow, RequestRow, StreamStateRow


# total tries for a read-mutate-write cycle racing another writer
UPDATE_ATTEMPTS = 3

SCHEMA = """
CREATE TABLE IF NOT EXISTS requests (
    id TEXT PRIMARY KEY,
    payload_json TEXT NOT NULL,
    version INTEGER NOT NULL,
    target_owner TEXT NULL,
    target_repo TEXT NULL,
    pr_number INTEGER NULL,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS webhook_deliveries (
    delivery_id TEXT PRIMARY KEY,
    event TEXT NULL,
    received_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS stream_state (
    key TEXT PRIMARY KEY,
    payload_json TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_requests_repo_pr
    ON requests (target_owner, target_repo, pr_number);
CREATE INDEX IF NOT EXISTS idx_requests_updated_at
    ON requests (updated_at);
"""

STREAM_KEY = "github"


def utcnow_iso() -> str:
    return utcnow().strftime("%Y-%m-%dT%H:%M:%S.%fZ")


class RequestStore:
    """Key-value persistence for request snapshots, delivery records and stream state.

    Snapshots are stored whole. Writes made through :meth:`update_request` are
    compare-and-swap on the snapshot ``version``, so a concurrent writer loses
    with :class:`VersionConflict` instead of silently overwriting.
    """

    def __init__(self, db_path: str | Path):
        self.db_path = Path(db_path)

    def initialize(self) -> None:
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        with self._connect() as conn:
            conn.executescript(SCHEMA)

    def get_request(self, request_id: str) -> Optional[RequestRow]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT payload_json FROM requests WHERE id = ?", (request_id,)
            ).fetchone()
        if row is None:
            return None
        return RequestRow.model_validate_json(row[0])

    def put_request(
        self, request: RequestRow, expected_version: Optional[int] = None
    ) -> RequestRow:
        params = {
            "id": request.id,
            "payload_json": request.model_dump_json(),
            "version": request.version,
            "target_owner": request.target_owner,
            "target_repo": request.target_repo,
            "pr_number": request.pr.number if request.pr is not None else None,
            "created_at": utcnow_iso(),
            "updated_at": utcnow_iso(),
        }
        with self._connect() as conn:
            if expected_version is None:
                conn.execute(
                    """
                    INSERT INTO requests (
                        id, payload_json, version, target_owner, target_repo,
                        pr_number, created_at, updated_at
                    ) VALUES (
                        :id, :payload_json, :version, :target_owner, :target_repo,
                        :pr_number, :created_at, :updated_at
                    )
                    ON CONFLICT(id) DO UPDATE SET
                        payload_json = excluded.payload_json,
                        version = excluded.version,
                        target_owner = excluded.target_owner,
                        target_repo = excluded.target_repo,
                        pr_number = excluded.pr_number,
                        updated_at = excluded.updated_at
                    """,
                    params,
                )
                return request

            cursor = conn.execute(
                """
                UPDATE requests
                SET payload_json = :payload_json,
                    version = :version,
                    target_owner = :target_owner,
                    target_repo = :target_repo,
                    pr_number = :pr_number,
                    updated_at = :updated_at
                WHERE id = :id AND version = :expected_version
                """,
                {**params, "expected_version": expected_version},
            )
            if cursor.rowcount == 0:
                raise VersionConflict(
                    f"Version conflict while saving {request.id} "
                    f"(expected version {expected_version})"
                )
        return request

    def update_request(
        self,
        request_id: str,
        mutate: Callable[[RequestRow], Optional[RequestRow]],
        attempts: int = 1,
    ) -> Tuple[RequestRow, bool]:
        """Read, mutate and persist a request.

        ``mutate`` receives a private copy and returns the new snapshot, or
        None to signal that nothing changed (no write happens then). On a
        version conflict the request is re-read and ``mutate`` applied again,
        up to ``attempts`` times in total, before the conflict is raised.
        """
        for attempt in range(1, attempts + 1):
            current = self.get_request(request_id)
            if current is None:
                raise RequestNotFound(request_id)

            candidate = mutate(current.model_copy(deep=True))
            if candidate is None:
                return current, False

            candidate.version = current.version + 1
            candidate.updated_at = utcnow()
            try:
                self.put_request(candidate, expected_version=current.version)
            except VersionConflict:
                if attempt >= attempts:
                    raise
                logger.debug(
                    "Retrying update of %s after version conflict (%d/%d)",
                    request_id,
                    attempt,
                    attempts,
                )
                continue
            return candidate, True
        raise ValueError(f"attempts must be positive, got {attempts}")

    def list_requests(self, limit: int = 50) -> List[RequestRow]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT payload_json FROM requests ORDER BY updated_at DESC LIMIT ?",
                (limit,),
            ).fetchall()
        return [RequestRow.model_validate_json(row[0]) for row in rows]

    def find_request_id_by_pr(
        self, owner: str, repo: str, pr_number: int
    ) -> Optional[str]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT id FROM requests
                WHERE target_owner = ? AND target_repo = ? AND pr_number = ?
                ORDER BY updated_at DESC
                LIMIT 1
                """,
                (owner, repo, pr_number),
            ).fetchone()
        return row[0] if row is not None else None

    def has_delivery(self, delivery_id: str) -> bool:
        if not delivery_id:
            return False
        with self._connect() as conn:
            row = conn.execute(
                "SELECT 1 FROM webhook_deliveries WHERE delivery_id = ?",
                (delivery_id,),
            ).fetchone()
        return row is not None

    def get_delivery(self, delivery_id: str) -> Optional[DeliveryRow]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT delivery_id, event, received_at
                FROM webhook_deliveries
                WHERE delivery_id = ?
                """,
                (delivery_id,),
            ).fetchone()
        if row is None:
            return None
        return DeliveryRow(delivery_id=row[0], event=row[1], received_at=row[2])

    def record_delivery(self, delivery_id: str, event: Optional[str]) -> bool:
        if not delivery_id:
            return False
        with self._connect() as conn:
            cursor = conn.execute(
                """
                INSERT INTO webhook_deliveries (delivery_id, event, received_at)
                VALUES (?, ?, ?)
                ON CONFLICT(delivery_id) DO NOTHING
                """,
                (delivery_id, event, utcnow_iso()),
            )
        return cursor.rowcount > 0

    def get_stream_state(self) -> StreamStateRow:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT payload_json FROM stream_state WHERE key = ?", (STREAM_KEY,)
            ).fetchone()
        if row is None:
            return StreamStateRow()
        try:
            return StreamStateRow.model_validate_json(row[0])
        except pydantic.ValidationError:
            logger.warning("Discarding unreadable stream state", exc_info=True)
            return StreamStateRow()

    def put_stream_state(self, state: StreamStateRow) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO stream_state (key, payload_json, updated_at)
                VALUES (?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET
                    payload_json = excluded.payload_json,
                    updated_at = excluded.updated_at
                """,
                (STREAM_KEY, state.model_dump_json(), utcnow_iso()),
            )

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self.db_path), timeout=10.0)
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA synchronous=NORMAL")
        conn.execute("PRAGMA busy_timeout=10000")
        return conn
