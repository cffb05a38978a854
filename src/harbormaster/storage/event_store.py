# event_store.py
from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

import psycopg
from psycopg.rows import tuple_row

from harbormaster.core.models import ChangeEvent
from harbormaster.utils.logger import logger


class EventStore:
    """
    Append-only audit log of ChangeEvents:
      - record_event(event)
      - list_events(project=None, limit=100)
    Subscribe ``record_event`` to a ChangeNotifier to persist every event.
    On first connect it creates the table if it doesn't exist; with no DSN,
    or when the database is unreachable, the store stays disabled and every
    call is a no-op.
    """

    def __init__(self, dsn: Optional[str] = None):
        self.dsn = dsn
        self.enabled = False
        if not self.dsn:
            logger.info("POSTGRES_URL not set; event audit trail disabled")
            return
        try:
            with psycopg.connect(self.dsn, autocommit=True) as conn:
                with conn.cursor(row_factory=tuple_row) as cur:
                    cur.execute("""
                        CREATE TABLE IF NOT EXISTS change_events (
                          id        BIGSERIAL PRIMARY KEY,
                          project   TEXT        NOT NULL,
                          resource  TEXT        NOT NULL CHECK (resource IN ('container','network','volume')),
                          action    TEXT        NOT NULL CHECK (action IN ('created','started','stopped','removed')),
                          ts        TIMESTAMPTZ NOT NULL DEFAULT now()
                        )
                    """)
                    cur.execute(
                        "CREATE INDEX IF NOT EXISTS change_events_project_ts_idx ON change_events (project, ts DESC)"
                    )
            self.enabled = True
            logger.info("Event store connected")
        except psycopg.Error as e:
            logger.warning(f"Event store unavailable, audit trail disabled: {e}")
            self.enabled = False

    def record_event(self, event: ChangeEvent) -> None:
        if not self.enabled:
            return
        try:
            with psycopg.connect(self.dsn, autocommit=True) as conn, conn.cursor() as cur:
                cur.execute("""
                    INSERT INTO change_events(project,resource,action,ts)
                    VALUES (%s,%s,%s,%s)
                """, (event.project, event.type.value, event.action.value, event.timestamp))
        except psycopg.Error as e:
            logger.warning(f"Failed to record {event.type.value}/{event.action.value} for '{event.project}': {e}")

    def list_events(self, project: Optional[str] = None, limit: int = 100) -> List[Dict[str, Any]]:
        if not self.enabled:
            return []
        with psycopg.connect(self.dsn) as conn, conn.cursor(row_factory=tuple_row) as cur:
            if project:
                cur.execute("""
                    SELECT project,resource,action,ts
                    FROM change_events WHERE project=%s ORDER BY ts DESC LIMIT %s
                """, (project, limit))
            else:
                cur.execute("""
                    SELECT project,resource,action,ts
                    FROM change_events ORDER BY ts DESC LIMIT %s
                """, (limit,))
            rows = cur.fetchall()
        return [
            {"project": r[0], "type": r[1], "action": r[2], "timestamp": _iso(r[3])}
            for r in rows
        ]


def _iso(ts: Any) -> Any:
    return ts.isoformat() if isinstance(ts, datetime) else ts
