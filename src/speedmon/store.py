"""
SQLite-backed result store.

Only the single result record written per completed measurement lives here;
the broader reporting schema belongs to the administration layer.
"""

from __future__ import annotations

import json
import logging
import sqlite3
from datetime import datetime, timezone
from typing import Any, Dict, List

from .errors import StoreError
from .measurement import ResultRecord

LOGGER = logging.getLogger(__name__)


class SQLiteResultStore:
    def __init__(self, db_path: str = "speedmon.db"):
        self.db_path = db_path

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        return conn

    def initialize(self) -> None:
        """Create the results table and its index if they don't exist."""
        conn = self._connect()
        try:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS speed_tests (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    office_id TEXT NOT NULL,
                    download REAL NOT NULL,
                    upload REAL NOT NULL,
                    ping REAL NOT NULL,
                    jitter REAL,
                    packet_loss REAL,
                    isp TEXT NOT NULL,
                    server_id TEXT,
                    server_name TEXT,
                    raw_data TEXT,
                    timestamp TEXT NOT NULL
                )
                """
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_speed_tests_office_timestamp "
                "ON speed_tests (office_id, timestamp DESC)"
            )
            conn.commit()
        finally:
            conn.close()
        LOGGER.info(f"Result store ready at {self.db_path}")

    def create_measurement_result(self, record: ResultRecord) -> int:
        """Insert one record and return its row id. Raises StoreError on failure."""
        try:
            conn = self._connect()
            try:
                cursor = conn.execute(
                    """
                    INSERT INTO speed_tests (
                        office_id, download, upload, ping, jitter, packet_loss,
                        isp, server_id, server_name, raw_data, timestamp
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        record.office_id,
                        record.download,
                        record.upload,
                        record.ping,
                        record.jitter,
                        record.packet_loss,
                        record.isp,
                        record.server_id,
                        record.server_name,
                        record.raw_data,
                        datetime.now(timezone.utc).isoformat(),
                    ),
                )
                conn.commit()
                return int(cursor.lastrowid)
            finally:
                conn.close()
        except sqlite3.Error as e:
            raise StoreError(f"Could not save result for office {record.office_id!r}: {e}") from e

    def list_results(self, office_id: str, limit: int = 100) -> List[Dict[str, Any]]:
        conn = self._connect()
        try:
            rows = conn.execute(
                "SELECT * FROM speed_tests WHERE office_id = ? ORDER BY id DESC LIMIT ?",
                (office_id, limit),
            ).fetchall()
        finally:
            conn.close()

        results = []
        for row in rows:
            row_dict = dict(row)
            row_dict["raw_data"] = json.loads(row_dict["raw_data"]) if row_dict["raw_data"] else None
            results.append(row_dict)
        return results
