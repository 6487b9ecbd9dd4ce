"""
Parquet report tables for sync runs.

Each report lives under data/<scope_key>/<table_name>/ and is queryable at
any time via:

    SELECT * FROM read_parquet('data/example.com/discrepancies/*.parquet')

Snapshot tables (group list, violations, ...) are replaced as a whole on
every write. Log tables (activity_log, update_log) are append-only: each
write adds one file.
"""

import logging
import os
import threading
from datetime import datetime
from pathlib import Path

import duckdb

logger = logging.getLogger(__name__)

GROUP_LIST = "group_list"
GROUP_METADATA = "group_metadata"
SETTINGS_METADATA = "settings_metadata"
DETAIL_REPORT = "detail_report"
SUMMARY_REPORT = "summary_report"
DISCREPANCIES = "discrepancies"
ACTIVITY_LOG = "activity_log"
UPDATE_LOG = "update_log"

SNAPSHOT_TABLES = frozenset(
    {GROUP_LIST, GROUP_METADATA, SETTINGS_METADATA, DETAIL_REPORT, SUMMARY_REPORT, DISCREPANCIES}
)
LOG_TABLES = frozenset({ACTIVITY_LOG, UPDATE_LOG})

_SNAPSHOT_FILE = "current.parquet"


class ReportWriter:
    """
    Writes report rows (list of dicts) as parquet via in-memory DuckDB.

    Usage:
        writer = ReportWriter('data', 'example.com')
        writer.replace_table('summary_report', rows)
        writer.append_table('activity_log', [event])
        writer.read_table('discrepancies')
    """

    def __init__(self, data_dir: str = "data", scope_key: str = "default"):
        self.data_dir = Path(data_dir)
        self.scope_key = scope_key
        self.scope_dir = self.data_dir / scope_key

        self._lock = threading.Lock()
        self._batch_num = 0
        self._session_ts = datetime.now().strftime("%Y%m%d_%H%M%S_%f")
        self._rows_written = 0

        logger.info(f"ReportWriter initialized: {self.scope_dir}")

    def table_dir(self, table_name: str) -> Path:
        return self.scope_dir / table_name

    def replace_table(self, table_name: str, rows: list[dict]) -> None:
        """Atomically replace a snapshot table. An empty list clears it."""
        if table_name in LOG_TABLES:
            raise ValueError(f"{table_name} is append-only")
        out_dir = self.table_dir(table_name)
        out_path = out_dir / _SNAPSHOT_FILE

        if not rows:
            if out_path.exists():
                out_path.unlink()
                logger.debug(f"Cleared {table_name}")
            return

        out_dir.mkdir(parents=True, exist_ok=True)
        tmp_path = out_dir / f".{self._session_ts}.tmp"
        self._write_parquet(rows, str(tmp_path))
        os.replace(tmp_path, out_path)
        self._rows_written += len(rows)
        logger.debug(f"Wrote {len(rows)} rows to {table_name}")

    def append_table(self, table_name: str, rows: list[dict]) -> None:
        if table_name in SNAPSHOT_TABLES:
            raise ValueError(f"{table_name} is a snapshot table; use replace_table")
        if not rows:
            return

        with self._lock:
            batch_num = self._batch_num
            self._batch_num += 1

        out_dir = self.table_dir(table_name)
        out_dir.mkdir(parents=True, exist_ok=True)
        out_path = out_dir / f"{self._session_ts}_{batch_num:04d}.parquet"
        self._write_parquet(rows, str(out_path))
        self._rows_written += len(rows)
        logger.debug(f"Appended {len(rows)} rows to {table_name} ({out_path.name})")

    def read_table(self, table_name: str, sql_suffix: str = "") -> list[dict]:
        """Return all rows of a table as dicts; [] if nothing was written yet."""
        table_dir = self.table_dir(table_name)
        if not table_dir.exists() or not list(table_dir.glob("*.parquet")):
            return []

        pattern = str(table_dir / "*.parquet")
        conn = duckdb.connect()
        try:
            cursor = conn.execute(f"SELECT * FROM read_parquet('{pattern}') {sql_suffix}")
            columns = [d[0] for d in cursor.description]
            return [dict(zip(columns, row)) for row in cursor.fetchall()]
        finally:
            conn.close()

    def get_write_stats(self) -> dict:
        return {"rows_written": self._rows_written}

    def _write_parquet(self, rows: list[dict], path: str):
        """Write a list of dicts to a parquet file using in-memory DuckDB."""
        import pyarrow as pa

        table = pa.Table.from_pylist(rows)
        conn = duckdb.connect()
        try:
            conn.register("_batch", table)
            conn.execute(f"COPY _batch TO '{path}' (FORMAT PARQUET, COMPRESSION ZSTD)")
        finally:
            conn.close()

    def close(self):
        logger.info(f"ReportWriter closed: {self.scope_dir}")
