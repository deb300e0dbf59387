"""
Durable telemetry store.

Owns the schema for the four history tables and executes grouped writes
from the BatchWriter inside one transaction. All methods are blocking
(DB-API); the async side calls them through asyncio.to_thread.

Write groups:
    [("ping_history", "insert", [row, row, ...]),
     ("ping_history", "delete", [{"before": cutoff_ms}])]

Usage:
    store = TelemetryStore(DatabaseManager(db_path=...))
    store.initialize()
    store.write_batch(groups)
"""

import logging
from typing import Dict, List, Optional, Sequence, Tuple

from core.db import DatabaseManager, validate_identifier
from core.errors import StoreError
from core.timestamps import epoch_ms, from_epoch_ms

logger = logging.getLogger(__name__)

INSERT = "insert"
DELETE = "delete"

# Insertable columns per table, in statement order
TABLE_COLUMNS: Dict[str, Tuple[str, ...]] = {
    "ping_history": ("device_id", "status", "latency", "packet_loss", "timestamp"),
    "interface_history": (
        "device_id", "if_index", "if_name", "if_descr", "oper_status", "admin_status",
        "speed_mbps", "in_octets", "out_octets", "in_errors", "out_errors",
        "in_discards", "out_discards", "timestamp",
    ),
    "wireless_stats": ("device_id", "ssid", "signal", "noise_floor", "tx_rate", "rx_rate", "timestamp"),
    "flapping_events": (
        "device_id", "if_index", "if_name", "event_type", "from_speed", "to_speed",
        "from_status", "to_status", "severity", "timestamp",
    ),
}

SUPPORTED_OPERATIONS = (INSERT, DELETE)

WriteGroup = Tuple[str, str, List[dict]]

_SCHEMA = """
CREATE TABLE IF NOT EXISTS ping_history (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    device_id TEXT NOT NULL,
    status TEXT NOT NULL,
    latency REAL,
    packet_loss REAL NOT NULL DEFAULT 0,
    timestamp BIGINT_MS NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_ping_device_timestamp ON ping_history(device_id, timestamp);

CREATE TABLE IF NOT EXISTS interface_history (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    device_id TEXT NOT NULL,
    if_index INTEGER NOT NULL,
    if_name TEXT,
    if_descr TEXT,
    oper_status INTEGER,
    admin_status INTEGER,
    speed_mbps BIGINT_MS,
    in_octets BIGINT_MS,
    out_octets BIGINT_MS,
    in_errors BIGINT_MS,
    out_errors BIGINT_MS,
    in_discards BIGINT_MS,
    out_discards BIGINT_MS,
    timestamp BIGINT_MS NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_interface_device_timestamp ON interface_history(device_id, timestamp);
CREATE INDEX IF NOT EXISTS idx_interface_device_ifindex ON interface_history(device_id, if_index, timestamp);

CREATE TABLE IF NOT EXISTS wireless_stats (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    device_id TEXT NOT NULL,
    ssid TEXT,
    signal INTEGER,
    noise_floor INTEGER,
    tx_rate INTEGER,
    rx_rate INTEGER,
    timestamp BIGINT_MS NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_wireless_device_timestamp ON wireless_stats(device_id, timestamp);

CREATE TABLE IF NOT EXISTS flapping_events (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    device_id TEXT NOT NULL,
    if_index INTEGER NOT NULL,
    if_name TEXT,
    event_type TEXT NOT NULL,
    from_speed BIGINT_MS,
    to_speed BIGINT_MS,
    from_status INTEGER,
    to_status INTEGER,
    severity TEXT NOT NULL,
    timestamp BIGINT_MS NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_flapping_device_timestamp ON flapping_events(device_id, timestamp);
CREATE INDEX IF NOT EXISTS idx_flapping_timestamp ON flapping_events(timestamp);
"""


def _hours_ago_ms(hours: float) -> int:
    return epoch_ms() - int(hours * 3600 * 1000)


class TelemetryStore:
    """Schema owner and transactional writer for telemetry history."""

    def __init__(self, db: DatabaseManager):
        self.db = db

    def initialize(self):
        """Create tables and indexes if missing."""
        with self.db.connect() as conn:
            for statement in _SCHEMA.split(";"):
                if statement.strip():
                    conn.execute(self.db.adapt(statement))
        logger.info(
            f"Telemetry store ready ({'postgres' if self.db.use_postgres else self.db.db_path})"
        )

    def close(self):
        self.db.close()

    # =========================================================================
    # Writes
    # =========================================================================

    @staticmethod
    def supports(table: str, operation: str) -> bool:
        return table in TABLE_COLUMNS and operation in SUPPORTED_OPERATIONS

    def write_batch(self, groups: Sequence[WriteGroup]) -> int:
        """
        Execute every group inside a single transaction.

        Returns the number of payloads applied. Any failure rolls the whole
        batch back and is raised as StoreError.
        """
        applied = 0
        try:
            with self.db.connect() as conn:
                for table, operation, payloads in groups:
                    if not self.supports(table, operation):
                        raise ValueError(f"Unsupported write {operation} on {table}")
                    if operation == INSERT:
                        self._insert_many(conn, table, payloads)
                    else:
                        for payload in payloads:
                            self._delete_before(conn, table, payload)
                    applied += len(payloads)
        except Exception as e:
            raise StoreError(f"Batch of {sum(len(g[2]) for g in groups)} writes failed: {e}") from e
        return applied

    @staticmethod
    def _insert_many(conn, table: str, payloads: List[dict]):
        columns = TABLE_COLUMNS[table]
        placeholders = ", ".join("?" for _ in columns)
        sql = f"INSERT INTO {table} ({', '.join(columns)}) VALUES ({placeholders})"
        conn.executemany(sql, [tuple(p.get(c) for c in columns) for p in payloads])

    @staticmethod
    def _delete_before(conn, table: str, payload: dict):
        validate_identifier(table, "table")
        cutoff = payload.get("before")
        if cutoff is None:
            raise ValueError(f"Delete on {table} requires a 'before' cutoff")
        conn.execute(f"DELETE FROM {table} WHERE timestamp < ?", (int(cutoff),))

    # =========================================================================
    # Reads
    # =========================================================================

    def get_ping_history(self, device_id: str, hours: float = 24) -> List[dict]:
        """Raw ping samples of a device over the window, oldest first."""
        with self.db.connect() as conn:
            rows = conn.execute(
                "SELECT status, latency, packet_loss, timestamp FROM ping_history "
                "WHERE device_id = ? AND timestamp > ? ORDER BY timestamp ASC",
                (device_id, _hours_ago_ms(hours)),
            ).fetchall()

        return [
            {
                "status": row["status"],
                "latency": row["latency"],
                "packetLoss": row["packet_loss"],
                "timestamp": from_epoch_ms(row["timestamp"]).isoformat(),
            }
            for row in rows
        ]

    def get_latest_ping_statuses(self, hours: float = 24 * 30) -> Dict[str, dict]:
        """Most recent ping sample per device within the window, keyed by device id."""
        with self.db.connect() as conn:
            rows = conn.execute(
                """
                SELECT device_id, status, latency, packet_loss, timestamp
                FROM ping_history AS p1
                WHERE timestamp > ?
                AND timestamp = (
                    SELECT MAX(timestamp) FROM ping_history
                    WHERE device_id = p1.device_id
                )
                ORDER BY device_id
                """,
                (_hours_ago_ms(hours),),
            ).fetchall()

        latest: Dict[str, dict] = {}
        for row in rows:
            # Same-millisecond duplicates: first row wins
            latest.setdefault(row["device_id"], {
                "deviceId": row["device_id"],
                "status": row["status"],
                "latency": row["latency"],
                "packetLoss": row["packet_loss"],
                "lastChecked": from_epoch_ms(row["timestamp"]).isoformat(),
            })
        return latest

    def get_latest_interfaces(self, device_id: str) -> List[dict]:
        """Most recent sample per interface of a device."""
        with self.db.connect() as conn:
            rows = conn.execute(
                """
                SELECT device_id, if_index, if_name, oper_status, speed_mbps,
                       in_errors, out_errors, timestamp
                FROM interface_history AS ih
                WHERE device_id = ?
                AND timestamp = (
                    SELECT MAX(timestamp) FROM interface_history
                    WHERE device_id = ? AND if_index = ih.if_index
                )
                ORDER BY if_index
                """,
                (device_id, device_id),
            ).fetchall()

        return [
            {
                "deviceId": row["device_id"],
                "ifIndex": row["if_index"],
                "ifName": row["if_name"],
                "operStatus": row["oper_status"],
                "speedMbps": row["speed_mbps"],
                "inErrors": row["in_errors"],
                "outErrors": row["out_errors"],
                "lastChecked": from_epoch_ms(row["timestamp"]).isoformat(),
            }
            for row in rows
        ]

    def get_interface_history(self, device_id: str, if_index: int, hours: float = 24) -> List[dict]:
        with self.db.connect() as conn:
            rows = conn.execute(
                "SELECT * FROM interface_history "
                "WHERE device_id = ? AND if_index = ? AND timestamp > ? ORDER BY timestamp ASC",
                (device_id, if_index, _hours_ago_ms(hours)),
            ).fetchall()
        return [dict(row) for row in rows]

    def get_flapping_events(self, device_id: str, hours: float = 24) -> List[dict]:
        with self.db.connect() as conn:
            rows = conn.execute(
                "SELECT * FROM flapping_events "
                "WHERE device_id = ? AND timestamp > ? ORDER BY timestamp DESC",
                (device_id, _hours_ago_ms(hours)),
            ).fetchall()
        return [dict(row) for row in rows]

    def get_flapping_report(self, hours: float = 24, threshold: int = 5) -> List[dict]:
        """Per-interface event counts over the window, busiest first."""
        with self.db.connect() as conn:
            rows = conn.execute(
                """
                SELECT device_id, if_index, MAX(if_name) AS if_name,
                       COUNT(*) AS change_count,
                       MIN(timestamp) AS first_change,
                       MAX(timestamp) AS last_change
                FROM flapping_events
                WHERE timestamp > ?
                GROUP BY device_id, if_index
                ORDER BY change_count DESC
                """,
                (_hours_ago_ms(hours),),
            ).fetchall()

        return [
            {
                "deviceId": row["device_id"],
                "ifIndex": row["if_index"],
                "ifName": row["if_name"],
                "changeCount": row["change_count"],
                "firstChange": from_epoch_ms(row["first_change"]).isoformat(),
                "lastChange": from_epoch_ms(row["last_change"]).isoformat(),
                "isFlapping": row["change_count"] >= threshold,
            }
            for row in rows
        ]

    def count_rows(self, table: str, device_id: Optional[str] = None) -> int:
        validate_identifier(table, "table")
        sql = f"SELECT COUNT(*) AS n FROM {table}"
        params: tuple = ()
        if device_id is not None:
            sql += " WHERE device_id = ?"
            params = (device_id,)
        with self.db.connect() as conn:
            row = conn.execute(sql, params).fetchone()
        return int(row["n"])
