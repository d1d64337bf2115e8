"""DuckDB storage for managed devices, bonus sessions and the activity log.

The store is the single source of durable truth. Timestamps are kept as
naive UTC TIMESTAMP columns and converted back to aware datetimes on read.
"""

import json
import logging
import shutil
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

import duckdb

from netcurfew.errors import StorageError
from netcurfew.models.devices import (
    ActivityAction,
    ActivityLogEntry,
    BlockReason,
    BonusSession,
    ManagedDevice,
    Schedule,
)

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1

# Sentinel: update_block_status without a compare-and-swap condition
_ANY = object()


def _to_db(value: Optional[datetime]) -> Optional[datetime]:
    """Convert an aware datetime to naive UTC for storage."""
    if value is None:
        return None
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def _from_db(value: Optional[datetime]) -> Optional[datetime]:
    """Make a stored naive UTC timestamp offset-aware."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value


def _reason(value: Optional[str]) -> Optional[BlockReason]:
    if value is None:
        return None
    try:
        return BlockReason(value)
    except ValueError:
        logger.warning(f"Unknown block reason in store: {value!r}")
        return None


class DeviceStore:
    """DuckDB-backed storage for access-control state."""

    def __init__(self, db_path: Path, read_only: bool = False) -> None:
        """Initialize the device store.

        Args:
            db_path: Path to the DuckDB database file. Use ":memory:" for in-memory.
            read_only: If True, open in read-only mode (works while the daemon holds the file).
        """
        self.db_path = db_path
        self.read_only = read_only
        self._conn: Optional[duckdb.DuckDBPyConnection] = None
        self._temp_db_path: Optional[Path] = None

    def connect(self) -> None:
        """Open database connection and ensure schema exists.

        Raises:
            StorageError: the file is locked by another process (write mode only)
        """
        in_memory = self.db_path == Path(":memory:")
        db_str = ":memory:" if in_memory else str(self.db_path)

        # A missing file is created (with schema) even for readers
        if self.read_only and not in_memory and self.db_path.exists():
            try:
                self._conn = duckdb.connect(db_str, read_only=True)
            except duckdb.IOException:
                # Locked by the daemon: read from a copy of the .db and its .wal
                temp_dir = tempfile.mkdtemp(prefix="netcurfew_")
                self._temp_db_path = Path(temp_dir) / "netcurfew.db"
                shutil.copy2(self.db_path, self._temp_db_path)
                wal_path = Path(str(self.db_path) + ".wal")
                if wal_path.exists():
                    shutil.copy2(wal_path, Path(temp_dir) / "netcurfew.db.wal")
                logger.debug(f"{self.db_path} is locked, reading from {self._temp_db_path}")
                self._conn = duckdb.connect(str(self._temp_db_path), read_only=True)
            return

        try:
            self._conn = duckdb.connect(db_str)
        except duckdb.IOException as e:
            raise StorageError(
                f"Cannot open {self.db_path}: {e}. "
                "Another netcurfew process (netcurfew run) may hold it; stop it first."
            ) from e
        self._ensure_schema()

    def close(self) -> None:
        """Close database connection."""
        if self._conn:
            self._conn.close()
            self._conn = None
        if self._temp_db_path is not None:
            shutil.rmtree(self._temp_db_path.parent, ignore_errors=True)
            self._temp_db_path = None

    def __enter__(self) -> "DeviceStore":
        self.connect()
        return self

    def __exit__(self, *args: object) -> None:
        self.close()

    @property
    def conn(self) -> duckdb.DuckDBPyConnection:
        """Get the database connection, raising if not connected."""
        if self._conn is None:
            raise RuntimeError("DeviceStore not connected. Call connect() first.")
        return self._conn

    def _ensure_schema(self) -> None:
        """Create tables if they don't exist."""
        self.conn.execute("""
            CREATE TABLE IF NOT EXISTS schema_version (
                version INTEGER PRIMARY KEY,
                applied_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            )
        """)

        result = self.conn.execute(
            "SELECT MAX(version) FROM schema_version"
        ).fetchone()
        current_version = result[0] if result and result[0] else 0

        if current_version < SCHEMA_VERSION:
            self._apply_schema()
            self.conn.execute(
                "INSERT INTO schema_version (version) VALUES (?)",
                [SCHEMA_VERSION]
            )

    def _apply_schema(self) -> None:
        """Apply the database schema."""
        self.conn.execute("""
            CREATE TABLE IF NOT EXISTS managed_devices (
                mac VARCHAR PRIMARY KEY,
                display_name VARCHAR NOT NULL,
                ip VARCHAR,
                vendor VARCHAR,

                desired_blocked BOOLEAN NOT NULL DEFAULT FALSE,
                block_reason VARCHAR,
                blocked_until TIMESTAMP,
                schedule_json VARCHAR NOT NULL DEFAULT '{}',

                -- Cache of the controller's state, never an authority
                last_known_actual_blocked BOOLEAN NOT NULL DEFAULT FALSE,

                created_at TIMESTAMP NOT NULL,
                updated_at TIMESTAMP NOT NULL
            )
        """)

        self.conn.execute("""
            CREATE TABLE IF NOT EXISTS bonus_sessions (
                mac VARCHAR PRIMARY KEY,
                started_at TIMESTAMP NOT NULL,
                expires_at TIMESTAMP NOT NULL,
                requested_minutes INTEGER NOT NULL,
                was_blocked_before_start BOOLEAN NOT NULL
            )
        """)

        self.conn.execute("""
            CREATE TABLE IF NOT EXISTS activity_log (
                id VARCHAR PRIMARY KEY,
                mac VARCHAR NOT NULL,
                action VARCHAR NOT NULL,
                reason VARCHAR,
                duration_minutes INTEGER,
                timestamp TIMESTAMP NOT NULL
            )
        """)

        self.conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_activity_mac_timestamp
            ON activity_log (mac, timestamp)
        """)

    # ------------------------------------------------------------------
    # Managed devices
    # ------------------------------------------------------------------

    _DEVICE_SELECT = """
        SELECT
            d.mac, d.display_name, d.ip, d.vendor,
            d.desired_blocked, d.block_reason, d.blocked_until, d.schedule_json,
            d.last_known_actual_blocked, d.created_at, d.updated_at,
            b.started_at AS bonus_started_at,
            b.expires_at AS bonus_expires_at,
            b.requested_minutes AS bonus_requested_minutes,
            b.was_blocked_before_start AS bonus_was_blocked
        FROM managed_devices d
        LEFT JOIN bonus_sessions b ON b.mac = d.mac
    """

    def _fetch_devices(self, where: str = "", params: Optional[list[Any]] = None) -> list[ManagedDevice]:
        result = self.conn.execute(
            self._DEVICE_SELECT + where + " ORDER BY d.display_name, d.mac",
            params or [],
        )
        columns = [desc[0] for desc in result.description]
        return [self._row_to_device(dict(zip(columns, row))) for row in result.fetchall()]

    def _row_to_device(self, row: dict[str, Any]) -> ManagedDevice:
        try:
            schedule = Schedule.from_dict(json.loads(row["schedule_json"] or "{}"))
        except (ValueError, TypeError) as e:
            # json.JSONDecodeError and ValidationError both derive from these
            logger.warning(f"Ignoring unreadable schedule for {row['mac']}: {e}")
            schedule = Schedule()

        bonus = None
        if row["bonus_expires_at"] is not None:
            bonus = BonusSession(
                mac=row["mac"],
                started_at=_from_db(row["bonus_started_at"]),
                expires_at=_from_db(row["bonus_expires_at"]),
                requested_minutes=row["bonus_requested_minutes"],
                was_blocked_before_start=bool(row["bonus_was_blocked"]),
            )

        return ManagedDevice(
            mac=row["mac"],
            display_name=row["display_name"],
            ip=row["ip"],
            vendor=row["vendor"],
            desired_blocked=bool(row["desired_blocked"]),
            block_reason=_reason(row["block_reason"]),
            blocked_until=_from_db(row["blocked_until"]),
            schedule=schedule,
            last_known_actual_blocked=bool(row["last_known_actual_blocked"]),
            bonus_session=bonus,
            created_at=_from_db(row["created_at"]),
            updated_at=_from_db(row["updated_at"]),
        )

    def get_managed_devices(self) -> list[ManagedDevice]:
        """Return all managed devices, ordered by display name."""
        return self._fetch_devices()

    def get_managed_device(self, mac: str) -> Optional[ManagedDevice]:
        """Return one managed device, or None if it is not managed."""
        devices = self._fetch_devices(" WHERE d.mac = ?", [mac])
        return devices[0] if devices else None

    def upsert_managed_device(self, device: ManagedDevice) -> None:
        """Insert a device record or replace every field but created_at."""
        now = datetime.now(timezone.utc)
        self.conn.execute("""
            INSERT INTO managed_devices (
                mac, display_name, ip, vendor, desired_blocked, block_reason,
                blocked_until, schedule_json, last_known_actual_blocked,
                created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT (mac) DO UPDATE SET
                display_name = EXCLUDED.display_name,
                ip = EXCLUDED.ip,
                vendor = EXCLUDED.vendor,
                desired_blocked = EXCLUDED.desired_blocked,
                block_reason = EXCLUDED.block_reason,
                blocked_until = EXCLUDED.blocked_until,
                schedule_json = EXCLUDED.schedule_json,
                last_known_actual_blocked = EXCLUDED.last_known_actual_blocked,
                updated_at = EXCLUDED.updated_at
        """, [
            device.mac,
            device.display_name,
            device.ip,
            device.vendor,
            device.desired_blocked,
            device.block_reason.value if device.block_reason else None,
            _to_db(device.blocked_until),
            json.dumps(device.schedule.to_dict()),
            device.last_known_actual_blocked,
            _to_db(device.created_at or now),
            _to_db(now),
        ])

    def update_block_status(
        self,
        mac: str,
        blocked: bool,
        reason: Optional[BlockReason],
        blocked_until: Optional[datetime] = None,
        *,
        desired_blocked: Optional[bool] = None,
        expected_reason: Any = _ANY,
    ) -> bool:
        """Record a block state change.

        Args:
            mac: Device MAC
            blocked: New actual-blocked state
            reason: Why the state changed
            blocked_until: Expiry of a temporary block (None clears it)
            desired_blocked: New manual intent, or None to leave it unchanged
            expected_reason: If given, only update when the stored block_reason
                still equals this value (compare-and-swap)

        Returns:
            True if a row was updated
        """
        sets = [
            "last_known_actual_blocked = ?",
            "block_reason = ?",
            "blocked_until = ?",
            "updated_at = ?",
        ]
        params: list[Any] = [
            blocked,
            reason.value if reason else None,
            _to_db(blocked_until),
            _to_db(datetime.now(timezone.utc)),
        ]
        if desired_blocked is not None:
            sets.append("desired_blocked = ?")
            params.append(desired_blocked)

        where = "mac = ?"
        params.append(mac)
        if expected_reason is not _ANY:
            where += " AND block_reason IS NOT DISTINCT FROM ?"
            params.append(expected_reason.value if expected_reason else None)

        result = self.conn.execute(
            f"UPDATE managed_devices SET {', '.join(sets)} WHERE {where}",
            params,
        ).fetchone()
        return bool(result and result[0])

    def clear_blocked_until(self, mac: str) -> None:
        """Drop an expired temporary-block deadline."""
        self.conn.execute("""
            UPDATE managed_devices
            SET blocked_until = NULL, updated_at = ?
            WHERE mac = ?
        """, [_to_db(datetime.now(timezone.utc)), mac])

    def update_schedule(self, mac: str, schedule: Schedule) -> bool:
        """Replace a device's weekly schedule. Returns True if the device exists."""
        result = self.conn.execute("""
            UPDATE managed_devices
            SET schedule_json = ?, updated_at = ?
            WHERE mac = ?
        """, [
            json.dumps(schedule.to_dict()),
            _to_db(datetime.now(timezone.utc)),
            mac,
        ]).fetchone()
        return bool(result and result[0])

    def remove_managed_device(self, mac: str) -> bool:
        """Delete a device and its bonus session. The activity log is kept."""
        self.conn.execute("DELETE FROM bonus_sessions WHERE mac = ?", [mac])
        result = self.conn.execute(
            "DELETE FROM managed_devices WHERE mac = ?", [mac]
        ).fetchone()
        return bool(result and result[0])

    # ------------------------------------------------------------------
    # Bonus sessions
    # ------------------------------------------------------------------

    def save_bonus_session(self, session: BonusSession) -> None:
        """Persist a bonus session, replacing any existing one for the mac."""
        self.conn.execute("""
            INSERT INTO bonus_sessions (
                mac, started_at, expires_at, requested_minutes, was_blocked_before_start
            ) VALUES (?, ?, ?, ?, ?)
            ON CONFLICT (mac) DO UPDATE SET
                started_at = EXCLUDED.started_at,
                expires_at = EXCLUDED.expires_at,
                requested_minutes = EXCLUDED.requested_minutes,
                was_blocked_before_start = EXCLUDED.was_blocked_before_start
        """, [
            session.mac,
            _to_db(session.started_at),
            _to_db(session.expires_at),
            session.requested_minutes,
            session.was_blocked_before_start,
        ])

    def get_bonus_session(self, mac: str) -> Optional[BonusSession]:
        row = self.conn.execute("""
            SELECT mac, started_at, expires_at, requested_minutes, was_blocked_before_start
            FROM bonus_sessions WHERE mac = ?
        """, [mac]).fetchone()
        return self._row_to_session(row) if row else None

    def get_bonus_sessions(self) -> list[BonusSession]:
        rows = self.conn.execute("""
            SELECT mac, started_at, expires_at, requested_minutes, was_blocked_before_start
            FROM bonus_sessions ORDER BY expires_at
        """).fetchall()
        return [self._row_to_session(row) for row in rows]

    def delete_bonus_session(self, mac: str, expires_at: Optional[datetime] = None) -> bool:
        """Delete a bonus session.

        Args:
            mac: Device MAC
            expires_at: If given, only delete the session with this expiry, so a
                stale timer cannot remove a session that replaced it

        Returns:
            True if a session was deleted
        """
        if expires_at is None:
            result = self.conn.execute(
                "DELETE FROM bonus_sessions WHERE mac = ?", [mac]
            ).fetchone()
        else:
            result = self.conn.execute(
                "DELETE FROM bonus_sessions WHERE mac = ? AND expires_at = ?",
                [mac, _to_db(expires_at)],
            ).fetchone()
        return bool(result and result[0])

    @staticmethod
    def _row_to_session(row: tuple) -> BonusSession:
        return BonusSession(
            mac=row[0],
            started_at=_from_db(row[1]),
            expires_at=_from_db(row[2]),
            requested_minutes=row[3],
            was_blocked_before_start=bool(row[4]),
        )

    # ------------------------------------------------------------------
    # Activity log
    # ------------------------------------------------------------------

    def append_activity_log(self, entry: ActivityLogEntry) -> str:
        """Insert an activity log entry and return its ID."""
        self.conn.execute("""
            INSERT INTO activity_log (id, mac, action, reason, duration_minutes, timestamp)
            VALUES (?, ?, ?, ?, ?, ?)
        """, [
            entry.id,
            entry.mac,
            entry.action.value,
            entry.reason.value if entry.reason else None,
            entry.duration_minutes,
            _to_db(entry.timestamp),
        ])
        return entry.id

    def get_activity_log(self, mac: Optional[str] = None, limit: int = 100) -> list[ActivityLogEntry]:
        """Return recent activity, newest first."""
        query = """
            SELECT id, mac, action, reason, duration_minutes, timestamp
            FROM activity_log
        """
        params: list[Any] = []
        if mac:
            query += " WHERE mac = ?"
            params.append(mac)
        query += " ORDER BY timestamp DESC, rowid DESC LIMIT ?"
        params.append(limit)

        entries = []
        for row in self.conn.execute(query, params).fetchall():
            entries.append(ActivityLogEntry(
                id=row[0],
                mac=row[1],
                action=ActivityAction(row[2]),
                reason=_reason(row[3]),
                duration_minutes=row[4],
                timestamp=_from_db(row[5]),
            ))
        return entries
