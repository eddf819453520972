"""
Database module for notifications and camera records.

Uses SQLite for simplicity and no external dependencies.  The relay and the
diagnostics engine never import this module; ``main`` hands them a callback
that writes notifications here.
"""

import json
import os
import sqlite3
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path

DB_PATH = Path(
    os.environ.get(
        "CAMERA_RELAY_DB",
        Path(__file__).resolve().parent.parent / "data" / "camera_relay.db",
    )
)

SEVERITIES = ("info", "warning", "alert")

DEFAULT_CAMERA_SETTINGS = {
    "brightness": 0,
    "contrast": 0,
    "saturation": 0,
    "night_mode": False,
    "bw_mode": False,
    "auto_exposure": True,
}

# Columns a camera update may touch
CAMERA_COLUMNS = (
    "name",
    "ip_address",
    "rtsp_port",
    "username",
    "password",
    "main_stream_path",
    "sub_stream_path",
    "is_active",
    "is_default",
)


@dataclass
class Notification:
    """A stored event record."""

    id: int
    title: str
    message: str
    severity: str
    timestamp: float
    is_read: bool
    camera_id: int | None


@dataclass
class Camera:
    """Database record for a camera."""

    id: int
    name: str
    ip_address: str
    rtsp_port: int
    username: str
    password: str
    main_stream_path: str
    sub_stream_path: str | None
    is_active: bool
    is_default: bool
    settings: dict = field(default_factory=lambda: dict(DEFAULT_CAMERA_SETTINGS))


@contextmanager
def get_db():
    """Context manager for database connections."""
    conn = sqlite3.connect(str(DB_PATH))
    conn.row_factory = sqlite3.Row
    try:
        yield conn
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()


def init_db() -> None:
    """Initialize database schema."""
    DB_PATH.parent.mkdir(parents=True, exist_ok=True)

    with get_db() as conn:
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS notifications (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                title TEXT NOT NULL,
                message TEXT NOT NULL,
                severity TEXT NOT NULL DEFAULT 'info',
                timestamp REAL NOT NULL,
                is_read BOOLEAN NOT NULL DEFAULT 0,
                camera_id INTEGER
            )
        """
        )

        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS cameras (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                name TEXT NOT NULL,
                ip_address TEXT NOT NULL,
                rtsp_port INTEGER NOT NULL DEFAULT 554,
                username TEXT NOT NULL DEFAULT '',
                password TEXT NOT NULL DEFAULT '',
                main_stream_path TEXT NOT NULL,
                sub_stream_path TEXT,
                is_active BOOLEAN NOT NULL DEFAULT 1,
                is_default BOOLEAN NOT NULL DEFAULT 0,
                settings TEXT NOT NULL
            )
        """
        )

        conn.execute("CREATE INDEX IF NOT EXISTS idx_notification_time ON notifications(timestamp)")


# ── Notifications ───────────────────────────────────────────────────
def _row_to_notification(row: sqlite3.Row) -> Notification:
    return Notification(
        id=row["id"],
        title=row["title"],
        message=row["message"],
        severity=row["severity"],
        timestamp=row["timestamp"],
        is_read=bool(row["is_read"]),
        camera_id=row["camera_id"],
    )


def create_notification(
    title: str, message: str, severity: str = "info", camera_id: int | None = None
) -> Notification:
    """Store an event record."""
    if severity not in SEVERITIES:
        raise ValueError(f"Unknown notification severity '{severity}'")
    timestamp = time.time()

    with get_db() as conn:
        cursor = conn.execute(
            "INSERT INTO notifications (title, message, severity, timestamp, camera_id) "
            "VALUES (?, ?, ?, ?, ?)",
            (title, message, severity, timestamp, camera_id),
        )
        notification_id = cursor.lastrowid

    return Notification(
        id=notification_id,
        title=title,
        message=message,
        severity=severity,
        timestamp=timestamp,
        is_read=False,
        camera_id=camera_id,
    )


def get_notifications(limit: int | None = None) -> list[Notification]:
    """Newest first."""
    query = "SELECT * FROM notifications ORDER BY timestamp DESC, id DESC"
    params: tuple = ()
    if limit is not None:
        query += " LIMIT ?"
        params = (limit,)
    with get_db() as conn:
        rows = conn.execute(query, params).fetchall()
    return [_row_to_notification(row) for row in rows]


def get_unread_notifications_count() -> int:
    with get_db() as conn:
        row = conn.execute("SELECT COUNT(*) AS n FROM notifications WHERE is_read = 0").fetchone()
    return row["n"]


def mark_notification_as_read(notification_id: int) -> Notification | None:
    with get_db() as conn:
        conn.execute("UPDATE notifications SET is_read = 1 WHERE id = ?", (notification_id,))
        row = conn.execute(
            "SELECT * FROM notifications WHERE id = ?", (notification_id,)
        ).fetchone()
    return _row_to_notification(row) if row else None


def mark_all_notifications_as_read() -> None:
    with get_db() as conn:
        conn.execute("UPDATE notifications SET is_read = 1 WHERE is_read = 0")


def delete_notification(notification_id: int) -> bool:
    with get_db() as conn:
        cursor = conn.execute("DELETE FROM notifications WHERE id = ?", (notification_id,))
        return cursor.rowcount > 0


# ── Cameras ─────────────────────────────────────────────────────────
def _row_to_camera(row: sqlite3.Row) -> Camera:
    return Camera(
        id=row["id"],
        name=row["name"],
        ip_address=row["ip_address"],
        rtsp_port=row["rtsp_port"],
        username=row["username"],
        password=row["password"],
        main_stream_path=row["main_stream_path"],
        sub_stream_path=row["sub_stream_path"],
        is_active=bool(row["is_active"]),
        is_default=bool(row["is_default"]),
        settings=json.loads(row["settings"]),
    )


def create_camera(
    name: str,
    ip_address: str,
    main_stream_path: str,
    rtsp_port: int = 554,
    username: str = "",
    password: str = "",
    sub_stream_path: str | None = None,
    is_default: bool = False,
) -> Camera:
    """Insert a camera.  A new default camera demotes every other one."""
    with get_db() as conn:
        if is_default:
            conn.execute("UPDATE cameras SET is_default = 0 WHERE is_default = 1")
        cursor = conn.execute(
            """
            INSERT INTO cameras (name, ip_address, rtsp_port, username, password,
                                 main_stream_path, sub_stream_path, is_default, settings)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
            (
                name,
                ip_address,
                rtsp_port,
                username,
                password,
                main_stream_path,
                sub_stream_path,
                is_default,
                json.dumps(DEFAULT_CAMERA_SETTINGS),
            ),
        )
        row = conn.execute("SELECT * FROM cameras WHERE id = ?", (cursor.lastrowid,)).fetchone()
    return _row_to_camera(row)


def get_cameras() -> list[Camera]:
    with get_db() as conn:
        rows = conn.execute("SELECT * FROM cameras ORDER BY id").fetchall()
    return [_row_to_camera(row) for row in rows]


def get_camera(camera_id: int) -> Camera | None:
    with get_db() as conn:
        row = conn.execute("SELECT * FROM cameras WHERE id = ?", (camera_id,)).fetchone()
    return _row_to_camera(row) if row else None


def get_default_camera() -> Camera | None:
    with get_db() as conn:
        row = conn.execute("SELECT * FROM cameras WHERE is_default = 1 LIMIT 1").fetchone()
    return _row_to_camera(row) if row else None


def update_camera(camera_id: int, **changes) -> Camera | None:
    """
    Apply *changes* to one camera.  Setting ``is_default=True`` clears the flag
    on every other camera inside the same transaction, so there is never more
    than one default.
    """
    unknown = set(changes) - set(CAMERA_COLUMNS)
    if unknown:
        raise ValueError(f"Unknown camera field(s): {', '.join(sorted(unknown))}")

    with get_db() as conn:
        if conn.execute("SELECT 1 FROM cameras WHERE id = ?", (camera_id,)).fetchone() is None:
            return None
        if changes.get("is_default"):
            conn.execute(
                "UPDATE cameras SET is_default = 0 WHERE id != ? AND is_default = 1", (camera_id,)
            )
        if changes:
            assignments = ", ".join(f"{column} = ?" for column in changes)
            conn.execute(
                f"UPDATE cameras SET {assignments} WHERE id = ?",
                (*changes.values(), camera_id),
            )
        row = conn.execute("SELECT * FROM cameras WHERE id = ?", (camera_id,)).fetchone()
    return _row_to_camera(row)


def update_camera_settings(camera_id: int, settings: dict) -> Camera | None:
    """Merge recognised settings into the stored ones."""
    unknown = set(settings) - set(DEFAULT_CAMERA_SETTINGS)
    if unknown:
        raise ValueError(f"Unknown camera setting(s): {', '.join(sorted(unknown))}")

    with get_db() as conn:
        row = conn.execute("SELECT settings FROM cameras WHERE id = ?", (camera_id,)).fetchone()
        if row is None:
            return None
        merged = {**json.loads(row["settings"]), **settings}
        conn.execute(
            "UPDATE cameras SET settings = ? WHERE id = ?", (json.dumps(merged), camera_id)
        )
        row = conn.execute("SELECT * FROM cameras WHERE id = ?", (camera_id,)).fetchone()
    return _row_to_camera(row)


def delete_camera(camera_id: int) -> bool:
    with get_db() as conn:
        cursor = conn.execute("DELETE FROM cameras WHERE id = ?", (camera_id,))
        return cursor.rowcount > 0
