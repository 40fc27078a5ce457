from __future__ import annotations
import sqlite3
import aiosqlite
from datetime import datetime, timezone
from typing import List, Mapping, Optional
from ..domain.errors import PersistenceError
from ..domain.models import Condition, LogRecord, RelayStateRecord, Schedule, SensorReading


def _days_to_text(days: frozenset[int]) -> str:
    return ",".join(str(d) for d in sorted(days))


def _text_to_days(text: str) -> frozenset[int]:
    # Bad rows are kept as-is here and rejected by the engine at registration
    out = set()
    for part in (text or "").split(","):
        part = part.strip()
        if part.lstrip("-").isdigit():
            out.add(int(part))
    return frozenset(out)


class SQLiteRuleStore:
    """Rules and the system log in one SQLite file."""

    def __init__(self, path: str) -> None:
        self._path = path

    async def init(self) -> None:
        try:
            async with aiosqlite.connect(self._path) as db:
                await db.execute(
                    """
                    CREATE TABLE IF NOT EXISTS schedules (
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        actuator_id INTEGER NOT NULL,
                        days TEXT NOT NULL,
                        start_time TEXT NOT NULL,
                        end_time TEXT NOT NULL,
                        enabled INTEGER NOT NULL DEFAULT 1,
                        label TEXT NOT NULL DEFAULT '',
                        created_at TEXT NOT NULL
                    )
                    """
                )
                await db.execute(
                    """
                    CREATE TABLE IF NOT EXISTS conditions (
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        actuator_id INTEGER NOT NULL,
                        metric TEXT NOT NULL,
                        operator TEXT NOT NULL,
                        threshold REAL NOT NULL,
                        action TEXT NOT NULL DEFAULT 'activate',
                        hold_seconds INTEGER NOT NULL DEFAULT 0,
                        enabled INTEGER NOT NULL DEFAULT 1,
                        created_at TEXT NOT NULL
                    )
                    """
                )
                await db.execute(
                    """
                    CREATE TABLE IF NOT EXISTS system_logs (
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        ts_utc TEXT NOT NULL,
                        level TEXT NOT NULL,
                        message TEXT NOT NULL,
                        source TEXT
                    )
                    """
                )
                await db.execute(
                    """
                    CREATE TABLE IF NOT EXISTS sensor_readings (
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        ts_utc TEXT NOT NULL,
                        temperature REAL,
                        humidity REAL
                    )
                    """
                )
                await db.execute(
                    """
                    CREATE TABLE IF NOT EXISTS relay_states (
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        ts_utc TEXT NOT NULL,
                        actuator_id INTEGER NOT NULL,
                        state INTEGER NOT NULL,
                        reason TEXT
                    )
                    """
                )
                await db.execute("CREATE INDEX IF NOT EXISTS idx_system_logs_ts ON system_logs(ts_utc)")
                await db.execute("CREATE INDEX IF NOT EXISTS idx_sensor_readings_ts ON sensor_readings(ts_utc)")
                await db.execute("CREATE INDEX IF NOT EXISTS idx_relay_states_actuator ON relay_states(actuator_id, id)")
                await db.commit()
        except sqlite3.Error as e:
            raise PersistenceError(f"Could not initialise {self._path}: {e}") from e

    # --- RuleStore ---

    async def load_schedules(self) -> List[Schedule]:
        try:
            async with aiosqlite.connect(self._path) as db:
                cur = await db.execute(
                    """
                    SELECT id,actuator_id,days,start_time,end_time,enabled,label
                    FROM schedules
                    ORDER BY actuator_id, start_time, id
                    """
                )
                rows = await cur.fetchall()
        except sqlite3.Error as e:
            raise PersistenceError(f"Could not load schedules: {e}") from e
        return [
            Schedule(
                id=sid,
                actuator_id=aid,
                days_of_week=_text_to_days(days),
                start_time=start,
                end_time=end,
                enabled=bool(enabled),
                label=label or "",
            )
            for sid, aid, days, start, end, enabled, label in rows
        ]

    async def load_conditions(self) -> List[Condition]:
        try:
            async with aiosqlite.connect(self._path) as db:
                cur = await db.execute(
                    """
                    SELECT id,actuator_id,metric,operator,threshold,action,hold_seconds,enabled
                    FROM conditions
                    ORDER BY id
                    """
                )
                rows = await cur.fetchall()
        except sqlite3.Error as e:
            raise PersistenceError(f"Could not load conditions: {e}") from e
        return [
            Condition(
                id=cid,
                actuator_id=aid,
                metric=metric,
                operator=op,
                threshold=float(thr),
                action=action,
                hold_seconds=int(hold),
                enabled=bool(enabled),
            )
            for cid, aid, metric, op, thr, action, hold, enabled in rows
        ]

    async def append_log(self, level: str, message: str, source: str) -> None:
        try:
            async with aiosqlite.connect(self._path) as db:
                await db.execute(
                    "INSERT INTO system_logs(ts_utc,level,message,source) VALUES (?,?,?,?)",
                    (datetime.now(timezone.utc).isoformat(), level, message, source),
                )
                await db.commit()
        except sqlite3.Error as e:
            raise PersistenceError(f"Could not write system log: {e}") from e

    # --- RuleRepository ---

    async def save_schedule(self, s: Schedule) -> int:
        """Insert when s.id is 0, otherwise replace the row. Raises KeyError for unknown ids."""
        now = datetime.now(timezone.utc).isoformat()
        values = (s.actuator_id, _days_to_text(s.days_of_week), s.start_time, s.end_time, 1 if s.enabled else 0, s.label)
        try:
            async with aiosqlite.connect(self._path) as db:
                if not s.id:
                    cur = await db.execute(
                        "INSERT INTO schedules(actuator_id,days,start_time,end_time,enabled,label,created_at) "
                        "VALUES (?,?,?,?,?,?,?)",
                        (*values, now),
                    )
                    new_id = cur.lastrowid
                else:
                    cur = await db.execute(
                        "UPDATE schedules SET actuator_id=?,days=?,start_time=?,end_time=?,enabled=?,label=? WHERE id=?",
                        (*values, s.id),
                    )
                    if cur.rowcount == 0:
                        raise KeyError(s.id)
                    new_id = s.id
                await db.commit()
        except sqlite3.Error as e:
            raise PersistenceError(f"Could not save schedule: {e}") from e
        return int(new_id)

    async def delete_schedule(self, schedule_id: int) -> bool:
        return await self._delete("schedules", schedule_id)

    async def save_condition(self, c: Condition) -> int:
        """Insert when c.id is 0, otherwise replace the row. Raises KeyError for unknown ids."""
        now = datetime.now(timezone.utc).isoformat()
        values = (
            c.actuator_id, c.metric, c.operator, float(c.threshold), c.action, int(c.hold_seconds),
            1 if c.enabled else 0,
        )
        try:
            async with aiosqlite.connect(self._path) as db:
                if not c.id:
                    cur = await db.execute(
                        "INSERT INTO conditions(actuator_id,metric,operator,threshold,action,hold_seconds,enabled,created_at) "
                        "VALUES (?,?,?,?,?,?,?,?)",
                        (*values, now),
                    )
                    new_id = cur.lastrowid
                else:
                    cur = await db.execute(
                        "UPDATE conditions SET actuator_id=?,metric=?,operator=?,threshold=?,action=?,hold_seconds=?,enabled=? "
                        "WHERE id=?",
                        (*values, c.id),
                    )
                    if cur.rowcount == 0:
                        raise KeyError(c.id)
                    new_id = c.id
                await db.commit()
        except sqlite3.Error as e:
            raise PersistenceError(f"Could not save condition: {e}") from e
        return int(new_id)

    async def delete_condition(self, condition_id: int) -> bool:
        return await self._delete("conditions", condition_id)

    async def _delete(self, table: str, row_id: int) -> bool:
        try:
            async with aiosqlite.connect(self._path) as db:
                cur = await db.execute(f"DELETE FROM {table} WHERE id=?", (row_id,))
                await db.commit()
                return cur.rowcount > 0
        except sqlite3.Error as e:
            raise PersistenceError(f"Could not delete from {table}: {e}") from e

    async def query_logs(self, limit: int, level: Optional[str] = None) -> List[LogRecord]:
        sql = "SELECT id,ts_utc,level,message,source FROM system_logs"
        params: tuple = ()
        if level:
            sql += " WHERE level = ?"
            params = (level,)
        sql += " ORDER BY id DESC LIMIT ?"
        try:
            async with aiosqlite.connect(self._path) as db:
                cur = await db.execute(sql, (*params, limit))
                rows = await cur.fetchall()
        except sqlite3.Error as e:
            raise PersistenceError(f"Could not query system logs: {e}") from e
        return [
            LogRecord(id=rid, ts_utc=datetime.fromisoformat(ts), level=lvl, message=msg, source=src)
            for rid, ts, lvl, msg, src in rows
        ]

    async def purge_logs(self, older_than: datetime) -> int:
        try:
            async with aiosqlite.connect(self._path) as db:
                cur = await db.execute("DELETE FROM system_logs WHERE ts_utc < ?", (older_than.isoformat(),))
                await db.commit()
                return cur.rowcount
        except sqlite3.Error as e:
            raise PersistenceError(f"Could not purge system logs: {e}") from e

    # --- HistoryStore ---

    async def save_sensor_reading(self, sample: Mapping[str, float], ts_utc: datetime) -> None:
        try:
            async with aiosqlite.connect(self._path) as db:
                await db.execute(
                    "INSERT INTO sensor_readings(ts_utc,temperature,humidity) VALUES (?,?,?)",
                    (ts_utc.astimezone(timezone.utc).isoformat(), sample.get("temperature"), sample.get("humidity")),
                )
                await db.commit()
        except sqlite3.Error as e:
            raise PersistenceError(f"Could not save sensor reading: {e}") from e

    async def query_sensor_readings(
        self, limit: int, start: Optional[datetime] = None, end: Optional[datetime] = None
    ) -> List[SensorReading]:
        """Newest `limit` readings, or every reading in [start, end] oldest first when a range is given."""
        if start is not None and end is not None:
            sql = (
                "SELECT id,ts_utc,temperature,humidity FROM sensor_readings "
                "WHERE ts_utc BETWEEN ? AND ? ORDER BY ts_utc ASC, id ASC"
            )
            params: tuple = (start.astimezone(timezone.utc).isoformat(), end.astimezone(timezone.utc).isoformat())
        else:
            sql = "SELECT id,ts_utc,temperature,humidity FROM sensor_readings ORDER BY id DESC LIMIT ?"
            params = (limit,)
        try:
            async with aiosqlite.connect(self._path) as db:
                cur = await db.execute(sql, params)
                rows = await cur.fetchall()
        except sqlite3.Error as e:
            raise PersistenceError(f"Could not query sensor readings: {e}") from e
        return [
            SensorReading(id=rid, ts_utc=datetime.fromisoformat(ts), temperature=t, humidity=h)
            for rid, ts, t, h in rows
        ]

    async def save_relay_state(self, actuator_id: int, level: bool, reason: str, ts_utc: datetime) -> None:
        try:
            async with aiosqlite.connect(self._path) as db:
                await db.execute(
                    "INSERT INTO relay_states(ts_utc,actuator_id,state,reason) VALUES (?,?,?,?)",
                    (ts_utc.astimezone(timezone.utc).isoformat(), actuator_id, 1 if level else 0, reason),
                )
                await db.commit()
        except sqlite3.Error as e:
            raise PersistenceError(f"Could not save relay state: {e}") from e

    async def query_relay_states(self, limit: int, actuator_id: Optional[int] = None) -> List[RelayStateRecord]:
        sql = "SELECT id,ts_utc,actuator_id,state,reason FROM relay_states"
        params: tuple = ()
        if actuator_id is not None:
            sql += " WHERE actuator_id = ?"
            params = (actuator_id,)
        sql += " ORDER BY id DESC LIMIT ?"
        try:
            async with aiosqlite.connect(self._path) as db:
                cur = await db.execute(sql, (*params, limit))
                rows = await cur.fetchall()
        except sqlite3.Error as e:
            raise PersistenceError(f"Could not query relay states: {e}") from e
        return [
            RelayStateRecord(id=rid, ts_utc=datetime.fromisoformat(ts), actuator_id=aid, level=bool(state), reason=reason)
            for rid, ts, aid, state, reason in rows
        ]
