from __future__ import annotations

import datetime as dt
import json
import threading
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Sequence

from condor.clock import utc_now
from condor.errors import PersistenceFailure
from condor.expiry import parse_expiry, sort_expiries
from condor.state import PERSISTED_FIELDS
from persistence.db import connect_db, run_migrations

_BOOL_FIELDS = {"is_virtual", "is_paused", "is_trade_placed"}


class SQLiteStore:
    """
    SQLite persistence for the condor engine.

    One singleton ``engine_state`` row (last writer wins), the current
    ``positions`` set, and append-only order/system/trade/PnL logs. Methods are
    synchronous and thread-safe; the engine calls them off the event loop.
    """

    def __init__(self, path: str | Path):
        self.path = Path(path) if str(path) != ":memory:" else path
        self._conn = connect_db(path)
        self._lock = threading.Lock()
        self._latest_ts = dt.datetime.min.replace(tzinfo=dt.timezone.utc)
        run_migrations(self._conn)

    # ----------------------------------------------------------------- helpers
    def _ts(self, ts: Optional[dt.datetime] = None) -> str:
        current = (ts or utc_now()).astimezone(dt.timezone.utc)
        if current <= self._latest_ts:
            current = self._latest_ts + dt.timedelta(microseconds=1)
        self._latest_ts = current
        return current.isoformat()

    @staticmethod
    def _json(payload: Any) -> Optional[str]:
        if payload is None:
            return None
        return json.dumps(payload, separators=(",", ":"), default=str)

    def close(self) -> None:
        with self._lock:
            self._conn.commit()
            self._conn.close()

    # ------------------------------------------------------------ engine state
    def upsert_engine_state(self, partial: Mapping[str, Any]) -> None:
        """Write only the given columns of the singleton row; unknown keys are ignored."""

        columns = [name for name in PERSISTED_FIELDS if name in partial]
        values = [int(bool(partial[name])) if name in _BOOL_FIELDS else partial[name] for name in columns]
        columns.append("updated_at")
        placeholders = ", ".join("?" for _ in columns)
        updates = ", ".join(f"{name}=excluded.{name}" for name in columns)
        sql = (
            f"INSERT INTO engine_state(id, {', '.join(columns)}) VALUES (1, {placeholders}) "
            f"ON CONFLICT(id) DO UPDATE SET {updates}"
        )
        try:
            with self._lock:
                values.append(self._ts())
                self._conn.execute(sql, values)
                self._conn.commit()
        except Exception as exc:
            raise PersistenceFailure(f"engine_state upsert failed: {exc}") from exc

    def get_engine_state(self) -> Optional[Dict[str, Any]]:
        with self._lock:
            row = self._conn.execute("SELECT * FROM engine_state WHERE id = 1").fetchone()
        if row is None:
            return None
        payload = dict(row)
        for name in _BOOL_FIELDS:
            if payload.get(name) is not None:
                payload[name] = bool(payload[name])
        return payload

    # ---------------------------------------------------------------- positions
    def replace_legs(self, legs: Sequence[Mapping[str, Any]]) -> None:
        try:
            with self._lock:
                stamp = self._ts()
                with self._conn:
                    self._conn.execute("DELETE FROM positions")
                    self._conn.executemany(
                        """
                        INSERT INTO positions(token, position, symbol, option_type, side, strike, entry_price,
                                              ltp, quantity, tier, adjusted, filled, updated_at)
                        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                        """,
                        [
                            (
                                str(leg["token"]),
                                idx,
                                leg.get("symbol") or "",
                                leg.get("option_type") or "",
                                leg.get("side") or "",
                                float(leg.get("strike") or 0.0),
                                float(leg.get("entry_price") or 0.0),
                                float(leg.get("ltp") or 0.0),
                                int(leg.get("quantity") or 0),
                                leg.get("tier"),
                                int(bool(leg.get("adjusted", False))),
                                int(bool(leg.get("filled", False))),
                                stamp,
                            )
                            for idx, leg in enumerate(legs)
                        ],
                    )
        except Exception as exc:
            raise PersistenceFailure(f"positions replace failed: {exc}") from exc

    def get_legs(self) -> List[Dict[str, Any]]:
        with self._lock:
            rows = self._conn.execute(
                """
                SELECT token, symbol, option_type, side, strike, entry_price, ltp, quantity, tier, adjusted, filled
                FROM positions ORDER BY position
                """
            ).fetchall()
        legs: List[Dict[str, Any]] = []
        for row in rows:
            item = dict(row)
            item["adjusted"] = bool(item["adjusted"])
            item["filled"] = bool(item["filled"])
            legs.append(item)
        return legs

    # --------------------------------------------------------------------- logs
    def append_order_log(self, entry: Mapping[str, Any]) -> None:
        with self._lock:
            self._conn.execute(
                """
                INSERT INTO order_log(ts, token, symbol, side, quantity, price, status, order_type, order_id, purpose, note)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    entry.get("ts") or self._ts(),
                    entry.get("token"),
                    entry.get("symbol"),
                    entry.get("side"),
                    entry.get("quantity"),
                    entry.get("price"),
                    entry.get("status"),
                    entry.get("order_type"),
                    entry.get("order_id"),
                    entry.get("purpose"),
                    entry.get("note"),
                ),
            )
            self._conn.commit()

    def order_log(self, limit: int = 100) -> List[Dict[str, Any]]:
        with self._lock:
            rows = self._conn.execute("SELECT * FROM order_log ORDER BY id DESC LIMIT ?", (limit,)).fetchall()
        return [dict(row) for row in rows]

    def append_system_log(self, message: str) -> None:
        with self._lock:
            self._conn.execute("INSERT INTO system_log(ts, message) VALUES (?, ?)", (self._ts(), message))
            self._conn.commit()

    def recent_system_logs(self, limit: int = 100) -> List[Dict[str, Any]]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT ts, message FROM system_log ORDER BY id DESC LIMIT ?", (limit,)
            ).fetchall()
        return [dict(row) for row in rows]

    def append_trade_history(self, entry: Mapping[str, Any]) -> None:
        with self._lock:
            self._conn.execute(
                """
                INSERT INTO trade_history(ts, reason, pnl, peak_profit, peak_loss, is_virtual, legs_json)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    entry.get("ts") or self._ts(),
                    entry.get("reason") or "",
                    float(entry.get("pnl") or 0.0),
                    entry.get("peak_profit"),
                    entry.get("peak_loss"),
                    int(bool(entry.get("is_virtual", True))),
                    self._json(entry.get("legs")),
                ),
            )
            self._conn.commit()

    def trade_history(self, limit: int = 50) -> List[Dict[str, Any]]:
        with self._lock:
            rows = self._conn.execute("SELECT * FROM trade_history ORDER BY id DESC LIMIT ?", (limit,)).fetchall()
        history = []
        for row in rows:
            item = dict(row)
            item["legs"] = json.loads(item.pop("legs_json") or "[]")
            history.append(item)
        return history

    def append_pnl_snapshot(self, pnl: float) -> None:
        with self._lock:
            self._conn.execute("INSERT INTO pnl_snapshots(ts, pnl) VALUES (?, ?)", (self._ts(), float(pnl)))
            self._conn.commit()

    def pnl_snapshots(self, since: Optional[dt.datetime] = None) -> List[Dict[str, Any]]:
        cutoff = (since or dt.datetime.min.replace(tzinfo=dt.timezone.utc)).astimezone(dt.timezone.utc).isoformat()
        with self._lock:
            rows = self._conn.execute(
                "SELECT ts, pnl FROM pnl_snapshots WHERE ts >= ? ORDER BY id", (cutoff,)
            ).fetchall()
        return [dict(row) for row in rows]

    def cleanup_older_than(self, days: int) -> int:
        """Delete system-log and PnL-snapshot rows older than ``days``; returns rows removed."""

        cutoff = (utc_now() - dt.timedelta(days=max(days, 0))).isoformat()
        with self._lock:
            removed = self._conn.execute("DELETE FROM system_log WHERE ts < ?", (cutoff,)).rowcount
            removed += self._conn.execute("DELETE FROM pnl_snapshots WHERE ts < ?", (cutoff,)).rowcount
            self._conn.commit()
        return removed

    # ----------------------------------------------------------------- expiries
    def set_manual_expiries(self, expiries: Sequence[str]) -> List[str]:
        ordered = sort_expiries(expiries)
        with self._lock:
            with self._conn:
                self._conn.execute("DELETE FROM manual_expiries")
                self._conn.executemany(
                    "INSERT INTO manual_expiries(expiry, expiry_date) VALUES (?, ?)",
                    [(label, parse_expiry(label).isoformat()) for label in ordered],
                )
        return ordered

    def get_manual_expiries(self) -> List[str]:
        with self._lock:
            rows = self._conn.execute("SELECT expiry FROM manual_expiries ORDER BY expiry_date").fetchall()
        return [row["expiry"] for row in rows]


__all__ = ["SQLiteStore"]
