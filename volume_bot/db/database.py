"""
Database Manager for the Volume Bot

Smart profit settings, the smart profit execution log and finished
volume sessions are kept in SQLite.
"""

import json
import logging
import sqlite3
from dataclasses import fields
from pathlib import Path
from typing import Any, Dict, List, Optional

from volume_bot.core.models import Session, SmartProfitExecution, SmartProfitSettings
from volume_bot.exceptions import StorageException

logger = logging.getLogger(__name__)

_BOOL_FIELDS = {
    "enabled",
    "take_profit_enabled",
    "stop_loss_enabled",
    "trailing_stop_enabled",
    "emergency_stop_enabled",
}
_JSON_FIELDS = {"wallet_ids", "wallet_addresses"}
_SETTINGS_COLUMNS = [f.name for f in fields(SmartProfitSettings)]


class DatabaseManager:
    """
    SQLite persistence for the volume bot.

    Features:
    - Smart profit settings per (owner, token)
    - Smart profit execution log
    - Finished volume session summaries
    """

    def __init__(self, db_path: str = "volume_bot.db"):
        """
        Initialize database manager.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = db_path
        self._init_db()
        logger.info(f"Database initialized: {db_path}")

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_db(self):
        """Initialize database with schema"""
        schema_path = Path(__file__).parent / "schema.sql"

        if not schema_path.exists():
            logger.error(f"Schema file not found: {schema_path}")
            raise StorageException("Schema file not found", path=str(schema_path))

        with open(schema_path, 'r', encoding='utf-8') as f:
            schema_sql = f.read()

        try:
            with self._connect() as conn:
                conn.executescript(schema_sql)
        except sqlite3.Error as e:
            raise StorageException("Could not initialize database", path=self.db_path, error=str(e)) from e

        logger.debug("Database schema created/verified")

    # =========================================================================
    # Smart Profit Settings
    # =========================================================================

    def load(self, owner_id: str, token_mint: str) -> Optional[SmartProfitSettings]:
        """Load stored settings for a position, or None when never saved."""
        try:
            with self._connect() as conn:
                row = conn.execute(
                    "SELECT * FROM smart_profit_settings WHERE owner_id = ? AND token_mint = ?",
                    (owner_id, token_mint),
                ).fetchone()
        except sqlite3.Error as e:
            raise StorageException("Could not load settings", owner_id=owner_id, token_mint=token_mint) from e

        if row is None:
            return None

        data: Dict[str, Any] = {}
        for name in _SETTINGS_COLUMNS:
            value = row[name]
            if name in _BOOL_FIELDS:
                value = bool(value)
            elif name in _JSON_FIELDS:
                value = json.loads(value or "[]")
            data[name] = value
        return SmartProfitSettings(**data)

    def save(self, settings: SmartProfitSettings):
        """Insert or replace settings for (owner_id, token_mint)."""
        data = settings.to_dict()
        values = []
        for name in _SETTINGS_COLUMNS:
            value = data[name]
            if name in _BOOL_FIELDS:
                value = int(bool(value))
            elif name in _JSON_FIELDS:
                value = json.dumps(list(value))
            values.append(value)

        columns = ", ".join(_SETTINGS_COLUMNS)
        placeholders = ", ".join("?" for _ in _SETTINGS_COLUMNS)
        updates = ", ".join(
            f"{c} = excluded.{c}" for c in _SETTINGS_COLUMNS if c not in ("owner_id", "token_mint")
        )
        try:
            with self._connect() as conn:
                conn.execute(
                    f"""
                    INSERT INTO smart_profit_settings ({columns})
                    VALUES ({placeholders})
                    ON CONFLICT (owner_id, token_mint) DO UPDATE SET
                        {updates},
                        updated_at = CURRENT_TIMESTAMP
                    """,
                    values,
                )
        except sqlite3.Error as e:
            raise StorageException(
                "Could not save settings", owner_id=settings.owner_id, token_mint=settings.token_mint
            ) from e

        logger.debug(f"Smart profit settings saved: {settings.owner_id} {settings.token_mint[:8]}")

    def delete(self, owner_id: str, token_mint: str) -> bool:
        with self._connect() as conn:
            cursor = conn.execute(
                "DELETE FROM smart_profit_settings WHERE owner_id = ? AND token_mint = ?",
                (owner_id, token_mint),
            )
        return cursor.rowcount > 0

    # =========================================================================
    # Execution Log
    # =========================================================================

    def log_execution(self, owner_id: str, token_mint: str, execution: SmartProfitExecution) -> int:
        """
        Record one smart profit liquidation attempt.

        Returns:
            Execution row ID
        """
        try:
            with self._connect() as conn:
                cursor = conn.execute(
                    """
                    INSERT INTO smart_profit_executions (
                        owner_id, token_mint, rule, trigger_price, profit_percent,
                        sell_percent, tokens_requested, tokens_sold, sol_received,
                        signatures, errors, success, executed_at
                    )
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        owner_id, token_mint, execution.rule.value, execution.trigger_price,
                        execution.profit_percent, execution.sell_percent, execution.tokens_requested,
                        execution.tokens_sold, execution.sol_received, json.dumps(execution.signatures),
                        json.dumps(execution.errors), int(execution.success), execution.timestamp,
                    ),
                )
                execution_id = cursor.lastrowid
        except sqlite3.Error as e:
            raise StorageException("Could not record execution", owner_id=owner_id, token_mint=token_mint) from e

        logger.info(
            f"Execution logged: {execution.rule.value} {token_mint[:8]} "
            f"success={execution.success} (ID: {execution_id})"
        )
        return execution_id

    def get_executions(self, owner_id: str, token_mint: str, limit: int = 50) -> List[Dict[str, Any]]:
        """Most recent executions first."""
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM smart_profit_executions
                WHERE owner_id = ? AND token_mint = ?
                ORDER BY executed_at DESC, id DESC
                LIMIT ?
                """,
                (owner_id, token_mint, limit),
            ).fetchall()

        result = []
        for row in rows:
            entry = dict(row)
            entry["signatures"] = json.loads(entry["signatures"])
            entry["errors"] = json.loads(entry["errors"])
            entry["success"] = bool(entry["success"])
            result.append(entry)
        return result

    # =========================================================================
    # Volume Sessions
    # =========================================================================

    def record_session(self, session: Session):
        """Upsert a session summary (called when a session ends)."""
        with self._connect() as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO volume_sessions (
                    id, owner_id, token_mint, platform, strategy, status,
                    target_volume_sol, executed_volume_sol, total_trades,
                    successful_trades, failed_trades, buy_count, sell_count,
                    net_pnl_sol, stop_reason, error_message, started_at, stopped_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    session.id, session.owner_id, session.token_mint, session.platform.value,
                    session.settings.strategy.value, session.status.value, session.target_volume_sol,
                    session.executed_volume_sol, session.total_trades, session.successful_trades,
                    session.failed_trades, session.buy_count, session.sell_count, session.net_pnl_sol,
                    session.stop_reason, session.error_message, session.started_at, session.stopped_at,
                ),
            )
        logger.info(f"Session recorded: {session.id[:8]} {session.token_mint[:8]} ({session.status.value})")

    def get_sessions(self, owner_id: str, limit: int = 20) -> List[Dict[str, Any]]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM volume_sessions WHERE owner_id = ? ORDER BY started_at DESC LIMIT ?",
                (owner_id, limit),
            ).fetchall()
        return [dict(row) for row in rows]
