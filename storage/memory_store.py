"""
Memory Store
Durable JSON document holding trades, token research, learnings and settings
"""
import json
import os
import secrets
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from loguru import logger

import config as cfg
from models import (
    AgentMemory,
    BetResult,
    PolymarketTrade,
    Settings,
    TokenMemory,
    TradeEntry,
    TradeStatus,
    now_ms,
)


def new_id(prefix: str) -> str:
    """Opaque unique id, e.g. trade_1718000000000_a1b2c3."""
    return f"{prefix}_{now_ms()}_{secrets.token_hex(3)}"


class MemoryStore:
    """
    Owner of the AgentMemory aggregate.

    Every mutating method changes the in-memory document and flushes the whole
    document to disk before returning. None of them await, so on a single event
    loop mutations from the scan, monitor and prediction loops never interleave.
    """

    def __init__(self, path: Optional[Path] = None):
        self.path = Path(path) if path else cfg.MEMORY_FILE
        self.memory = self._load()

        logger.info(
            f"Loaded memory from {self.path}: "
            f"{len(self.memory.trades)} trades, "
            f"{len(self.memory.tokens)} tokens, "
            f"{len(self.memory.polymarket_trades)} prediction bets"
        )

    # ------------------------------------------------------------------
    # Load / save
    # ------------------------------------------------------------------

    def _load(self) -> AgentMemory:
        if not self.path.exists():
            return AgentMemory()
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
            if not isinstance(data, dict):
                raise ValueError(f"expected a JSON object, got {type(data).__name__}")
            return AgentMemory.from_dict(data)
        except (OSError, ValueError, KeyError, TypeError, AttributeError) as e:
            logger.error(f"Failed to load memory from {self.path}: {e}")
            self._quarantine()
            return AgentMemory()

    def _quarantine(self) -> None:
        """Move an unreadable memory file aside so the next save cannot overwrite it."""
        corrupt_path = self.path.with_suffix(self.path.suffix + ".corrupt")
        try:
            os.replace(self.path, corrupt_path)
            logger.warning(f"Moved unreadable memory file to {corrupt_path}")
        except OSError as e:
            logger.error(f"Could not move unreadable memory file {self.path}: {e}")

    def save(self) -> None:
        """Write the whole document atomically (temp file + replace)."""
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
            tmp_path.write_text(
                json.dumps(self.memory.to_dict(), indent=2, ensure_ascii=False),
                encoding="utf-8",
            )
            os.replace(tmp_path, self.path)
        except OSError as e:
            logger.error(f"Failed to save memory: {e}")

    def reload(self) -> AgentMemory:
        self.memory = self._load()
        return self.memory

    @property
    def settings(self) -> Settings:
        return self.memory.settings

    # ------------------------------------------------------------------
    # Trades
    # ------------------------------------------------------------------

    def log_trade(self, trade: TradeEntry) -> TradeEntry:
        """Append a trade attempt and bump the per-token trade counter."""
        self.memory.trades.append(trade)
        self.memory.total_trades += 1

        token = self._get_or_create_token(trade.symbol)
        token.times_traded += 1

        self.save()
        logger.info(
            f"Logged trade {trade.id}: {trade.action.value.upper()} "
            f"{trade.amount} {trade.symbol} [{trade.status.value}]"
        )
        return trade

    def close_trade(self, trade_id: str, exit_price: str, pnl: str) -> Optional[TradeEntry]:
        """
        Close an open trade.

        Args:
            trade_id: Trade to close
            exit_price: Exit price (display string)
            pnl: Realized pnl in percent, e.g. "110.00"

        Returns:
            The closed trade, or None if it does not exist or is not open
        """
        trade = self.get_trade(trade_id)
        if trade is None:
            logger.warning(f"Cannot close unknown trade {trade_id}")
            return None
        if not trade.is_open:
            logger.warning(f"Cannot close trade {trade_id}: status is {trade.status.value}")
            return None

        trade.status = TradeStatus.CLOSED
        trade.exit_price = exit_price
        trade.exit_timestamp = now_ms()
        trade.pnl = pnl

        pnl_num = float(pnl)
        self.memory.total_pnl += pnl_num

        token = self.memory.tokens.get(trade.symbol)
        if token:
            token.total_pnl += pnl_num

        self.memory.win_rate = self.compute_win_rate()

        if pnl_num > 0:
            self._append_learning(f"✅ {trade.symbol}: +{pnl}%: {trade.reason}")
        else:
            self._append_learning(f"❌ {trade.symbol}: {pnl}%: {trade.reason}")

        self.save()
        logger.info(f"Closed trade {trade_id}: {trade.symbol} pnl={pnl}% exit={exit_price}")
        return trade

    def compute_win_rate(self) -> float:
        """Fraction of closed trades with positive pnl (0.0 with none closed)."""
        closed = [t for t in self.memory.trades if t.status == TradeStatus.CLOSED]
        if not closed:
            return 0.0
        wins = [t for t in closed if float(t.pnl or 0) > 0]
        return len(wins) / len(closed)

    def get_trade(self, trade_id: str) -> Optional[TradeEntry]:
        for trade in self.memory.trades:
            if trade.id == trade_id:
                return trade
        return None

    def get_open_positions(self) -> List[TradeEntry]:
        return [t for t in self.memory.trades if t.is_open]

    def get_trade_history(self, limit: int = 20) -> List[TradeEntry]:
        return self.memory.trades[-limit:]

    def _append_learning(self, learning: str) -> None:
        self.memory.learnings.append(learning)
        if len(self.memory.learnings) > cfg.MAX_LEARNINGS:
            self.memory.learnings = self.memory.learnings[-cfg.MAX_LEARNINGS:]

    # ------------------------------------------------------------------
    # Token research
    # ------------------------------------------------------------------

    def _get_or_create_token(self, symbol: str) -> TokenMemory:
        token = self.memory.tokens.get(symbol)
        if token is None:
            token = TokenMemory(symbol=symbol)
            self.memory.tokens[symbol] = token
        return token

    def update_token_memory(self, symbol: str, **updates: Any) -> TokenMemory:
        """Upsert research fields for a symbol."""
        token = self._get_or_create_token(symbol)
        for name, value in updates.items():
            if not hasattr(token, name):
                raise AttributeError(f"TokenMemory has no field '{name}'")
            setattr(token, name, value)
        self.save()
        return token

    def mark_scanned(self) -> None:
        self.memory.last_scan_time = now_ms()
        self.save()

    # ------------------------------------------------------------------
    # Prediction markets
    # ------------------------------------------------------------------

    def record_polymarket_trade(self, trade: PolymarketTrade) -> PolymarketTrade:
        self.memory.polymarket_trades.append(trade)
        self.memory.polymarket_stats.total_bets += 1
        self.save()
        logger.info(f"Recorded prediction bet {trade.id}: {trade.amount} [{trade.result.value}]")
        return trade

    def settle_polymarket_trade(
        self,
        trade_id: str,
        result: BetResult,
        pnl: float,
    ) -> Optional[PolymarketTrade]:
        """Resolve a pending bet to win or loss and roll it into the stats."""
        if result == BetResult.PENDING:
            raise ValueError("Settlement result must be win or loss")

        trade = self.get_polymarket_trade(trade_id)
        if trade is None:
            logger.warning(f"Cannot settle unknown prediction bet {trade_id}")
            return None
        if trade.result != BetResult.PENDING:
            logger.warning(f"Prediction bet {trade_id} already settled as {trade.result.value}")
            return None

        trade.result = result
        trade.pnl = f"{pnl:.2f}"

        stats = self.memory.polymarket_stats
        if result == BetResult.WIN:
            stats.wins += 1
        else:
            stats.losses += 1
        stats.total_pnl += pnl

        self.save()
        logger.info(f"Settled prediction bet {trade_id}: {result.value} ({pnl:+.2f})")
        return trade

    def consecutive_polymarket_losses(self) -> int:
        """Trailing run of settled losses; pending bets are ignored."""
        streak = 0
        for trade in reversed(self.memory.polymarket_trades):
            if trade.result == BetResult.PENDING:
                continue
            if trade.result != BetResult.LOSS:
                break
            streak += 1
        return streak

    def get_polymarket_trade(self, trade_id: str) -> Optional[PolymarketTrade]:
        return next((t for t in self.memory.polymarket_trades if t.id == trade_id), None)

    def get_pending_polymarket_trades(self) -> List[PolymarketTrade]:
        return [t for t in self.memory.polymarket_trades if t.result == BetResult.PENDING]

    def set_strategy_rankings(self, best: str, worst: str) -> None:
        stats = self.memory.polymarket_stats
        stats.best_strategy = best
        stats.worst_strategy = worst
        self.save()

    def add_polymarket_learning(self, learning: str) -> None:
        self.memory.polymarket_learnings.append(learning)
        if len(self.memory.polymarket_learnings) > cfg.MAX_POLYMARKET_LEARNINGS:
            self.memory.polymarket_learnings = (
                self.memory.polymarket_learnings[-cfg.MAX_POLYMARKET_LEARNINGS:]
            )
        self.save()

    # ------------------------------------------------------------------
    # Settings
    # ------------------------------------------------------------------

    def update_settings(self, patch: Dict[str, Any]) -> Settings:
        """
        Merge a partial settings patch and persist immediately.

        Accepts either attribute names (scan_interval_min) or persisted keys
        (scanIntervalMin). Values are cast to the field's type ("5" -> 5,
        "on" -> True). Unknown keys or uncastable values raise ValueError
        before anything changes.
        """
        settings = self.memory.settings
        resolved = {}
        for key, value in patch.items():
            attr = Settings.KEYS.get(key, key)
            if attr not in Settings.KEYS.values():
                raise ValueError(f"Unknown setting: {key}")
            resolved[attr] = Settings.coerce(attr, value)

        for attr, value in resolved.items():
            setattr(settings, attr, value)

        self.save()
        logger.info(f"Settings updated: {resolved}")
        return settings

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    def get_performance_summary(self) -> str:
        memory = self.memory
        settings = memory.settings
        open_positions = self.get_open_positions()
        closed = [t for t in memory.trades if t.status == TradeStatus.CLOSED]
        wins = [t for t in closed if float(t.pnl or 0) > 0]
        losses = len(closed) - len(wins)
        sign = "+" if memory.total_pnl > 0 else ""

        return (
            f"📊 *Trading Performance*\n\n"
            f"Total Trades: {memory.total_trades}\n"
            f"Open Positions: {len(open_positions)}\n"
            f"Closed: {len(closed)} ({len(wins)}W / {losses}L)\n"
            f"Win Rate: {memory.win_rate * 100:.1f}%\n"
            f"Total P&L: {sign}{memory.total_pnl:.2f}%\n\n"
            f"*Settings:*\n"
            f"Max Market Cap: ${settings.max_market_cap / 1000:.0f}k\n"
            f"Buy Amount: ${settings.max_buy_amount}\n"
            f"Take Profit: {settings.take_profit_pct}%\n"
            f"Stop Loss: {settings.stop_loss_pct}%\n"
            f"Auto-Trade: {'ON 🟢' if settings.auto_trade_enabled else 'OFF 🔴'}\n"
            f"Scan Interval: {settings.scan_interval_min}min\n"
            f"Last Scan: {self._format_ts(memory.last_scan_time)}"
        )

    @staticmethod
    def _format_ts(ts_ms: int) -> str:
        if not ts_ms:
            return "never"
        return datetime.fromtimestamp(ts_ms / 1000).strftime("%Y-%m-%d %H:%M")
