"""
Autonomous Trader
Owns the scan, monitor and prediction jobs and the user-facing operations
"""
import time
from typing import Any, Dict, Optional

from loguru import logger

import config as cfg
from core.strategy_brain.strategies.prediction_market_strategy import PredictionMarketStrategy
from core.strategy_brain.strategies.token_scan_strategy import TokenScanStrategy
from execution.bankr_client import PromptFn
from execution.execution_safety import ExecutionSafetyManager
from execution.position_monitor import PositionMonitor
from execution.risk_guard import RiskGuard
from feedback.learning_engine import LearningEngine
from models import BetResult
from monitoring.metrics_exporter import MetricsExporter
from monitoring.notifier import NotifyFn
from monitoring.observability import ObservabilityLogger
from scheduler import IntervalJob
from storage.memory_store import MemoryStore


class AutonomousTrader:
    """
    Facade over the trading loops.

    States: stopped -> running (start) -> stopped (stop). While running the
    scan job follows settings.scan_interval_min, the monitor job runs every
    MONITOR_INTERVAL_MIN and the prediction job runs only once the owner has
    set a strategy. Every public operation returns display text.
    """

    def __init__(
        self,
        prompt: PromptFn,
        store: Optional[MemoryStore] = None,
        notify: Optional[NotifyFn] = None,
        risk_guard: Optional[RiskGuard] = None,
        safety: Optional[ExecutionSafetyManager] = None,
        observability: Optional[ObservabilityLogger] = None,
        metrics: Optional[MetricsExporter] = None,
        seconds_per_minute: float = 60.0,
        position_pause_seconds: float = cfg.POSITION_PAUSE_SECONDS,
        user_id: str = cfg.AGENT_USER_ID,
    ):
        """
        Initialize autonomous trader.

        Args:
            prompt: async (text, thread_id=None) -> PromptResult
            store: Persistent memory
            notify: Owner notification callback
            risk_guard: Risk limits for new positions
            safety: Execution safety manager
            observability: Structured-log collaborator
            metrics: Prometheus exporter
            seconds_per_minute: Length of a schedule minute (tests shrink it)
            position_pause_seconds: Pause between positions in a monitor cycle
            user_id: Rate-limit bucket owner
        """
        self.store = store or MemoryStore()
        self.notify = notify
        self.metrics = metrics
        self.observability = observability or ObservabilityLogger(metrics_exporter=metrics)
        self.risk_guard = risk_guard or RiskGuard()
        self.safety = safety or ExecutionSafetyManager(observability=self.observability)
        self.seconds_per_minute = seconds_per_minute

        self.learning = LearningEngine(self.store)
        self.prediction = PredictionMarketStrategy(
            prompt, self.store, self.safety, self.risk_guard,
            learning=self.learning, notify=notify, user_id=user_id,
        )
        self.scanner = TokenScanStrategy(
            prompt, self.store, self.safety, self.risk_guard,
            notify=notify, portfolio_value=self.portfolio_value, user_id=user_id,
        )
        self.monitor = PositionMonitor(
            prompt, self.store, self.safety, self.risk_guard,
            notify=notify, portfolio_value=self.portfolio_value,
            pause_seconds=position_pause_seconds, user_id=user_id,
        )

        self.scan_job = IntervalJob(
            "scan", self._minutes(self.store.settings.scan_interval_min), self._scheduled_scan
        )
        self.monitor_job = IntervalJob(
            "monitor", self._minutes(cfg.MONITOR_INTERVAL_MIN), self.monitor_positions
        )
        self.prediction_job = IntervalJob(
            "polymarket",
            self._minutes(cfg.POLYMARKET_SCAN_INTERVAL_MIN),
            self.scan_polymarket,
        )

        self._running = False
        self._next_scan_due: Optional[float] = None

        logger.info("Initialized Autonomous Trader")

    def _minutes(self, minutes: float) -> float:
        return float(minutes) * self.seconds_per_minute

    @property
    def is_running(self) -> bool:
        return self._running

    def portfolio_value(self) -> float:
        """Last known balance, or the configured portfolio value."""
        balance = self.prediction.cached_balance
        return balance if balance else cfg.PORTFOLIO_VALUE_USD

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> str:
        if self._running:
            return "Autonomous trader already running"

        self._running = True
        settings = self.store.settings

        logger.info("=" * 60)
        logger.info("🤖 Autonomous trader starting")
        logger.info(f"   Scan every {settings.scan_interval_min}min | Monitor every {cfg.MONITOR_INTERVAL_MIN}min")
        logger.info(f"   Auto-trade: {'ON' if settings.auto_trade_enabled else 'OFF'}")
        logger.info("=" * 60)

        self.scan_job.reschedule(self._minutes(settings.scan_interval_min))
        self.scan_job.start()
        self.monitor_job.start()
        self._next_scan_due = time.time() + self.scan_job.interval

        # the prediction loop never arms itself without a strategy
        if self.prediction.is_active:
            self.prediction_job.start()

        return "🤖 Autonomous trader started"

    async def stop(self) -> str:
        self.scan_job.stop()
        self.monitor_job.stop()
        self.prediction_job.stop()
        self.prediction.clear_strategy()

        was_running = self._running
        self._running = False
        self._next_scan_due = None

        logger.info("🛑 Autonomous trader stopped")
        return "🛑 Autonomous trader stopped" if was_running else "Autonomous trader was not running"

    async def wait_idle(self) -> None:
        """Wait for any in-flight job runs to finish."""
        for job in (self.scan_job, self.monitor_job, self.prediction_job):
            await job.wait_idle()

    # ------------------------------------------------------------------
    # Loops
    # ------------------------------------------------------------------

    async def _scheduled_scan(self) -> None:
        now = time.time()
        if self._next_scan_due is not None:
            self.observability.check_missed_scan(self._next_scan_due, now)
        self._next_scan_due = now + self.scan_job.interval
        await self.scanner.scan_market()

    def _refresh_metrics(self) -> None:
        if self.metrics:
            self.metrics.update_risk(
                self.risk_guard.get_status(), len(self.store.get_open_positions())
            )

    async def scan_market(self) -> str:
        return await self.scanner.scan_market()

    async def monitor_positions(self) -> None:
        await self.monitor.monitor_positions()
        self._refresh_metrics()

    async def scan_polymarket(self) -> str:
        placed = self.prediction.get_stats()["bets_placed"]
        result = await self.prediction.scan_polymarket()
        if self.metrics and self.prediction.get_stats()["bets_placed"] > placed:
            self.metrics.record_prediction_bet()
        return result

    # ------------------------------------------------------------------
    # Owner operations
    # ------------------------------------------------------------------

    async def set_polymarket_strategy(self, strategy: str) -> str:
        try:
            self.prediction.set_strategy(strategy)
        except ValueError as e:
            return f"❌ Failed: {e}"

        if self._running:
            self.prediction_job.start()
            self.prediction_job.trigger()
            return (
                f"🎯 Polymarket strategy set. Running now and every "
                f"{cfg.POLYMARKET_SCAN_INTERVAL_MIN}min."
            )
        return "🎯 Polymarket strategy set. It will run once the trader is started."

    def stop_polymarket(self) -> str:
        self.prediction_job.stop()
        self.prediction.clear_strategy()
        return "⏹️ Polymarket loop stopped"

    def update_settings(self, patch: Dict[str, Any]) -> str:
        interval_keys = {"scan_interval_min", "scanIntervalMin"}
        for key in interval_keys & set(patch):
            if not isinstance(patch[key], (int, float)) or patch[key] <= 0:
                return f"❌ Failed: {key} must be a positive number of minutes"

        try:
            settings = self.store.update_settings(patch)
        except ValueError as e:
            return f"❌ Failed: {e}"

        if interval_keys & set(patch) and self._running:
            self.scan_job.reschedule(self._minutes(settings.scan_interval_min))
            self._next_scan_due = time.time() + self.scan_job.interval

        return "Settings updated ✅"

    def toggle_auto_trade(self, enabled: bool) -> str:
        self.store.update_settings({"auto_trade_enabled": enabled})
        if enabled:
            return (
                f"🟢 Auto-trade ENABLED. I'll buy tokens that score "
                f"{cfg.VIABLE_SCORE}+ automatically."
            )
        return "🔴 Auto-trade DISABLED. I'll still scan and alert you, but won't buy."

    async def manual_research(self, token: str) -> str:
        if not token or not token.strip():
            return "❌ Failed: no token given"
        return await self.scanner.research_token(token)

    def settle_polymarket_bet(self, trade_id: str, result: str, pnl: float) -> str:
        try:
            outcome = BetResult(result.strip().lower())
        except ValueError:
            return f"❌ Failed: result must be 'win' or 'loss', got '{result}'"
        message = self.prediction.settle_bet(trade_id, outcome, pnl)
        self._refresh_metrics()
        return message

    def reset_kill_switch(self) -> str:
        self.risk_guard.reset_kill_switch()
        self._refresh_metrics()
        return "✅ Kill switch reset. Auto-trade may open positions again."

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    def get_status(self) -> Dict[str, Any]:
        return {
            "running": self._running,
            "polymarket_strategy": self.prediction.strategy,
            "risk": self.risk_guard.get_status(),
            "execution": self.safety.get_stats(),
            "jobs": {
                "scan": self.scan_job.get_stats(),
                "monitor": self.monitor_job.get_stats(),
                "polymarket": self.prediction_job.get_stats(),
            },
        }

    def status(self) -> str:
        risk = self.risk_guard.get_status()
        stats = self.store.memory.polymarket_stats
        lines = [
            self.store.get_performance_summary(),
            "",
            "*Risk:*",
            f"Daily Trades: {risk['daily_trades']} | Daily Loss: ${risk['daily_loss']:.2f}",
            f"Loss Streak: {risk['consecutive_losses']} | Drawdown: ${risk['total_drawdown']:.2f}",
            f"Kill Switch: {'ACTIVE 🔴' if risk['auto_trade_killed'] else 'off 🟢'}",
            "",
            "*Polymarket:*",
            f"Strategy: {self.prediction.strategy or 'none'}",
            f"Bets: {stats.total_bets} ({stats.wins}W / {stats.losses}L) | P&L: ${stats.total_pnl:.2f}",
            "",
            f"Loops: {'running 🟢' if self._running else 'stopped 🔴'}",
        ]
        return "\n".join(lines)
