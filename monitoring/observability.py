"""
Observability
Structured trade-decision and alert records with performance analytics
"""
import json
import secrets
import time
from collections import deque
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Deque, Dict, List, Optional

from loguru import logger

import config as cfg


class AlertLevel(Enum):
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class AlertCategory(Enum):
    API_LATENCY = "api_latency"
    MISSED_SCAN = "missed_scan"
    EXECUTION_ERROR = "execution_error"
    RATE_LIMIT = "rate_limit"
    DRAWDOWN = "drawdown"


@dataclass
class TradeDecision:
    """One executed (or failed) action, as reported by the safety wrapper or a loop."""
    id: str
    timestamp: float
    user_id: str
    action: str  # scan | research | trade | polymarket_bet | buy | sell
    reasoning: str
    confidence: float
    latency_ms: float
    success: bool
    symbol: Optional[str] = None
    amount: Optional[float] = None
    price: Optional[float] = None
    error: Optional[str] = None
    pnl: Optional[float] = None


@dataclass
class SystemAlert:
    id: str
    timestamp: float
    level: AlertLevel
    category: AlertCategory
    message: str
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class PerformanceMetrics:
    """Performance metrics snapshot."""
    total_trades: int = 0
    winning_trades: int = 0
    losing_trades: int = 0
    win_rate: float = 0.0  # percent
    total_pnl: float = 0.0
    avg_win: float = 0.0
    avg_loss: float = 0.0
    max_drawdown: float = 0.0  # percent
    current_drawdown: float = 0.0  # percent
    profit_factor: float = 0.0
    sharpe_ratio: float = 0.0
    last_trades: List[TradeDecision] = field(default_factory=list)


class ObservabilityLogger:
    """
    Structured event log.

    Features:
    - Trade decision history (last 1000)
    - System alerts (last 500)
    - Cached performance metrics
    - Latency and missed-scan checks
    """

    CACHE_TTL = 60.0  # seconds

    def __init__(self, metrics_exporter=None):
        """
        Initialize observability logger.

        Args:
            metrics_exporter: Optional MetricsExporter mirrored on every event
        """
        self.metrics_exporter = metrics_exporter

        self._decisions: Deque[TradeDecision] = deque(maxlen=1000)
        self._alerts: Deque[SystemAlert] = deque(maxlen=500)

        self._metrics_cache: Optional[PerformanceMetrics] = None
        self._last_cache_update = 0.0

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def log_trade_decision(
        self,
        user_id: str,
        action: str,
        reasoning: str,
        success: bool,
        latency_ms: float = 0.0,
        confidence: float = 1.0,
        **extra: Any,
    ) -> str:
        """
        Record a trade decision.

        Returns:
            Decision ID
        """
        decision = TradeDecision(
            id=f"td_{int(time.time() * 1000)}_{secrets.token_hex(3)}",
            timestamp=time.time(),
            user_id=user_id,
            action=action,
            reasoning=reasoning,
            confidence=confidence,
            latency_ms=latency_ms,
            success=success,
            **extra,
        )
        self._decisions.append(decision)
        self._metrics_cache = None

        logger.bind(event="trade_decision").info(json.dumps(asdict(decision), default=str))

        if self.metrics_exporter:
            self.metrics_exporter.record_execution(action, success, latency_ms)

        return decision.id

    def log_alert(
        self,
        level: AlertLevel,
        category: AlertCategory,
        message: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> SystemAlert:
        alert = SystemAlert(
            id=f"al_{int(time.time() * 1000)}_{secrets.token_hex(3)}",
            timestamp=time.time(),
            level=level,
            category=category,
            message=message,
            metadata=metadata or {},
        )
        self._alerts.append(alert)

        payload = json.dumps(
            {
                "id": alert.id,
                "level": level.value,
                "category": category.value,
                "message": message,
                "metadata": alert.metadata,
            },
            default=str,
        )
        bound = logger.bind(event="system_alert")
        if level == AlertLevel.CRITICAL:
            bound.critical(payload)
        elif level == AlertLevel.ERROR:
            bound.error(payload)
        elif level == AlertLevel.WARNING:
            bound.warning(payload)
        else:
            bound.info(payload)

        if self.metrics_exporter:
            self.metrics_exporter.record_alert(category.value, level.value)

        return alert

    def check_api_latency(self, latency_ms: float, endpoint: str) -> None:
        if latency_ms > cfg.LATENCY_ERROR_MS:
            self.log_alert(
                AlertLevel.ERROR,
                AlertCategory.API_LATENCY,
                f"Critical API latency: {latency_ms:.0f}ms for {endpoint}",
                {"latency_ms": latency_ms, "endpoint": endpoint},
            )
        elif latency_ms > cfg.LATENCY_WARNING_MS:
            self.log_alert(
                AlertLevel.WARNING,
                AlertCategory.API_LATENCY,
                f"High API latency detected: {latency_ms:.0f}ms for {endpoint}",
                {"latency_ms": latency_ms, "endpoint": endpoint},
            )

    def check_missed_scan(self, expected_at: float, actual_at: float) -> None:
        delay = actual_at - expected_at
        if delay > 60:
            self.log_alert(
                AlertLevel.WARNING,
                AlertCategory.MISSED_SCAN,
                f"Market scan delayed by {delay:.0f}s",
                {"expected_at": expected_at, "actual_at": actual_at},
            )

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_recent_decisions(self, limit: int = 20) -> List[TradeDecision]:
        return list(self._decisions)[-limit:]

    def get_alerts(self, level: Optional[AlertLevel] = None, limit: int = 50) -> List[SystemAlert]:
        """Most recent first."""
        alerts = list(self._alerts)[-limit:]
        if level:
            alerts = [a for a in alerts if a.level == level]
        return list(reversed(alerts))

    def get_performance_metrics(self) -> PerformanceMetrics:
        now = time.time()
        if self._metrics_cache and now - self._last_cache_update < self.CACHE_TTL:
            return self._metrics_cache

        self._metrics_cache = self._calculate_metrics()
        self._last_cache_update = now
        return self._metrics_cache

    def _calculate_metrics(self) -> PerformanceMetrics:
        trades = [d for d in self._decisions if d.action in ("buy", "sell")]
        completed = [t for t in trades if t.pnl is not None]
        if not completed:
            return PerformanceMetrics(last_trades=trades[-20:])

        wins = [t.pnl for t in completed if t.pnl > 0]
        losses = [t.pnl for t in completed if t.pnl < 0]

        gross_profit = sum(wins)
        gross_loss = abs(sum(losses))
        if gross_loss > 0:
            profit_factor = gross_profit / gross_loss
        else:
            profit_factor = 999.0 if gross_profit > 0 else 0.0

        max_dd, current_dd = self._calculate_drawdown([t.pnl for t in completed])

        return PerformanceMetrics(
            total_trades=len(completed),
            winning_trades=len(wins),
            losing_trades=len(losses),
            win_rate=len(wins) / len(completed) * 100,
            total_pnl=sum(t.pnl for t in completed),
            avg_win=gross_profit / len(wins) if wins else 0.0,
            avg_loss=gross_loss / len(losses) if losses else 0.0,
            max_drawdown=max_dd,
            current_drawdown=current_dd,
            profit_factor=profit_factor,
            sharpe_ratio=self._calculate_sharpe_ratio([t.pnl for t in completed]),
            last_trades=trades[-20:],
        )

    @staticmethod
    def _calculate_drawdown(pnls: List[float]) -> tuple:
        peak = 0.0
        balance = 0.0
        max_dd = 0.0
        for pnl in pnls:
            balance += pnl
            peak = max(peak, balance)
            dd = (peak - balance) / peak * 100 if peak > 0 else 0.0
            max_dd = max(max_dd, dd)
        current = (peak - balance) / peak * 100 if peak > 0 else 0.0
        return max_dd, current

    @staticmethod
    def _calculate_sharpe_ratio(returns: List[float]) -> float:
        if len(returns) < 2:
            return 0.0
        mean = sum(returns) / len(returns)
        variance = sum((r - mean) ** 2 for r in returns) / len(returns)
        std = variance ** 0.5
        return mean / std if std > 0 else 0.0

    def _system_status(self, metrics: PerformanceMetrics) -> str:
        hour_ago = time.time() - 3600
        critical = [
            a for a in self._alerts
            if a.level == AlertLevel.CRITICAL and a.timestamp > hour_ago
        ]
        if critical:
            return "🔴 CRITICAL - System issues detected"
        if metrics.current_drawdown > 15:
            return "🟡 WARNING - High drawdown"
        if metrics.win_rate < 40 and metrics.total_trades > 10:
            return "🟡 WARNING - Low win rate"
        return "🟢 HEALTHY - System operating normally"

    def generate_report(self) -> str:
        m = self.get_performance_metrics()
        recent_alerts = list(self._alerts)[-10:]

        lines = []
        for t in m.last_trades[-5:]:
            pnl = f"{t.pnl:+.2f}" if t.pnl is not None else "N/A"
            lines.append(f"{'✅' if t.success else '❌'} {t.action.upper()} {t.symbol or 'N/A'} - {pnl}")

        return (
            f"📊 *Performance Report*\n\n"
            f"*Trading Performance:*\n"
            f"- Total Trades: {m.total_trades}\n"
            f"- Win Rate: {m.win_rate:.1f}%\n"
            f"- Total P&L: {m.total_pnl:+.2f}\n"
            f"- Average Win: {m.avg_win:.2f}\n"
            f"- Average Loss: {m.avg_loss:.2f}\n"
            f"- Profit Factor: {m.profit_factor:.2f}\n\n"
            f"*Risk Metrics:*\n"
            f"- Max Drawdown: {m.max_drawdown:.1f}%\n"
            f"- Current Drawdown: {m.current_drawdown:.1f}%\n"
            f"- Sharpe Ratio: {m.sharpe_ratio:.2f}\n\n"
            f"*Recent Performance:*\n"
            f"{chr(10).join(lines) or 'No trades yet'}\n\n"
            f"*System Health:*\n"
            f"- Recent Alerts: {len(recent_alerts)}\n"
            f"- Critical Issues: {len([a for a in recent_alerts if a.level == AlertLevel.CRITICAL])}\n\n"
            f"*Status:* {self._system_status(m)}"
        )
