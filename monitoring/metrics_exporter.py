"""
Metrics Exporter
Exports execution and risk metrics in Prometheus format
"""
from typing import Any, Dict, Optional

from loguru import logger
from prometheus_client import (
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
    start_http_server,
)


class MetricsExporter:
    """
    Prometheus metrics for the trader.

    Each exporter owns its own CollectorRegistry, so several instances (one
    per test) never collide on metric names.
    """

    def __init__(self, port: int = 0, registry: Optional[CollectorRegistry] = None):
        """
        Initialize metrics exporter.

        Args:
            port: HTTP port for the /metrics endpoint (0 = do not serve)
            registry: Registry to register metrics in
        """
        self.port = port
        self.registry = registry or CollectorRegistry()
        self._server_started = False

        self._setup_metrics()

        logger.info(f"Initialized Metrics Exporter (port={port or 'disabled'})")

    def _setup_metrics(self) -> None:
        self.executions_total = Counter(
            "autotrader_executions_total",
            "Guarded external executions",
            ["action", "outcome"],
            registry=self.registry,
        )
        self.execution_latency = Histogram(
            "autotrader_execution_latency_seconds",
            "Latency of guarded external executions",
            ["action"],
            buckets=(0.5, 1, 2, 5, 10, 15, 30, 60, 120),
            registry=self.registry,
        )
        self.alerts_total = Counter(
            "autotrader_alerts_total",
            "System alerts by category and level",
            ["category", "level"],
            registry=self.registry,
        )
        self.open_positions = Gauge(
            "autotrader_open_positions",
            "Open spot positions",
            registry=self.registry,
        )
        self.kill_switch = Gauge(
            "autotrader_kill_switch",
            "1 when auto-trade is disabled by the drawdown kill switch",
            registry=self.registry,
        )
        self.daily_trades = Gauge(
            "autotrader_daily_trades",
            "Trades recorded by the risk guard today",
            registry=self.registry,
        )
        self.daily_loss = Gauge(
            "autotrader_daily_loss_usd",
            "Realized loss recorded by the risk guard today",
            registry=self.registry,
        )
        self.prediction_bets_total = Counter(
            "autotrader_prediction_bets_total",
            "Prediction-market bets placed",
            registry=self.registry,
        )

    def start(self) -> bool:
        """Serve /metrics on the configured port."""
        if not self.port or self._server_started:
            return False
        start_http_server(self.port, registry=self.registry)
        self._server_started = True
        logger.info(f"Metrics server started on port {self.port}")
        return True

    def record_execution(self, action: str, success: bool, latency_ms: float) -> None:
        self.executions_total.labels(action=action, outcome="success" if success else "failure").inc()
        self.execution_latency.labels(action=action).observe(max(latency_ms, 0.0) / 1000)

    def record_alert(self, category: str, level: str) -> None:
        self.alerts_total.labels(category=category, level=level).inc()

    def record_prediction_bet(self) -> None:
        self.prediction_bets_total.inc()

    def update_risk(self, risk_status: Dict[str, Any], open_positions: int) -> None:
        self.open_positions.set(open_positions)
        self.kill_switch.set(1 if risk_status.get("auto_trade_killed") else 0)
        self.daily_trades.set(risk_status.get("daily_trades", 0))
        self.daily_loss.set(risk_status.get("daily_loss", 0.0))

    def render(self) -> bytes:
        """Current metrics in the Prometheus text format."""
        return generate_latest(self.registry)
