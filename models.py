"""
Data models for the autonomous trader.

The persisted document keeps the camelCase keys of the agent's memory file,
so every model owns its own to_dict / from_dict mapping.
"""
import time
from dataclasses import dataclass, field, fields
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, TypeVar

from loguru import logger

import config as cfg


T = TypeVar("T")

TRUE_WORDS = {"true", "on", "yes", "1"}
FALSE_WORDS = {"false", "off", "no", "0"}


def now_ms() -> int:
    return int(time.time() * 1000)


def _number(data: Dict[str, Any], key: str, cast: Callable[[Any], T], default: T) -> T:
    """Missing or null numbers fall back to the default."""
    value = data.get(key)
    return default if value is None else cast(value)


def _records(kind: str, items: List[Any], load: Callable[[Any], T]) -> List[T]:
    """Load each record on its own; a bad one is logged and skipped."""
    loaded = []
    for item in items:
        try:
            loaded.append(load(item))
        except (KeyError, ValueError, TypeError, AttributeError) as e:
            logger.warning(f"Skipping unreadable {kind} record {item!r}: {e}")
    return loaded


class TradeAction(Enum):
    BUY = "buy"
    SELL = "sell"


class TradeStatus(Enum):
    OPEN = "open"
    CLOSED = "closed"
    FAILED = "failed"


class BetResult(Enum):
    WIN = "win"
    LOSS = "loss"
    PENDING = "pending"


@dataclass
class TradeEntry:
    """One attempted or completed spot-market action."""
    id: str
    token: str
    symbol: str
    action: TradeAction
    amount: str  # display string, e.g. "$5"
    timestamp: int
    reason: str
    status: TradeStatus
    price: Optional[str] = None
    market_cap: Optional[str] = None
    external_response: Optional[str] = None
    pnl: Optional[str] = None  # percent, e.g. "110.00"
    exit_price: Optional[str] = None
    exit_timestamp: Optional[int] = None

    @property
    def is_open(self) -> bool:
        return self.status == TradeStatus.OPEN

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "token": self.token,
            "symbol": self.symbol,
            "action": self.action.value,
            "amount": self.amount,
            "price": self.price,
            "marketCap": self.market_cap,
            "timestamp": self.timestamp,
            "reason": self.reason,
            "bankrResponse": self.external_response,
            "pnl": self.pnl,
            "status": self.status.value,
            "exitPrice": self.exit_price,
            "exitTimestamp": self.exit_timestamp,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TradeEntry":
        return cls(
            id=data["id"],
            token=data.get("token", data.get("symbol", "")),
            symbol=data.get("symbol", ""),
            action=TradeAction(data.get("action") or "buy"),
            amount=str(data.get("amount", "")),
            price=data.get("price"),
            market_cap=data.get("marketCap"),
            timestamp=_number(data, "timestamp", int, 0),
            reason=data.get("reason", ""),
            external_response=data.get("bankrResponse"),
            pnl=data.get("pnl"),
            status=TradeStatus(data.get("status") or "open"),
            exit_price=data.get("exitPrice"),
            exit_timestamp=data.get("exitTimestamp"),
        )


@dataclass
class TokenMemory:
    """Running research cache for one symbol."""
    symbol: str
    last_researched: int = 0
    research_summary: str = ""
    score: int = 50
    address: Optional[str] = None
    market_cap: Optional[str] = None
    volume_24h: Optional[str] = None
    sentiment: Optional[str] = None
    last_price: Optional[str] = None
    times_traded: int = 0
    total_pnl: float = 0.0
    tags: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "symbol": self.symbol,
            "address": self.address,
            "lastResearched": self.last_researched,
            "researchSummary": self.research_summary,
            "score": self.score,
            "marketCap": self.market_cap,
            "volume24h": self.volume_24h,
            "sentiment": self.sentiment,
            "timesTraded": self.times_traded,
            "totalPnl": self.total_pnl,
            "lastPrice": self.last_price,
            "tags": list(self.tags),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TokenMemory":
        return cls(
            symbol=data["symbol"],
            address=data.get("address"),
            last_researched=_number(data, "lastResearched", int, 0),
            research_summary=data.get("researchSummary") or "",
            score=_number(data, "score", int, 50),
            market_cap=data.get("marketCap"),
            volume_24h=data.get("volume24h"),
            sentiment=data.get("sentiment"),
            times_traded=_number(data, "timesTraded", int, 0),
            total_pnl=_number(data, "totalPnl", float, 0.0),
            last_price=data.get("lastPrice"),
            tags=list(data.get("tags") or []),
        )


@dataclass
class PolymarketTrade:
    """One prediction-market bet."""
    id: str
    market: str
    outcome: str
    amount: str
    odds: str
    timestamp: int
    result: BetResult = BetResult.PENDING
    pnl: Optional[str] = None
    external_response: Optional[str] = None
    strategy: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "market": self.market,
            "outcome": self.outcome,
            "amount": self.amount,
            "odds": self.odds,
            "timestamp": self.timestamp,
            "result": self.result.value,
            "pnl": self.pnl,
            "bankrResponse": self.external_response,
            "strategy": self.strategy,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PolymarketTrade":
        return cls(
            id=data["id"],
            market=data.get("market", ""),
            outcome=data.get("outcome", ""),
            amount=str(data.get("amount", "")),
            odds=str(data.get("odds", "")),
            timestamp=_number(data, "timestamp", int, 0),
            result=BetResult(data.get("result") or "pending"),
            pnl=data.get("pnl"),
            external_response=data.get("bankrResponse"),
            strategy=data.get("strategy", ""),
        )


@dataclass
class PolymarketStats:
    total_bets: int = 0
    wins: int = 0
    losses: int = 0
    total_pnl: float = 0.0
    best_strategy: str = ""
    worst_strategy: str = ""

    @property
    def win_rate(self) -> float:
        """Trailing win rate over all placed bets, 0.5 with no history."""
        if self.total_bets == 0:
            return 0.5
        return self.wins / self.total_bets

    def to_dict(self) -> Dict[str, Any]:
        return {
            "totalBets": self.total_bets,
            "wins": self.wins,
            "losses": self.losses,
            "totalPnl": self.total_pnl,
            "bestStrategy": self.best_strategy,
            "worstStrategy": self.worst_strategy,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PolymarketStats":
        return cls(
            total_bets=_number(data, "totalBets", int, 0),
            wins=_number(data, "wins", int, 0),
            losses=_number(data, "losses", int, 0),
            total_pnl=_number(data, "totalPnl", float, 0.0),
            best_strategy=data.get("bestStrategy") or "",
            worst_strategy=data.get("worstStrategy") or "",
        )


@dataclass
class Settings:
    """User-tunable settings block, persisted with the memory document."""
    max_market_cap: int = cfg.MAX_MARKET_CAP
    max_buy_amount: str = cfg.MAX_BUY_AMOUNT
    take_profit_pct: float = cfg.TAKE_PROFIT_PCT
    stop_loss_pct: float = cfg.STOP_LOSS_PCT
    scan_interval_min: int = cfg.SCAN_INTERVAL_MIN
    auto_trade_enabled: bool = cfg.AUTO_TRADE_ENABLED
    max_open_positions: int = cfg.MAX_OPEN_POSITIONS

    # persisted key -> attribute
    KEYS = {
        "maxMarketCap": "max_market_cap",
        "maxBuyAmount": "max_buy_amount",
        "takeProfitPct": "take_profit_pct",
        "stopLossPct": "stop_loss_pct",
        "scanIntervalMin": "scan_interval_min",
        "autoTradeEnabled": "auto_trade_enabled",
        "maxOpenPositions": "max_open_positions",
    }

    @property
    def buy_amount_usd(self) -> float:
        try:
            return float(str(self.max_buy_amount).replace("$", "").strip())
        except ValueError:
            return 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {key: getattr(self, attr) for key, attr in self.KEYS.items()}

    @classmethod
    def coerce(cls, attr: str, value: Any) -> Any:
        """
        Cast one value to the type of its field.

        Raises:
            ValueError: if the value cannot represent that type
        """
        kind = {f.name: f.type for f in fields(cls)}[attr]
        if kind is bool:
            if isinstance(value, bool):
                return value
            text = str(value).strip().lower()
            if text in TRUE_WORDS:
                return True
            if text in FALSE_WORDS:
                return False
            raise ValueError(f"{attr} must be true or false, got {value!r}")

        if isinstance(value, bool) or value is None:
            raise ValueError(f"{attr} must be a number, got {value!r}")
        try:
            number = float(str(value).replace("$", "").strip())
        except ValueError:
            raise ValueError(f"{attr} must be a number, got {value!r}")
        if number != number or number in (float("inf"), float("-inf")):
            raise ValueError(f"{attr} must be a finite number, got {value!r}")

        if kind is int:
            if number != int(number):
                raise ValueError(f"{attr} must be a whole number, got {value!r}")
            return int(number)
        if kind is float:
            return number
        # dollar amounts stay strings
        return str(value).replace("$", "").strip()

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Settings":
        settings = cls()
        for key, attr in cls.KEYS.items():
            if data.get(key) is None:
                continue
            try:
                setattr(settings, attr, cls.coerce(attr, data[key]))
            except ValueError as e:
                logger.warning(f"Ignoring stored setting {key}: {e}")
        return settings


@dataclass
class AgentMemory:
    """Aggregate root of everything the trader remembers between restarts."""
    tokens: Dict[str, TokenMemory] = field(default_factory=dict)
    trades: List[TradeEntry] = field(default_factory=list)
    polymarket_trades: List[PolymarketTrade] = field(default_factory=list)
    learnings: List[str] = field(default_factory=list)
    polymarket_learnings: List[str] = field(default_factory=list)
    last_scan_time: int = 0
    total_trades: int = 0
    win_rate: float = 0.0  # fraction of closed trades with pnl > 0
    total_pnl: float = 0.0
    polymarket_stats: PolymarketStats = field(default_factory=PolymarketStats)
    settings: Settings = field(default_factory=Settings)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tokens": {symbol: t.to_dict() for symbol, t in self.tokens.items()},
            "trades": [t.to_dict() for t in self.trades],
            "polymarketTrades": [t.to_dict() for t in self.polymarket_trades],
            "learnings": list(self.learnings),
            "polymarketLearnings": list(self.polymarket_learnings),
            "lastScanTime": self.last_scan_time,
            "totalTrades": self.total_trades,
            "winRate": self.win_rate,
            "totalPnl": self.total_pnl,
            "polymarketStats": self.polymarket_stats.to_dict(),
            "settings": self.settings.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AgentMemory":
        tokens = _records(
            "token",
            list((data.get("tokens") or {}).items()),
            lambda item: TokenMemory.from_dict({**(item[1] or {}), "symbol": item[0]}),
        )
        return cls(
            tokens={t.symbol: t for t in tokens},
            trades=_records("trade", data.get("trades") or [], TradeEntry.from_dict),
            polymarket_trades=_records(
                "prediction bet", data.get("polymarketTrades") or [], PolymarketTrade.from_dict
            ),
            learnings=list(data.get("learnings") or []),
            polymarket_learnings=list(data.get("polymarketLearnings") or []),
            last_scan_time=_number(data, "lastScanTime", int, 0),
            total_trades=_number(data, "totalTrades", int, 0),
            win_rate=_number(data, "winRate", float, 0.0),
            total_pnl=_number(data, "totalPnl", float, 0.0),
            polymarket_stats=PolymarketStats.from_dict(data.get("polymarketStats") or {}),
            settings=Settings.from_dict(data.get("settings") or {}),
        )
