"""
Response Validator
Turns free-text answers from the execution API into structured records
"""
import re
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from loguru import logger


SCORE_FIELDS = 7
PRICE_PATTERN = re.compile(r"\$?(\d+(?:\.\d+)?)")
SKIP_PATTERN = re.compile(r"^\s*SKIP\b", re.IGNORECASE | re.MULTILINE)


@dataclass
class TokenCandidate:
    """One scored token from the scoring contract."""
    name: str
    symbol: str
    price: str
    market_cap: float
    volume_24h: str
    change_24h: str
    score: int
    reason: str

    def is_viable(self, threshold: int = 60) -> bool:
        return self.score >= threshold


@dataclass
class RejectedLine:
    line: str
    reason: str


@dataclass
class ScoreParseResult:
    """Candidates sorted by score, plus every non-empty line that was dropped."""
    candidates: List[TokenCandidate] = field(default_factory=list)
    rejected: List[RejectedLine] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.candidates


@dataclass
class PriceParseResult:
    price: Optional[float]
    raw: str

    @property
    def ok(self) -> bool:
        return self.price is not None and self.price > 0


def parse_market_cap(raw: str) -> float:
    """'$35k' -> 35000.0, '$1.2m' -> 1200000.0, unparseable -> 0.0"""
    text = raw.strip().lower()
    multiplier = 1.0
    if "k" in text:
        multiplier = 1_000.0
    elif "m" in text:
        multiplier = 1_000_000.0

    number = re.sub(r"[$,km\s]", "", text)
    try:
        return float(number) * multiplier
    except ValueError:
        return 0.0


def parse_score_line(line: str) -> TokenCandidate:
    """
    Parse `SCORE|symbol|price|marketcap|volume24h|change24h|reason`.

    Raises:
        ValueError: if the line does not satisfy the contract
    """
    parts = [p.strip() for p in line.split("|", SCORE_FIELDS - 1)]
    if len(parts) < SCORE_FIELDS:
        raise ValueError(f"expected {SCORE_FIELDS} fields, got {len(parts)}")

    try:
        score = int(parts[0])
    except ValueError:
        raise ValueError(f"score '{parts[0]}' is not an integer")

    if not 0 <= score <= 100:
        raise ValueError(f"score {score} outside 0-100")

    symbol = parts[1]
    if not symbol:
        raise ValueError("empty symbol")

    return TokenCandidate(
        name=symbol,
        symbol=symbol,
        price=parts[2],
        market_cap=parse_market_cap(parts[3]),
        volume_24h=parts[4],
        change_24h=parts[5],
        score=score,
        # the reason keeps any pipes of its own
        reason=parts[6],
    )


def parse_score_response(text: str) -> ScoreParseResult:
    """Parse every line of a scoring answer and rank the survivors."""
    result = ScoreParseResult()

    # symbol -> (candidate, source line); one candidate per symbol, the highest score wins
    best: Dict[str, Tuple[TokenCandidate, str]] = {}

    for line in (text or "").splitlines():
        if not line.strip():
            continue
        try:
            candidate = parse_score_line(line)
        except ValueError as e:
            result.rejected.append(RejectedLine(line=line, reason=str(e)))
            continue

        key = candidate.symbol.upper()
        seen = best.get(key)
        if seen is not None:
            keep_seen = candidate.score <= seen[0].score
            loser = line if keep_seen else seen[1]
            result.rejected.append(RejectedLine(line=loser, reason=f"duplicate symbol {key}"))
            if keep_seen:
                continue
        best[key] = (candidate, line)

    result.candidates = sorted((c for c, _ in best.values()), key=lambda c: c.score, reverse=True)

    if result.rejected:
        logger.debug(f"Dropped {len(result.rejected)} scoring line(s)")

    return result


def parse_price(text: Optional[str]) -> PriceParseResult:
    """First `$?digits` number in a free-text answer."""
    raw = text or ""
    match = PRICE_PATTERN.search(raw)
    if not match:
        return PriceParseResult(price=None, raw=raw)
    try:
        return PriceParseResult(price=float(match.group(1)), raw=raw)
    except ValueError:
        return PriceParseResult(price=None, raw=raw)


def is_skip_response(text: Optional[str]) -> bool:
    """True when any line of the answer starts with SKIP."""
    return bool(SKIP_PATTERN.search(text or ""))
