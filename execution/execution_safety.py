"""
Execution Safety
Rate limiting, idempotent execution, retry with backoff and error
classification around any asynchronous external call
"""
import asyncio
import hashlib
import json
import math
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional, Set, Tuple

import httpx
from loguru import logger

from core.ingestion.managers.rate_limiter import ActionRateLimiter
from monitoring.observability import AlertCategory, AlertLevel, ObservabilityLogger


MAX_RETRIES = 3
SUCCESS_CACHE_TTL = 3600.0  # seconds
FAILURE_CACHE_TTL = 300.0

DEFAULT_BACKOFFS: Dict[str, float] = {
    "network": 2.0,
    "rate_limit": 60.0,
    "system": 5.0,
}


class ErrorType(Enum):
    NETWORK = "network"
    RATE_LIMIT = "rate_limit"
    INSUFFICIENT_BALANCE = "insufficient_balance"
    MARKET_CLOSED = "market_closed"
    INVALID_PARAMS = "invalid_params"
    SYSTEM = "system"


@dataclass
class ClassifiedError:
    type: ErrorType
    message: str
    retryable: bool
    backoff: float  # seconds

    def __str__(self) -> str:
        return self.message


@dataclass
class ExecutionRequest:
    """
    One guarded external call.

    `id` should come from generate_request_id() so that repeated submissions
    of the same logical action collapse onto one cache entry.
    """
    id: str
    type: str  # trade | scan | research | polymarket_bet
    user_id: str
    params: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ExecutionResult:
    success: bool
    data: Any = None
    error: Optional[ClassifiedError] = None
    latency: float = 0.0  # milliseconds
    cached: bool = False
    retry_count: int = 0

    @property
    def error_message(self) -> str:
        return self.error.message if self.error else ""


def generate_request_id(action_type: str, params: Dict[str, Any]) -> str:
    """Deterministic id: same action type and params always give the same id."""
    payload = json.dumps(params, sort_keys=True, default=str)
    digest = hashlib.sha256(f"{action_type}:{payload}".encode("utf-8")).hexdigest()
    return f"{action_type}_{digest[:16]}"


class ExecutionSafetyManager:
    """
    Guard every external call.

    Order of checks:
    1. Duplicate suppression for ids already in flight
    2. Sliding-window rate limit per (action type, user)
    3. Cached result for a known id
    Then execute, retrying network/rate-limit/system errors up to MAX_RETRIES.
    """

    def __init__(
        self,
        observability: Optional[ObservabilityLogger] = None,
        rate_limiter: Optional[ActionRateLimiter] = None,
        backoffs: Optional[Dict[str, float]] = None,
        max_retries: int = MAX_RETRIES,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize execution safety manager.

        Args:
            observability: Structured-log collaborator that receives every outcome
            rate_limiter: Per-action limiter (defaults to the fixed action limits)
            backoffs: Override retry backoff seconds per error type
            max_retries: Maximum automatic retries
            sleep: Awaitable sleep used between retries
            clock: Monotonic clock in seconds (cache expiry, latency)
        """
        self.observability = observability or ObservabilityLogger()
        self.rate_limiter = rate_limiter or ActionRateLimiter(clock=clock)
        self.backoffs = {**DEFAULT_BACKOFFS, **(backoffs or {})}
        self.max_retries = max_retries
        self._sleep = sleep
        self._clock = clock

        self._pending: Set[str] = set()
        self._cache: Dict[str, Tuple[float, ExecutionResult]] = {}

        self._total_executions = 0
        self._successful = 0
        self._failed = 0
        self._retries = 0
        self._rate_limit_hits = 0
        self._duplicates = 0
        self._cache_hits = 0
        self._total_latency = 0.0

        logger.info(
            f"Initialized Execution Safety: retries={max_retries}, "
            f"backoffs={self.backoffs}"
        )

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def safe_execute(
        self,
        request: ExecutionRequest,
        operation: Callable[[], Awaitable[Any]],
    ) -> ExecutionResult:
        """
        Execute an operation with safety checks.

        Args:
            request: Request descriptor (id, action type, user)
            operation: Zero-argument coroutine factory; called once per attempt

        Returns:
            ExecutionResult; never raises for operation failures
        """
        if request.id in self._pending:
            self._duplicates += 1
            logger.warning(f"Duplicate execution prevented: {request.id}")
            return ExecutionResult(
                success=False,
                error=ClassifiedError(
                    ErrorType.SYSTEM, "Duplicate execution prevented", retryable=False, backoff=0.0
                ),
            )

        allowed, retry_after = self.rate_limiter.check(request.type, request.user_id)
        if not allowed:
            self._rate_limit_hits += 1
            self.observability.log_alert(
                AlertLevel.WARNING,
                AlertCategory.RATE_LIMIT,
                f"Rate limit exceeded for {request.type}",
                {"user_id": request.user_id, "type": request.type},
            )
            return ExecutionResult(
                success=False,
                error=ClassifiedError(
                    ErrorType.RATE_LIMIT,
                    f"Rate limit exceeded. Try again in {max(1, math.ceil(retry_after))}s",
                    retryable=True,
                    backoff=retry_after,
                ),
            )

        cached = self._get_cached(request.id)
        if cached is not None:
            self._cache_hits += 1
            logger.debug(f"Returning cached result for {request.id}")
            return ExecutionResult(
                success=cached.success,
                data=cached.data,
                error=cached.error,
                latency=cached.latency,
                cached=True,
                retry_count=cached.retry_count,
            )

        self._pending.add(request.id)
        try:
            return await self._execute_with_retry(request, operation)
        finally:
            self._pending.discard(request.id)

    def is_pending(self, request_id: str) -> bool:
        return request_id in self._pending

    def get_stats(self) -> Dict[str, Any]:
        completed = self._successful + self._failed
        return {
            "total_executions": self._total_executions,
            "successful": self._successful,
            "failed": self._failed,
            "success_rate": self._successful / completed if completed else 0.0,
            "avg_latency_ms": self._total_latency / completed if completed else 0.0,
            "retry_count": self._retries,
            "rate_limit_hits": self._rate_limit_hits,
            "duplicates_prevented": self._duplicates,
            "cache_hits": self._cache_hits,
            "cached_results": len(self._cache),
            "in_flight": len(self._pending),
        }

    def clear_cache(self) -> None:
        self._cache.clear()

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def _execute_with_retry(
        self,
        request: ExecutionRequest,
        operation: Callable[[], Awaitable[Any]],
    ) -> ExecutionResult:
        start = self._clock()
        retry_count = 0

        while True:
            self._total_executions += 1
            self.rate_limiter.record(request.type, request.user_id)
            attempt_start = self._clock()

            try:
                data = await operation()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                attempt_latency = (self._clock() - attempt_start) * 1000
                error = self.classify_error(e)

                self.observability.log_trade_decision(
                    user_id=request.user_id,
                    action=request.type,
                    reasoning=f"Failed {request.type}: {error.message}",
                    success=False,
                    latency_ms=attempt_latency,
                    confidence=0.0,
                    error=error.message,
                )

                if error.retryable and retry_count < self.max_retries:
                    retry_count += 1
                    self._retries += 1
                    self.observability.log_alert(
                        AlertLevel.INFO,
                        AlertCategory.EXECUTION_ERROR,
                        f"Retrying {request.type} (attempt {retry_count})",
                        {"request_id": request.id, "error": error.message},
                    )
                    logger.warning(
                        f"{request.type} failed ({error.type.value}), "
                        f"retry {retry_count}/{self.max_retries} in {error.backoff:.1f}s"
                    )
                    await self._sleep(error.backoff)
                    continue

                latency = (self._clock() - start) * 1000
                result = ExecutionResult(
                    success=False,
                    error=error,
                    latency=latency,
                    retry_count=retry_count,
                )
                self._failed += 1
                self._total_latency += latency
                self._cache_result(request.id, result, FAILURE_CACHE_TTL)
                logger.error(f"{request.type} failed after {retry_count} retries: {error.message}")
                return result

            latency = (self._clock() - start) * 1000
            self.observability.log_trade_decision(
                user_id=request.user_id,
                action=request.type,
                reasoning=f"Executed {request.type}",
                success=True,
                latency_ms=latency,
            )
            self.observability.check_api_latency(latency, request.type)

            result = ExecutionResult(
                success=True,
                data=data,
                latency=latency,
                retry_count=retry_count,
            )
            self._successful += 1
            self._total_latency += latency
            self._cache_result(request.id, result, SUCCESS_CACHE_TTL)
            return result

    def classify_error(self, error: BaseException) -> ClassifiedError:
        """Map an exception onto the error taxonomy by type and message."""
        message = str(error) or error.__class__.__name__
        text = message.lower()
        status = None
        if isinstance(error, httpx.HTTPStatusError):
            status = error.response.status_code

        if (
            isinstance(error, (httpx.TransportError, ConnectionError, asyncio.TimeoutError))
            or "econnreset" in text
            or "etimedout" in text
            or "fetch failed" in text
        ):
            return self._error(ErrorType.NETWORK, message)

        if status == 429 or "rate limit" in text or "429" in text:
            return self._error(ErrorType.RATE_LIMIT, message)

        if "insufficient" in text or "balance" in text or "funds" in text:
            return self._error(ErrorType.INSUFFICIENT_BALANCE, message)

        if "market closed" in text or "trading halted" in text or "market not found" in text:
            return self._error(ErrorType.MARKET_CLOSED, message)

        if status == 400 or "invalid" in text or "validation" in text:
            return self._error(ErrorType.INVALID_PARAMS, message)

        return self._error(ErrorType.SYSTEM, message[:200])

    def _error(self, error_type: ErrorType, message: str) -> ClassifiedError:
        backoff = self.backoffs.get(error_type.value)
        return ClassifiedError(
            type=error_type,
            message=message,
            retryable=backoff is not None,
            backoff=backoff or 0.0,
        )

    # ------------------------------------------------------------------
    # Idempotency cache
    # ------------------------------------------------------------------

    def _cache_result(self, request_id: str, result: ExecutionResult, ttl: float) -> None:
        self._cache[request_id] = (self._clock() + ttl, result)

    def _get_cached(self, request_id: str) -> Optional[ExecutionResult]:
        now = self._clock()
        expired = [key for key, (expires_at, _) in self._cache.items() if expires_at <= now]
        for key in expired:
            del self._cache[key]

        entry = self._cache.get(request_id)
        return entry[1] if entry else None
