"""
Bankr Client
Prompt-based execution API: submit a natural-language instruction, then poll
the job until it completes
"""
import asyncio
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional

import httpx
from loguru import logger

import config as cfg


@dataclass
class PromptResult:
    """Outcome of one prompt job; the response text is opaque."""
    success: bool
    job_id: str = ""
    status: str = ""
    thread_id: Optional[str] = None
    response: str = ""
    error: Optional[str] = None
    transactions: List[Dict[str, Any]] = field(default_factory=list)


# async (prompt, thread_id) -> PromptResult
PromptFn = Callable[..., Awaitable[PromptResult]]


class BankrError(Exception):
    """Raised inside a guarded operation when a prompt job did not succeed."""


def require_success(result: PromptResult) -> PromptResult:
    """Turn a failed PromptResult into BankrError so the safety layer can classify it."""
    if not result.success:
        raise BankrError(result.error or f"Bankr job {result.status or 'failed'}")
    return result


class BankrClient:
    """
    HTTP client for the Bankr agent API.

    prompt() never raises: transport and job failures come back as
    PromptResult(success=False, error=...).
    """

    def __init__(
        self,
        api_key: str = cfg.BANKR_API_KEY,
        base_url: str = cfg.BANKR_API_URL,
        poll_interval: float = cfg.BANKR_POLL_INTERVAL,
        max_polls: int = cfg.BANKR_MAX_POLLS,
        timeout: float = cfg.BANKR_TIMEOUT,
        client: Optional[httpx.AsyncClient] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        """
        Initialize Bankr client.

        Args:
            api_key: X-API-Key credential
            base_url: API root
            poll_interval: Seconds between job polls
            max_polls: Polls before giving up on a job
            timeout: Per-request HTTP timeout in seconds
            client: Pre-built httpx client (tests pass one with a MockTransport)
            sleep: Awaitable sleep between polls
        """
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.poll_interval = poll_interval
        self.max_polls = max_polls
        self.timeout = timeout
        self._sleep = sleep

        self.session: Optional[httpx.AsyncClient] = client

        logger.info(f"Initialized Bankr client ({self.base_url}, key={'set' if api_key else 'missing'})")

    @property
    def _headers(self) -> Dict[str, str]:
        return {"X-API-Key": self.api_key, "User-Agent": "Autotrader/1.0"}

    async def connect(self) -> None:
        if self.session is None:
            self.session = httpx.AsyncClient(timeout=self.timeout)

    async def disconnect(self) -> None:
        if self.session:
            await self.session.aclose()
            self.session = None
            logger.info("Disconnected from Bankr API")

    async def __aenter__(self) -> "BankrClient":
        await self.connect()
        return self

    async def __aexit__(self, *exc) -> None:
        await self.disconnect()

    async def prompt(self, text: str, thread_id: Optional[str] = None) -> PromptResult:
        """
        Submit a prompt and wait for the job to finish.

        Args:
            text: Natural-language instruction
            thread_id: Optional conversation id to continue

        Returns:
            PromptResult
        """
        if not self.api_key:
            return PromptResult(success=False, status="no_key", error="No Bankr API key configured")

        await self.connect()

        body: Dict[str, Any] = {"prompt": text}
        if thread_id:
            body["threadId"] = thread_id

        try:
            response = await self.session.post(
                f"{self.base_url}/agent/prompt", json=body, headers=self._headers
            )
            if response.status_code >= 400:
                return PromptResult(
                    success=False,
                    status="failed",
                    error=f"Bankr API error: {response.status_code} {response.text}",
                )

            data = response.json()
            job_id = data.get("jobId")
            result_thread_id = data.get("threadId")
            if not job_id:
                return PromptResult(success=False, status="failed", error="No job ID returned from Bankr")

            logger.debug(f"Bankr job {job_id} submitted")

            for _ in range(self.max_polls):
                await self._sleep(self.poll_interval)

                poll = await self.session.get(
                    f"{self.base_url}/agent/job/{job_id}", headers=self._headers
                )
                if poll.status_code >= 400:
                    continue
                poll_data = poll.json()
                status = poll_data.get("status")

                if status == "completed":
                    transactions = poll_data.get("transactions") or []
                    if transactions:
                        logger.info(f"Bankr returned {len(transactions)} transaction(s) for job {job_id}")
                    return PromptResult(
                        success=True,
                        job_id=job_id,
                        status="completed",
                        thread_id=result_thread_id,
                        response=poll_data.get("response") or "No response",
                        transactions=transactions,
                    )

                if status in ("failed", "cancelled"):
                    return PromptResult(
                        success=False,
                        job_id=job_id,
                        status=status,
                        error=poll_data.get("response") or "Job failed",
                    )

            waited = self.poll_interval * self.max_polls
            return PromptResult(
                success=False,
                job_id=job_id,
                status="timeout",
                error=f"Request timed out ({waited:.0f}s)",
            )

        except (httpx.HTTPError, ValueError) as e:
            logger.error(f"Bankr request failed: {e}")
            return PromptResult(success=False, status="failed", error=str(e) or e.__class__.__name__)
