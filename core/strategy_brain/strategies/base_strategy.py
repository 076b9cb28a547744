"""
Base Strategy
Shared plumbing for loops that talk to the prompt API through the safety layer
"""
from abc import ABC
from typing import Any, Optional

from loguru import logger

import config as cfg
from execution.bankr_client import PromptFn, require_success
from execution.execution_safety import (
    ExecutionRequest,
    ExecutionResult,
    ExecutionSafetyManager,
    generate_request_id,
)
from monitoring.notifier import NotifyFn, safe_notify
from storage.memory_store import MemoryStore


class PromptStrategy(ABC):
    """
    Base class for every loop driven by the prompt API.

    Holds the collaborators and a cycle counter. Each cycle gets its own
    marker in the request params, so a repeated instruction inside one cycle
    collapses onto one request id while the next cycle is a fresh request.
    """

    def __init__(
        self,
        name: str,
        prompt: PromptFn,
        store: MemoryStore,
        safety: ExecutionSafetyManager,
        notify: Optional[NotifyFn] = None,
        user_id: str = cfg.AGENT_USER_ID,
    ):
        """
        Initialize strategy.

        Args:
            name: Strategy name for logging
            prompt: async (text, thread_id=None) -> PromptResult
            store: Persistent memory
            safety: Execution safety manager wrapping every prompt
            notify: Owner notification callback
            user_id: Rate-limit bucket owner
        """
        self.name = name
        self.prompt = prompt
        self.store = store
        self.safety = safety
        self.notify = notify
        self.user_id = user_id

        self._cycle = 0
        self._runs = 0
        self._failures = 0

    def _next_cycle(self) -> int:
        self._cycle += 1
        self._runs += 1
        return self._cycle

    async def _execute(self, action_type: str, text: str, **params: Any) -> ExecutionResult:
        """
        Send one prompt through the safety layer.

        A failed prompt job is raised as BankrError inside the guarded
        operation so it is classified and retried like any other error.
        """
        params = {"cycle": self._cycle, **params}
        request = ExecutionRequest(
            id=generate_request_id(action_type, params),
            type=action_type,
            user_id=self.user_id,
            params=params,
        )

        async def operation():
            return require_success(await self.prompt(text))

        result = await self.safety.safe_execute(request, operation)
        if not result.success:
            self._failures += 1
            logger.warning(f"[{self.name}] {action_type} failed: {result.error_message}")
        return result

    @staticmethod
    def response_text(result: ExecutionResult) -> str:
        if result.success and result.data is not None:
            return result.data.response or ""
        return ""

    async def _notify(self, message: str) -> None:
        await safe_notify(self.notify, message)

    def get_stats(self) -> dict:
        return {
            "name": self.name,
            "cycles": self._cycle,
            "runs": self._runs,
            "failed_requests": self._failures,
        }
