"""
Shared pytest fixtures: a scripted prompt API, a recording notifier and a
store in a temp directory.
"""
from typing import Callable, List, Optional, Tuple, Union

import pytest

from execution.bankr_client import PromptResult
from execution.execution_safety import ExecutionSafetyManager
from execution.risk_guard import RiskGuard
from monitoring.observability import ObservabilityLogger
from storage.memory_store import MemoryStore


Reply = Union[str, PromptResult, Callable[[str], PromptResult]]


class FakePrompt:
    """
    Stand-in for the prompt API.

    Rules are (substring, reply) pairs checked in order against the prompt
    text; the first match wins. Unmatched prompts get the default reply.
    """

    def __init__(self, default: Reply = "OK"):
        self.rules: List[Tuple[str, Reply]] = []
        self.default = default
        self.calls: List[str] = []

    def on(self, substring: str, reply: Reply) -> "FakePrompt":
        self.rules.append((substring, reply))
        return self

    def calls_matching(self, substring: str) -> List[str]:
        return [c for c in self.calls if substring in c]

    async def __call__(self, text: str, thread_id: Optional[str] = None) -> PromptResult:
        self.calls.append(text)
        reply = self.default
        for substring, candidate in self.rules:
            if substring in text:
                reply = candidate
                break
        if callable(reply):
            return reply(text)
        if isinstance(reply, PromptResult):
            return reply
        return PromptResult(success=True, job_id="job_test", status="completed", response=reply)


class RecordingNotifier:
    def __init__(self):
        self.messages: List[str] = []

    async def __call__(self, message: str) -> None:
        self.messages.append(message)


def failed(error: str) -> PromptResult:
    return PromptResult(success=False, job_id="job_test", status="failed", error=error)


@pytest.fixture
def store(tmp_path) -> MemoryStore:
    return MemoryStore(tmp_path / "memory.json")


@pytest.fixture
def fake_prompt() -> FakePrompt:
    return FakePrompt()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def observability() -> ObservabilityLogger:
    return ObservabilityLogger()


@pytest.fixture
def safety(observability) -> ExecutionSafetyManager:
    # no waiting between retries in unit tests
    return ExecutionSafetyManager(
        observability=observability,
        backoffs={"network": 0.0, "rate_limit": 0.0, "system": 0.0},
    )


@pytest.fixture
def risk_guard() -> RiskGuard:
    return RiskGuard()
