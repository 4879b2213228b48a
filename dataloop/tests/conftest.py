import asyncio
from typing import Any, Optional

import pandas as pd
import pytest

from dataloop import config as config_module
from dataloop.blocks import FencedBlockDetector
from dataloop.config import GlobalConfig
from dataloop.controller import Controller
from dataloop.errors import ModelError, RoundCancelled
from dataloop.models import (
    ApprovalDecision,
    CodeBlock,
    ExecutionOutcome,
    SandboxResult,
    ValidationResult,
)
from dataloop.sandbox import format_outcome
from dataloop.store import InMemoryConversationStore


class ScriptedModel:
    """ModelStream that replays canned responses, one per call.

    Each response is either a string (streamed in small chunks) or an
    exception instance (raised when the call starts).  Calls beyond the
    script return an empty response.
    """

    def __init__(self, responses: list, chunk_size: int = 16) -> None:
        self.responses = list(responses)
        self.chunk_size = chunk_size
        self.calls: list[dict] = []

    async def stream(self, messages, *, system, cancel):
        self.calls.append({"messages": list(messages), "system": system})
        index = len(self.calls) - 1
        response = self.responses[index] if index < len(self.responses) else ""
        if isinstance(response, Exception):
            raise response
        for start in range(0, len(response), self.chunk_size):
            if cancel.cancelled:
                raise RoundCancelled("Cancelled")
            await asyncio.sleep(0)
            yield response[start : start + self.chunk_size]

    def user_message(self, call: int = -1) -> str:
        """Last user-role message sent on the given call."""
        messages = self.calls[call]["messages"]
        return next(m["content"] for m in reversed(messages) if m["role"] == "user")


class FakeSandbox:
    """Sandbox whose results are looked up by exact code.

    ``results`` maps code to a SandboxResult (or an exception to raise).
    Unknown code succeeds with the value ``"ok"``.
    """

    def __init__(
        self,
        results: Optional[dict[str, Any]] = None,
        invalid: Optional[dict[str, ValidationResult]] = None,
    ) -> None:
        self.results = results or {}
        self.invalid = invalid or {}
        self.executed: list[str] = []
        self.detector = FencedBlockDetector()

    def validate_code(self, code: str, language: str = "python") -> ValidationResult:
        return self.invalid.get(code, ValidationResult(valid=True))

    async def execute_code(self, code: str, language: str = "python") -> SandboxResult:
        self.executed.append(code)
        result = self.results.get(code, SandboxResult(success=True, result="ok", execution_time_ms=1))
        if isinstance(result, Exception):
            raise result
        return result

    def detect_code_blocks(self, text: str) -> list[CodeBlock]:
        return self.detector.detect(text)

    def format_result(self, outcome: ExecutionOutcome) -> str:
        return format_outcome(outcome)


def fail(error: str = "NameError: name 'x' is not defined") -> SandboxResult:
    return SandboxResult(success=False, error=error, execution_time_ms=2)


def ok(value: Any = "ok") -> SandboxResult:
    return SandboxResult(success=True, result=value, execution_time_ms=2)


def fenced(*codes: str, prose: str = "Let me check.") -> str:
    """A response proposing *codes* as python blocks."""
    blocks = "\n\n".join(f"```python\n{c}\n```" for c in codes)
    return f"{prose}\n\n{blocks}\n"


class ApproveAll:
    """Approval channel that approves everything (with an optional edit)."""

    def __init__(self, edited: Optional[list[CodeBlock]] = None) -> None:
        self.edited = edited
        self.calls: list[list[CodeBlock]] = []

    async def __call__(self, blocks):
        self.calls.append(list(blocks))
        return ApprovalDecision(approved=True, edited_blocks=self.edited)


class RejectAll:
    def __init__(self) -> None:
        self.calls = 0

    async def __call__(self, blocks):
        self.calls += 1
        return ApprovalDecision(approved=False)


class FakeClock:
    """Monotonic clock that advances a fixed step on every read."""

    def __init__(self, step: float = 1.0) -> None:
        self.now = 0.0
        self.step = step

    def __call__(self) -> float:
        self.now += self.step
        return self.now


@pytest.fixture(autouse=True)
def isolated_config(tmp_path, monkeypatch):
    """Keep tests away from the real ~/.config and global singleton."""
    monkeypatch.setenv("HOME", str(tmp_path))
    for var in ("DATALOOP_PROFILE", "DATALOOP_MODEL", "DATALOOP_MAX_DEPTH"):
        monkeypatch.setenv(var, "")
    monkeypatch.setattr(config_module, "_global_config", None)
    yield


@pytest.fixture
def mock_config():
    """Return a GlobalConfig with test values."""
    return GlobalConfig(
        model="test/model",
        max_followup_depth=0,
        min_approval_ms=100,
        profile="test",
    )


@pytest.fixture
def store():
    return InMemoryConversationStore()


@pytest.fixture
def make_controller(mock_config, store):
    """Factory building a Controller over scripted collaborators.

    The default clock advances one second per read, so approvals always
    look human-paced.
    """

    def _make(
        responses: list,
        sandbox: Optional[FakeSandbox] = None,
        channel: Any = "approve",
        config: Optional[GlobalConfig] = None,
        **kwargs,
    ):
        model = ScriptedModel(responses)
        sandbox = sandbox or FakeSandbox()
        if channel == "approve":
            channel = ApproveAll()
        controller = Controller(
            model=model,
            sandbox=sandbox,
            store=store,
            config=config or mock_config,
            approval_channel=channel,
            clock=kwargs.pop("clock", FakeClock()),
            **kwargs,
        )
        return controller, model, sandbox

    return _make


@pytest.fixture
def sample_frame():
    return pd.DataFrame(
        {
            "team": ["red", "blue", "red", "green"],
            "score": [3, 5, 7, 1],
        }
    )


__all__ = [
    "ApproveAll",
    "FakeClock",
    "FakeSandbox",
    "ModelError",
    "RejectAll",
    "ScriptedModel",
    "fail",
    "fenced",
    "ok",
]
