"""Sandbox contract and a local reference implementation.

The controller only relies on the ``Sandbox`` protocol.  ``LocalSandbox``
runs Python blocks in a persistent namespace where the dataset is loaded as
a pandas DataFrame ``df`` and registered with an in-memory duckdb
connection as table ``data`` (reachable through ``query(sql)``).  SQL blocks
run directly against that connection.
"""

import ast
import asyncio
import json
import logging
import time
from pathlib import Path
from typing import Any, Optional, Protocol

import duckdb
import pandas as pd

from dataloop.blocks import FencedBlockDetector
from dataloop.errors import ValidationError
from dataloop.models import (
    ChartResult,
    CodeBlock,
    DatasetHandle,
    ErrorResult,
    ExecutionOutcome,
    SandboxResult,
    TableResult,
    TextResult,
    ValidationResult,
)

logger = logging.getLogger(__name__)

TABLE_NAME = "data"

# SyntaxError messages that mean "the code stops early", not "the code is wrong"
_TRUNCATION_HINTS = (
    "unexpected eof",
    "was never closed",
    "incomplete input",
    "expected an indented block",
    "eof while scanning",
    "unterminated triple-quoted string",
)


class Sandbox(Protocol):
    """What the controller needs from a code-execution environment."""

    def validate_code(self, code: str, language: str = "python") -> ValidationResult: ...

    async def execute_code(self, code: str, language: str = "python") -> SandboxResult: ...

    def detect_code_blocks(self, text: str) -> list[CodeBlock]: ...

    def format_result(self, outcome: ExecutionOutcome) -> str: ...


def format_outcome(outcome: ExecutionOutcome) -> str:
    """Render an outcome the way it is shown to the user and the model."""
    ms = round(outcome.execution_time_ms)
    if not outcome.success:
        return (
            f"**Code Execution Error** ({ms}ms):\n"
            f"```\n{outcome.error_message or 'Unknown error'}\n```"
        )

    result = outcome.result
    if isinstance(result, TableResult):
        body = json.dumps(result.rows, indent=2, default=str)
        if result.truncated:
            body += f"\n// showing {len(result.rows)} of {result.total_rows} rows"
    elif isinstance(result, ChartResult):
        body = json.dumps(result.spec, indent=2, default=str)
    elif isinstance(result, ErrorResult):
        body = json.dumps({"error": result.message})
    elif isinstance(result, TextResult):
        body = result.text
    else:
        body = "null"
    return f"**Code Execution Result** ({ms}ms):\n```json\n{body}\n```"


def load_frame(path: Path) -> pd.DataFrame:
    """Read a dataset file into a DataFrame based on its suffix."""
    suffix = path.suffix.lower()
    if suffix in (".csv", ".txt"):
        return pd.read_csv(path)
    if suffix == ".tsv":
        return pd.read_csv(path, sep="\t")
    if suffix == ".parquet":
        return pd.read_parquet(path)
    if suffix in (".json", ".jsonl", ".ndjson"):
        return pd.read_json(path, lines=suffix != ".json")
    raise ValueError(f"Unsupported dataset format: {path.suffix}")


def _check_python(code: str) -> ValidationResult:
    try:
        ast.parse(code)
    except SyntaxError as e:
        message = f"SyntaxError: {e.msg} (line {e.lineno})"
        truncated = any(hint in (e.msg or "").lower() for hint in _TRUNCATION_HINTS)
        return ValidationResult(valid=False, needs_completion=truncated, error=message)
    return ValidationResult(valid=True)


class LocalSandbox:
    """In-process sandbox over one dataset.

    Args:
        dataset: The dataset to expose. ``dataset.path`` is loaded eagerly.
        timeout_s: Per-block wall-clock limit.
        frame: Optional pre-loaded DataFrame (skips reading ``dataset.path``).
    """

    def __init__(
        self,
        dataset: DatasetHandle,
        timeout_s: float = 30,
        frame: Optional[pd.DataFrame] = None,
    ) -> None:
        self.dataset = dataset
        self.timeout_s = timeout_s
        self.detector = FencedBlockDetector()

        if frame is None:
            if dataset.path is None:
                raise ValueError("DatasetHandle has no path and no frame was given")
            frame = load_frame(dataset.path)
        self.frame = frame

        self.conn = duckdb.connect(":memory:")
        self.conn.register(TABLE_NAME, self.frame)
        self.namespace: dict[str, Any] = {}
        self.reset()

    def reset(self) -> None:
        """Forget variables defined by earlier blocks."""
        self.namespace = {
            "pd": pd,
            "duckdb": duckdb,
            "df": self.frame,
            "query": self.query,
        }

    def query(self, sql: str) -> pd.DataFrame:
        """Run *sql* against the registered dataset table."""
        return self.conn.execute(sql).df()

    def describe(self) -> str:
        """Short schema summary used in the system prompt."""
        lines = [
            f"Dataset `{self.dataset.name}`: {len(self.frame)} rows, "
            f"{len(self.frame.columns)} columns (table `{TABLE_NAME}`, DataFrame `df`)",
        ]
        for column, dtype in self.frame.dtypes.items():
            lines.append(f"- {column}: {dtype}")
        if self.dataset.description:
            lines.append("")
            lines.append(self.dataset.description)
        return "\n".join(lines)

    # =========================================================================
    # Sandbox protocol
    # =========================================================================

    def validate_code(self, code: str, language: str = "python") -> ValidationResult:
        if not code.strip():
            return ValidationResult(valid=False, error="Empty code block")
        if language == "sql":
            if code.count("(") > code.count(")") or code.count("'") % 2 == 1:
                return ValidationResult(
                    valid=False, needs_completion=True, error="SQL statement is truncated"
                )
            return ValidationResult(valid=True)
        return _check_python(code)

    async def execute_code(self, code: str, language: str = "python") -> SandboxResult:
        """Run one block in a worker thread under the configured timeout."""
        started = time.monotonic()
        try:
            value = await asyncio.wait_for(
                asyncio.to_thread(self._run, code, language), timeout=self.timeout_s
            )
        except asyncio.TimeoutError:
            return SandboxResult(
                success=False,
                error=f"Execution timed out after {self.timeout_s}s",
                execution_time_ms=(time.monotonic() - started) * 1000,
            )
        except ValidationError as e:
            return SandboxResult(
                success=False,
                error=str(e),
                execution_time_ms=(time.monotonic() - started) * 1000,
            )
        except Exception as e:
            logger.debug("Block raised %s", type(e).__name__, exc_info=True)
            return SandboxResult(
                success=False,
                error=f"{type(e).__name__}: {e}",
                execution_time_ms=(time.monotonic() - started) * 1000,
            )
        return SandboxResult(
            success=True,
            result=value,
            execution_time_ms=(time.monotonic() - started) * 1000,
        )

    def detect_code_blocks(self, text: str) -> list[CodeBlock]:
        return self.detector.detect(text)

    def format_result(self, outcome: ExecutionOutcome) -> str:
        return format_outcome(outcome)

    # =========================================================================
    # Execution
    # =========================================================================

    def _run(self, code: str, language: str) -> Any:
        if language == "sql":
            return self.query(code)
        return self._run_python(code)

    def _run_python(self, code: str) -> Any:
        """Exec *code*; its value is the trailing expression or ``result``.

        A block that does neither (e.g. only defines variables) yields None.
        """
        try:
            tree = ast.parse(code)
        except SyntaxError as e:
            raise ValidationError(f"SyntaxError: {e.msg} (line {e.lineno})") from e

        self.namespace.pop("result", None)
        tail: Optional[ast.expr] = None
        if tree.body and isinstance(tree.body[-1], ast.Expr):
            tail = tree.body.pop().value

        exec(compile(tree, "<block>", "exec"), self.namespace)
        if tail is not None:
            expr = ast.Expression(body=tail)
            return eval(compile(expr, "<block>", "eval"), self.namespace)
        return self.namespace.get("result")
