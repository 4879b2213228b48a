"""dataloop data models: code blocks, outcomes, decisions, transcript turns."""

import json
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, ClassVar, Optional, Union

import pandas as pd


@dataclass(frozen=True)
class CodeBlock:
    """A contiguous span of proposed code in a model response."""

    code: str
    start_index: int
    end_index: int
    language: str = "python"
    is_complete: bool = True

    def with_code(self, code: str) -> "CodeBlock":
        """Return a copy carrying edited code but the same span."""
        return CodeBlock(
            code=code,
            start_index=self.start_index,
            end_index=self.end_index,
            language=self.language,
            is_complete=True,
        )


@dataclass
class ApprovalDecision:
    """A human's answer to an approval request for one round."""

    approved: bool
    edited_blocks: Optional[list[CodeBlock]] = None

    def blocks_for(self, proposed: list[CodeBlock]) -> list[CodeBlock]:
        """Blocks to execute: the edited ones when present, else *proposed*."""
        if self.edited_blocks:
            return list(self.edited_blocks)
        return list(proposed)


# =========================================================================
# Result values (tagged union)
# =========================================================================


@dataclass
class TextResult:
    """A scalar or free-form value rendered as text."""

    kind: ClassVar[str] = "text"
    text: str

    def to_dict(self) -> dict[str, Any]:
        return {"kind": self.kind, "text": self.text}


@dataclass
class TableResult:
    """Tabular rows, stored as JSON-safe records."""

    kind: ClassVar[str] = "table"
    columns: list[str]
    rows: list[dict[str, Any]]
    total_rows: int = 0

    def __post_init__(self):
        if self.total_rows < len(self.rows):
            self.total_rows = len(self.rows)

    @property
    def truncated(self) -> bool:
        return self.total_rows > len(self.rows)

    def head(self, max_rows: int) -> "TableResult":
        """Return a copy keeping at most *max_rows* rows."""
        return TableResult(
            columns=list(self.columns),
            rows=self.rows[:max_rows],
            total_rows=self.total_rows,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind,
            "columns": self.columns,
            "rows": self.rows,
            "total_rows": self.total_rows,
        }


@dataclass
class ChartResult:
    """A chart specification produced by the code (displayed, not analyzed)."""

    kind: ClassVar[str] = "chart"
    spec: dict[str, Any]

    def to_dict(self) -> dict[str, Any]:
        return {"kind": self.kind, "spec": self.spec}


@dataclass
class ErrorResult:
    """An error value returned by the code itself."""

    kind: ClassVar[str] = "error"
    message: str

    def to_dict(self) -> dict[str, Any]:
        return {"kind": self.kind, "message": self.message}


ResultValue = Union[TextResult, TableResult, ChartResult, ErrorResult]

CHART_KEYS = ("chart", "echarts_chart")


def _json_text(value: Any) -> str:
    """Render *value* as indented JSON, falling back to str()."""
    try:
        return json.dumps(value, indent=2, default=str)
    except (TypeError, ValueError):
        return str(value)


def _frame_to_table(frame: pd.DataFrame) -> TableResult:
    """Convert a DataFrame to JSON-safe records."""
    records = json.loads(frame.to_json(orient="records", date_format="iso"))
    return TableResult(
        columns=[str(c) for c in frame.columns],
        rows=records,
        total_rows=len(frame),
    )


def classify_result(value: Any) -> Optional[ResultValue]:
    """Map a raw sandbox value onto the result union.

    Args:
        value: Whatever the executed code produced.

    Returns:
        The matching ResultValue variant, or None when there is no value.
    """
    if value is None:
        return None
    # numpy scalars (e.g. from df[col].sum()) render as plain numbers
    if pd.api.types.is_scalar(value) and hasattr(value, "item"):
        value = value.item()
    if isinstance(value, (TextResult, TableResult, ChartResult, ErrorResult)):
        return value
    if isinstance(value, pd.DataFrame):
        return _frame_to_table(value)
    if isinstance(value, pd.Series):
        return _frame_to_table(value.to_frame())
    if isinstance(value, dict):
        if any(k in value for k in CHART_KEYS):
            return ChartResult(spec=value)
        if "error" in value and len(value) == 1:
            return ErrorResult(message=str(value["error"]))
        return TextResult(text=_json_text(value))
    if isinstance(value, list) and value and all(isinstance(r, dict) for r in value):
        columns: list[str] = []
        for row in value:
            for key in row:
                if key not in columns:
                    columns.append(str(key))
        rows = json.loads(json.dumps(value, default=str))
        return TableResult(columns=columns, rows=rows, total_rows=len(rows))
    if isinstance(value, str):
        return TextResult(text=value)
    return TextResult(text=_json_text(value))


def result_from_dict(d: Optional[dict]) -> Optional[ResultValue]:
    """Inverse of ``ResultValue.to_dict``."""
    if not d:
        return None
    kind = d.get("kind")
    if kind == "table":
        return TableResult(
            columns=d.get("columns", []),
            rows=d.get("rows", []),
            total_rows=d.get("total_rows", 0),
        )
    if kind == "chart":
        return ChartResult(spec=d.get("spec", {}))
    if kind == "error":
        return ErrorResult(message=d.get("message", ""))
    return TextResult(text=d.get("text", ""))


# =========================================================================
# Sandbox-facing records
# =========================================================================


@dataclass
class ValidationResult:
    """Pre-execution verdict on a block of code."""

    valid: bool
    needs_completion: bool = False
    error: Optional[str] = None


@dataclass
class SandboxResult:
    """Raw answer from ``Sandbox.execute_code``."""

    success: bool
    result: Any = None
    error: Optional[str] = None
    execution_time_ms: float = 0.0


class OutcomeStatus(Enum):
    """Classification of one block's execution in a round."""

    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"  # failed while a previous block had already failed
    INVALID = "invalid"
    INCOMPLETE = "incomplete"


@dataclass
class ExecutionOutcome:
    """Result of running one approved block."""

    block: CodeBlock
    status: OutcomeStatus
    result: Optional[ResultValue] = None
    error_message: Optional[str] = None
    execution_time_ms: float = 0.0

    @property
    def success(self) -> bool:
        return self.status is OutcomeStatus.SUCCESS

    def to_dict(self) -> dict[str, Any]:
        """Serialize for ``ConversationTurn.execution_results``."""
        return {
            "code": self.block.code,
            "status": self.status.value,
            "success": self.success,
            "result": self.result.to_dict() if self.result else None,
            "error": self.error_message,
            "execution_time_ms": self.execution_time_ms,
        }

    @classmethod
    def from_dict(cls, d: dict) -> "ExecutionOutcome":
        code = d.get("code", "")
        return cls(
            block=CodeBlock(code=code, start_index=0, end_index=len(code)),
            status=OutcomeStatus(d.get("status", "failed")),
            result=result_from_dict(d.get("result")),
            error_message=d.get("error"),
            execution_time_ms=d.get("execution_time_ms", 0.0),
        )


# =========================================================================
# Transcript
# =========================================================================


@dataclass
class ConversationTurn:
    """An append-only transcript entry."""

    role: str  # "user" | "assistant"
    content: str
    timestamp: float = field(default_factory=time.time)
    execution_results: Optional[list[dict[str, Any]]] = None
    # True for user-role prompts the controller composed itself
    automatic: bool = False

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {
            "role": self.role,
            "content": self.content,
            "timestamp": self.timestamp,
        }
        # [] means "had code, nothing ran"; None means "no structured results"
        if self.execution_results is not None:
            d["execution_results"] = self.execution_results
        if self.automatic:
            d["automatic"] = True
        return d

    @classmethod
    def from_dict(cls, d: dict) -> "ConversationTurn":
        return cls(
            role=d["role"],
            content=d.get("content", ""),
            timestamp=d.get("timestamp", 0.0),
            execution_results=d.get("execution_results"),
            automatic=d.get("automatic", False),
        )

    def to_jsonl(self) -> str:
        """Serialize to a JSONL line."""
        return json.dumps(self.to_dict())


@dataclass
class DatasetHandle:
    """Opaque reference to the dataset the sandbox queries."""

    name: str
    path: Optional[Path] = None
    description: str = ""

    @classmethod
    def from_path(cls, path: Path, description: str = "") -> "DatasetHandle":
        return cls(name=path.stem, path=path, description=description)
