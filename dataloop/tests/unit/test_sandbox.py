"""Unit tests for dataloop.sandbox module."""

import asyncio
import time

import pandas as pd
import pytest

from dataloop.models import (
    ChartResult,
    CodeBlock,
    DatasetHandle,
    ExecutionOutcome,
    OutcomeStatus,
    TableResult,
    TextResult,
)
from dataloop.sandbox import LocalSandbox, format_outcome, load_frame


@pytest.fixture
def sandbox(sample_frame):
    return LocalSandbox(DatasetHandle(name="scores"), timeout_s=5, frame=sample_frame)


def execute(sandbox, code, language="python"):
    return asyncio.run(sandbox.execute_code(code, language))


def _outcome(status, **kwargs):
    return ExecutionOutcome(
        block=CodeBlock(code="x", start_index=0, end_index=1), status=status, **kwargs
    )


class TestFormatOutcome:
    """Tests for format_outcome."""

    def test_success_header(self):
        """Successes render a result header and JSON fence."""
        text = format_outcome(
            _outcome(OutcomeStatus.SUCCESS, result=TextResult("42"), execution_time_ms=12.4)
        )
        assert text.startswith("**Code Execution Result** (12ms):\n```json\n")
        assert "42" in text

    def test_error_header(self):
        """Failures render an error header and the message."""
        text = format_outcome(_outcome(OutcomeStatus.FAILED, error_message="KeyError: 'z'"))
        assert text == "**Code Execution Error** (0ms):\n```\nKeyError: 'z'\n```"

    def test_truncated_table_note(self):
        """Truncated tables say how many rows are shown."""
        table = TableResult(columns=["a"], rows=[{"a": 1}], total_rows=3)
        text = format_outcome(_outcome(OutcomeStatus.SUCCESS, result=table))
        assert "showing 1 of 3 rows" in text

    def test_chart(self):
        """Charts render their spec."""
        chart = ChartResult(spec={"chart": {"type": "bar"}})
        assert '"bar"' in format_outcome(_outcome(OutcomeStatus.SUCCESS, result=chart))

    def test_no_value(self):
        """Blocks without a value render null."""
        assert "null" in format_outcome(_outcome(OutcomeStatus.SUCCESS))


class TestLoadFrame:
    """Tests for load_frame."""

    def test_csv(self, tmp_path, sample_frame):
        """CSV files are read with pandas."""
        path = tmp_path / "scores.csv"
        sample_frame.to_csv(path, index=False)
        pd.testing.assert_frame_equal(load_frame(path), sample_frame)

    def test_jsonl(self, tmp_path, sample_frame):
        """JSONL files are read line by line."""
        path = tmp_path / "scores.jsonl"
        sample_frame.to_json(path, orient="records", lines=True)
        assert list(load_frame(path).columns) == ["team", "score"]

    def test_unsupported(self, tmp_path):
        """Unknown suffixes are rejected."""
        with pytest.raises(ValueError):
            load_frame(tmp_path / "data.xlsx")

    def test_sandbox_requires_data(self):
        """A handle without a path needs a frame."""
        with pytest.raises(ValueError):
            LocalSandbox(DatasetHandle(name="empty"))


class TestValidateCode:
    """Tests for LocalSandbox.validate_code."""

    def test_valid_python(self, sandbox):
        """Parseable code is valid."""
        assert sandbox.validate_code("x = df['score'].sum()").valid is True

    def test_empty(self, sandbox):
        """Empty code is invalid."""
        assert sandbox.validate_code("   ").valid is False

    def test_truncated_python_needs_completion(self, sandbox):
        """Code cut off mid-expression asks for completion."""
        verdict = sandbox.validate_code("x = df.groupby(")
        assert verdict.valid is False
        assert verdict.needs_completion is True

    def test_wrong_python_is_invalid(self, sandbox):
        """Plain syntax errors do not ask for completion."""
        verdict = sandbox.validate_code("x = = 1")
        assert verdict.valid is False
        assert verdict.needs_completion is False
        assert verdict.error.startswith("SyntaxError")

    def test_truncated_sql(self, sandbox):
        """Unbalanced SQL needs completion."""
        verdict = sandbox.validate_code("select count(* from data", "sql")
        assert verdict.needs_completion is True


class TestExecuteCode:
    """Tests for LocalSandbox.execute_code."""

    def test_trailing_expression_is_value(self, sandbox):
        """The last expression is the block's value."""
        result = execute(sandbox, "total = df['score'].sum()\ntotal * 2")
        assert result.success is True
        assert result.result == 32

    def test_result_variable(self, sandbox):
        """Without a trailing expression, ``result`` is the value."""
        result = execute(sandbox, 'result = {"x": 1}')
        assert result.result == {"x": 1}

    def test_no_value(self, sandbox):
        """A block that only assigns yields None."""
        assert execute(sandbox, "y = 1").result is None

    def test_state_persists_between_blocks(self, sandbox):
        """Later blocks see variables from earlier ones."""
        execute(sandbox, "threshold = 4")
        result = execute(sandbox, "len(df[df['score'] > threshold])")
        assert result.result == 2

    def test_result_cleared_between_blocks(self, sandbox):
        """A stale ``result`` does not leak into the next block."""
        execute(sandbox, "result = 1")
        assert execute(sandbox, "z = 2").result is None

    def test_query_helper(self, sandbox):
        """query() runs SQL against table data."""
        result = execute(sandbox, "query('select team, sum(score) as s from data group by team order by team')")
        assert isinstance(result.result, pd.DataFrame)
        assert list(result.result["team"]) == ["blue", "green", "red"]

    def test_sql_block(self, sandbox):
        """SQL blocks run directly on duckdb."""
        result = execute(sandbox, "select max(score) as m from data", "sql")
        assert result.success is True
        assert int(result.result["m"][0]) == 7

    def test_runtime_error(self, sandbox):
        """Exceptions become failures with the exception type."""
        result = execute(sandbox, "df['missing']")
        assert result.success is False
        assert result.error.startswith("KeyError")

    def test_syntax_error(self, sandbox):
        """Unparseable code fails without raising."""
        result = execute(sandbox, "x = = 1")
        assert result.success is False
        assert "SyntaxError" in result.error

    def test_timeout(self, sample_frame):
        """Blocks over the time limit fail with a timeout."""
        sandbox = LocalSandbox(DatasetHandle(name="s"), timeout_s=0.05, frame=sample_frame)
        sandbox.namespace["time"] = time
        result = execute(sandbox, "time.sleep(0.5)")
        assert result.success is False
        assert "timed out" in result.error

    def test_reset_forgets_variables(self, sandbox):
        """reset() drops user variables but keeps df."""
        execute(sandbox, "v = 1")
        sandbox.reset()
        assert execute(sandbox, "v").success is False
        assert execute(sandbox, "len(df)").result == 4


class TestDescribe:
    """Tests for LocalSandbox.describe."""

    def test_describe_lists_columns(self, sample_frame):
        """describe() names the table and each column."""
        sandbox = LocalSandbox(
            DatasetHandle(name="scores", description="Weekly scores"), frame=sample_frame
        )
        text = sandbox.describe()
        assert "Dataset `scores`: 4 rows, 2 columns" in text
        assert "- team:" in text
        assert "- score:" in text
        assert text.endswith("Weekly scores")

    def test_detect_code_blocks(self, sandbox):
        """The sandbox exposes the fenced block detector."""
        blocks = sandbox.detect_code_blocks("```sql\nselect 1\n```")
        assert blocks[0].language == "sql"
