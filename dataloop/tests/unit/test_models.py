"""Unit tests for dataloop.models module."""

import json

import pandas as pd
import pytest

from dataloop.models import (
    ApprovalDecision,
    ChartResult,
    CodeBlock,
    ConversationTurn,
    DatasetHandle,
    ErrorResult,
    ExecutionOutcome,
    OutcomeStatus,
    TableResult,
    TextResult,
    classify_result,
    result_from_dict,
)


def _block(code="x = 1"):
    return CodeBlock(code=code, start_index=0, end_index=len(code))


class TestCodeBlock:
    """Tests for CodeBlock."""

    def test_code_block_is_frozen(self):
        """CodeBlock instances cannot be mutated after detection."""
        block = _block()
        with pytest.raises(AttributeError):
            block.code = "y = 2"

    def test_with_code_keeps_span(self):
        """with_code() replaces code but keeps span and language."""
        block = CodeBlock("select 1", 10, 30, language="sql", is_complete=False)
        edited = block.with_code("select 2")
        assert edited.code == "select 2"
        assert edited.start_index == 10
        assert edited.end_index == 30
        assert edited.language == "sql"
        assert edited.is_complete is True


class TestApprovalDecision:
    """Tests for ApprovalDecision.blocks_for."""

    def test_blocks_for_uses_proposed_without_edits(self):
        """No edits means the proposed blocks run."""
        proposed = [_block("a = 1")]
        assert ApprovalDecision(approved=True).blocks_for(proposed) == proposed

    def test_blocks_for_prefers_edits(self):
        """Non-empty edits replace the proposed blocks."""
        edited = [_block("b = 2")]
        decision = ApprovalDecision(approved=True, edited_blocks=edited)
        assert decision.blocks_for([_block("a = 1")]) == edited

    def test_blocks_for_ignores_empty_edits(self):
        """An empty edit list falls back to the proposed blocks."""
        proposed = [_block("a = 1")]
        decision = ApprovalDecision(approved=True, edited_blocks=[])
        assert decision.blocks_for(proposed) == proposed


class TestClassifyResult:
    """Tests for mapping raw values onto the result union."""

    def test_none_has_no_result(self):
        """None stays None."""
        assert classify_result(None) is None

    def test_dataframe_becomes_table(self):
        """A DataFrame becomes a TableResult of JSON records."""
        frame = pd.DataFrame({"a": [1, 2], "b": ["x", "y"]})
        result = classify_result(frame)
        assert isinstance(result, TableResult)
        assert result.columns == ["a", "b"]
        assert result.rows == [{"a": 1, "b": "x"}, {"a": 2, "b": "y"}]
        assert result.total_rows == 2

    def test_series_becomes_table(self):
        """A Series is treated as a one-column table."""
        result = classify_result(pd.Series([1, 2, 3], name="n"))
        assert isinstance(result, TableResult)
        assert result.columns == ["n"]
        assert len(result.rows) == 3

    def test_list_of_dicts_becomes_table(self):
        """Records become a table with the union of their keys."""
        result = classify_result([{"a": 1}, {"a": 2, "b": 3}])
        assert isinstance(result, TableResult)
        assert result.columns == ["a", "b"]
        assert result.total_rows == 2

    def test_chart_dict_becomes_chart(self):
        """Dicts carrying a chart key become ChartResult."""
        spec = {"echarts_chart": {"series": []}}
        result = classify_result(spec)
        assert isinstance(result, ChartResult)
        assert result.spec == spec

    def test_error_dict_becomes_error(self):
        """A lone error key becomes ErrorResult."""
        result = classify_result({"error": "no such column"})
        assert isinstance(result, ErrorResult)
        assert result.message == "no such column"

    def test_plain_dict_becomes_json_text(self):
        """Other dicts render as JSON text."""
        result = classify_result({"x": 1})
        assert isinstance(result, TextResult)
        assert json.loads(result.text) == {"x": 1}

    def test_string_is_verbatim(self):
        """Strings are kept as-is."""
        assert classify_result("hello") == TextResult(text="hello")

    def test_number_becomes_text(self):
        """Scalars become text."""
        assert classify_result(42) == TextResult(text="42")

    def test_existing_result_passes_through(self):
        """Already-classified values are returned unchanged."""
        value = TextResult(text="done")
        assert classify_result(value) is value


class TestTableResult:
    """Tests for TableResult truncation."""

    def test_head_keeps_total(self):
        """head() keeps the original row count so truncation is visible."""
        table = TableResult(columns=["a"], rows=[{"a": i} for i in range(10)])
        head = table.head(3)
        assert len(head.rows) == 3
        assert head.total_rows == 10
        assert head.truncated is True
        assert table.truncated is False

    def test_total_rows_never_below_rows(self):
        """total_rows defaults to the number of rows."""
        table = TableResult(columns=["a"], rows=[{"a": 1}, {"a": 2}])
        assert table.total_rows == 2


class TestResultSerialization:
    """Tests for result_from_dict."""

    @pytest.mark.parametrize(
        "value",
        [
            TextResult(text="t"),
            TableResult(columns=["a"], rows=[{"a": 1}], total_rows=5),
            ChartResult(spec={"chart": {}}),
            ErrorResult(message="boom"),
        ],
    )
    def test_result_from_dict_restores_variant(self, value):
        """Every variant survives to_dict/result_from_dict."""
        assert result_from_dict(value.to_dict()) == value

    def test_result_from_dict_empty(self):
        """Missing results stay None."""
        assert result_from_dict(None) is None
        assert result_from_dict({}) is None


class TestExecutionOutcome:
    """Tests for ExecutionOutcome."""

    def test_success_is_derived_from_status(self):
        """Only SUCCESS counts as success."""
        for status in OutcomeStatus:
            outcome = ExecutionOutcome(block=_block(), status=status)
            assert outcome.success is (status is OutcomeStatus.SUCCESS)

    def test_to_dict_fields(self):
        """to_dict records code, status and error."""
        outcome = ExecutionOutcome(
            block=_block("boom()"),
            status=OutcomeStatus.FAILED,
            error_message="NameError",
            execution_time_ms=3.0,
        )
        d = outcome.to_dict()
        assert d == {
            "code": "boom()",
            "status": "failed",
            "success": False,
            "result": None,
            "error": "NameError",
            "execution_time_ms": 3.0,
        }

    def test_from_dict_restores_result(self):
        """from_dict rebuilds the block code and result value."""
        outcome = ExecutionOutcome(
            block=_block("1 + 1"),
            status=OutcomeStatus.SUCCESS,
            result=TextResult(text="2"),
        )
        restored = ExecutionOutcome.from_dict(outcome.to_dict())
        assert restored.block.code == "1 + 1"
        assert restored.success
        assert restored.result == TextResult(text="2")


class TestConversationTurn:
    """Tests for ConversationTurn serialization."""

    def test_to_dict_omits_missing_results(self):
        """Turns without structured results omit the key."""
        d = ConversationTurn(role="user", content="hi", timestamp=1.0).to_dict()
        assert d == {"role": "user", "content": "hi", "timestamp": 1.0}

    def test_to_dict_keeps_empty_results(self):
        """An empty result list is recorded (code proposed, nothing ran)."""
        turn = ConversationTurn(role="assistant", content="x", execution_results=[])
        assert turn.to_dict()["execution_results"] == []

    def test_automatic_flag_round_trips_through_jsonl(self):
        """The automatic flag survives JSONL."""
        turn = ConversationTurn(role="user", content="follow up", automatic=True)
        restored = ConversationTurn.from_dict(json.loads(turn.to_jsonl()))
        assert restored.automatic is True
        assert restored.content == "follow up"


class TestDatasetHandle:
    """Tests for DatasetHandle."""

    def test_from_path_uses_stem(self, tmp_path):
        """The dataset is named after the file stem."""
        handle = DatasetHandle.from_path(tmp_path / "sales.csv", description="2024")
        assert handle.name == "sales"
        assert handle.description == "2024"
