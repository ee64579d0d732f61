from __future__ import annotations

import pytest
from pydantic import ValidationError

from esgagent.charts import ChartConfig, build_chart_config, normalize_rows


class TestBuildChartConfig:
    def test_defaults_title(self):
        chart = build_chart_config("bar", {"columns": ["k", "v"], "rows": [["a", 1]]})
        assert isinstance(chart, ChartConfig)
        assert chart.config.title == "Chart"
        assert chart.config.x is None

    def test_keeps_axes_and_note(self):
        chart = build_chart_config(
            "radar", {"columns": ["c", "s"], "rows": [{"c": "E", "s": 70}]},
            x="c", y=["s"], title="Scores", note="latest run",
        )
        dumped = chart.model_dump()
        assert dumped["type"] == "radar"
        assert dumped["config"]["y"] == ["s"]
        assert dumped["config"]["note"] == "latest run"
        assert dumped["config"]["data"]["rows"] == [{"c": "E", "s": 70}]

    def test_unknown_kind(self):
        with pytest.raises(ValidationError):
            build_chart_config("scatter", {"columns": [], "rows": []})

    def test_row_wider_than_columns(self):
        with pytest.raises(ValidationError, match="row 1 has 3 cells"):
            build_chart_config("line", {"columns": ["a", "b"], "rows": [[1, 2], [1, 2, 3]]})

    def test_short_rows_allowed(self):
        chart = build_chart_config("pie", {"columns": ["a", "b"], "rows": [[1]]})
        assert chart.config.data.rows == [[1]]


class TestNormalizeRows:
    def test_positional_and_keyed_rows_agree(self):
        columns = ["year", "co2"]
        assert normalize_rows(columns, [[2023, 120]]) == normalize_rows(columns, [{"year": 2023, "co2": 120}])

    def test_missing_cells_are_none(self):
        assert normalize_rows(["a", "b"], [[1], {"b": 2, "extra": 3}]) == [
            {"a": 1, "b": None},
            {"a": None, "b": 2},
        ]
