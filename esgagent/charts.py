"""Chart configuration contract shared with the rendering layer.

Shape::

    {"type": "line" | "bar" | "pie" | "radar",
     "config": {"x": str?, "y": str | list[str]?, "title": str?, "note": str?,
                "data": {"columns": [str], "rows": [list | dict]}}}

Rows may be positional (matched to ``columns`` by index) or keyed by column
name; ``normalize_rows`` turns both into the same records.
"""
from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, model_validator

ChartKind = Literal["line", "bar", "pie", "radar"]

Cell = str | int | float | bool | None


class ChartData(BaseModel):
    columns: list[str]
    rows: list[list[Cell] | dict[str, Any]]

    @model_validator(mode="after")
    def rows_fit_columns(self) -> ChartData:
        width = len(self.columns)
        for idx, row in enumerate(self.rows):
            if isinstance(row, list) and len(row) > width:
                raise ValueError(f"row {idx} has {len(row)} cells but only {width} columns")
        return self


class ChartOptions(BaseModel):
    x: str | None = None
    y: str | list[str] | None = None
    data: ChartData
    title: str = "Chart"
    note: str | None = None


class ChartConfig(BaseModel):
    type: ChartKind
    config: ChartOptions


def build_chart_config(
    kind: str,
    data: ChartData | dict[str, Any],
    x: str | None = None,
    y: str | list[str] | None = None,
    title: str | None = None,
    note: str | None = None,
) -> ChartConfig:
    """Validate the pieces of a chart and assemble the config. Raises pydantic.ValidationError."""
    options: dict[str, Any] = {"x": x, "y": y, "data": data, "note": note}
    if title:
        options["title"] = title
    return ChartConfig.model_validate({"type": kind, "config": options})


def normalize_rows(columns: list[str], rows: list[list[Any] | dict[str, Any]]) -> list[dict[str, Any]]:
    """Map positional and keyed rows onto ``{column: value}`` records (missing cells are None)."""
    records: list[dict[str, Any]] = []
    for row in rows:
        if isinstance(row, dict):
            records.append({col: row.get(col) for col in columns})
        else:
            records.append({col: row[i] if i < len(row) else None for i, col in enumerate(columns)})
    return records
