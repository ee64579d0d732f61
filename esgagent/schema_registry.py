"""Static schema description served to the model by ``describe_schema``."""
from __future__ import annotations

from typing import Any

from esgagent.models import Action, Company, Document, ESGMetric, EvalLabel, Finding, Run

_QUERYABLE = (Company, Document, Run, ESGMetric, Finding, Action, EvalLabel)

TABLES: list[str] = [m.__tablename__ for m in _QUERYABLE]

COLUMNS: dict[str, list[str]] = {
    m.__tablename__: [c.name for c in m.__table__.columns] for m in _QUERYABLE
}

RELATIONS: dict[str, str] = {
    f"{m.__tablename__}.{c.name}": f"{fk.column.table.name}.{fk.column.name}"
    for m in _QUERYABLE
    for c in m.__table__.columns
    for fk in c.foreign_keys
}

DETAILS = ("tables", "columns", "relations")


def describe_schema(detail: str) -> dict[str, Any]:
    """Return the requested slice of the schema. Unknown details fall back to relations."""
    if detail == "tables":
        return {"tables": list(TABLES)}
    if detail == "columns":
        return {"columns": {k: list(v) for k, v in COLUMNS.items()}}
    return {"relations": dict(RELATIONS)}
