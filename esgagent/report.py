"""BI snapshot report: a fixed-layout SVG of the latest E/S/G scores plus a summary block."""
from __future__ import annotations

import base64
import html
from datetime import datetime
from typing import Any

from sqlalchemy.orm import Session

from esgagent import services
from esgagent.models import Company
from esgagent.utils import round_half_up, utcnow

WIDTH = 640
HEIGHT = 360
CHART_ORIGIN_X = 80
CHART_ORIGIN_Y = 260
CHART_HEIGHT = 180
BAR_WIDTH = 80
BAR_GAP = 50

BAR_CATEGORIES = (
    ("environmental", "Environmental", "#4caf50"),
    ("social", "Social", "#2196f3"),
    ("governance", "Governance", "#ab47bc"),
)


def _fmt(value: float) -> str:
    """Render whole numbers without a trailing ``.0``."""
    return str(int(value)) if float(value).is_integer() else f"{value:g}"


def _capitalize(value: str) -> str:
    return value[:1].upper() + value[1:] if value else value


def _date_label(value: datetime) -> str:
    return f"{value:%b} {value.day}, {value.year}"


def build_bi_report_svg(
    company_name: str,
    ticker: str | None,
    scores: dict[str, float],
    documents: int,
    runs: int,
    last_updated: datetime,
    last_run_status: str,
    average_score: int,
) -> str:
    """Pure function of its inputs; missing scores draw as 0 and values are clamped to 0-100."""
    bars = []
    for index, (key, label, color) in enumerate(BAR_CATEGORIES):
        value = max(0, min(100, scores.get(key) or 0))
        bar_height = value / 100 * CHART_HEIGHT
        x = CHART_ORIGIN_X + index * (BAR_WIDTH + BAR_GAP)
        y = CHART_ORIGIN_Y - bar_height
        center = x + BAR_WIDTH / 2
        bars.append(
            f'<rect x="{_fmt(x)}" y="{_fmt(y)}" width="{BAR_WIDTH}" height="{_fmt(bar_height)}" rx="8" fill="{color}" />\n'
            f'    <text x="{_fmt(center)}" y="{_fmt(y - 10)}" text-anchor="middle" font-size="16" '
            f'font-family="Inter" fill="#111827" font-weight="600">{_fmt(value)}</text>\n'
            f'    <text x="{_fmt(center)}" y="{CHART_ORIGIN_Y + 24}" text-anchor="middle" font-size="12" '
            f'font-family="Inter" fill="#4b5563">{label}</text>'
        )

    summary_lines = [
        f"Documents: {documents}",
        f"Runs: {runs}",
        f"Last Run Status: {_capitalize(last_run_status)}",
        f"Avg ESG Score: {average_score or 0}",
    ]
    summary = "\n  ".join(
        f'<text x="{WIDTH - 220}" y="{140 + idx * 24}" font-size="14" font-family="Inter" '
        f'fill="#111827">{html.escape(line)}</text>'
        for idx, line in enumerate(summary_lines)
    )

    title = html.escape(company_name)
    if ticker:
        title += f" ({html.escape(ticker)})"
    bar_markup = "\n    ".join(bars)

    return f"""<?xml version="1.0" encoding="UTF-8"?>
<svg width="{WIDTH}" height="{HEIGHT}" viewBox="0 0 {WIDTH} {HEIGHT}" xmlns="http://www.w3.org/2000/svg">
  <rect width="{WIDTH}" height="{HEIGHT}" fill="#f9fafb" rx="24"/>
  <text x="40" y="60" font-size="24" font-family="Inter" fill="#111827" font-weight="600">{title}</text>
  <text x="40" y="88" font-size="14" font-family="Inter" fill="#6b7280">ESG BI Snapshot</text>
  <text x="{WIDTH - 40}" y="60" font-size="12" font-family="Inter" fill="#6b7280" text-anchor="end">Updated {html.escape(_date_label(last_updated))}</text>
  <line x1="40" y1="110" x2="{WIDTH - 40}" y2="110" stroke="#e5e7eb" stroke-width="1" />
  <text x="40" y="140" font-size="16" font-family="Inter" fill="#111827" font-weight="600">Overview</text>
  {summary}
  <g>
    {bar_markup}
  </g>
</svg>"""


def svg_data_uri(svg: str) -> str:
    return "data:image/svg+xml;base64," + base64.b64encode(svg.encode("utf-8")).decode("ascii")


def generate_bi_report(session: Session, company_id: int) -> dict[str, Any]:
    """Scores come from the company's latest run; no runs (or no metrics) means zeros."""
    company = services.get_or_raise(session, Company, company_id, "Company")
    documents = services.company_documents(session, company.id)
    runs = services.company_runs(session, company.id)
    latest = runs[0] if runs else None
    metrics = services.run_metrics(session, latest.id) if latest else []

    esg_scores = {
        key: round_half_up(next((m.value for m in metrics if m.category == key), 0))
        for key, _, _ in BAR_CATEGORIES
    }
    average = round_half_up(sum(esg_scores.values()) / 3)
    last_updated = (latest.completed_at or latest.started_at) if latest else None

    svg = build_bi_report_svg(
        company_name=company.name,
        ticker=company.ticker,
        scores=esg_scores,
        documents=len(documents),
        runs=len(runs),
        last_updated=last_updated or utcnow(),
        last_run_status=latest.status if latest else "no runs",
        average_score=average,
    )
    return {
        "company": {"id": company.id, "name": company.name, "ticker": company.ticker},
        "summary": {
            "documents": len(documents),
            "runs": len(runs),
            "lastRunStatus": latest.status if latest else "pending",
            "averageScore": average,
            "esgScores": esg_scores,
        },
        "imageUrl": svg_data_uri(svg),
    }
