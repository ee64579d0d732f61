from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager, contextmanager
from typing import Any

from mcp.server.fastmcp import FastMCP

from esgagent.db import get_session, init_db, session_scope
from esgagent.errors import ESGAgentError
from esgagent.jobs import AnalysisJobManager, recover_interrupted_runs
from esgagent.llm import LLMCallError
from esgagent.report import generate_bi_report
from esgagent.schema_registry import COLUMNS, RELATIONS
from esgagent.storage import BlobStore
from esgagent.tools import ToolContext, dispatch

log = logging.getLogger(__name__)

_jobs: AnalysisJobManager | None = None
_storage: BlobStore | None = None


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def esg_lifespan(server: FastMCP) -> AsyncIterator[None]:
    global _jobs, _storage
    init_db()
    with session_scope() as session:
        recover_interrupted_runs(session)
        session.commit()
    _jobs = AnalysisJobManager()
    _storage = BlobStore()
    yield


mcp = FastMCP(
    "ESG Advisor",
    instructions=(
        "ESG Advisor analyzes companies' environmental, social and governance "
        "performance from uploaded documents. Create or list companies, upload "
        "documents, start an analysis with run_esg_analysis and poll "
        "get_run_summary until the run is completed. Use describe_schema before "
        "writing read-only SQL for sql_query_readonly."
    ),
    lifespan=esg_lifespan,
    json_response=True,
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


@contextmanager
def _session():
    session = get_session()
    try:
        yield session
    finally:
        session.close()


async def _call(name: str, args: dict[str, Any]) -> dict:
    """Dispatch a tool, turning user-facing errors into ``{"error": ...}``."""
    args = {k: v for k, v in args.items() if v is not None}
    with _session() as session:
        ctx = ToolContext(session=session, jobs=_jobs, storage=_storage)
        try:
            return await dispatch(name, args, ctx)
        except (ESGAgentError, LLMCallError) as exc:
            return {"error": str(exc)}


# ---------------------------------------------------------------------------
# Resource
# ---------------------------------------------------------------------------


@mcp.resource("esg://overview")
def esg_overview() -> str:
    """Overview of ESG Advisor: data model, workflow, and queryable schema."""
    return json.dumps({
        "system": "ESG Advisor: LLM-powered ESG analysis of company documents",
        "data_model": {
            "company": "An organisation under analysis. Has documents and runs.",
            "document": "Uploaded PDF/CSV or URL; a text excerpt is stored for analysis.",
            "run": "One execution of the four-stage analysis (pending, running, completed, failed).",
            "esg_metric": "Per-category overall_score (0-100) written by a completed run.",
            "finding": "Detected issue with category, severity (info..critical) and evidence.",
            "action": "Recommended remediation with priority, impact, cost and review status.",
        },
        "workflow": [
            "1. create_company(name) or list_companies(query)",
            "2. upload_document(company_id, kind, filename, content_base64)",
            "3. run_esg_analysis(company_id) returns a run id immediately",
            "4. get_run_summary(run_id) until status is completed or failed",
            "5. sql_query_readonly(sql) and render_chart(...) for analytics",
        ],
        "columns": COLUMNS,
        "relations": RELATIONS,
    }, indent=2)


# ---------------------------------------------------------------------------
# Tools: Companies & documents
# ---------------------------------------------------------------------------


@mcp.tool()
async def create_company(
    name: str, ticker: str | None = None, sector: str | None = None, country: str | None = None,
) -> dict:
    """Create a company to analyze."""
    return await _call("create_company", {"name": name, "ticker": ticker, "sector": sector, "country": country})


@mcp.tool()
async def list_companies(query: str | None = None) -> dict:
    """List companies newest first, or those whose name contains *query* (case-sensitive, max 20)."""
    return await _call("list_companies", {"query": query})


@mcp.tool()
async def select_company(company_id: int) -> dict:
    """Show a company's document/run counts and latest E/S/G scores."""
    return await _call("select_company", {"companyId": company_id})


@mcp.tool()
async def upload_document(
    company_id: int, kind: str, filename: str | None = None,
    url: str | None = None, content_base64: str | None = None,
) -> dict:
    """Upload a document for a company.

    Args:
        company_id: Company the document belongs to.
        kind: One of pdf, csv, url.
        filename: File name, used in the storage key.
        url: Source URL when kind is url.
        content_base64: Base64-encoded file bytes. The first 1000 bytes become the analyzed excerpt.
    """
    return await _call("upload_document", {
        "companyId": company_id, "kind": kind, "filename": filename, "url": url, "content": content_base64,
    })


@mcp.tool()
async def parse_and_ingest(document_id: int) -> dict:
    """Acknowledge a document for processing (no chunking is performed)."""
    return await _call("parse_and_ingest", {"documentId": document_id})


@mcp.tool()
async def open_citation(document_id: int, start: int | None = None, end: int | None = None) -> dict:
    """Return a document's stored excerpt, optionally the [start, end) character slice."""
    args: dict[str, Any] = {"documentId": document_id}
    if start is not None or end is not None:
        args["span"] = {"start": start or 0, "end": end if end is not None else 1_000_000}
    return await _call("open_citation", args)


# ---------------------------------------------------------------------------
# Tools: Analysis
# ---------------------------------------------------------------------------


@mcp.tool()
async def run_esg_analysis(company_id: int) -> dict:
    """Start a background ESG analysis. Requires an LLM API key. Poll get_run_summary for the result."""
    return await _call("run_esg_analysis", {"companyId": company_id})


@mcp.tool()
async def get_run_summary(run_id: int) -> dict:
    """Status, scores (with total), findings and actions for a run."""
    return await _call("get_run_summary", {"runId": run_id})


@mcp.tool()
def get_bi_report(company_id: int) -> dict:
    """BI snapshot for a company: numeric summary plus an SVG chart as a data URI."""
    with _session() as session:
        try:
            return generate_bi_report(session, company_id)
        except ESGAgentError as exc:
            return {"error": str(exc)}


# ---------------------------------------------------------------------------
# Tools: Gen-BI
# ---------------------------------------------------------------------------


@mcp.tool()
async def describe_schema(detail: str = "tables") -> dict:
    """Describe the queryable schema. detail: tables, columns or relations."""
    return await _call("describe_schema", {"detail": detail})


@mcp.tool()
async def sql_query_readonly(sql: str) -> dict:
    """Run a SELECT/WITH query. Write keywords are refused and LIMIT 5000 is added when absent."""
    return await _call("sql_query_readonly", {"sql": sql})


@mcp.tool()
async def render_chart(
    kind: str, columns: list[str], rows: list[Any],
    x: str | None = None, y: str | list[str] | None = None,
    title: str | None = None, note: str | None = None,
) -> dict:
    """Build a chart config (line, bar, pie or radar) from tabular data. Rows may be lists or objects."""
    return await _call("render_chart", {
        "kind": kind, "data": {"columns": columns, "rows": rows},
        "x": x, "y": y, "title": title, "note": note,
    })


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def main():
    """Run the ESG Advisor MCP server over stdio."""
    mcp.run()


if __name__ == "__main__":
    main()
