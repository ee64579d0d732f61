"""Model-invokable tools: JSON-schema contracts, argument models and dispatch.

``TOOL_DEFINITIONS`` is what the chat model sees (OpenAI function-calling
form). ``dispatch`` validates the raw arguments against the tool's pydantic
model before the handler runs, so a bad argument never reaches the database.
The session is committed after a successful handler and rolled back on any
failure.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from sqlalchemy.orm import Session

from esgagent import services
from esgagent.charts import ChartData, ChartKind, build_chart_config
from esgagent.errors import InvalidArgumentsError, UnknownToolError
from esgagent.jobs import AnalysisJobManager
from esgagent.llm import LLMClient
from esgagent.models import Company
from esgagent.schema_registry import describe_schema
from esgagent.sql_gate import execute_readonly
from esgagent.storage import BlobStore

log = logging.getLogger(__name__)


def _function(name: str, description: str, properties: dict[str, Any], required: list[str] | None = None) -> dict[str, Any]:
    parameters: dict[str, Any] = {"type": "object", "properties": properties}
    if required:
        parameters["required"] = required
    return {"type": "function", "function": {"name": name, "description": description, "parameters": parameters}}


_CELL_SCHEMA = {"anyOf": [{"type": "string"}, {"type": "number"}, {"type": "boolean"}, {"type": "null"}]}

TOOL_DEFINITIONS: list[dict[str, Any]] = [
    _function("create_company", "Create a new company in the system", {
        "name": {"type": "string", "description": "Company name"},
        "ticker": {"type": "string", "description": "Stock ticker symbol (optional)"},
        "sector": {"type": "string", "description": "Industry sector (optional)"},
        "country": {"type": "string", "description": "Country of operation (optional)"},
    }, ["name"]),
    _function("list_companies", "List all companies or search them by name", {
        "query": {"type": "string", "description": "Case-sensitive substring of the company name (optional)"},
    }),
    _function("select_company", "Select a company as the active context for this conversation", {
        "companyId": {"type": "number", "description": "Company ID to select"},
    }, ["companyId"]),
    _function("upload_document", "Upload a document (PDF/CSV) or URL for a company", {
        "companyId": {"type": "number", "description": "Company ID"},
        "kind": {"type": "string", "enum": ["pdf", "csv", "url"], "description": "Document type"},
        "filename": {"type": "string", "description": "Filename (optional)"},
        "url": {"type": "string", "description": "URL if kind is 'url' (optional)"},
        "content": {"type": "string", "description": "Base64 encoded file content (optional)"},
    }, ["companyId", "kind"]),
    _function("parse_and_ingest", "Process an uploaded document for analysis", {
        "documentId": {"type": "number", "description": "Document ID to process"},
    }, ["documentId"]),
    _function("run_esg_analysis", "Start an ESG analysis run for a company", {
        "companyId": {"type": "number", "description": "Company ID to analyze"},
    }, ["companyId"]),
    _function("get_run_summary", "Get summary of an ESG analysis run with scores, findings, and actions", {
        "runId": {"type": "number", "description": "Run ID to summarize"},
    }, ["runId"]),
    _function("describe_schema", "Get database schema information for Gen-BI queries", {
        "detail": {
            "type": "string",
            "enum": ["tables", "columns", "relations"],
            "description": "Level of detail to return",
        },
    }, ["detail"]),
    _function("sql_query_readonly", "Execute a read-only SQL query (SELECT/WITH only) for analytics", {
        "sql": {"type": "string", "description": "SQL query to execute (SELECT or WITH only)"},
        "companyId": {"type": "number", "description": "Optional company ID filter"},
    }, ["sql"]),
    _function("render_chart", "Generate a chart visualization from data", {
        "kind": {"type": "string", "enum": ["line", "bar", "pie", "radar"], "description": "Chart type"},
        "x": {"type": "string", "description": "X-axis column name (optional)"},
        "y": {
            "description": "Y-axis column name(s) (optional)",
            "anyOf": [{"type": "string"}, {"type": "array", "items": {"type": "string"}}],
        },
        "data": {
            "type": "object",
            "properties": {
                "columns": {"type": "array", "items": {"type": "string"}},
                "rows": {
                    "type": "array",
                    "items": {
                        "anyOf": [
                            {"type": "array", "items": _CELL_SCHEMA},
                            {"type": "object", "additionalProperties": True},
                        ],
                    },
                },
            },
            "required": ["columns", "rows"],
        },
        "title": {"type": "string", "description": "Chart title (optional)"},
        "note": {"type": "string", "description": "Additional note (optional)"},
    }, ["kind", "data"]),
    _function("open_citation", "Open and display a citation from a document", {
        "documentId": {"type": "number", "description": "Document ID"},
        "span": {
            "type": "object",
            "properties": {"start": {"type": "number"}, "end": {"type": "number"}},
            "required": ["start", "end"],
            "description": "Character span of the excerpt to return (optional)",
        },
    }, ["documentId"]),
]

TOOL_NAMES = tuple(t["function"]["name"] for t in TOOL_DEFINITIONS)

# ---------------------------------------------------------------------------
# Argument models
# ---------------------------------------------------------------------------


class _Args(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class CreateCompanyArgs(_Args):
    name: str = Field(min_length=1)
    ticker: str | None = None
    sector: str | None = None
    country: str | None = None


class ListCompaniesArgs(_Args):
    query: str | None = None


class SelectCompanyArgs(_Args):
    company_id: int = Field(alias="companyId")


class UploadDocumentArgs(_Args):
    company_id: int = Field(alias="companyId")
    kind: Literal["pdf", "csv", "url"]
    filename: str | None = None
    url: str | None = None
    content: str | None = None


class DocumentArgs(_Args):
    document_id: int = Field(alias="documentId")


class RunAnalysisArgs(_Args):
    company_id: int = Field(alias="companyId")


class RunSummaryArgs(_Args):
    run_id: int = Field(alias="runId")


class DescribeSchemaArgs(_Args):
    detail: Literal["tables", "columns", "relations"]


class SqlQueryArgs(_Args):
    sql: str
    company_id: int | None = Field(default=None, alias="companyId")


class RenderChartArgs(_Args):
    kind: ChartKind
    data: ChartData
    x: str | None = None
    y: str | list[str] | None = None
    title: str | None = None
    note: str | None = None


class Span(_Args):
    start: int
    end: int


class OpenCitationArgs(_Args):
    document_id: int = Field(alias="documentId")
    span: Span | None = None


# ---------------------------------------------------------------------------
# Handlers
# ---------------------------------------------------------------------------


@dataclass
class ToolContext:
    """Per-call collaborators. ``active_company_id`` is owned by the caller."""
    session: Session
    client: LLMClient | None = None
    jobs: AnalysisJobManager | None = None
    storage: BlobStore | None = None
    active_company_id: int | None = None


async def _create_company(args: CreateCompanyArgs, ctx: ToolContext) -> dict[str, Any]:
    company = services.create_company(ctx.session, args.name, args.ticker, args.sector, args.country)
    return {
        "companyId": company.id,
        "name": company.name,
        "ticker": company.ticker,
        "message": f'Company "{company.name}" created successfully with ID {company.id}.',
    }


async def _list_companies(args: ListCompaniesArgs, ctx: ToolContext) -> dict[str, Any]:
    companies = services.list_companies(ctx.session, args.query)
    return {"companies": [services.company_dict(c) for c in companies], "count": len(companies)}


async def _select_company(args: SelectCompanyArgs, ctx: ToolContext) -> dict[str, Any]:
    company = services.get_or_raise(ctx.session, Company, args.company_id, "Company")
    ctx.active_company_id = company.id
    ticker = f" ({company.ticker})" if company.ticker else ""
    return {
        "companyId": company.id,
        "name": company.name,
        "ticker": company.ticker,
        "sector": company.sector,
        "country": company.country,
        "summary": services.company_summary(ctx.session, company),
        "message": f"Selected company: {company.name}{ticker}",
    }


async def _upload_document(args: UploadDocumentArgs, ctx: ToolContext) -> dict[str, Any]:
    document = await services.upload_document(
        ctx.session, ctx.storage or BlobStore(), args.company_id, args.kind,
        filename=args.filename, url=args.url, content=args.content,
    )
    return {
        "documentId": document.id,
        "filename": document.filename,
        "kind": document.kind,
        "url": document.url,
        "message": f'Document "{document.filename or "Untitled"}" uploaded successfully.',
    }


async def _parse_and_ingest(args: DocumentArgs, ctx: ToolContext) -> dict[str, Any]:
    return services.parse_and_ingest(ctx.session, args.document_id)


async def _run_esg_analysis(args: RunAnalysisArgs, ctx: ToolContext) -> dict[str, Any]:
    if ctx.jobs is None:
        raise RuntimeError("No job manager configured for background analysis")
    run = services.start_analysis(ctx.session, ctx.jobs, args.company_id, ctx.client)
    company = ctx.session.get(Company, run.company_id)
    return {
        "runId": run.id,
        "status": "started",
        "companyName": company.name,
        "message": f"ESG analysis started for {company.name}. Run ID: {run.id}. Poll get_run_summary for results.",
    }


async def _get_run_summary(args: RunSummaryArgs, ctx: ToolContext) -> dict[str, Any]:
    return services.run_summary(ctx.session, args.run_id)


async def _describe_schema(args: DescribeSchemaArgs, ctx: ToolContext) -> dict[str, Any]:
    return describe_schema(args.detail)


async def _sql_query_readonly(args: SqlQueryArgs, ctx: ToolContext) -> dict[str, Any]:
    return execute_readonly(ctx.session, args.sql)


async def _render_chart(args: RenderChartArgs, ctx: ToolContext) -> dict[str, Any]:
    chart = build_chart_config(args.kind, args.data, x=args.x, y=args.y, title=args.title, note=args.note)
    return {
        **chart.model_dump(),
        "message": f"Chart ({chart.type}) generated with {len(chart.config.data.rows)} data points.",
    }


async def _open_citation(args: OpenCitationArgs, ctx: ToolContext) -> dict[str, Any]:
    start = args.span.start if args.span else None
    end = args.span.end if args.span else None
    return services.open_citation(ctx.session, args.document_id, start, end)


Handler = Callable[[Any, ToolContext], Awaitable[dict[str, Any]]]

TOOL_HANDLERS: dict[str, tuple[type[BaseModel], Handler]] = {
    "create_company": (CreateCompanyArgs, _create_company),
    "list_companies": (ListCompaniesArgs, _list_companies),
    "select_company": (SelectCompanyArgs, _select_company),
    "upload_document": (UploadDocumentArgs, _upload_document),
    "parse_and_ingest": (DocumentArgs, _parse_and_ingest),
    "run_esg_analysis": (RunAnalysisArgs, _run_esg_analysis),
    "get_run_summary": (RunSummaryArgs, _get_run_summary),
    "describe_schema": (DescribeSchemaArgs, _describe_schema),
    "sql_query_readonly": (SqlQueryArgs, _sql_query_readonly),
    "render_chart": (RenderChartArgs, _render_chart),
    "open_citation": (OpenCitationArgs, _open_citation),
}


def validate_arguments(name: str, raw_args: Any) -> BaseModel:
    """Validate *raw_args* for tool *name*, raising InvalidArgumentsError on the first bad field."""
    entry = TOOL_HANDLERS.get(name)
    if entry is None:
        raise UnknownToolError(name)
    model = entry[0]
    if raw_args is None:
        raw_args = {}
    if not isinstance(raw_args, dict):
        raise InvalidArgumentsError(name, "arguments", "must be a JSON object")
    try:
        return model.model_validate(raw_args)
    except ValidationError as exc:
        error = exc.errors()[0]
        field = ".".join(str(part) for part in error["loc"]) or "arguments"
        raise InvalidArgumentsError(name, field, error["msg"]) from exc


async def dispatch(name: str, raw_args: Any, ctx: ToolContext) -> dict[str, Any]:
    args = validate_arguments(name, raw_args)
    _, handler = TOOL_HANDLERS[name]
    try:
        result = await handler(args, ctx)
        ctx.session.commit()
    except Exception:
        ctx.session.rollback()
        raise
    log.debug("Tool %s succeeded", name)
    return result
