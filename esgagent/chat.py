"""Chat orchestrator: one model call per turn, then tool dispatch.

``send_message`` is stateless. The caller supplies the conversation history
and the active company id, and gets the (possibly changed) active company id
back to persist for the next turn.

The BI-report company prompt is a separate, caller-driven exchange and not a
tool: when a UI cannot tell which company a report is for, it asks, and the
user's next utterance is consumed by ``BiCompanyPrompt.resolve`` as a
company-name lookup instead of being sent to the model. The model never sees
that utterance and no tool is dispatched for it.
"""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any

from sqlalchemy.orm import Session

from esgagent import services
from esgagent.errors import ArgumentParseError, ESGAgentError
from esgagent.jobs import AnalysisJobManager
from esgagent.llm import LLMClient, first_message
from esgagent.models import Company
from esgagent.storage import BlobStore
from esgagent.tools import TOOL_DEFINITIONS, ToolContext, dispatch

log = logging.getLogger(__name__)

CHAT_SYSTEM_PROMPT = """\
You are the ESG Advisor Chat Assistant. You help users operate the ESG \
Intelligence Agent app and analyze data conversationally.

Core abilities:
1. Company admin (create/list/select companies)
2. Document ingestion (PDF/CSV/URL)
3. Gen-BI analytics: translate natural language into safe, read-only SQL; render results as tables/charts
4. ESG run control: start analysis runs, monitor status, summarize outputs with citations

Rules:
- Prefer tool calls when the user expresses intent
- Show SQL only when explicitly requested; never execute non-SELECT queries
- If unsure about schema, call describe_schema first
- Always attach citations to claims from documents or analysis results
- If data is insufficient, ask for specific documents or clarify the metric/window
- Be concise and actionable in responses
- For analytics questions, prefer tables first, then offer charts if helpful

Gen-BI Guidelines:
- Only SELECT/WITH queries allowed
- Prefer explicit column lists; avoid SELECT *
- LIMIT 5000 is added when a query has no LIMIT
- Use filters for company_id, date ranges, and period
- Column names containing a write keyword (created_at, updated_at) are refused; use other columns
- If schema is unknown, call describe_schema first

Available Tools:
- create_company: Create a new company
- list_companies: Search and list companies
- select_company: Set active company context
- upload_document: Upload PDF/CSV or URL
- parse_and_ingest: Process uploaded document
- run_esg_analysis: Start ESG analysis for a company
- get_run_summary: Get results from a run
- describe_schema: Get database schema info
- sql_query_readonly: Execute read-only SQL queries
- render_chart: Generate chart from data
- open_citation: Show document excerpt with citation"""

CHAT_ROLES = ("user", "assistant", "system")


def build_messages(history: list[dict[str, Any]], active_company_id: int | None = None) -> list[dict[str, Any]]:
    messages: list[dict[str, Any]] = [{"role": "system", "content": CHAT_SYSTEM_PROMPT}]
    if active_company_id is not None:
        messages.append({"role": "system", "content": f"Active company ID: {active_company_id}"})
    for m in history:
        role = m.get("role")
        if role not in CHAT_ROLES:
            continue
        messages.append({"role": role, "content": m.get("content") or ""})
    return messages


def _parse_arguments(tool: str, raw: Any) -> Any:
    if raw is None or raw == "":
        return {}
    if not isinstance(raw, str):
        return raw
    try:
        return json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ArgumentParseError(tool, exc.msg) from exc


async def run_tool_call(call: dict[str, Any], ctx: ToolContext) -> dict[str, Any]:
    """Execute one tool call; errors become a ``success: False`` entry, never an exception."""
    function = call.get("function") or {}
    name = function.get("name") or ""
    entry: dict[str, Any] = {"toolCallId": call.get("id"), "toolName": name}
    try:
        args = _parse_arguments(name, function.get("arguments"))
        entry["result"] = await dispatch(name, args, ctx)
        entry["success"] = True
    except ESGAgentError as exc:
        log.info("Tool %s failed: %s", name, exc)
        entry["error"] = str(exc)
        entry["success"] = False
    except Exception as exc:
        log.exception("Tool %s raised unexpectedly", name)
        entry["error"] = str(exc) or exc.__class__.__name__
        entry["success"] = False
    return entry


async def send_message(
    history: list[dict[str, Any]],
    *,
    client: LLMClient,
    session: Session,
    jobs: AnalysisJobManager | None = None,
    storage: BlobStore | None = None,
    active_company_id: int | None = None,
) -> dict[str, Any]:
    """Run one conversation turn.

    Returns ``{"kind": "text", "text", "activeCompanyId"}`` for a plain reply,
    or ``{"kind": "tool_results", "text", "results", "activeCompanyId"}`` when
    the model invoked tools. Tool calls run in order; a failed call is recorded
    and the remaining calls still run. Model call failures propagate.
    """
    response = await client.invoke(
        messages=build_messages(history, active_company_id),
        tools=TOOL_DEFINITIONS,
        tool_choice="auto",
    )
    message = first_message(response)
    text = message.get("content") or ""
    if not isinstance(text, str):
        text = json.dumps(text)
    tool_calls = message.get("tool_calls") or []

    if not tool_calls:
        return {"kind": "text", "text": text, "activeCompanyId": active_company_id}

    ctx = ToolContext(
        session=session, client=client, jobs=jobs, storage=storage,
        active_company_id=active_company_id,
    )
    results = [await run_tool_call(call, ctx) for call in tool_calls]
    return {
        "kind": "tool_results",
        "text": text,
        "results": results,
        "activeCompanyId": ctx.active_company_id,
    }


# ---------------------------------------------------------------------------
# BI report company prompt
# ---------------------------------------------------------------------------

BI_COMPANY_QUESTION = "Which company should the BI report cover? Reply with the company name."


@dataclass
class Resolution:
    company: Company | None
    message: str


class BiCompanyPrompt:
    """Caller-owned state for the "which company?" exchange.

    States: idle and pending. ``start`` moves to pending and returns the
    question. While pending, ``resolve`` looks the utterance up by name; a
    match returns the company and goes back to idle, anything else keeps the
    prompt pending and returns a re-prompt.
    """

    def __init__(self) -> None:
        self.pending = False

    def start(self) -> str:
        self.pending = True
        return BI_COMPANY_QUESTION

    def resolve(self, session: Session, utterance: str | None) -> Resolution:
        query = (utterance or "").strip()
        if not query:
            self.pending = True
            return Resolution(None, "Please enter a company name for the BI report.")
        company = services.find_company_by_name(session, query)
        if company is None:
            self.pending = True
            return Resolution(None, f'No company matching "{query}" was found. Try another name.')
        self.pending = False
        return Resolution(company, f"Generating BI report for {company.name}.")
