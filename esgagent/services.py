"""Shared business logic for the ESG Advisor API, chat tools and MCP server.

Functions take a Session and leave committing to the caller, except
``start_analysis`` which must commit the Run before handing it to a
background task that reads it from another session.
"""
from __future__ import annotations

import base64
import binascii
import logging
import time
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from esgagent.agent import AnalysisContext, summarize_documents
from esgagent.errors import InvalidArgumentsError, InvalidTransitionError, NotFoundError
from esgagent.jobs import AnalysisJobManager
from esgagent.llm import LLMClient
from esgagent.models import (
    LABEL_TYPES,
    LABEL_VALUES,
    PRIORITIES,
    SEVERITIES,
    Action,
    Company,
    Document,
    ESGMetric,
    EvalLabel,
    Finding,
    Run,
)
from esgagent.storage import BlobStore
from esgagent.utils import isoformat, round_half_up

log = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Shared constants
# ---------------------------------------------------------------------------

COMPANY_SEARCH_LIMIT = 20
EXCERPT_BYTES = 1000
SCORE_CATEGORIES = ("environmental", "social", "governance")

# Allowed Action status changes. approved, rejected and completed are terminal.
ACTION_TRANSITIONS: dict[str, tuple[str, ...]] = {
    "proposed": ("approved", "rejected", "in_progress", "completed"),
    "in_progress": ("completed",),
    "approved": (),
    "rejected": (),
    "completed": (),
}

_SEVERITY_RANK = {s: i for i, s in enumerate(SEVERITIES)}
_PRIORITY_RANK = {p: i for i, p in enumerate(PRIORITIES)}

# ---------------------------------------------------------------------------
# Lookups
# ---------------------------------------------------------------------------


def get_or_raise(session: Session, model, entity_id: int, label: str):
    obj = session.get(model, entity_id)
    if obj is None:
        raise NotFoundError(label, entity_id)
    return obj


def list_companies(session: Session, query: str | None = None) -> list[Company]:
    """All companies newest first, or a case-sensitive name substring match capped at 20."""
    stmt = select(Company).order_by(Company.created_at.desc(), Company.id.desc())
    if query:
        stmt = stmt.where(func.instr(Company.name, query) > 0).limit(COMPANY_SEARCH_LIMIT)
    return list(session.execute(stmt).scalars().all())


def find_company_by_name(session: Session, name: str | None) -> Company | None:
    """Exact case-insensitive name match first, then the first partial match."""
    normalized = (name or "").strip()
    if not normalized:
        return None
    exact = session.execute(
        select(Company).where(func.lower(Company.name) == normalized.lower()).order_by(Company.id).limit(1)
    ).scalars().first()
    if exact is not None:
        return exact
    return session.execute(
        select(Company).where(Company.name.ilike(f"%{normalized}%")).order_by(Company.id).limit(1)
    ).scalars().first()


def company_documents(session: Session, company_id: int) -> list[Document]:
    return list(session.execute(
        select(Document).where(Document.company_id == company_id)
        .order_by(Document.uploaded_at.desc(), Document.id.desc())
    ).scalars().all())


def company_runs(session: Session, company_id: int) -> list[Run]:
    return list(session.execute(
        select(Run).where(Run.company_id == company_id).order_by(Run.started_at.desc(), Run.id.desc())
    ).scalars().all())


def run_metrics(session: Session, run_id: int) -> list[ESGMetric]:
    return list(session.execute(
        select(ESGMetric).where(ESGMetric.run_id == run_id).order_by(ESGMetric.id)
    ).scalars().all())


def run_findings(session: Session, run_id: int) -> list[Finding]:
    """Findings for a run, most severe first."""
    rows = session.execute(select(Finding).where(Finding.run_id == run_id).order_by(Finding.id)).scalars().all()
    return sorted(rows, key=lambda f: -_SEVERITY_RANK.get(f.severity, 0))


def run_actions(session: Session, run_id: int) -> list[Action]:
    """Actions for a run, most urgent first."""
    rows = session.execute(select(Action).where(Action.run_id == run_id).order_by(Action.id)).scalars().all()
    return sorted(rows, key=lambda a: _PRIORITY_RANK.get(a.priority, len(PRIORITIES)))


# ---------------------------------------------------------------------------
# Scores & summaries
# ---------------------------------------------------------------------------


def score_breakdown(metrics: list[ESGMetric]) -> dict[str, Any] | None:
    """Per-category scores plus ``total`` (rounded mean), or None without metrics."""
    if not metrics:
        return None
    scores: dict[str, Any] = {}
    for category in SCORE_CATEGORIES:
        scores[category] = next((m.value for m in metrics if m.category == category), 0)
    scores["total"] = round_half_up(sum(m.value for m in metrics) / len(metrics))
    return scores


def company_summary(session: Session, company: Company) -> dict[str, Any]:
    runs = company_runs(session, company.id)
    metrics = run_metrics(session, runs[0].id) if runs else []
    breakdown = score_breakdown(metrics)
    latest_scores = None
    if breakdown is not None:
        latest_scores = {c: breakdown[c] for c in SCORE_CATEGORIES}
    return {
        "documents": len(company_documents(session, company.id)),
        "runs": len(runs),
        "latestESGScore": breakdown["total"] if breakdown else None,
        "latestScores": latest_scores,
    }


def company_dict(company: Company) -> dict[str, Any]:
    return {
        "id": company.id,
        "name": company.name,
        "ticker": company.ticker,
        "sector": company.sector,
        "country": company.country,
    }


def finding_dict(finding: Finding) -> dict[str, Any]:
    return {
        "id": finding.id,
        "category": finding.category,
        "severity": finding.severity,
        "summary": finding.summary,
        "evidence": finding.evidence,
        "citation": finding.details,
        "isGreenwashing": finding.is_greenwashing,
    }


def action_dict(action: Action) -> dict[str, Any]:
    return {
        "id": action.id,
        "title": action.title,
        "rationale": action.description,
        "priority": action.priority,
        "expectedImpact": action.estimated_impact,
        "costEstimate": action.estimated_cost,
        "confidence": action.confidence,
        "status": action.status,
    }


def run_summary(session: Session, run_id: int) -> dict[str, Any]:
    run = get_or_raise(session, Run, run_id, "Run")
    company = session.get(Company, run.company_id)
    company_name = company.name if company else None
    return {
        "runId": run.id,
        "companyId": run.company_id,
        "companyName": company_name,
        "status": run.status,
        "startedAt": isoformat(run.started_at),
        "finishedAt": isoformat(run.completed_at),
        "error": run.error,
        "scores": score_breakdown(run_metrics(session, run.id)),
        "findings": [finding_dict(f) for f in run_findings(session, run.id)],
        "actions": [action_dict(a) for a in run_actions(session, run.id)],
        "message": f"Run {run.id} for {company_name} is {run.status}.",
    }


# ---------------------------------------------------------------------------
# Companies & documents
# ---------------------------------------------------------------------------


def create_company(
    session: Session,
    name: str,
    ticker: str | None = None,
    sector: str | None = None,
    country: str | None = None,
) -> Company:
    company = Company(name=name, ticker=ticker or None, sector=sector or None, country=country or None)
    session.add(company)
    session.flush()
    log.info("Created company %s (%s)", company.id, company.name)
    return company


def decode_content(tool: str, content: str) -> bytes:
    try:
        return base64.b64decode(content, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise InvalidArgumentsError(tool, "content", "is not valid base64") from exc


async def upload_document(
    session: Session,
    storage: BlobStore,
    company_id: int,
    kind: str,
    filename: str | None = None,
    url: str | None = None,
    content: str | None = None,
    content_type: str | None = None,
) -> Document:
    """Store a base64 payload (if any) and insert a completed Document.

    The first 1000 bytes, decoded as UTF-8, become the stored excerpt.
    """
    get_or_raise(session, Company, company_id, "Company")
    data = decode_content("upload_document", content) if content else None

    source_url = url
    file_key = None
    excerpt = None
    if data is not None:
        filename = filename or f"document.{kind}"
        if content_type is None:
            content_type = "application/pdf" if kind == "pdf" else "text/csv"
        key = f"companies/{company_id}/documents/{int(time.time() * 1000)}-{filename}"
        stored = await storage.put(key, data, content_type)
        file_key = stored["key"]
        source_url = stored["url"]
        excerpt = data[:EXCERPT_BYTES].decode("utf-8", errors="ignore")

    document = Document(
        company_id=company_id,
        kind=kind,
        filename=filename or None,
        url=source_url or None,
        file_key=file_key,
        content=excerpt,
        status="completed",
    )
    session.add(document)
    session.flush()
    return document


def parse_and_ingest(session: Session, document_id: int) -> dict[str, Any]:
    """Acknowledge a document for ingestion. Chunking and embedding are not implemented."""
    document = get_or_raise(session, Document, document_id, "Document")
    return {
        "documentId": document.id,
        "status": "processed",
        "chunks": 0,
        "message": f"Document {document.id} parsed and ingested successfully.",
    }


def open_citation(session: Session, document_id: int, start: int | None = None, end: int | None = None) -> dict[str, Any]:
    """Return a document's excerpt, sliced to ``[start, end)`` when a span is given.

    Offsets are clamped into the excerpt, so an out-of-range span yields a
    shorter (possibly empty) slice rather than an error.
    """
    document = get_or_raise(session, Document, document_id, "Document")
    excerpt = document.content or "No excerpt available"
    if document.content and (start is not None or end is not None):
        length = len(document.content)
        lo = min(max(start or 0, 0), length)
        hi = min(max(length if end is None else end, lo), length)
        excerpt = document.content[lo:hi]
    return {
        "documentId": document.id,
        "filename": document.filename,
        "kind": document.kind,
        "sourceUrl": document.url,
        "excerpt": excerpt,
        "message": f'Citation from "{document.filename or "Untitled"}"',
    }


# ---------------------------------------------------------------------------
# Analysis runs
# ---------------------------------------------------------------------------


def build_analysis_context(session: Session, company: Company, run: Run) -> AnalysisContext:
    return AnalysisContext(
        company_id=company.id,
        run_id=run.id,
        company_name=company.name,
        documents=summarize_documents(company_documents(session, company.id)),
    )


def start_analysis(
    session: Session,
    jobs: AnalysisJobManager,
    company_id: int,
    client: LLMClient | None = None,
) -> Run:
    """Create a Run, move it to running, commit and launch it in the background."""
    company = get_or_raise(session, Company, company_id, "Company")
    client = client or LLMClient()
    run = Run(company_id=company.id, status="pending", model=client.model)
    session.add(run)
    session.flush()
    context = build_analysis_context(session, company, run)
    run.status = "running"
    session.commit()
    jobs.launch(context, client)
    return run


# ---------------------------------------------------------------------------
# Actions & evaluation
# ---------------------------------------------------------------------------


def update_action_status(session: Session, action_id: int, status: str, feedback: str | None = None) -> Action:
    action = get_or_raise(session, Action, action_id, "Action")
    if status not in ACTION_TRANSITIONS.get(action.status, ()):
        raise InvalidTransitionError("Action", action.status, status)
    action.status = status
    if feedback is not None:
        action.feedback = feedback
    session.flush()
    return action


def add_eval_label(
    session: Session,
    label_value: str,
    label_type: str = "usefulness",
    finding_id: int | None = None,
    action_id: int | None = None,
    feedback: str | None = None,
    user_id: str | None = None,
) -> EvalLabel:
    """Record a label against a finding or action; the run is taken from the labelled row."""
    if label_value not in LABEL_VALUES:
        raise InvalidArgumentsError("add_eval_label", "label", f"must be one of {', '.join(LABEL_VALUES)}")
    if label_type not in LABEL_TYPES:
        raise InvalidArgumentsError("add_eval_label", "labelType", f"must be one of {', '.join(LABEL_TYPES)}")
    if finding_id is None and action_id is None:
        raise InvalidArgumentsError("add_eval_label", "findingId", "or actionId is required")

    run_id = None
    if finding_id is not None:
        run_id = get_or_raise(session, Finding, finding_id, "Finding").run_id
    if action_id is not None:
        action = get_or_raise(session, Action, action_id, "Action")
        run_id = run_id or action.run_id
    if run_id is None:
        raise InvalidArgumentsError("add_eval_label", "findingId", "is not attached to a run")

    label = EvalLabel(
        run_id=run_id,
        finding_id=finding_id,
        action_id=action_id,
        label_type=label_type,
        label_value=label_value,
        feedback=feedback,
        user_id=user_id,
    )
    session.add(label)
    session.flush()
    return label
