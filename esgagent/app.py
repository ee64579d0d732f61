from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any, Generator

from fastapi import Depends, FastAPI, Query, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from esgagent import services
from esgagent.chat import BiCompanyPrompt, send_message
from esgagent.db import get_session, init_db, session_scope
from esgagent.errors import (
    ArgumentParseError,
    ForbiddenKeywordError,
    InvalidArgumentsError,
    InvalidTransitionError,
    NotFoundError,
    QueryExecutionError,
    UnknownToolError,
    UnsafeQueryError,
)
from esgagent.jobs import AnalysisJobManager, recover_interrupted_runs
from esgagent.llm import LLMCallError, LLMClient
from esgagent.models import Company, Run
from esgagent.report import generate_bi_report
from esgagent.schemas import (
    ActionOut,
    ActionReview,
    BiReportRequest,
    ChatRequest,
    CompanyCreate,
    CompanyDetail,
    CompanyOut,
    CompanySearch,
    DocumentOut,
    DocumentUpload,
    EvalLabelCreate,
    EvalLabelOut,
    RunDetail,
    RunOut,
    RunStarted,
)
from esgagent.storage import BlobStore
from esgagent.tools import TOOL_DEFINITIONS

log = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    with session_scope() as session:
        recover_interrupted_runs(session)
        session.commit()
    app.state.jobs = AnalysisJobManager()
    app.state.storage = BlobStore()
    yield


app = FastAPI(
    title="ESG Advisor",
    version="0.1.0",
    description=(
        "ESG intelligence API: manage companies and documents, run LLM-powered "
        "ESG analyses, review findings and actions, and chat with a tool-using "
        "assistant. All endpoints return JSON. No authentication required."
    ),
    lifespan=lifespan,
    openapi_tags=[
        {"name": "Companies", "description": "Create, list, and inspect companies."},
        {"name": "Documents", "description": "Upload and list company documents."},
        {"name": "Runs", "description": "Start and monitor background ESG analysis runs. Requires an LLM API key."},
        {"name": "Actions", "description": "Approve or reject recommended actions."},
        {"name": "Eval", "description": "Label findings and actions for evaluation."},
        {"name": "Analytics", "description": "BI snapshot reports."},
        {"name": "Chat", "description": "Tool-calling chat assistant."},
    ],
)


# ---------------------------------------------------------------------------
# Error mapping
# ---------------------------------------------------------------------------

_STATUS_BY_ERROR: dict[type[Exception], int] = {
    NotFoundError: 404,
    UnsafeQueryError: 400,
    ForbiddenKeywordError: 400,
    QueryExecutionError: 400,
    InvalidArgumentsError: 400,
    ArgumentParseError: 400,
    UnknownToolError: 400,
    InvalidTransitionError: 409,
    LLMCallError: 502,
}


async def _error_response(request: Request, exc: Exception) -> JSONResponse:
    return JSONResponse(status_code=_STATUS_BY_ERROR[type(exc)], content={"detail": str(exc)})


for _error_type in _STATUS_BY_ERROR:
    app.add_exception_handler(_error_type, _error_response)


# ---------------------------------------------------------------------------
# Dependencies & Helpers
# ---------------------------------------------------------------------------


def db_session() -> Generator[Session, None, None]:
    session = get_session()
    try:
        yield session
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def get_jobs(request: Request) -> AnalysisJobManager:
    return request.app.state.jobs


def get_storage(request: Request) -> BlobStore:
    return request.app.state.storage


def get_llm_client() -> LLMClient:
    return LLMClient()


# ---------------------------------------------------------------------------
# Routes: Companies
# ---------------------------------------------------------------------------


@app.get("/api/companies", response_model=list[CompanyOut],
         tags=["Companies"], summary="List companies, newest first, optionally filtered by name substring")
async def list_companies(
    q: str | None = Query(None, description="Case-sensitive substring of the company name"),
    session: Session = Depends(db_session),
):
    return services.list_companies(session, q)


@app.post("/api/companies", response_model=CompanyOut, status_code=201,
          tags=["Companies"], summary="Create a company")
async def create_company(body: CompanyCreate, session: Session = Depends(db_session)):
    company = services.create_company(session, body.name, body.ticker, body.sector, body.country)
    session.commit()
    return company


@app.post("/api/companies/search", response_model=CompanyOut | None,
          tags=["Companies"], summary="Find one company by name (exact, then partial match)")
async def search_company(body: CompanySearch, session: Session = Depends(db_session)):
    return services.find_company_by_name(session, body.query)


@app.get("/api/companies/{company_id}", response_model=CompanyDetail,
         tags=["Companies"], summary="Company with latest-run metrics, runs and documents")
async def get_company(company_id: int, session: Session = Depends(db_session)):
    company = services.get_or_raise(session, Company, company_id, "Company")
    runs = services.company_runs(session, company.id)
    metrics = services.run_metrics(session, runs[0].id) if runs else []
    return {
        "company": company,
        "latest_metrics": metrics,
        "scores": services.score_breakdown(metrics),
        "runs": runs,
        "documents": services.company_documents(session, company.id),
    }


# ---------------------------------------------------------------------------
# Routes: Documents
# ---------------------------------------------------------------------------


@app.post("/api/companies/{company_id}/documents", response_model=DocumentOut, status_code=201,
          tags=["Documents"], summary="Upload a base64-encoded document or register a URL")
async def upload_document(
    company_id: int,
    body: DocumentUpload,
    session: Session = Depends(db_session),
    storage: BlobStore = Depends(get_storage),
):
    document = await services.upload_document(
        session, storage, company_id, body.kind,
        filename=body.filename, url=body.url, content=body.content, content_type=body.mime,
    )
    session.commit()
    return document


@app.get("/api/companies/{company_id}/documents", response_model=list[DocumentOut],
         tags=["Documents"], summary="List a company's documents, newest first")
async def list_documents(company_id: int, session: Session = Depends(db_session)):
    services.get_or_raise(session, Company, company_id, "Company")
    return services.company_documents(session, company_id)


# ---------------------------------------------------------------------------
# Routes: Runs
# ---------------------------------------------------------------------------


@app.post("/api/companies/{company_id}/runs", response_model=RunStarted, status_code=202,
          tags=["Runs"], summary="Start a background ESG analysis run (poll the run for results)")
async def start_run(
    company_id: int,
    session: Session = Depends(db_session),
    jobs: AnalysisJobManager = Depends(get_jobs),
    client: LLMClient = Depends(get_llm_client),
):
    run = services.start_analysis(session, jobs, company_id, client)
    return {"run_id": run.id, "status": "started"}


@app.get("/api/companies/{company_id}/runs", response_model=list[RunOut],
         tags=["Runs"], summary="List a company's runs, newest first")
async def list_runs(company_id: int, session: Session = Depends(db_session)):
    services.get_or_raise(session, Company, company_id, "Company")
    return services.company_runs(session, company_id)


@app.get("/api/runs/{run_id}", response_model=RunDetail,
         tags=["Runs"], summary="Run with its findings, actions and metrics")
async def get_run(run_id: int, session: Session = Depends(db_session)):
    run = services.get_or_raise(session, Run, run_id, "Run")
    metrics = services.run_metrics(session, run.id)
    return {
        "run": run,
        "findings": services.run_findings(session, run.id),
        "actions": services.run_actions(session, run.id),
        "metrics": metrics,
        "scores": services.score_breakdown(metrics),
    }


@app.get("/api/runs/{run_id}/summary", tags=["Runs"],
         summary="Scores (with total), findings and actions snapshot for a run")
async def get_run_summary(run_id: int, session: Session = Depends(db_session)) -> dict[str, Any]:
    return services.run_summary(session, run_id)


@app.post("/api/runs/{run_id}/cancel", tags=["Runs"], summary="Cancel an in-flight run")
async def cancel_run(
    run_id: int,
    session: Session = Depends(db_session),
    jobs: AnalysisJobManager = Depends(get_jobs),
):
    services.get_or_raise(session, Run, run_id, "Run")
    return {"cancelled": jobs.cancel(run_id)}


# ---------------------------------------------------------------------------
# Routes: Actions & Eval
# ---------------------------------------------------------------------------


@app.post("/api/actions/{action_id}/approve", response_model=ActionOut,
          tags=["Actions"], summary="Approve a proposed action")
async def approve_action(action_id: int, body: ActionReview | None = None, session: Session = Depends(db_session)):
    action = services.update_action_status(session, action_id, "approved", body.feedback if body else None)
    session.commit()
    return action


@app.post("/api/actions/{action_id}/reject", response_model=ActionOut,
          tags=["Actions"], summary="Reject a proposed action")
async def reject_action(action_id: int, body: ActionReview | None = None, session: Session = Depends(db_session)):
    action = services.update_action_status(session, action_id, "rejected", body.feedback if body else None)
    session.commit()
    return action


@app.post("/api/eval/labels", response_model=EvalLabelOut, status_code=201,
          tags=["Eval"], summary="Label a finding or action (run is taken from the labelled row)")
async def add_eval_label(body: EvalLabelCreate, session: Session = Depends(db_session)):
    label = services.add_eval_label(
        session, body.label, body.label_type,
        finding_id=body.finding_id, action_id=body.action_id, feedback=body.notes,
    )
    session.commit()
    return label


# ---------------------------------------------------------------------------
# Routes: Analytics
# ---------------------------------------------------------------------------


@app.get("/api/companies/{company_id}/bi-report", tags=["Analytics"],
         summary="BI snapshot: latest scores as an SVG data URI plus a numeric summary")
async def bi_report(company_id: int, session: Session = Depends(db_session)) -> dict[str, Any]:
    return generate_bi_report(session, company_id)


# ---------------------------------------------------------------------------
# Routes: Chat
# ---------------------------------------------------------------------------


@app.get("/api/chat/tools", tags=["Chat"], summary="Tool contracts advertised to the chat model")
async def list_tools() -> list[dict[str, Any]]:
    return TOOL_DEFINITIONS


@app.post("/api/chat/send", tags=["Chat"], summary="Send a conversation turn; the model may call tools")
async def chat_send(
    body: ChatRequest,
    session: Session = Depends(db_session),
    jobs: AnalysisJobManager = Depends(get_jobs),
    storage: BlobStore = Depends(get_storage),
    client: LLMClient = Depends(get_llm_client),
) -> dict[str, Any]:
    return await send_message(
        [m.model_dump() for m in body.messages],
        client=client, session=session, jobs=jobs, storage=storage,
        active_company_id=body.active_company_id,
    )


@app.post("/api/chat/bi-report", tags=["Chat", "Analytics"],
          summary="Resolve a company by name and return its BI report, or ask which company")
async def chat_bi_report(body: BiReportRequest, session: Session = Depends(db_session)) -> dict[str, Any]:
    prompt = BiCompanyPrompt()
    question = prompt.start()
    if not (body.query or "").strip():
        return {"pending": True, "message": question}
    resolution = prompt.resolve(session, body.query)
    if resolution.company is None:
        return {"pending": True, "message": resolution.message}
    return {
        "pending": False,
        "message": resolution.message,
        "report": generate_bi_report(session, resolution.company.id),
    }


# ---------------------------------------------------------------------------
# Startup
# ---------------------------------------------------------------------------


def main():
    import uvicorn
    uvicorn.run("esgagent.app:app", host="127.0.0.1", port=8001, reload=True)


if __name__ == "__main__":
    main()
