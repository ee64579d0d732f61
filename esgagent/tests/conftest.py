from __future__ import annotations

import json
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from esgagent.config import get_settings
from esgagent.models import Base, Company, Document
from esgagent.storage import BlobStore


@pytest.fixture(autouse=True)
def isolated_settings(tmp_path, monkeypatch):
    """Point data/uploads at a temp dir and disable remote storage for every test."""
    monkeypatch.setenv("ESG_DATA_DIR", str(tmp_path / "data"))
    monkeypatch.delenv("ESG_DB_PATH", raising=False)
    monkeypatch.delenv("STORAGE_API_URL", raising=False)
    monkeypatch.delenv("STORAGE_API_KEY", raising=False)
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture()
def engine():
    """In-memory SQLite shared by every session (StaticPool)."""
    eng = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(eng)
    return eng


@pytest.fixture()
def SessionLocal(engine):
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


@pytest.fixture()
def session(SessionLocal) -> Session:
    sess = SessionLocal()
    try:
        yield sess
    finally:
        sess.close()


@pytest.fixture()
def company(session: Session) -> Company:
    c = Company(name="Acme", ticker="ACM", sector="Manufacturing", country="DE")
    session.add(c)
    session.commit()
    return c


@pytest.fixture()
def document(session: Session, company: Company) -> Document:
    d = Document(
        company_id=company.id, kind="pdf", filename="report.pdf",
        content="Acme cut scope 1 emissions by 12% in 2023. Board is 40% independent.",
        status="completed",
    )
    session.add(d)
    session.commit()
    return d


@pytest.fixture()
def storage(tmp_path) -> BlobStore:
    return BlobStore(uploads_dir=tmp_path / "uploads", api_url="", api_key="")


# ---------------------------------------------------------------------------
# Model client fakes
# ---------------------------------------------------------------------------


def _completion(content: Any = None, tool_calls: list[dict] | None = None,
                prompt_tokens: int = 10, completion_tokens: int = 5) -> dict[str, Any]:
    message: dict[str, Any] = {"role": "assistant", "content": content}
    if tool_calls:
        message["tool_calls"] = tool_calls
    return {
        "choices": [{"index": 0, "message": message}],
        "usage": {"prompt_tokens": prompt_tokens, "completion_tokens": completion_tokens},
    }


def _tool_call(call_id: str, name: str, arguments: Any) -> dict[str, Any]:
    raw = arguments if isinstance(arguments, str) else json.dumps(arguments)
    return {"id": call_id, "type": "function", "function": {"name": name, "arguments": raw}}


@pytest.fixture()
def completion():
    return _completion


@pytest.fixture()
def tool_call():
    return _tool_call


@pytest.fixture()
def make_client():
    """Build a fake LLMClient whose ``invoke`` returns/raises the given items in order."""
    def _make(*responses: Any) -> MagicMock:
        client = MagicMock()
        client.model = "test-model"
        client.invoke = AsyncMock(side_effect=list(responses))
        return client
    return _make


FINDINGS = [
    {"category": "greenwashing", "severity": 4, "summary": "Net-zero claim lacks a plan",
     "evidence": "'carbon neutral by 2030'", "citation": "report.pdf p.3"},
    {"category": "diversity", "severity": 2, "summary": "No pay gap disclosure",
     "evidence": "", "citation": "report.pdf p.9"},
    {"category": "governance", "severity": 3, "summary": "CEO chairs the board",
     "evidence": "Board composition table", "citation": "report.pdf p.12"},
]

ACTIONS = [
    {"title": "Publish transition plan", "rationale": "Backs the net-zero claim.", "priority": 1,
     "expectedImpact": 12, "costEstimate": 250000, "confidence": 80, "citations": ["report.pdf p.3"]},
    {"title": "Disclose pay gap", "rationale": "Required by investors.", "priority": 2,
     "expectedImpact": 5, "costEstimate": 20000, "confidence": 70, "citations": []},
    {"title": "Split CEO and chair", "rationale": "Improves oversight.", "priority": 3,
     "expectedImpact": 8, "costEstimate": 0, "confidence": 60, "citations": ["report.pdf p.12"]},
    {"title": "Supplier audits", "rationale": "Reduces supply chain risk.", "priority": 5,
     "expectedImpact": 4, "costEstimate": 90000, "confidence": 55, "citations": []},
]


@pytest.fixture()
def pipeline_responses():
    """Four well-formed completions, one per pipeline stage."""
    return [
        _completion("Environmental: emissions down 12%. Governance: 40% independent board."),
        _completion(json.dumps({"eScore": 72, "sScore": 55, "gScore": 61, "justification": "Solid disclosure."})),
        _completion(json.dumps({"findings": FINDINGS})),
        _completion(json.dumps({"actions": ACTIONS})),
    ]
