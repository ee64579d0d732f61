"""Pydantic request/response schemas for the ESG Advisor API."""
from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field


class _ORMOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)


class CompanyCreate(BaseModel):
    name: str = Field(min_length=1)
    ticker: str | None = None
    sector: str | None = None
    country: str | None = None


class CompanyOut(_ORMOut):
    id: int
    name: str
    ticker: str | None = None
    sector: str | None = None
    country: str | None = None
    created_at: datetime | None = None


class CompanySearch(BaseModel):
    query: str


class DocumentUpload(BaseModel):
    kind: Literal["pdf", "csv", "url"]
    filename: str | None = None
    url: str | None = None
    content: str | None = None  # base64
    mime: str | None = None


class DocumentOut(_ORMOut):
    id: int
    company_id: int
    kind: str
    filename: str | None = None
    url: str | None = None
    file_key: str | None = None
    content: str | None = None
    status: str
    uploaded_at: datetime | None = None


class RunOut(_ORMOut):
    id: int
    company_id: int
    status: str
    model: str | None = None
    token_in: int | None = None
    token_out: int | None = None
    error: str | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None


class RunStarted(BaseModel):
    run_id: int
    status: str


class MetricOut(_ORMOut):
    id: int
    run_id: int | None = None
    category: str
    metric: str
    value: float
    unit: str | None = None
    period: str | None = None
    source: str | None = None


class FindingOut(_ORMOut):
    id: int
    run_id: int | None = None
    category: str
    severity: str
    summary: str
    details: str | None = None
    evidence: str | None = None
    is_greenwashing: bool
    confidence: float


class ActionOut(_ORMOut):
    id: int
    run_id: int | None = None
    title: str
    description: str
    category: str
    priority: str
    estimated_impact: float | None = None
    estimated_cost: str | None = None
    status: str
    reasoning: str | None = None
    confidence: float
    feedback: str | None = None


class CompanyDetail(BaseModel):
    company: CompanyOut
    latest_metrics: list[MetricOut] = []
    scores: dict[str, float] | None = None
    runs: list[RunOut] = []
    documents: list[DocumentOut] = []


class RunDetail(BaseModel):
    run: RunOut
    findings: list[FindingOut] = []
    actions: list[ActionOut] = []
    metrics: list[MetricOut] = []
    scores: dict[str, float] | None = None


class ActionReview(BaseModel):
    feedback: str | None = None


class EvalLabelCreate(BaseModel):
    finding_id: int | None = None
    action_id: int | None = None
    label: Literal["positive", "negative", "neutral"]
    label_type: Literal["accuracy", "relevance", "usefulness", "correctness"] = "usefulness"
    notes: str | None = None


class EvalLabelOut(_ORMOut):
    id: int
    run_id: int
    finding_id: int | None = None
    action_id: int | None = None
    label_type: str
    label_value: str
    feedback: str | None = None


class ChatMessage(BaseModel):
    role: Literal["user", "assistant", "system"]
    content: str


class ChatRequest(BaseModel):
    messages: list[ChatMessage]
    active_company_id: int | None = None


class BiReportRequest(BaseModel):
    query: str | None = None
