"""ESG analysis pipeline: four sequential model calls over an accumulating context.

Architecture
------------
1. **Document analysis** (free text): extracts E/S/G signals with quotes from
   the per-document summaries. Only feeds the later stages, never persisted.
2. **Scores** (structured): ``{eScore, sScore, gScore, justification}``;
   each score is clamped to 0-100 and ``total`` is the rounded mean.
3. **Findings** (structured): 3-7 issues with a 1-5 severity and a free-form
   category that is collapsed onto the stored category enum.
4. **Actions** (structured): 3-5 recommendations informed by the findings,
   with a 1-5 priority collapsed onto the stored priority enum.

Structured stages never raise on malformed output: ``extract_json_content``
tries a fixed list of strategies and falls back to an empty default, so bad
model output degrades a Run's quality instead of failing it. Failures of the
model call itself (``LLMCallError``) propagate to the caller.
"""
from __future__ import annotations

import json
import logging
import math
import re
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from sqlalchemy.orm import Session

from esgagent.llm import LLMClient, first_message
from esgagent.models import SEVERITIES, PRIORITIES, Action, Document, ESGMetric, Finding
from esgagent.utils import coerce_number, ensure_string, round_half_up, stringify

log = logging.getLogger(__name__)

DOCUMENT_SEPARATOR = "\n\n---\n\n"
EXCERPT_CHARS = 200

# ---------------------------------------------------------------------------
# Prompts
# ---------------------------------------------------------------------------

ANALYSIS_PROMPT = """\
You are an ESG analysis expert. Analyze the provided documents and extract key \
ESG signals including:
- Environmental: emissions, energy use, waste management, climate commitments
- Social: labor practices, diversity metrics, community impact, supply chain ethics
- Governance: board structure, executive compensation, transparency, compliance

Provide a comprehensive analysis with specific data points and quotes from the documents.
"""

SCORES_PROMPT = """\
You are an ESG scoring expert. Based on the analysis provided, calculate \
Environmental (E), Social (S), and Governance (G) scores on a 0-100 scale.

Consider:
- E Score: emissions reduction, renewable energy, waste management, climate commitments
- S Score: employee welfare, diversity & inclusion, community engagement, supply chain ethics
- G Score: board independence, transparency, executive compensation, compliance

Provide scores with justification.
"""

FINDINGS_PROMPT = """\
You are an ESG auditor specializing in detecting issues. Analyze the provided \
information and identify:
1. Greenwashing: claims without evidence or misleading statements
2. Supply chain ethics: labor violations, sourcing issues
3. Diversity concerns: lack of representation, pay gaps
4. Governance issues: conflicts of interest, lack of transparency

For each finding, provide:
- category: 'greenwashing', 'supply_chain', 'diversity', or 'governance'
- severity: 1-5 (5 being most severe)
- summary: brief description
- evidence: specific quotes or data points
- citation: reference to source document

Return 3-7 findings, prioritized by severity.
"""

ACTIONS_PROMPT = """\
You are an ESG strategy consultant. Based on the ESG scores and findings, \
create 3-5 prioritized action recommendations.

For each action:
- title: concise action title
- rationale: why this action is important (2-3 sentences)
- priority: 1-5 (1 being highest priority)
- expectedImpact: estimated score improvement (0-20 points)
- costEstimate: estimated cost in USD
- confidence: confidence level 0-100
- citations: array of relevant sources

Focus on high-impact, feasible actions that address the most severe findings.
"""

# ---------------------------------------------------------------------------
# Output schemas (strict json_schema response formats)
# ---------------------------------------------------------------------------


def _json_schema(name: str, schema: dict[str, Any]) -> dict[str, Any]:
    return {"type": "json_schema", "json_schema": {"name": name, "strict": True, "schema": schema}}


SCORES_FORMAT = _json_schema("esg_scores", {
    "type": "object",
    "properties": {
        "eScore": {"type": "integer", "description": "Environmental score 0-100"},
        "sScore": {"type": "integer", "description": "Social score 0-100"},
        "gScore": {"type": "integer", "description": "Governance score 0-100"},
        "justification": {"type": "string", "description": "Brief justification for scores"},
    },
    "required": ["eScore", "sScore", "gScore", "justification"],
    "additionalProperties": False,
})

FINDINGS_FORMAT = _json_schema("findings", {
    "type": "object",
    "properties": {
        "findings": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {
                    "category": {"type": "string"},
                    "severity": {"type": "integer"},
                    "summary": {"type": "string"},
                    "evidence": {"type": "string"},
                    "citation": {"type": "string"},
                },
                "required": ["category", "severity", "summary", "evidence", "citation"],
                "additionalProperties": False,
            },
        },
    },
    "required": ["findings"],
    "additionalProperties": False,
})

ACTIONS_FORMAT = _json_schema("action_plan", {
    "type": "object",
    "properties": {
        "actions": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {
                    "title": {"type": "string"},
                    "rationale": {"type": "string"},
                    "priority": {"type": "integer"},
                    "expectedImpact": {"type": "integer"},
                    "costEstimate": {"type": "integer"},
                    "confidence": {"type": "integer"},
                    "citations": {"type": "array", "items": {"type": "string"}},
                },
                "required": [
                    "title", "rationale", "priority", "expectedImpact",
                    "costEstimate", "confidence", "citations",
                ],
                "additionalProperties": False,
            },
        },
    },
    "required": ["actions"],
    "additionalProperties": False,
})

# ---------------------------------------------------------------------------
# Structured output extraction
# ---------------------------------------------------------------------------

JSON_FIELD_CANDIDATES = ("json", "output_json", "data", "content")

_FENCE_RE = re.compile(r"```(?:json)?\s*(.*?)\s*```", re.DOTALL)
_UNPARSED = object()


@dataclass
class Extraction:
    """Parsed model output plus the name of the strategy that produced it."""
    value: Any
    strategy: str


def _parse_string(value: Any) -> tuple[Any, str]:
    if not isinstance(value, str) or not value.strip():
        return _UNPARSED, ""
    try:
        return json.loads(value), "string"
    except json.JSONDecodeError:
        pass
    m = _FENCE_RE.search(value)
    if m:
        try:
            return json.loads(m.group(1)), "fenced"
        except json.JSONDecodeError:
            pass
    return _UNPARSED, ""


def extract_json_content(content: Any, fallback: Any) -> Extraction:
    """Pull a JSON value out of assistant content.

    Strategies, in order:

    - ``string`` / ``fenced``: content is a JSON string (optionally in a code fence)
    - ``part_string`` / ``part_fenced``: a list part is such a string
    - ``part_text``: a part's ``text`` field parses as JSON
    - ``field_<name>``: a part carries an object, or a parseable string, under
      one of ``json``, ``output_json``, ``data``, ``content``
    - ``default``: nothing matched, *fallback* is returned
    """
    if not content:
        return Extraction(fallback, "default")
    if isinstance(content, str):
        parsed, how = _parse_string(content)
        if parsed is not _UNPARSED:
            return Extraction(parsed, how)
        return Extraction(fallback, "default")

    parts = content if isinstance(content, list) else [content]
    for part in parts:
        if not part:
            continue
        if isinstance(part, str):
            parsed, how = _parse_string(part)
            if parsed is not _UNPARSED:
                return Extraction(parsed, f"part_{how}")
            continue
        if not isinstance(part, dict):
            continue
        parsed, _ = _parse_string(part.get("text"))
        if parsed is not _UNPARSED:
            return Extraction(parsed, "part_text")
        for key in JSON_FIELD_CANDIDATES:
            candidate = part.get(key)
            if isinstance(candidate, (dict, list)):
                return Extraction(candidate, f"field_{key}")
            parsed, _ = _parse_string(candidate)
            if parsed is not _UNPARSED:
                return Extraction(parsed, f"field_{key}")
    return Extraction(fallback, "default")


def extract_text_content(content: Any) -> str:
    """Flatten assistant content (string, part list or part object) into text."""
    if not content:
        return ""
    if isinstance(content, str):
        return content
    parts = content if isinstance(content, list) else [content]
    chunks: list[str] = []
    for part in parts:
        if not part:
            continue
        if isinstance(part, str):
            chunks.append(part)
            continue
        if not isinstance(part, dict):
            continue
        if isinstance(part.get("text"), str):
            chunks.append(part["text"])
            continue
        if isinstance(part.get("output_text"), str):
            chunks.append(part["output_text"])
            continue
        for key in JSON_FIELD_CANDIDATES:
            candidate = part.get(key)
            if isinstance(candidate, str):
                chunks.append(candidate)
                break
            if isinstance(candidate, (dict, list)):
                chunks.append(json.dumps(candidate))
                break
    return "\n".join(chunks).strip()


def normalize_array(value: Any) -> list[dict[str, Any]]:
    """Keep only the object items of a list; anything else becomes ``[]``."""
    if not isinstance(value, list):
        return []
    return [item for item in value if isinstance(item, dict)]


# ---------------------------------------------------------------------------
# Enum mapping
# ---------------------------------------------------------------------------

# Every category the model may emit, mapped onto the stored finding categories.
# Anything not listed here is stored as DEFAULT_CATEGORY.
CATEGORY_LEXICON: dict[str, str] = {
    "environmental": "environmental",
    "social": "social",
    "governance": "governance",
    "general": "general",
    "greenwashing": "environmental",
    "supply_chain": "social",
    "diversity": "social",
}
DEFAULT_CATEGORY = "general"


def _as_number(value: Any) -> float | None:
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float)):
        return float(value) if math.isfinite(value) else None
    if isinstance(value, str) and value.strip():
        try:
            num = float(value)
        except ValueError:
            return None
        return num if math.isfinite(num) else None
    return None


def map_finding_category(value: Any) -> str:
    if isinstance(value, str):
        return CATEGORY_LEXICON.get(value.strip().lower(), DEFAULT_CATEGORY)
    return DEFAULT_CATEGORY


def map_finding_severity(value: Any) -> str:
    """Map a 1-5 severity onto the five-level ordinal.

    Thresholds are inclusive upper bounds: <=0 info, <=1 low, <=2 medium,
    <=3 high, anything above critical. So 4 and 5 both land on critical and
    nothing numeric lands between high and critical.
    """
    num = _as_number(value)
    if num is not None:
        if num <= 0:
            return "info"
        if num <= 1:
            return "low"
        if num <= 2:
            return "medium"
        if num <= 3:
            return "high"
        return "critical"
    if isinstance(value, str) and value.strip().lower() in SEVERITIES:
        return value.strip().lower()
    return "medium"


def map_action_priority(value: Any) -> str:
    """Map a 1-5 priority (1 = most urgent) onto critical/high/medium/low."""
    num = _as_number(value)
    if num is not None:
        if num <= 1:
            return "critical"
        if num <= 2:
            return "high"
        if num <= 3:
            return "medium"
        return "low"
    if isinstance(value, str) and value.strip().lower() in PRIORITIES:
        return value.strip().lower()
    return "medium"


def clamp_score(value: Any, lo: int = 0, hi: int = 100) -> int:
    num = _as_number(value)
    if num is None:
        return lo
    return min(hi, max(lo, round_half_up(num)))


# ---------------------------------------------------------------------------
# Pipeline types
# ---------------------------------------------------------------------------


@dataclass
class AnalysisContext:
    company_id: int
    run_id: int
    company_name: str
    documents: list[str]


@dataclass
class ESGScores:
    e_score: int
    s_score: int
    g_score: int
    total: int
    method: str


@dataclass
class Usage:
    """Token usage accumulated across the pipeline's model calls."""
    prompt_tokens: int = 0
    completion_tokens: int = 0

    def add(self, response: dict[str, Any]) -> None:
        usage = response.get("usage") or {}
        self.prompt_tokens += int(coerce_number(usage.get("prompt_tokens"), 0))
        self.completion_tokens += int(coerce_number(usage.get("completion_tokens"), 0))


@dataclass
class AnalysisResult:
    scores: ESGScores
    findings: list[dict[str, Any]]
    actions: list[dict[str, Any]]
    usage: Usage = field(default_factory=Usage)


def summarize_documents(documents: list[Document]) -> list[str]:
    """One line per document: kind, filename and the head of its excerpt."""
    return [
        f"[{d.kind}] {d.filename or 'Untitled'}: {(d.content or '')[:EXCERPT_CHARS] or 'No content'}"
        for d in documents
    ]


# ---------------------------------------------------------------------------
# Stages
# ---------------------------------------------------------------------------


async def analyze_documents(client: LLMClient, context: AnalysisContext, usage: Usage) -> str:
    documents_text = DOCUMENT_SEPARATOR.join(context.documents)
    response = await client.invoke(messages=[
        {"role": "system", "content": ANALYSIS_PROMPT},
        {"role": "user", "content": f"Analyze these documents for {context.company_name}:\n\n{documents_text}"},
    ])
    usage.add(response)
    return extract_text_content(first_message(response).get("content"))


async def calculate_scores(client: LLMClient, analysis: str, usage: Usage) -> ESGScores:
    response = await client.invoke(
        messages=[
            {"role": "system", "content": SCORES_PROMPT},
            {"role": "user", "content": f"Calculate ESG scores based on this analysis:\n\n{analysis}"},
        ],
        response_format=SCORES_FORMAT,
    )
    usage.add(response)
    fallback = {"eScore": 0, "sScore": 0, "gScore": 0, "justification": ""}
    extracted = extract_json_content(first_message(response).get("content"), fallback)
    payload = extracted.value if isinstance(extracted.value, dict) else fallback
    if extracted.strategy == "default" or payload is fallback:
        log.warning("Score output unparseable, falling back to zero scores")
    else:
        log.debug("Scores extracted via %s", extracted.strategy)

    e = clamp_score(payload.get("eScore"))
    s = clamp_score(payload.get("sScore"))
    g = clamp_score(payload.get("gScore"))
    justification = ensure_string(payload.get("justification"))
    return ESGScores(
        e_score=e,
        s_score=s,
        g_score=g,
        total=round_half_up((e + s + g) / 3),
        method=f"AI-powered analysis using LLM. {justification}" if justification else "AI-powered analysis using LLM.",
    )


def _extract_items(content: Any, key: str) -> list[dict[str, Any]]:
    extracted = extract_json_content(content, {key: []})
    value = extracted.value
    if isinstance(value, dict):
        value = value.get(key)
    items = normalize_array(value)
    if extracted.strategy == "default":
        log.warning("%s output unparseable, continuing with none", key.capitalize())
    else:
        log.debug("%d %s extracted via %s", len(items), key, extracted.strategy)
    return items


async def detect_findings(client: LLMClient, analysis: str, usage: Usage) -> list[dict[str, Any]]:
    response = await client.invoke(
        messages=[
            {"role": "system", "content": FINDINGS_PROMPT},
            {"role": "user", "content": f"Detect ESG issues in this analysis:\n\n{analysis}"},
        ],
        response_format=FINDINGS_FORMAT,
    )
    usage.add(response)
    return _extract_items(first_message(response).get("content"), "findings")


def findings_summary(findings: list[dict[str, Any]]) -> str:
    return "\n".join(
        f"- {f.get('category')} (severity {f.get('severity')}): {f.get('summary')}" for f in findings
    )


async def generate_actions(
    client: LLMClient,
    context: AnalysisContext,
    scores: ESGScores,
    findings: list[dict[str, Any]],
    usage: Usage,
) -> list[dict[str, Any]]:
    user = (
        f"Generate action plan for {context.company_name}:\n\n"
        f"Current Scores: E={scores.e_score}, S={scores.s_score}, G={scores.g_score}\n\n"
        f"Key Findings:\n{findings_summary(findings)}\n\n"
        "Provide 3-5 prioritized actions."
    )
    response = await client.invoke(
        messages=[
            {"role": "system", "content": ACTIONS_PROMPT},
            {"role": "user", "content": user},
        ],
        response_format=ACTIONS_FORMAT,
    )
    usage.add(response)
    return _extract_items(first_message(response).get("content"), "actions")


async def run_esg_analysis(context: AnalysisContext, client: LLMClient) -> AnalysisResult:
    """Run all four stages in order. Model call failures propagate."""
    log.info("Starting analysis for %s (run %s)", context.company_name, context.run_id)
    usage = Usage()
    analysis = await analyze_documents(client, context, usage)
    scores = await calculate_scores(client, analysis, usage)
    findings = await detect_findings(client, analysis, usage)
    actions = await generate_actions(client, context, scores, findings, usage)
    log.info(
        "Analysis complete for run %s. Scores: E=%d, S=%d, G=%d",
        context.run_id, scores.e_score, scores.s_score, scores.g_score,
    )
    return AnalysisResult(scores=scores, findings=findings, actions=actions, usage=usage)


# ---------------------------------------------------------------------------
# Persistence
# ---------------------------------------------------------------------------


def save_analysis_results(
    session: Session, context: AnalysisContext, result: AnalysisResult,
) -> tuple[list[ESGMetric], list[Finding], list[Action]]:
    """Add metric, finding and action rows for a run (caller must commit).

    Not idempotent: a second call for the same run adds a second set of rows.
    """
    period = datetime.now(UTC).strftime("%Y-%m")
    scores = result.scores
    metrics = [
        ESGMetric(
            company_id=context.company_id, run_id=context.run_id, category=category,
            metric="overall_score", value=value, period=period, source=scores.method,
        )
        for category, value in (
            ("environmental", scores.e_score),
            ("social", scores.s_score),
            ("governance", scores.g_score),
        )
    ]

    findings = [
        Finding(
            company_id=context.company_id,
            run_id=context.run_id,
            category=map_finding_category(f.get("category")),
            severity=map_finding_severity(f.get("severity")),
            summary=ensure_string(f.get("summary"), "No summary provided"),
            evidence=stringify(f.get("evidence")),
            details=ensure_string(f.get("citation")),
            is_greenwashing=str(f.get("category", "")).strip().lower() == "greenwashing",
        )
        for f in result.findings
    ]

    actions = [
        Action(
            company_id=context.company_id,
            run_id=context.run_id,
            title=ensure_string(a.get("title"), "Action recommendation"),
            description=ensure_string(a.get("rationale"), "No rationale provided"),
            category="general",
            priority=map_action_priority(a.get("priority")),
            estimated_impact=coerce_number(a.get("expectedImpact"), 0),
            estimated_cost=ensure_string(a.get("costEstimate"), "0"),
            confidence=coerce_number(a.get("confidence"), 0),
            reasoning=stringify(a.get("citations") or []),
            status="proposed",
        )
        for a in result.actions
    ]

    session.add_all([*metrics, *findings, *actions])
    session.flush()
    log.info(
        "Saved %d metrics, %d findings, %d actions for run %s",
        len(metrics), len(findings), len(actions), context.run_id,
    )
    return metrics, findings, actions
