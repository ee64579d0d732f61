"""Tests for the analysis pipeline: output extraction, enum mapping, stages and persistence."""
from __future__ import annotations

import json
from datetime import UTC, datetime

import pytest
from sqlalchemy import func, select

from esgagent.agent import (
    AnalysisContext,
    AnalysisResult,
    ESGScores,
    Usage,
    calculate_scores,
    clamp_score,
    extract_json_content,
    extract_text_content,
    findings_summary,
    map_action_priority,
    map_finding_category,
    map_finding_severity,
    run_esg_analysis,
    save_analysis_results,
    summarize_documents,
)
from esgagent.llm import LLMCallError
from esgagent.models import Action, Document, ESGMetric, Finding, Run


# ---------------------------------------------------------------------------
# Enum mapping
# ---------------------------------------------------------------------------


class TestSeverityMapping:
    @pytest.mark.parametrize("value, expected", [
        (0, "info"), (-3, "info"), (1, "low"), (2, "medium"), (3, "high"),
        (4, "critical"), (5, "critical"), (1.5, "medium"), ("3", "high"),
    ])
    def test_numeric_thresholds(self, value, expected):
        assert map_finding_severity(value) == expected

    @pytest.mark.parametrize("value", ["info", "low", "medium", "high", "critical"])
    def test_recognized_strings_pass_through(self, value):
        assert map_finding_severity(value) == value

    @pytest.mark.parametrize("value", ["severe", "", None, True, [], {}])
    def test_unrecognized_is_medium(self, value):
        assert map_finding_severity(value) == "medium"


class TestPriorityMapping:
    @pytest.mark.parametrize("value, expected", [
        (1, "critical"), (0, "critical"), (2, "high"), (3, "medium"), (4, "low"), (5, "low"),
    ])
    def test_numeric_thresholds(self, value, expected):
        assert map_action_priority(value) == expected

    def test_recognized_string(self):
        assert map_action_priority("High") == "high"

    @pytest.mark.parametrize("value", ["urgent", None, ""])
    def test_unrecognized_is_medium(self, value):
        assert map_action_priority(value) == "medium"


class TestCategoryMapping:
    @pytest.mark.parametrize("value, expected", [
        ("environmental", "environmental"),
        ("Social", "social"),
        ("governance", "governance"),
        ("greenwashing", "environmental"),
        ("supply_chain", "social"),
        ("diversity", "social"),
        ("biodiversity", "general"),
        (None, "general"),
        (3, "general"),
    ])
    def test_lexicon(self, value, expected):
        assert map_finding_category(value) == expected


class TestClampScore:
    @pytest.mark.parametrize("value, expected", [
        (72, 72), (150, 100), (-20, 0), (72.5, 73), ("88", 88), ("abc", 0), (None, 0),
        (float("nan"), 0), (float("inf"), 0),
    ])
    def test_clamps_into_range(self, value, expected):
        assert clamp_score(value) == expected


# ---------------------------------------------------------------------------
# Output extraction
# ---------------------------------------------------------------------------


class TestExtractJsonContent:
    def test_json_string(self):
        got = extract_json_content('{"a": 1}', {})
        assert got.value == {"a": 1}
        assert got.strategy == "string"

    def test_fenced_string(self):
        got = extract_json_content('Here you go:\n```json\n{"a": 2}\n```', {})
        assert got.value == {"a": 2}
        assert got.strategy == "fenced"

    def test_part_string(self):
        got = extract_json_content(['{"a": 3}'], {})
        assert got.strategy == "part_string"

    def test_part_text(self):
        got = extract_json_content([{"type": "text", "text": '{"a": 4}'}], {})
        assert got.value == {"a": 4}
        assert got.strategy == "part_text"

    @pytest.mark.parametrize("key", ["json", "output_json", "data", "content"])
    def test_alternate_fields_with_objects(self, key):
        got = extract_json_content([{"type": "output", key: {"a": 5}}], {})
        assert got.value == {"a": 5}
        assert got.strategy == f"field_{key}"

    def test_alternate_field_with_json_string(self):
        got = extract_json_content({"data": '{"a": 6}'}, {})
        assert got.value == {"a": 6}
        assert got.strategy == "field_data"

    def test_field_priority_order(self):
        got = extract_json_content([{"data": {"a": "data"}, "json": {"a": "json"}}], {})
        assert got.value == {"a": "json"}

    @pytest.mark.parametrize("content", [None, "", "not json", [], [{"type": "text", "text": "nope"}], 42])
    def test_falls_back_to_default(self, content):
        fallback = {"findings": []}
        got = extract_json_content(content, fallback)
        assert got.value is fallback
        assert got.strategy == "default"


class TestExtractTextContent:
    def test_string(self):
        assert extract_text_content("hello") == "hello"

    def test_parts_joined(self):
        parts = [{"type": "text", "text": "one"}, "two", {"output_text": "three"}]
        assert extract_text_content(parts) == "one\ntwo\nthree"

    def test_object_field_serialized(self):
        assert extract_text_content([{"json": {"a": 1}}]) == '{"a": 1}'

    def test_empty(self):
        assert extract_text_content(None) == ""


# ---------------------------------------------------------------------------
# Stages
# ---------------------------------------------------------------------------


def _context(company_id: int = 1, run_id: int = 1) -> AnalysisContext:
    return AnalysisContext(company_id=company_id, run_id=run_id, company_name="Acme", documents=["[pdf] r.pdf: text"])


class TestSummarizeDocuments:
    def test_format(self):
        docs = [
            Document(kind="pdf", filename="report.pdf", content="x" * 300),
            Document(kind="url", filename=None, content=None),
        ]
        lines = summarize_documents(docs)
        assert lines[0] == "[pdf] report.pdf: " + "x" * 200
        assert lines[1] == "[url] Untitled: No content"


class TestCalculateScores:
    @pytest.mark.asyncio
    async def test_total_is_rounded_mean(self, make_client, completion):
        payload = {"eScore": 80, "sScore": 61, "gScore": 60, "justification": "ok"}
        client = make_client(completion(json.dumps(payload)))
        scores = await calculate_scores(client, "analysis", Usage())
        assert (scores.e_score, scores.s_score, scores.g_score) == (80, 61, 60)
        assert scores.total == 67
        assert scores.method == "AI-powered analysis using LLM. ok"

    @pytest.mark.asyncio
    async def test_out_of_range_and_non_numeric(self, make_client, completion):
        payload = {"eScore": 140, "sScore": -5, "gScore": "high", "justification": 7}
        client = make_client(completion(json.dumps(payload)))
        scores = await calculate_scores(client, "analysis", Usage())
        assert (scores.e_score, scores.s_score, scores.g_score) == (100, 0, 0)
        assert scores.total == 33
        for value in (scores.e_score, scores.s_score, scores.g_score):
            assert 0 <= value <= 100

    @pytest.mark.asyncio
    async def test_unparseable_output_degrades_to_zero(self, make_client, completion):
        client = make_client(completion("I cannot score this."))
        scores = await calculate_scores(client, "analysis", Usage())
        assert (scores.e_score, scores.s_score, scores.g_score, scores.total) == (0, 0, 0, 0)

    @pytest.mark.asyncio
    async def test_requests_strict_schema(self, make_client, completion):
        client = make_client(completion("{}"))
        await calculate_scores(client, "analysis", Usage())
        fmt = client.invoke.call_args.kwargs["response_format"]
        assert fmt["type"] == "json_schema"
        assert fmt["json_schema"]["name"] == "esg_scores"
        assert fmt["json_schema"]["strict"] is True


class TestRunEsgAnalysis:
    @pytest.mark.asyncio
    async def test_four_calls_in_order(self, make_client, pipeline_responses):
        client = make_client(*pipeline_responses)
        result = await run_esg_analysis(_context(), client)
        assert client.invoke.await_count == 4
        formats = [c.kwargs.get("response_format") for c in client.invoke.call_args_list]
        assert formats[0] is None
        assert [f["json_schema"]["name"] for f in formats[1:]] == ["esg_scores", "findings", "action_plan"]
        assert result.scores.total == 63
        assert len(result.findings) == 3
        assert len(result.actions) == 4
        assert result.usage.prompt_tokens == 40
        assert result.usage.completion_tokens == 20

    @pytest.mark.asyncio
    async def test_actions_prompt_includes_findings_summary(self, make_client, pipeline_responses):
        client = make_client(*pipeline_responses)
        await run_esg_analysis(_context(), client)
        user = client.invoke.call_args_list[3].kwargs["messages"][1]["content"]
        assert "Current Scores: E=72, S=55, G=61" in user
        assert "- greenwashing (severity 4): Net-zero claim lacks a plan" in user

    @pytest.mark.asyncio
    async def test_documents_joined_with_separator(self, make_client, pipeline_responses):
        client = make_client(*pipeline_responses)
        ctx = AnalysisContext(company_id=1, run_id=1, company_name="Acme", documents=["a", "b"])
        await run_esg_analysis(ctx, client)
        user = client.invoke.call_args_list[0].kwargs["messages"][1]["content"]
        assert user.endswith("a\n\n---\n\nb")

    @pytest.mark.asyncio
    async def test_malformed_findings_and_actions_degrade(self, make_client, completion, pipeline_responses):
        responses = pipeline_responses[:2] + [completion("garbage"), completion('{"actions": "nope"}')]
        client = make_client(*responses)
        result = await run_esg_analysis(_context(), client)
        assert result.findings == []
        assert result.actions == []

    @pytest.mark.asyncio
    async def test_model_call_failure_propagates(self, make_client, pipeline_responses):
        client = make_client(pipeline_responses[0], LLMCallError("boom"))
        with pytest.raises(LLMCallError):
            await run_esg_analysis(_context(), client)


def test_findings_summary_lines():
    text = findings_summary([{"category": "governance", "severity": 3, "summary": "CEO chairs board"}])
    assert text == "- governance (severity 3): CEO chairs board"


# ---------------------------------------------------------------------------
# Persistence
# ---------------------------------------------------------------------------


def _result(findings, actions) -> AnalysisResult:
    scores = ESGScores(e_score=70, s_score=50, g_score=60, total=60, method="AI-powered analysis using LLM.")
    return AnalysisResult(scores=scores, findings=findings, actions=actions)


class TestSaveAnalysisResults:
    @pytest.fixture()
    def run(self, session, company):
        r = Run(company_id=company.id, status="running")
        session.add(r)
        session.commit()
        return r

    def test_row_counts_and_run_ids(self, session, company, run, pipeline_responses):
        findings = json.loads(pipeline_responses[2]["choices"][0]["message"]["content"])["findings"]
        actions = json.loads(pipeline_responses[3]["choices"][0]["message"]["content"])["actions"]
        ctx = _context(company.id, run.id)
        save_analysis_results(session, ctx, _result(findings, actions))
        session.commit()

        metrics = session.execute(select(ESGMetric)).scalars().all()
        assert len(metrics) == 3
        assert len(session.execute(select(Finding)).scalars().all()) == 3
        assert len(session.execute(select(Action)).scalars().all()) == 4
        for model in (ESGMetric, Finding, Action):
            run_ids = session.execute(select(model.run_id).distinct()).scalars().all()
            assert run_ids == [run.id]
        assert {m.category: m.value for m in metrics} == {"environmental": 70, "social": 50, "governance": 60}
        assert all(m.period == datetime.now(UTC).strftime("%Y-%m") for m in metrics)

    def test_field_mapping(self, session, company, run):
        findings = [{"category": "greenwashing", "severity": 4, "summary": "s",
                     "evidence": {"quote": "q"}, "citation": "p.3"}]
        actions = [{"title": "t", "rationale": "r", "priority": 2, "expectedImpact": "n/a",
                    "costEstimate": None, "confidence": "70", "citations": ["p.3"]}]
        save_analysis_results(session, _context(company.id, run.id), _result(findings, actions))
        session.commit()

        finding = session.execute(select(Finding)).scalars().one()
        assert finding.category == "environmental"
        assert finding.severity == "critical"
        assert finding.is_greenwashing is True
        assert finding.evidence == '{"quote": "q"}'
        assert finding.details == "p.3"

        action = session.execute(select(Action)).scalars().one()
        assert action.priority == "high"
        assert action.status == "proposed"
        assert action.description == "r"
        assert action.estimated_impact == 0
        assert action.estimated_cost == "0"
        assert action.confidence == 70
        assert action.reasoning == '["p.3"]'

    def test_missing_fields_get_defaults(self, session, company, run):
        save_analysis_results(session, _context(company.id, run.id), _result([{}], [{}]))
        session.commit()
        finding = session.execute(select(Finding)).scalars().one()
        assert finding.summary == "No summary provided"
        assert finding.category == "general"
        assert finding.severity == "medium"
        action = session.execute(select(Action)).scalars().one()
        assert action.title == "Action recommendation"
        assert action.priority == "medium"

    def test_second_call_duplicates_rows(self, session, company, run):
        ctx = _context(company.id, run.id)
        save_analysis_results(session, ctx, _result([{}], []))
        save_analysis_results(session, ctx, _result([{}], []))
        session.commit()
        assert session.execute(select(func.count()).select_from(ESGMetric)).scalar() == 6
        assert session.execute(select(func.count()).select_from(Finding)).scalar() == 2
