"""Rule insights, the insight engine, and the bounded generation provider."""
from __future__ import annotations

import asyncio
from datetime import date
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from compass import progress
from compass.insights import (
    GENERATED_VERSION, RULES_VERSION, SOURCE_GENERATED, SOURCE_RULES,
    InsightEngine, KrSignals, KrSummarySignal, ObjectiveSignals,
    rule_kr_insight, rule_objective_insight,
)
from compass.llm import (
    KIND_KR, KIND_OBJECTIVE, KIND_VALIDATE_KR, KIND_VALIDATE_OBJECTIVE,
    STATUS_MALFORMED, STATUS_OK, STATUS_UNAVAILABLE,
    LLMCallError, LLMInsightProvider, ProviderResult, _extract_json_text,
)
from compass.schemas import GeneratedKrInsight, GeneratedObjectiveInsight, GeneratedObjectiveValidation

VALID_KR = {
    "explanationShort": "Sign-ups are ahead of plan",
    "explanationLong": "120 of 150 sign-ups reached with four weeks left.",
    "suggestion": "Keep the referral campaign running",
    "risk": "LOW",
}
VALID_OBJECTIVE = {
    "explanationShort": "Objective is healthy",
    "explanationLong": "Both key results are on track.",
    "suggestion": "Keep the weekly review",
}


def _kr_signals(target=100.0, current=None, checkins=0) -> KrSignals:
    return KrSignals(
        title="Reach 100 sign-ups", metric_name="sign-ups", unit="users",
        target_value=target, current_value=current,
        progress_pct=progress.progress_pct(current, target),
        health=progress.health(current, target),
        checkin_count=checkins, last_checkin_value=current if checkins else None,
    )


def _objective_signals(risks) -> ObjectiveSignals:
    return ObjectiveSignals(
        statement="Grow the community", start_date=date(2026, 1, 1), end_date=date(2026, 3, 31),
        status="active",
        krs=[KrSummarySignal(id=f"kr{i}", title=f"KR {i}", progress_pct=None,
                             health=progress.NO_CHECKINS, risk=r) for i, r in enumerate(risks)],
    )


class FakeProvider:
    def __init__(self, result: ProviderResult):
        self.result = result
        self.calls: list[tuple[str, dict]] = []

    async def generate(self, kind, signals):
        self.calls.append((kind, signals))
        return self.result


def _mock_client(side_effect=None, return_value=None):
    client = MagicMock()
    client.model = "test-model"
    client.call = AsyncMock(side_effect=side_effect, return_value=return_value)
    return client


# ---------------------------------------------------------------------------
# Rules
# ---------------------------------------------------------------------------


class TestRuleKrInsight:
    def test_no_target(self):
        draft = rule_kr_insight(None, 50, 3)
        assert draft.explanation_short == "no target defined"
        assert draft.risk == "high"
        assert (draft.source, draft.version) == (SOURCE_RULES, RULES_VERSION)

    def test_no_checkins(self):
        draft = rule_kr_insight(100, None, 0)
        assert draft.explanation_short == "no check-ins recorded"
        assert draft.risk == "high"

    @pytest.mark.parametrize("current, short, risk", [
        (10, "off track", "high"),
        (55, "at risk", "medium"),
        (90, "on track", "low"),
    ])
    def test_banded(self, current, short, risk):
        draft = rule_kr_insight(100, current, 1)
        assert (draft.explanation_short, draft.risk) == (short, risk)

    def test_zero_current_with_checkin_is_off_track(self):
        assert rule_kr_insight(100, 0, 1).explanation_short == "off track"


class TestRuleObjectiveInsight:
    def test_no_krs(self):
        draft = rule_objective_insight([])
        assert draft.explanation_short == "no KRs"
        assert draft.risk is None

    def test_any_high_is_critical(self):
        assert rule_objective_insight(["low", "low", "high"]).explanation_short == \
            "at risk due to critical KRs"

    def test_medium_majority(self):
        assert rule_objective_insight(["medium", "medium", "low"]).explanation_short == "at risk"

    def test_medium_half_is_not_majority(self):
        assert rule_objective_insight(["medium", "low"]).explanation_short == "on track"

    def test_all_low(self):
        assert rule_objective_insight(["low", "low"]).explanation_short == "on track"


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


class TestInsightEngine:
    @pytest.mark.asyncio
    async def test_rules_without_provider(self):
        draft = await InsightEngine().kr_insight(_kr_signals(current=80, checkins=1))
        assert draft.source == SOURCE_RULES
        assert draft.risk == "low"

    @pytest.mark.asyncio
    async def test_generated_kr_insight(self):
        output = GeneratedKrInsight.model_validate(VALID_KR)
        provider = FakeProvider(ProviderResult(status=STATUS_OK, output=output, model="m"))
        draft = await InsightEngine(provider).kr_insight(_kr_signals(current=120, checkins=2))
        assert draft.source == SOURCE_GENERATED
        assert draft.version == GENERATED_VERSION
        assert draft.risk == "low"
        assert draft.explanation_short == VALID_KR["explanationShort"]
        kind, signals = provider.calls[0]
        assert kind == KIND_KR
        assert signals["checkin_count"] == 2
        assert signals["progress_pct"] == 100.0

    @pytest.mark.asyncio
    @pytest.mark.parametrize("result", [
        ProviderResult.unavailable("timeout"),
        ProviderResult.malformed("bad json"),
    ])
    async def test_fallback_to_rules(self, result):
        draft = await InsightEngine(FakeProvider(result)).kr_insight(_kr_signals(current=10, checkins=1))
        assert draft.source == SOURCE_RULES
        assert draft.version == RULES_VERSION
        assert draft.explanation_short == "off track"

    @pytest.mark.asyncio
    async def test_objective_generated_has_no_risk(self):
        output = GeneratedObjectiveInsight.model_validate(VALID_OBJECTIVE)
        provider = FakeProvider(ProviderResult(status=STATUS_OK, output=output))
        draft = await InsightEngine(provider).objective_insight(_objective_signals(["low"]))
        assert draft.source == SOURCE_GENERATED
        assert draft.risk is None
        kind, signals = provider.calls[0]
        assert kind == KIND_OBJECTIVE
        assert signals["start_date"] == "2026-01-01"
        assert signals["krs"][0]["risk"] == "low"

    @pytest.mark.asyncio
    async def test_objective_fallback(self):
        provider = FakeProvider(ProviderResult.unavailable("disabled"))
        draft = await InsightEngine(provider).objective_insight(_objective_signals(["high", "low"]))
        assert draft.explanation_short == "at risk due to critical KRs"
        assert draft.source == SOURCE_RULES


# ---------------------------------------------------------------------------
# Provider
# ---------------------------------------------------------------------------


class TestExtractJson:
    def test_fenced(self):
        assert _extract_json_text('```json\n{"a": 1}\n```') == '{"a": 1}'

    def test_plain(self):
        assert _extract_json_text('  {"a": 1} ') == '{"a": 1}'


class TestLLMInsightProvider:
    @pytest.mark.asyncio
    async def test_disabled_never_calls(self):
        client = _mock_client(return_value=VALID_KR)
        provider = LLMInsightProvider(client=client, enabled=False)
        result = await provider.generate(KIND_KR, {})
        assert result.status == STATUS_UNAVAILABLE
        assert result.reason == "disabled"
        client.call.assert_not_called()

    @pytest.mark.asyncio
    async def test_ok_normalizes_risk(self):
        provider = LLMInsightProvider(client=_mock_client(return_value=VALID_KR), enabled=True)
        result = await provider.generate(KIND_KR, {"title": "x"})
        assert result.ok
        assert result.output.risk == "low"
        assert result.model == "test-model"

    @pytest.mark.asyncio
    async def test_unknown_kind(self):
        provider = LLMInsightProvider(client=_mock_client(return_value={}), enabled=True)
        with pytest.raises(ValueError):
            await provider.generate("initiative", {})

    @pytest.mark.asyncio
    async def test_schema_violation_is_malformed(self):
        bad = dict(VALID_KR, explanationShort="")
        provider = LLMInsightProvider(client=_mock_client(return_value=bad), enabled=True)
        result = await provider.generate(KIND_KR, {})
        assert result.status == STATUS_MALFORMED

    @pytest.mark.asyncio
    async def test_overlong_explanation_is_malformed(self):
        bad = dict(VALID_OBJECTIVE, explanationShort="x" * 281)
        provider = LLMInsightProvider(client=_mock_client(return_value=bad), enabled=True)
        result = await provider.generate(KIND_OBJECTIVE, {})
        assert result.status == STATUS_MALFORMED

    @pytest.mark.asyncio
    async def test_invalid_risk_is_malformed(self):
        bad = dict(VALID_KR, risk="catastrophic")
        provider = LLMInsightProvider(client=_mock_client(return_value=bad), enabled=True)
        assert (await provider.generate(KIND_KR, {})).status == STATUS_MALFORMED

    @pytest.mark.asyncio
    async def test_non_retryable_error_not_retried(self):
        client = _mock_client(side_effect=LLMCallError("invalid JSON", retryable=False))
        provider = LLMInsightProvider(client=client, enabled=True, retries=1)
        result = await provider.generate(KIND_KR, {})
        assert result.status == STATUS_MALFORMED
        assert client.call.await_count == 1

    @pytest.mark.asyncio
    async def test_retryable_error_retried_once(self):
        client = _mock_client(side_effect=[LLMCallError("503", retryable=True), VALID_KR])
        provider = LLMInsightProvider(client=client, enabled=True, retries=1)
        with patch("compass.llm.RETRY_DELAY", 0):
            result = await provider.generate(KIND_KR, {})
        assert result.ok
        assert client.call.await_count == 2

    @pytest.mark.asyncio
    async def test_retries_exhausted_is_unavailable(self):
        client = _mock_client(side_effect=LLMCallError("503", retryable=True))
        provider = LLMInsightProvider(client=client, enabled=True, retries=1)
        with patch("compass.llm.RETRY_DELAY", 0):
            result = await provider.generate(KIND_KR, {})
        assert result.status == STATUS_UNAVAILABLE
        assert client.call.await_count == 2

    @pytest.mark.asyncio
    async def test_timeout_is_unavailable(self):
        async def slow(system, user):
            await asyncio.sleep(5)
            return VALID_KR

        client = _mock_client(side_effect=slow)
        provider = LLMInsightProvider(client=client, enabled=True, timeout=0.05, retries=0)
        result = await provider.generate(KIND_KR, {})
        assert result.status == STATUS_UNAVAILABLE
        assert result.reason == "timeout"

    def test_env_configuration(self, monkeypatch):
        monkeypatch.setenv("INSIGHTS_AI_ENABLED", "TRUE")
        monkeypatch.setenv("AI_TIMEOUT_MS", "2500")
        monkeypatch.setenv("AI_RETRIES", "7")
        provider = LLMInsightProvider(client=_mock_client())
        assert provider.enabled is True
        assert provider.timeout == 2.5
        assert provider.retries == 1

    def test_bad_env_values_fall_back(self, monkeypatch):
        monkeypatch.setenv("INSIGHTS_AI_ENABLED", "yes")
        monkeypatch.setenv("AI_TIMEOUT_MS", "soon")
        provider = LLMInsightProvider(client=_mock_client())
        assert provider.enabled is False
        assert provider.timeout == 12.0

    @pytest.mark.asyncio
    async def test_unconfigured_client_is_unavailable(self, monkeypatch):
        monkeypatch.setenv("LLM_PROVIDER", "carrier-pigeon")
        provider = LLMInsightProvider(enabled=True)
        result = await provider.generate(KIND_KR, {})
        assert result.status == STATUS_UNAVAILABLE
        assert result.reason == "unconfigured"

    @pytest.mark.asyncio
    async def test_sdk_without_credentials_is_unavailable(self, monkeypatch):
        monkeypatch.setenv("LLM_PROVIDER", "openai")
        monkeypatch.delenv("OPENAI_API_KEY", raising=False)
        monkeypatch.delenv("OPENAI_BASE_URL", raising=False)
        provider = LLMInsightProvider(enabled=True)
        result = await provider.generate(KIND_KR, {})
        assert result.status == STATUS_UNAVAILABLE
        assert result.reason == "unconfigured"
        assert provider.enabled is False

    @pytest.mark.asyncio
    async def test_client_construction_error_is_unavailable(self):
        with patch("compass.llm.LLMClient", side_effect=RuntimeError("no credentials")):
            result = await LLMInsightProvider(enabled=True).generate(KIND_OBJECTIVE, {})
        assert (result.status, result.reason) == (STATUS_UNAVAILABLE, "unconfigured")

    @pytest.mark.asyncio
    async def test_unexpected_client_error_is_unavailable(self):
        client = _mock_client(side_effect=RuntimeError("socket closed"))
        provider = LLMInsightProvider(client=client, enabled=True, retries=0)
        result = await provider.generate(KIND_KR, {})
        assert result.status == STATUS_UNAVAILABLE
        assert "socket closed" in result.reason


class TestValidationKinds:
    @pytest.mark.asyncio
    async def test_kr_validation_shape(self):
        client = _mock_client(return_value={
            "issues": [
                {"severity": "HIGH", "code": "not_measurable", "message": "No metric",
                 "fixSuggestion": "Count sign-ups"},
                {"severity": "urgent", "code": "x", "message": "Unknown severity"},
                {"severity": "low", "code": "y", "message": ""},
            ],
            "suggestedTargetValue": 150,
        })
        provider = LLMInsightProvider(client=client, enabled=True)
        result = await provider.generate(KIND_VALIDATE_KR, {"title": "Grow"})
        assert result.status == STATUS_OK
        assert [(i.severity, i.code) for i in result.output.issues] == [("high", "not_measurable")]
        assert result.output.issues[0].fix_suggestion == "Count sign-ups"
        assert result.output.suggested_target_value == 150

    @pytest.mark.asyncio
    async def test_objective_validation_without_issues_list_is_malformed(self):
        client = _mock_client(return_value={"score": 80})
        provider = LLMInsightProvider(client=client, enabled=True)
        result = await provider.generate(KIND_VALIDATE_OBJECTIVE, {})
        assert result.status == STATUS_MALFORMED

    def test_non_numeric_score_is_dropped(self):
        output = GeneratedObjectiveValidation.model_validate({"issues": [], "score": "great"})
        assert output.score is None


class TestPing:
    @pytest.mark.asyncio
    async def test_disabled(self):
        client = _mock_client(return_value={"ok": True})
        assert await LLMInsightProvider(client=client, enabled=False).ping() is False
        client.call.assert_not_called()

    @pytest.mark.asyncio
    async def test_reachable(self):
        client = _mock_client(return_value={"ok": True})
        assert await LLMInsightProvider(client=client, enabled=True).ping() is True
        client.call.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_failure_is_false(self):
        client = _mock_client(side_effect=LLMCallError("503", retryable=True))
        assert await LLMInsightProvider(client=client, enabled=True).ping() is False
        assert client.call.await_count == 1
