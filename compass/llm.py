"""Generation provider for insights and draft validation: LLM client plus a bounded, fail-soft wrapper.

:class:`LLMClient` talks to Anthropic or OpenAI and raises
:class:`LLMCallError` on any failure. :class:`LLMInsightProvider` turns every
call into a :class:`ProviderResult` (``ok`` / ``unavailable`` / ``malformed``)
after applying a timeout and at most one retry, so callers branch on the
result instead of catching exceptions.
"""
from __future__ import annotations

import asyncio
import json
import logging
import os
import re
from dataclasses import dataclass, field
from typing import Any, Protocol

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from compass.schemas import (
    GeneratedKrInsight,
    GeneratedKrValidation,
    GeneratedObjectiveInsight,
    GeneratedObjectiveValidation,
)

log = logging.getLogger(__name__)

KIND_KR = "kr"
KIND_OBJECTIVE = "objective"
KIND_VALIDATE_KR = "validate_kr"
KIND_VALIDATE_OBJECTIVE = "validate_objective"

STATUS_OK = "ok"
STATUS_UNAVAILABLE = "unavailable"
STATUS_MALFORMED = "malformed"

DEFAULT_TIMEOUT_MS = 12000
RETRY_DELAY = 0.3
MAX_TOKENS = 600


class LLMCallError(Exception):
    """LLM call failed or returned unparseable output."""
    def __init__(self, message: str, retryable: bool = False):
        super().__init__(message)
        self.retryable = retryable


# ---------------------------------------------------------------------------
# Prompts
# ---------------------------------------------------------------------------

KR_SYSTEM_PROMPT = """\
You are an OKR analyst. Read the key result signals and explain its current \
state to the team that owns it.

Be concrete: reference the progress percentage, the target, and the latest \
check-in when they exist. Keep the short explanation to one sentence.

Respond with ONLY valid JSON:
{
  "explanationShort": "<one sentence, max 280 chars>",
  "explanationLong": "<2-4 sentences>",
  "suggestion": "<one actionable next step, max 280 chars>",
  "risk": "<low|medium|high>"
}
"""

OBJECTIVE_SYSTEM_PROMPT = """\
You are an OKR analyst. Read the objective and the signals of each of its key \
results and summarise the overall state of the objective.

Critical key results (high risk) weigh more than healthy ones. If the \
objective has no key results, say so.

Respond with ONLY valid JSON:
{
  "explanationShort": "<one sentence, max 280 chars>",
  "explanationLong": "<2-4 sentences>",
  "suggestion": "<one actionable next step, max 280 chars>"
}
"""

OBJECTIVE_VALIDATION_PROMPT = """\
You review OKR drafts before they are saved. Look for a vague objective, \
incoherent dates, key results that are not measurable, missing targets, and \
too many key results.

Respond with ONLY valid JSON:
{
  "issues": [
    {"severity": "<high|medium|low>", "code": "<snake_case>", "message": "<text>", "fixSuggestion": "<text>"}
  ],
  "score": <0-100>
}
If there is nothing to fix, return "issues": [].
"""

KR_VALIDATION_PROMPT = """\
You review a single numeric key result. It must be measurable, quantitative, \
and have a target greater than 0.

Respond with ONLY valid JSON:
{
  "issues": [
    {"severity": "<high|medium|low>", "code": "<snake_case>", "message": "<text>", "fixSuggestion": "<text>"}
  ],
  "suggestedTargetValue": <number or null>
}
If there is nothing to fix, return "issues": [].
"""

STATUS_PROMPT = 'Reply with exactly {"ok": true}.'

PROMPTS: dict[str, tuple[str, type[BaseModel]]] = {
    KIND_KR: (KR_SYSTEM_PROMPT, GeneratedKrInsight),
    KIND_OBJECTIVE: (OBJECTIVE_SYSTEM_PROMPT, GeneratedObjectiveInsight),
    KIND_VALIDATE_KR: (KR_VALIDATION_PROMPT, GeneratedKrValidation),
    KIND_VALIDATE_OBJECTIVE: (OBJECTIVE_VALIDATION_PROMPT, GeneratedObjectiveValidation),
}


# ---------------------------------------------------------------------------
# LLM Client
# ---------------------------------------------------------------------------


def _extract_json_text(text: str) -> str:
    m = re.search(r'```(?:json)?\s*(\{.*\})\s*```', text, re.DOTALL)
    return m.group(1) if m else text.strip()


class LLMClient:
    """Async JSON-only client over Anthropic or OpenAI, configured from the environment.

    ``OPENAI_BASE_URL`` points the OpenAI SDK at any compatible endpoint.
    """

    def __init__(self, provider: str | None = None, model: str | None = None):
        self.provider = provider or os.environ.get("LLM_PROVIDER", "anthropic")
        if self.provider == "anthropic":
            import anthropic
            self.model = model or os.environ.get("LLM_MODEL") or "claude-haiku-4-5-20251001"
            self._client: Any = anthropic.AsyncAnthropic()
        elif self.provider == "openai":
            import openai
            self.model = model or os.environ.get("LLM_MODEL") or "gpt-4o-mini"
            self._client = openai.AsyncOpenAI()
        else:
            raise ValueError(f"Unknown LLM provider: {self.provider!r}")

    async def _complete(self, system: str, user: str) -> str:
        if self.provider == "anthropic":
            response = await self._client.messages.create(
                model=self.model,
                max_tokens=MAX_TOKENS,
                temperature=0.2,
                system=system,
                messages=[{"role": "user", "content": user}],
            )
            return response.content[0].text
        response = await self._client.chat.completions.create(
            model=self.model,
            max_tokens=MAX_TOKENS,
            temperature=0.2,
            response_format={"type": "json_object"},
            messages=[
                {"role": "system", "content": system},
                {"role": "user", "content": user},
            ],
        )
        return response.choices[0].message.content or "{}"

    async def call(self, system: str, user: str) -> dict[str, Any]:
        """Send one system+user exchange and return the reply as a JSON object."""
        try:
            text = _extract_json_text(await self._complete(system, user))
        except Exception as exc:
            raise LLMCallError(f"LLM API call failed: {exc}", retryable=True) from exc
        try:
            parsed = json.loads(text)
        except json.JSONDecodeError as exc:
            raise LLMCallError(f"LLM returned invalid JSON: {text[:200]}") from exc
        if not isinstance(parsed, dict):
            raise LLMCallError("LLM returned a non-object JSON value")
        return parsed


# ---------------------------------------------------------------------------
# Provider
# ---------------------------------------------------------------------------


@dataclass
class ProviderResult:
    """Outcome of one generation request."""
    status: str
    output: BaseModel | None = None
    reason: str = ""
    model: str = ""

    @property
    def ok(self) -> bool:
        return self.status == STATUS_OK

    @classmethod
    def unavailable(cls, reason: str) -> ProviderResult:
        return cls(status=STATUS_UNAVAILABLE, reason=reason)

    @classmethod
    def malformed(cls, reason: str) -> ProviderResult:
        return cls(status=STATUS_MALFORMED, reason=reason)


class InsightProvider(Protocol):
    async def generate(self, kind: str, signals: dict[str, Any]) -> ProviderResult: ...

    async def ping(self) -> bool: ...

def ai_enabled_from_env() -> bool:
    return (os.environ.get("INSIGHTS_AI_ENABLED") or "").strip().lower() == "true"


def _env_int(name: str, default: int) -> int:
    try:
        return int(os.environ.get(name, default))
    except (TypeError, ValueError):
        log.warning("Ignoring non-integer %s=%r", name, os.environ.get(name))
        return default


@dataclass
class LLMInsightProvider:
    """Bounded generation over :class:`LLMClient`.

    ``client=None`` with ``enabled=True`` builds a default client lazily; a
    client that cannot be built makes the provider report ``unavailable``.
    """
    client: LLMClient | None = None
    enabled: bool = field(default_factory=ai_enabled_from_env)
    timeout: float = field(default_factory=lambda: _env_int("AI_TIMEOUT_MS", DEFAULT_TIMEOUT_MS) / 1000)
    retries: int = field(default_factory=lambda: max(0, min(1, _env_int("AI_RETRIES", 1))))

    def _ensure_client(self) -> LLMClient | None:
        if self.client is None:
            try:
                self.client = LLMClient()
            except Exception as exc:
                log.warning("Insight provider not configured: %s", exc)
                self.enabled = False
                return None
        return self.client

    async def generate(self, kind: str, signals: dict[str, Any]) -> ProviderResult:
        if not self.enabled:
            return ProviderResult.unavailable("disabled")
        if kind not in PROMPTS:
            raise ValueError(f"Unknown insight kind: {kind!r}")
        try:
            return await self._generate(kind, signals)
        except Exception as exc:
            log.warning("Generation (%s) failed unexpectedly: %s", kind, exc)
            return ProviderResult.unavailable(f"error: {exc}")

    async def _generate(self, kind: str, signals: dict[str, Any]) -> ProviderResult:
        client = self._ensure_client()
        if client is None:
            return ProviderResult.unavailable("unconfigured")

        system, shape = PROMPTS[kind]
        user = json.dumps(signals, default=str)
        raw: dict[str, Any] | None = None
        reason = "no response"
        for attempt in range(self.retries + 1):
            try:
                raw = await asyncio.wait_for(client.call(system, user), timeout=self.timeout)
                break
            except TimeoutError:
                log.warning("Generation (%s) timed out after %.1fs", kind, self.timeout)
                reason = "timeout"
            except LLMCallError as exc:
                log.warning("Generation (%s) failed: %s", kind, exc)
                if not exc.retryable:
                    return ProviderResult.malformed(str(exc))
                reason = str(exc)
            if attempt < self.retries:
                await asyncio.sleep(RETRY_DELAY)
        if raw is None:
            return ProviderResult.unavailable(reason)

        try:
            output = shape.model_validate(raw)
        except PydanticValidationError as exc:
            log.warning("Discarding malformed %s output: %s", kind, exc.error_count())
            return ProviderResult.malformed(str(exc))
        log.info("Generated %s with %s", kind, client.model)
        return ProviderResult(status=STATUS_OK, output=output, model=client.model)

    async def ping(self) -> bool:
        """One bounded round trip, no retry. False when disabled or unreachable."""
        if not self.enabled:
            return False
        client = self._ensure_client()
        if client is None:
            return False
        try:
            await asyncio.wait_for(client.call(STATUS_PROMPT, "status"), timeout=self.timeout)
        except Exception as exc:
            log.warning("Generation provider status check failed: %s", exc)
            return False
        return True
