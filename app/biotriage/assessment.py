"""AI assessment client: prompt construction, safety screening, retries, validation."""

from __future__ import annotations

import asyncio
from typing import Any, Protocol

from pydantic import ValidationError

from biotriage.config import Settings
from biotriage.errors import (
    InvalidResponseFailure,
    InvalidVerdict,
    ProviderError,
    ProviderRejectedFailure,
    ProviderTimeout,
    ProviderUnavailableFailure,
    SafetyBlock,
    SafetyBlockedFailure,
)
from biotriage.retry import RetryPolicy
from biotriage.schemas import ModelParams, ProviderResponse, SafetySetting, TriageVerdict, VitalsSnapshot
from biotriage.utils import extract_json_object

SYSTEM_INSTRUCTION = """\
You are a medical AI assistant specialized in emergency triage. Assess the patient's
symptoms and assign a severity score from 0 to 10 where:

0-2: Non-urgent (can wait hours or days)
3-4: Standard (should be seen within 2-4 hours)
5-6: Urgent (should be seen within 1 hour)
7-8: High priority (should be seen within 30 minutes)
9-10: Critical / life-threatening (immediate attention required)

Consider symptom severity and duration, vital signs if provided, age-related risk
factors and the potential for rapid deterioration.

Be conservative: when in doubt, score higher."""

RESPONSE_CONTRACT = """\
Respond with ONLY a JSON object of this exact shape (confidence bounds use the same
0-10 scale as the score, confidence_lower <= confidence_upper):
{
  "severity_score": <number 0-10>,
  "confidence_lower": <number 0-10>,
  "confidence_upper": <number 0-10>,
  "explanation": "<brief explanation>",
  "key_symptoms": ["<symptom>", ...],
  "concerning_findings": ["<finding>", ...],
  "recommended_actions": ["<action>", ...],
  "urgency_level": "<critical|urgent|standard|non_urgent>",
  "time_to_treatment": "<timeframe>"
}"""

NOT_PROVIDED = "not provided"

_VITALS_UNITS = {
    "heart_rate": "bpm",
    "temperature": "°F",
    "oxygen_saturation": "%",
    "respiratory_rate": "breaths/min",
    "heart_rate_variability": "ms",
}
_VITALS_FIELDS = (
    "heart_rate",
    "blood_pressure",
    "temperature",
    "oxygen_saturation",
    "respiratory_rate",
    "heart_rate_variability",
)

# Rating probability ranks and the lowest rank each threshold blocks.
_PROBABILITY_RANK = {"NEGLIGIBLE": 0, "LOW": 1, "MEDIUM": 2, "HIGH": 3}
_THRESHOLD_RANK = {
    "BLOCK_LOW_AND_ABOVE": 1,
    "BLOCK_MEDIUM_AND_ABOVE": 2,
    "BLOCK_ONLY_HIGH": 3,
}


class AssessmentProvider(Protocol):
    async def generate(
        self,
        prompt: str,
        safety_settings: list[SafetySetting],
        model_params: ModelParams,
    ) -> ProviderResponse: ...


def format_vitals(vitals: VitalsSnapshot | None) -> str:
    if vitals is None:
        return NOT_PROVIDED
    lines: list[str] = []
    for name in _VITALS_FIELDS:
        value = getattr(vitals, name)
        if value is None:
            continue
        unit = _VITALS_UNITS.get(name)
        lines.append(f"{name}: {value} {unit}" if unit else f"{name}: {value}")
    return "\n".join(lines) if lines else NOT_PROVIDED


def format_demographics(demographics: dict[str, Any] | None) -> str:
    if not demographics:
        return NOT_PROVIDED
    lines = [f"{key}: {value}" for key, value in demographics.items() if value not in (None, "")]
    return "\n".join(lines) if lines else NOT_PROVIDED


def build_prompt(
    symptoms: str,
    vitals: VitalsSnapshot | None = None,
    demographics: dict[str, Any] | None = None,
) -> str:
    return (
        f"{SYSTEM_INSTRUCTION}\n\n"
        f"Patient presents with the following symptoms:\n{symptoms}\n\n"
        f"Vital signs:\n{format_vitals(vitals)}\n\n"
        f"Patient demographics:\n{format_demographics(demographics)}\n\n"
        f"{RESPONSE_CONTRACT}"
    )


def parse_verdict(text: str) -> TriageVerdict:
    parsed = extract_json_object(text)
    if parsed is None:
        raise InvalidVerdict(f"response is not a JSON object: {text[:120]!r}")
    try:
        return TriageVerdict.model_validate(parsed)
    except ValidationError as exc:
        fields = ", ".join(".".join(str(p) for p in err["loc"]) or "<root>" for err in exc.errors())
        raise InvalidVerdict(f"verdict failed validation ({fields})") from exc


class AssessmentClient:
    def __init__(
        self,
        provider: AssessmentProvider,
        settings: Settings,
        *,
        policy: RetryPolicy | None = None,
    ):
        self._provider = provider
        self._settings = settings
        self._policy = policy or RetryPolicy(
            max_retries=settings.max_retries,
            backoff_sec=settings.retry_backoff_sec,
            max_backoff_sec=settings.retry_backoff_max_sec,
        )

    @property
    def model_version(self) -> str:
        return str(getattr(self._provider, "model_name", None) or self._settings.gemini_model)

    @property
    def policy(self) -> RetryPolicy:
        return self._policy

    def safety_settings(self) -> list[SafetySetting]:
        return [
            SafetySetting(category=category, threshold=self._settings.safety_threshold)
            for category in self._settings.safety_categories
        ]

    def model_params(self) -> ModelParams:
        return ModelParams(
            model=self._settings.gemini_model,
            max_output_tokens=self._settings.max_output_tokens,
            temperature=self._settings.temperature,
            top_k=self._settings.top_k,
            top_p=self._settings.top_p,
        )

    def _screen(self, response: ProviderResponse) -> None:
        if response.block_reason:
            raise SafetyBlock(f"Provider blocked response ({response.block_reason})")
        block_at = _THRESHOLD_RANK.get(self._settings.safety_threshold)
        if block_at is None:
            return
        watched = set(self._settings.safety_categories)
        for rating in response.safety_ratings:
            if rating.category not in watched:
                continue
            rank = _PROBABILITY_RANK.get(rating.probability.strip().upper(), 0)
            if rating.blocked or rank >= block_at:
                raise SafetyBlock(
                    f"Response flagged {rating.probability} for {rating.category}",
                    category=rating.category,
                )

    async def _attempt(
        self,
        prompt: str,
        safety_settings: list[SafetySetting],
        model_params: ModelParams,
    ) -> TriageVerdict:
        timeout = self._settings.request_timeout_sec
        try:
            response = await asyncio.wait_for(
                self._provider.generate(prompt, safety_settings, model_params),
                timeout=timeout,
            )
        except (asyncio.TimeoutError, TimeoutError) as exc:
            raise ProviderTimeout(f"no provider response within {timeout:g}s") from exc
        self._screen(response)
        return parse_verdict(response.text)

    @staticmethod
    def _log_retry(attempt: int, exc: BaseException, delay: float) -> None:
        print(
            f"[biotriage] assessment_retry: attempt={attempt} delay={delay:.2f}s "
            f"error={type(exc).__name__}: {exc}"
        )

    async def assess(
        self,
        symptoms: str,
        vitals: VitalsSnapshot | None = None,
        demographics: dict[str, Any] | None = None,
    ) -> TriageVerdict:
        prompt = build_prompt(symptoms, vitals, demographics)
        safety_settings = self.safety_settings()
        model_params = self.model_params()
        attempts = self._policy.max_attempts

        try:
            return await self._policy.run(
                lambda: self._attempt(prompt, safety_settings, model_params),
                on_retry=self._log_retry,
            )
        except SafetyBlock as exc:
            raise SafetyBlockedFailure(
                f"Symptoms could not be assessed: {exc.reason}. Please rephrase the description."
            ) from exc
        except InvalidVerdict as exc:
            raise InvalidResponseFailure(
                f"Model returned an unusable verdict after {attempts} attempt(s): {exc}"
            ) from exc
        except ProviderError as exc:
            if exc.transient:
                raise ProviderUnavailableFailure(
                    f"Assessment provider unavailable after {attempts} attempt(s): {exc.message}"
                ) from exc
            raise ProviderRejectedFailure(f"Assessment provider rejected the request: {exc.message}") from exc

    async def health_check(self) -> bool:
        probe = getattr(self._provider, "health_check", None)
        if probe is None:
            return True
        return bool(await probe())
