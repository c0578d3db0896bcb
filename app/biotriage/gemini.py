"""Gemini `generateContent` adapter implementing the AI-provider contract."""

from __future__ import annotations

from typing import Any

import httpx

from biotriage.config import Settings
from biotriage.errors import ProviderError, ProviderTimeout, SafetyBlock
from biotriage.schemas import ModelParams, ProviderResponse, SafetyRating, SafetySetting


class GeminiProvider:
    def __init__(self, settings: Settings, *, transport: httpx.AsyncBaseTransport | None = None):
        self._settings = settings
        self._transport = transport

    @property
    def model_name(self) -> str:
        return self._settings.gemini_model

    def _url(self, model_name: str) -> str:
        base = self._settings.gemini_base_url.rstrip("/")
        return f"{base}/v1beta/models/{model_name}:generateContent"

    @staticmethod
    def _build_body(
        prompt: str,
        safety_settings: list[SafetySetting],
        model_params: ModelParams,
    ) -> dict[str, Any]:
        return {
            "contents": [{"parts": [{"text": prompt}]}],
            "generationConfig": {
                "temperature": model_params.temperature,
                "topK": model_params.top_k,
                "topP": model_params.top_p,
                "maxOutputTokens": model_params.max_output_tokens,
                "responseMimeType": "application/json",
            },
            "safetySettings": [s.model_dump() for s in safety_settings],
        }

    async def _post(self, model_name: str, body: dict[str, Any], *, timeout_sec: float) -> dict[str, Any]:
        if not self._settings.gemini_api_key:
            raise ProviderError("Gemini API key not configured", status_code=401)

        try:
            async with httpx.AsyncClient(timeout=timeout_sec, transport=self._transport) as client:
                response = await client.post(
                    self._url(model_name),
                    params={"key": self._settings.gemini_api_key},
                    json=body,
                )
                response.raise_for_status()
                data = response.json()
        except httpx.TimeoutException as exc:
            raise ProviderTimeout(f"Gemini request timed out: {exc}") from exc
        except httpx.HTTPStatusError as exc:
            status = exc.response.status_code
            raise ProviderError(
                f"Gemini returned HTTP {status}: {exc.response.text[:180]}",
                status_code=status,
            ) from exc
        except httpx.TransportError as exc:
            raise ProviderError(f"Gemini transport error: {type(exc).__name__}: {exc}") from exc
        except ValueError as exc:
            # Envelope (not model text) failed to decode; usually a proxy error page.
            raise ProviderError(f"Gemini returned a non-JSON envelope: {exc}") from exc

        if not isinstance(data, dict):
            raise ProviderError("Gemini returned an unexpected envelope")
        return data

    @staticmethod
    def _ratings(raw: Any) -> list[SafetyRating]:
        ratings: list[SafetyRating] = []
        for item in raw or []:
            if not isinstance(item, dict):
                continue
            ratings.append(
                SafetyRating(
                    category=str(item.get("category", "")),
                    probability=str(item.get("probability", "NEGLIGIBLE")),
                    blocked=bool(item.get("blocked", False)),
                )
            )
        return ratings

    @classmethod
    def _parse_envelope(cls, data: dict[str, Any]) -> ProviderResponse:
        feedback = data.get("promptFeedback") or {}
        block_reason = feedback.get("blockReason")
        if block_reason:
            raise SafetyBlock(f"Prompt blocked by provider ({block_reason})")

        candidates = data.get("candidates") or []
        if not candidates:
            return ProviderResponse(text="", safety_ratings=cls._ratings(feedback.get("safetyRatings")))

        candidate = candidates[0] or {}
        finish_reason = candidate.get("finishReason")
        ratings = cls._ratings(candidate.get("safetyRatings"))
        if finish_reason == "SAFETY":
            blocked = next((r.category for r in ratings if r.blocked), None)
            raise SafetyBlock("Response blocked by provider safety filter", category=blocked)

        parts = ((candidate.get("content") or {}).get("parts")) or []
        text = "".join(str(p.get("text", "")) for p in parts if isinstance(p, dict)).strip()
        return ProviderResponse(text=text, finish_reason=finish_reason, safety_ratings=ratings)

    async def generate(
        self,
        prompt: str,
        safety_settings: list[SafetySetting],
        model_params: ModelParams,
    ) -> ProviderResponse:
        body = self._build_body(prompt, safety_settings, model_params)
        data = await self._post(
            model_params.model or self.model_name,
            body,
            timeout_sec=self._settings.request_timeout_sec,
        )
        return self._parse_envelope(data)

    async def health_check(self) -> bool:
        if not self._settings.gemini_api_key:
            return False
        body = {
            "contents": [{"parts": [{"text": "Health check"}]}],
            "generationConfig": {"maxOutputTokens": 10},
        }
        try:
            await self._post(self.model_name, body, timeout_sec=5.0)
            return True
        except (ProviderError, SafetyBlock) as exc:
            print(f"[biotriage] gemini_health_check_failed: {type(exc).__name__}: {exc}")
            return False
