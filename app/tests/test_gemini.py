import asyncio
import json

import httpx
import pytest

from biotriage.config import Settings
from biotriage.errors import ProviderError, ProviderTimeout, SafetyBlock
from biotriage.gemini import GeminiProvider
from biotriage.schemas import ModelParams, SafetySetting


def _settings(**overrides) -> Settings:
    values = {"gemini_api_key": "test-key", "gemini_model": "gemini-1.5-flash"}
    values.update(overrides)
    return Settings(**values)


def _provider(handler, **overrides) -> GeminiProvider:
    return GeminiProvider(_settings(**overrides), transport=httpx.MockTransport(handler))


def _generate(provider: GeminiProvider):
    return asyncio.run(
        provider.generate(
            "triage prompt",
            [SafetySetting(category="HARM_CATEGORY_HARASSMENT", threshold="BLOCK_MEDIUM_AND_ABOVE")],
            ModelParams(model="gemini-1.5-flash"),
        )
    )


def test_generate_posts_expected_body_and_joins_parts():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["body"] = json.loads(request.content)
        return httpx.Response(
            200,
            json={
                "candidates": [
                    {
                        "content": {"parts": [{"text": '{"severity_score": '}, {"text": "5}"}]},
                        "finishReason": "STOP",
                        "safetyRatings": [
                            {"category": "HARM_CATEGORY_HARASSMENT", "probability": "NEGLIGIBLE"}
                        ],
                    }
                ]
            },
        )

    response = _generate(_provider(handler))

    assert response.text == '{"severity_score": 5}'
    assert response.finish_reason == "STOP"
    assert response.safety_ratings[0].probability == "NEGLIGIBLE"
    assert "models/gemini-1.5-flash:generateContent" in seen["url"]
    assert "key=test-key" in seen["url"]
    config = seen["body"]["generationConfig"]
    assert config["temperature"] == 0.3
    assert config["topK"] == 40
    assert config["topP"] == 0.9
    assert config["maxOutputTokens"] == 500
    assert seen["body"]["safetySettings"] == [
        {"category": "HARM_CATEGORY_HARASSMENT", "threshold": "BLOCK_MEDIUM_AND_ABOVE"}
    ]
    assert seen["body"]["contents"][0]["parts"][0]["text"] == "triage prompt"


def test_prompt_feedback_block_raises_safety_block():
    def handler(request):
        return httpx.Response(200, json={"promptFeedback": {"blockReason": "SAFETY"}})

    with pytest.raises(SafetyBlock):
        _generate(_provider(handler))


def test_safety_finish_reason_raises_safety_block():
    def handler(request):
        return httpx.Response(
            200,
            json={
                "candidates": [
                    {
                        "finishReason": "SAFETY",
                        "safetyRatings": [
                            {"category": "HARM_CATEGORY_DANGEROUS_CONTENT", "probability": "HIGH", "blocked": True}
                        ],
                    }
                ]
            },
        )

    with pytest.raises(SafetyBlock) as exc_info:
        _generate(_provider(handler))
    assert exc_info.value.category == "HARM_CATEGORY_DANGEROUS_CONTENT"


def test_http_errors_carry_status():
    def handler(request):
        return httpx.Response(429, text="quota exceeded")

    with pytest.raises(ProviderError) as exc_info:
        _generate(_provider(handler))
    assert exc_info.value.status_code == 429
    assert exc_info.value.transient is False


def test_server_errors_are_transient():
    def handler(request):
        return httpx.Response(503, text="unavailable")

    with pytest.raises(ProviderError) as exc_info:
        _generate(_provider(handler))
    assert exc_info.value.transient is True


def test_timeouts_map_to_provider_timeout():
    def handler(request):
        raise httpx.ReadTimeout("read timed out", request=request)

    with pytest.raises(ProviderTimeout):
        _generate(_provider(handler))


def test_missing_api_key_is_rejected_without_network():
    def handler(request):
        raise AssertionError("no request expected")

    with pytest.raises(ProviderError) as exc_info:
        _generate(_provider(handler, gemini_api_key=None))
    assert exc_info.value.status_code == 401


def test_health_check_reports_reachability():
    def ok(request):
        return httpx.Response(200, json={"candidates": [{"content": {"parts": [{"text": "ok"}]}}]})

    def down(request):
        raise httpx.ConnectError("refused", request=request)

    assert asyncio.run(_provider(ok).health_check()) is True
    assert asyncio.run(_provider(down).health_check()) is False
    assert asyncio.run(_provider(ok, gemini_api_key=None).health_check()) is False
