import asyncio
import json
from typing import Any, Dict, List, Literal, Optional

import httpx
import pytest
from pydantic import BaseModel, Field

from console_agent.config import default_config, merge_config
from console_agent.models import CallOptions, FileAttachment, ResponseFormat, ThinkingConfig
from console_agent.persona_loader import get_persona
from console_agent.providers import (
    AGENT_OUTPUT_SCHEMA,
    GoogleProvider,
    OllamaProvider,
    ProviderError,
    StubProvider,
    build_provider,
    normalize_output,
    parse_response,
    wrap_structured_output,
)


class Verdict(BaseModel):
    valid: bool
    reason: str


EMAIL_SCHEMA = {
    "type": "object",
    "properties": {"valid": {"type": "boolean"}, "reason": {"type": "string"}},
    "required": ["valid", "reason"],
}


class CapturingTransport:
    """Wraps httpx.MockTransport and keeps every request it served."""

    def __init__(self, response_json: Dict[str, Any], status_code: int = 200):
        self.requests: List[httpx.Request] = []
        self.status_code = status_code
        self.response_json = response_json
        self.transport = httpx.MockTransport(self._handle)

    def _handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return httpx.Response(self.status_code, json=self.response_json)

    @property
    def last_body(self) -> Dict[str, Any]:
        return json.loads(self.requests[-1].content)


def gemini_payload(text: str, *, tokens: int = 321, extra_parts: List[Dict[str, Any]] = None) -> Dict[str, Any]:
    parts = list(extra_parts or []) + [{"text": text}]
    return {
        "candidates": [{"content": {"role": "model", "parts": parts}}],
        "usageMetadata": {"totalTokenCount": tokens},
    }


def complete(provider, prompt="hello", context="", persona="general", config=None, options=None):
    return asyncio.run(
        provider.complete(
            prompt,
            context,
            get_persona(persona),
            config or default_config(),
            options or CallOptions(),
        )
    )


# ─── Parsing & normalization ─────────────────────────────────────────────────


def test_parse_response_direct_json():
    assert parse_response('{"a": 1}') == {"a": 1}


def test_parse_response_fenced_block():
    text = 'Here you go:\n```json\n{"summary": "fine"}\n```\nthanks'
    assert parse_response(text) == {"summary": "fine"}


def test_parse_response_embedded_object():
    assert parse_response('prefix {"x": [1, 2]} suffix') == {"x": [1, 2]}


def test_parse_response_returns_none_for_prose():
    assert parse_response("no json here") is None


def test_normalize_output_maps_fields():
    text = json.dumps(
        {
            "success": True,
            "summary": "Email is valid",
            "reasoning": "matched RFC pattern",
            "data": {"result": "valid"},
            "actions": ["regex"],
            "confidence": 0.92,
        }
    )
    result = normalize_output(text, model="m", tokens_used=10, latency_ms=5)

    assert result.summary == "Email is valid"
    assert result.reasoning == "matched RFC pattern"
    assert result.data == {"result": "valid"}
    assert result.actions == ["regex"]
    assert result.confidence == pytest.approx(0.92)
    assert result.metadata.model == "m"
    assert result.metadata.tokens_used == 10


def test_normalize_output_falls_back_to_raw_text():
    text = "plain answer " * 30
    result = normalize_output(text, model="m")

    assert result.success is True
    assert result.summary == text[:200]
    assert result.data == {"raw": text}
    assert result.confidence == 0.5


@pytest.mark.parametrize("raw,expected", [(1.7, 1.0), (-3, 0.0), ("abc", 0.5)])
def test_normalize_output_clamps_confidence(raw, expected):
    result = normalize_output(json.dumps({"summary": "s", "confidence": raw}), model="m")
    assert result.confidence == expected


@pytest.mark.parametrize("raw", ["false", "true", 1, None, False])
def test_normalize_output_only_accepts_boolean_true_as_success(raw):
    result = normalize_output(json.dumps({"summary": "s", "success": raw}), model="m")
    assert result.success is False


def test_normalize_output_missing_success_defaults_to_true():
    assert normalize_output(json.dumps({"summary": "s"}), model="m").success is True


def test_normalize_output_wraps_non_object_data():
    result = normalize_output(json.dumps({"summary": "s", "data": ["a", "b"]}), model="m")
    assert result.data == {"result": ["a", "b"]}


def test_normalize_output_uses_thoughts_when_model_gives_no_reasoning():
    result = normalize_output(json.dumps({"summary": "s"}), model="m", reasoning="thinking out loud")
    assert result.reasoning == "thinking out loud"


def test_wrap_structured_output_with_json_schema():
    options = CallOptions(response_format=ResponseFormat(schema=EMAIL_SCHEMA))
    result = wrap_structured_output('{"valid": true, "reason": "ok"}', options, model="m")

    assert result.success is True
    assert result.data == {"valid": True, "reason": "ok"}
    assert result.summary == "Structured output returned (2 fields)"


def test_wrap_structured_output_reports_schema_violations():
    options = CallOptions(response_format=ResponseFormat(schema=EMAIL_SCHEMA))
    result = wrap_structured_output('{"valid": "yes"}', options, model="m")

    assert result.success is False
    errors = result.data["_validationErrors"]
    assert any("reason" in e["message"] for e in errors)


def test_wrap_structured_output_with_pydantic_model():
    options = CallOptions(output_model=Verdict)
    ok = wrap_structured_output('{"valid": false, "reason": "no at sign"}', options, model="m")
    bad = wrap_structured_output('{"valid": false}', options, model="m")

    assert ok.success is True
    assert ok.data == {"valid": False, "reason": "no at sign"}
    assert bad.success is False
    assert bad.data["_validationErrors"][0]["path"] == ["reason"]


def test_response_format_rejects_invalid_schema():
    with pytest.raises(ValueError, match="Invalid JSON Schema"):
        ResponseFormat(schema={"type": 5})


def test_output_model_must_be_pydantic():
    with pytest.raises(ValueError):
        CallOptions(output_model=dict)


# ─── Stub ────────────────────────────────────────────────────────────────────


def test_stub_provider_default_shape():
    result = complete(StubProvider(), persona="security")
    assert result.success is True
    assert result.summary == "stub security response"
    assert result.metadata.model == "gemini-2.5-flash-lite"


def test_stub_provider_fabricates_schema_output():
    options = CallOptions(response_format=ResponseFormat(schema=EMAIL_SCHEMA))
    result = complete(StubProvider(), options=options)
    assert result.success is True
    assert set(result.data) == {"valid", "reason"}


class Finding(BaseModel):
    severity: Literal["low", "high"]
    location: str


class Report(BaseModel):
    findings: List[Finding] = Field(min_length=2)
    score: int = Field(ge=1, le=10)
    reviewed_at: str = Field(json_schema_extra={"format": "date-time"})
    note: Optional[str] = None


def test_stub_provider_output_validates_against_nested_model():
    result = complete(StubProvider(), options=CallOptions(output_model=Report))

    assert result.success is True
    report = Report.model_validate(result.data)
    assert len(report.findings) == 2
    assert report.findings[0].severity == "low"
    assert report.score == 5
    assert report.reviewed_at == "2099-01-01T00:00:00Z"
    assert report.note is None


def test_stub_provider_default_payload_matches_agent_output_shape():
    result = complete(StubProvider(), prompt="abc", context="de")

    assert result.confidence == 0.5
    assert result.actions == []
    assert result.data == {"result": "stub", "promptChars": 3, "contextChars": 2}
    assert result.reasoning == "stub reasoning"


# ─── Google ──────────────────────────────────────────────────────────────────


def test_google_requires_api_key():
    with pytest.raises(ProviderError) as exc:
        complete(GoogleProvider(api_key=None))
    assert exc.value.code == "MISSING_API_KEY"


def test_google_request_shape_and_result():
    answer = json.dumps({"success": True, "summary": "looks fine", "data": {"result": "ok"}, "actions": [], "confidence": 0.8})
    transport = CapturingTransport(gemini_payload(answer, tokens=321))
    provider = GoogleProvider(api_key="test-key", transport=transport.transport)

    result = complete(provider, prompt="check this", context='{"a": 1}')

    request = transport.requests[0]
    assert "gemini-2.5-flash-lite:generateContent" in str(request.url)
    assert request.headers["x-goog-api-key"] == "test-key"

    body = transport.last_body
    assert body["systemInstruction"]["parts"][0]["text"] == get_persona("general").system_prompt
    assert body["contents"][0]["parts"][0]["text"] == 'check this\n\n--- Context ---\n{"a": 1}'
    assert body["generationConfig"]["maxOutputTokens"] == 8000
    assert body["generationConfig"]["responseMimeType"] == "application/json"
    assert body["generationConfig"]["responseJsonSchema"] == AGENT_OUTPUT_SCHEMA
    assert "tools" not in body

    assert result.summary == "looks fine"
    assert result.metadata.tokens_used == 321
    assert result.metadata.model == "gemini-2.5-flash-lite"


def test_google_per_call_model_and_thinking():
    transport = CapturingTransport(gemini_payload('{"summary": "s"}'))
    provider = GoogleProvider(api_key="k", transport=transport.transport)
    options = CallOptions(model="gemini-3-flash-preview", thinking=ThinkingConfig(level="high", include_thoughts=True))

    result = complete(provider, options=options)

    assert "gemini-3-flash-preview:generateContent" in str(transport.requests[0].url)
    assert transport.last_body["generationConfig"]["thinkingConfig"] == {"thinkingLevel": "high", "includeThoughts": True}
    assert result.metadata.model == "gemini-3-flash-preview"


def test_google_tools_disable_json_mode():
    transport = CapturingTransport(gemini_payload('{"summary": "found it"}'))
    provider = GoogleProvider(api_key="k", transport=transport.transport)

    complete(provider, options=CallOptions(tools=["google_search", "file_analysis"]))

    body = transport.last_body
    assert body["tools"] == [{"googleSearch": {}}]
    assert "responseMimeType" not in body["generationConfig"]
    assert "ONLY a valid JSON object" in body["systemInstruction"]["parts"][0]["text"]


def test_google_local_only_drops_tools():
    transport = CapturingTransport(gemini_payload('{"summary": "s"}'))
    provider = GoogleProvider(api_key="k", transport=transport.transport)
    config = merge_config(default_config(), {"local_only": True})

    complete(provider, config=config, options=CallOptions(tools=["code_execution"]))

    assert "tools" not in transport.last_body


def test_google_sends_safety_settings_and_files():
    transport = CapturingTransport(gemini_payload('{"summary": "s"}'))
    provider = GoogleProvider(api_key="k", transport=transport.transport)
    config = merge_config(
        default_config(),
        {"safety_settings": [{"category": "HARM_CATEGORY_HATE_SPEECH", "threshold": "BLOCK_NONE"}]},
    )
    options = CallOptions(files=[FileAttachment(data=b"%PDF-1.4", media_type="application/pdf", file_name="a.pdf")])

    complete(provider, config=config, options=options)

    body = transport.last_body
    assert body["safetySettings"] == [{"category": "HARM_CATEGORY_HATE_SPEECH", "threshold": "BLOCK_NONE"}]
    assert body["contents"][0]["parts"][1]["inlineData"]["mimeType"] == "application/pdf"


def test_google_reports_thoughts_and_code_execution():
    parts = [
        {"text": "first I will compute", "thought": True},
        {"executableCode": {"language": "PYTHON", "code": "print(2 + 2)"}},
        {"codeExecutionResult": {"outcome": "OUTCOME_OK", "output": "4\n"}},
    ]
    transport = CapturingTransport(gemini_payload('{"summary": "it is 4"}', extra_parts=parts))
    provider = GoogleProvider(api_key="k", transport=transport.transport)

    result = complete(provider)

    assert result.reasoning == "first I will compute"
    assert result.metadata.tool_calls[0].name == "code_execution"
    assert result.metadata.tool_calls[0].result == "4\n"
    assert result.actions == ["code_execution"]


def test_google_structured_output_uses_caller_schema():
    transport = CapturingTransport(gemini_payload('{"valid": true, "reason": "has at sign"}'))
    provider = GoogleProvider(api_key="k", transport=transport.transport)

    result = complete(provider, options=CallOptions(output_model=Verdict))

    assert transport.last_body["generationConfig"]["responseJsonSchema"] == Verdict.model_json_schema()
    assert result.data == {"valid": True, "reason": "has at sign"}


def test_google_http_error_is_retryable_for_429():
    transport = CapturingTransport({"error": {"message": "quota"}}, status_code=429)
    provider = GoogleProvider(api_key="k", transport=transport.transport)

    with pytest.raises(ProviderError) as exc:
        complete(provider)

    assert exc.value.code == "HTTP_429"
    assert exc.value.retryable is True


def test_google_blocked_prompt():
    transport = CapturingTransport({"promptFeedback": {"blockReason": "SAFETY"}})
    provider = GoogleProvider(api_key="k", transport=transport.transport)

    with pytest.raises(ProviderError) as exc:
        complete(provider)

    assert exc.value.code == "BLOCKED"


# ─── Ollama ──────────────────────────────────────────────────────────────────


def test_ollama_request_shape_and_tokens():
    payload = {
        "message": {"role": "assistant", "content": '{"summary": "local answer", "confidence": 0.6}'},
        "prompt_eval_count": 40,
        "eval_count": 2,
    }
    transport = CapturingTransport(payload)
    provider = OllamaProvider(host="http://ollama:11434/", transport=transport.transport)

    result = complete(provider, prompt="hi", context="ctx")

    assert str(transport.requests[0].url) == "http://ollama:11434/api/chat"
    body = transport.last_body
    # Gemini model names are not valid for Ollama.
    assert body["model"] == "llama3.2"
    assert body["stream"] is False
    assert body["format"] == "json"
    assert body["options"] == {"num_predict": 8000}
    assert body["messages"][1]["content"] == "hi\n\n--- Context ---\nctx"

    assert result.summary == "local answer"
    assert result.metadata.tokens_used == 42
    assert result.metadata.model == "llama3.2"


def test_ollama_inlines_text_files_and_sends_images():
    transport = CapturingTransport({"message": {"content": '{"summary": "s"}'}})
    provider = OllamaProvider(host="http://ollama:11434", transport=transport.transport)
    options = CallOptions(
        model="llama3.2",
        files=[
            FileAttachment(data=b"line one", media_type="text/plain", file_name="notes.txt"),
            FileAttachment(data=b"\x89PNG", media_type="image/png"),
        ],
    )

    complete(provider, options=options)

    user_message = transport.last_body["messages"][1]
    assert "--- File: notes.txt ---\nline one" in user_message["content"]
    assert user_message["images"] == ["iVBORw=="]


def test_ollama_structured_output_sends_schema_as_format():
    transport = CapturingTransport({"message": {"content": '{"valid": true, "reason": "ok"}'}})
    provider = OllamaProvider(host="http://ollama:11434", transport=transport.transport)
    options = CallOptions(response_format=ResponseFormat(schema=EMAIL_SCHEMA))

    result = complete(provider, options=options)

    assert transport.last_body["format"] == EMAIL_SCHEMA
    assert result.success is True


# ─── Factory ─────────────────────────────────────────────────────────────────


def test_build_provider_selects_implementation(monkeypatch):
    monkeypatch.delenv("GEMINI_API_KEY", raising=False)
    monkeypatch.delenv("GOOGLE_GENERATIVE_AI_API_KEY", raising=False)

    assert isinstance(build_provider(merge_config(default_config(), {"provider": "stub"})), StubProvider)

    ollama = build_provider(merge_config(default_config(), {"provider": "ollama", "ollama_host": "http://x:1"}))
    assert isinstance(ollama, OllamaProvider)
    assert ollama.host == "http://x:1"

    google = build_provider(merge_config(default_config(), {"api_key": "abc"}))
    assert isinstance(google, GoogleProvider)
    assert google.api_key == "abc"


def test_build_provider_reads_key_from_environment(monkeypatch):
    monkeypatch.setenv("GEMINI_API_KEY", "from-env")
    provider = build_provider(default_config())
    assert provider.api_key == "from-env"


# ─── Per-call timeout ────────────────────────────────────────────────────────


def test_google_client_timeout_follows_per_call_override():
    transport = CapturingTransport(gemini_payload('{"summary": "s"}'))
    provider = GoogleProvider(api_key="k", transport=transport.transport)

    complete(provider, options=CallOptions(timeout_ms=30000))

    assert transport.requests[0].extensions["timeout"]["read"] == 30.0


def test_google_client_timeout_defaults_to_config():
    transport = CapturingTransport(gemini_payload('{"summary": "s"}'))
    provider = GoogleProvider(api_key="k", transport=transport.transport)

    complete(provider, config=merge_config(default_config(), {"timeout": 2500}))

    assert transport.requests[0].extensions["timeout"]["read"] == 2.5


def test_ollama_client_timeout_follows_per_call_override():
    transport = CapturingTransport({"message": {"content": '{"summary": "s"}'}})
    provider = OllamaProvider(host="http://ollama:11434", transport=transport.transport)

    complete(provider, options=CallOptions(timeout_ms=45000))

    assert transport.requests[0].extensions["timeout"]["read"] == 45.0


# ─── Attachments without an explicit media type ──────────────────────────────


def test_google_guesses_attachment_mime_type_from_file_name():
    transport = CapturingTransport(gemini_payload('{"summary": "s"}'))
    provider = GoogleProvider(api_key="k", transport=transport.transport)

    complete(provider, options=CallOptions(files=[FileAttachment(data=b"\x89PNG", file_name="scan.png")]))

    assert transport.last_body["contents"][0]["parts"][1]["inlineData"]["mimeType"] == "image/png"


def test_ollama_inlines_text_file_identified_by_name():
    transport = CapturingTransport({"message": {"content": '{"summary": "s"}'}})
    provider = OllamaProvider(host="http://ollama:11434", transport=transport.transport)

    complete(provider, options=CallOptions(files=[FileAttachment(data=b"# Notes", file_name="README.md")]))

    assert "--- File: README.md ---\n# Notes" in transport.last_body["messages"][1]["content"]
