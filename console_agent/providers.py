from __future__ import annotations

import json
import logging
import os
import re
import time
from typing import Any, Dict, List, Mapping, Optional, Tuple

import httpx
from jsonschema import Draft7Validator
from pydantic import ValidationError

from .config import AgentConfig
from .models import AgentMetadata, AgentResult, CallOptions, PersonaDefinition, ToolCall
from .tools import attachment_mime_type, prepare_file_content, resolve_tools

logger = logging.getLogger("console-agent")

GEMINI_API_URL = "https://generativelanguage.googleapis.com/v1beta/models/{model}:generateContent"
OLLAMA_DEFAULT_MODEL = "llama3.2"
SUMMARY_FALLBACK_CHARS = 200

# Shape the model is asked to produce when the caller supplies no schema.
AGENT_OUTPUT_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "properties": {
        "success": {"type": "boolean", "description": "Whether the task was completed successfully"},
        "summary": {"type": "string", "description": "One-line human-readable conclusion"},
        "reasoning": {"type": "string", "description": "Your thought process"},
        "data": {
            "type": "object",
            "description": "Structured findings as key-value pairs",
            "properties": {
                "result": {"type": "string", "description": "Primary result or finding"},
            },
        },
        "actions": {"type": "array", "items": {"type": "string"}, "description": "List of tools/steps you used"},
        "confidence": {"type": "number", "minimum": 0, "maximum": 1, "description": "0-1 confidence score"},
    },
    "required": ["success", "summary", "data", "actions", "confidence"],
}

JSON_RESPONSE_INSTRUCTION = (
    "\n\nIMPORTANT: You MUST respond with ONLY a valid JSON object (no markdown, no code fences, no extra text).\n"
    "Use this exact format:\n"
    '{"success": true, "summary": "one-line conclusion", "reasoning": "your thought process", '
    '"data": {"result": "primary finding"}, "actions": ["tools/steps used"], "confidence": 0.95}'
)

CUSTOM_SCHEMA_INSTRUCTION = (
    "\n\nIMPORTANT: You must respond with structured data matching the requested output schema. "
    "Do not include AgentResult wrapper fields; just return the data matching the schema."
)

_FENCED_JSON = re.compile(r"```(?:json)?\s*\n?([\s\S]*?)\n?\s*```")
_JSON_OBJECT = re.compile(r"\{[\s\S]*\}")


class ProviderError(Exception):
    """Failure surfaced by a provider adapter (transport, auth, quota, bad response)."""

    def __init__(self, code: str, message: str, retryable: bool = False):
        super().__init__(message)
        self.code = code
        self.message = message
        self.retryable = retryable


class BaseProvider:
    """
    Provider interface.

    `complete` receives the already-anonymized prompt and pre-serialized
    context and must return an AgentResult with fully populated metadata,
    or raise. It must never raise because the model's text was unparseable.
    """

    name = "base"

    async def complete(
        self,
        prompt: str,
        context: str,
        persona: PersonaDefinition,
        config: AgentConfig,
        options: CallOptions,
    ) -> AgentResult:  # pragma: no cover - interface only
        raise NotImplementedError


# ─── Output parsing & normalization ──────────────────────────────────────────


def parse_response(text: str) -> Optional[Any]:
    """
    Best-effort JSON extraction from model text.

    Tries the whole text, then a fenced code block, then the outermost
    `{...}` span. Returns None when nothing parses.
    """
    candidates = [text]
    fenced = _FENCED_JSON.search(text)
    if fenced:
        candidates.append(fenced.group(1))
    obj = _JSON_OBJECT.search(text)
    if obj:
        candidates.append(obj.group(0))

    for candidate in candidates:
        try:
            return json.loads(candidate)
        except (json.JSONDecodeError, ValueError):
            continue
    return None


def _clamp_confidence(value: Any, default: float = 0.5) -> float:
    try:
        confidence = float(value)
    except (TypeError, ValueError):
        return default
    if confidence != confidence:  # NaN
        return default
    return min(1.0, max(0.0, confidence))


def _metadata(model: str, tokens_used: int, latency_ms: int, tool_calls: List[ToolCall]) -> AgentMetadata:
    return AgentMetadata(
        model=model,
        tokens_used=int(tokens_used or 0),
        latency_ms=int(latency_ms or 0),
        tool_calls=list(tool_calls),
        cached=False,
    )


def normalize_output(
    text: str,
    *,
    model: str,
    tokens_used: int = 0,
    latency_ms: int = 0,
    tool_calls: Optional[List[ToolCall]] = None,
    reasoning: Optional[str] = None,
) -> AgentResult:
    """Map raw model text in the default AgentResult shape onto an AgentResult."""
    tool_calls = tool_calls or []
    parsed = parse_response(text)
    if not isinstance(parsed, dict):
        logger.debug("Unstructured provider output, using raw text fallback")
        return AgentResult(
            success=True,
            summary=text[:SUMMARY_FALLBACK_CHARS],
            reasoning=reasoning,
            data={"raw": text},
            actions=[tc.name for tc in tool_calls],
            confidence=0.5,
            metadata=_metadata(model, tokens_used, latency_ms, tool_calls),
        )

    data = parsed.get("data")
    if data is None:
        data = {"raw": text}
    elif not isinstance(data, dict):
        data = {"result": data}

    actions = parsed.get("actions")
    if isinstance(actions, list):
        actions = [str(a) for a in actions]
    else:
        actions = [tc.name for tc in tool_calls]

    summary = parsed.get("summary")
    if not isinstance(summary, str) or not summary:
        summary = text[:SUMMARY_FALLBACK_CHARS]

    parsed_reasoning = parsed.get("reasoning")
    return AgentResult(
        success=parsed.get("success", True) is True,
        summary=summary,
        reasoning=parsed_reasoning if isinstance(parsed_reasoning, str) and parsed_reasoning else reasoning,
        data=data,
        actions=actions,
        confidence=_clamp_confidence(parsed.get("confidence", 0.5)),
        metadata=_metadata(model, tokens_used, latency_ms, tool_calls),
    )


def _validate_with_schema(instance: Any, schema: Mapping[str, Any]) -> List[Dict[str, Any]]:
    validator = Draft7Validator(schema)
    errors: List[Dict[str, Any]] = []
    for err in validator.iter_errors(instance):
        errors.append(
            {
                "path": list(err.path),
                "message": err.message,
            }
        )
    return errors


def wrap_structured_output(
    text: str,
    options: CallOptions,
    *,
    model: str,
    tokens_used: int = 0,
    latency_ms: int = 0,
    tool_calls: Optional[List[ToolCall]] = None,
) -> AgentResult:
    """Wrap output produced against a caller-supplied schema into an AgentResult."""
    tool_calls = tool_calls or []
    parsed = parse_response(text)
    data: Dict[str, Any] = parsed if isinstance(parsed, dict) else {"result": text}

    errors: List[Dict[str, Any]] = []
    if options.output_model is not None:
        try:
            data = options.output_model.model_validate(data).model_dump(mode="json")
        except ValidationError as exc:
            errors = [{"path": list(e["loc"]), "message": e["msg"]} for e in exc.errors()]
    else:
        schema = options.output_schema()
        if schema is not None:
            errors = _validate_with_schema(data, schema)

    if errors:
        logger.debug("Structured output failed validation: %s", "; ".join(e["message"] for e in errors))
        return AgentResult(
            success=False,
            summary="Structured output did not validate against the requested schema",
            data={**data, "_validationErrors": errors},
            actions=[tc.name for tc in tool_calls],
            confidence=0.0,
            metadata=_metadata(model, tokens_used, latency_ms, tool_calls),
        )

    return AgentResult(
        success=True,
        summary=f"Structured output returned ({len(data)} fields)",
        data=data,
        actions=[tc.name for tc in tool_calls],
        confidence=1.0,
        metadata=_metadata(model, tokens_used, latency_ms, tool_calls),
    )


def build_user_message(prompt: str, context: str) -> str:
    if context:
        return f"{prompt}\n\n--- Context ---\n{context}"
    return prompt


def _raise_for_status(provider: str, resp: httpx.Response) -> None:
    if resp.is_success:
        return
    retryable = resp.status_code == 429 or resp.status_code >= 500
    raise ProviderError(
        code=f"HTTP_{resp.status_code}",
        message=f"{provider} request failed with status {resp.status_code}: {resp.text[:200]}",
        retryable=retryable,
    )


def _read_json(provider: str, resp: httpx.Response) -> Dict[str, Any]:
    try:
        data = resp.json()
    except ValueError as exc:
        raise ProviderError("MALFORMED_RESPONSE", f"{provider} returned a non-JSON body") from exc
    if not isinstance(data, dict):
        raise ProviderError("MALFORMED_RESPONSE", f"{provider} returned an unexpected payload")
    return data


# ─── Stub ────────────────────────────────────────────────────────────────────


class StubProvider(BaseProvider):
    """
    Deterministic offline provider.

    Useful for wiring checks without an API key: it fabricates a result for
    the default shape, or JSON conforming to a caller-supplied schema.
    """

    name = "stub"

    async def complete(
        self,
        prompt: str,
        context: str,
        persona: PersonaDefinition,
        config: AgentConfig,
        options: CallOptions,
    ) -> AgentResult:
        model_name = options.model or config.model
        schema = options.output_schema()
        if schema is not None:
            sample = _sample_for_schema(schema)
            return wrap_structured_output(json.dumps(sample), options, model=model_name)

        payload = _sample_for_schema(AGENT_OUTPUT_SCHEMA)
        payload.update(
            summary=f"stub {persona.name} response",
            data={"result": "stub", "promptChars": len(prompt), "contextChars": len(context)},
            actions=[],
        )
        return normalize_output(json.dumps(payload), model=model_name)


_SAMPLE_STRINGS = {
    "date": "2099-01-01",
    "date-time": "2099-01-01T00:00:00Z",
    "email": "stub@example.com",
    "uri": "https://example.com/stub",
}


def _resolve_ref(ref: str, root: Mapping[str, Any]) -> Mapping[str, Any]:
    if not ref.startswith("#/"):
        return {}
    node: Any = root
    for key in ref[2:].split("/"):
        if not isinstance(node, Mapping) or key not in node:
            return {}
        node = node[key]
    return node


def _sample_for_schema(
    schema: Mapping[str, Any], root: Optional[Mapping[str, Any]] = None, name: str = "value"
) -> Any:
    """
    Deterministic value that validates against `schema`.

    Follows local `$ref`s (pydantic emits them under `$defs`) and takes the
    first non-null branch of `anyOf`/`oneOf` and of type lists, so output
    models with nested or Optional fields still pass validation.
    """
    root = schema if root is None else root

    if "$ref" in schema:
        return _sample_for_schema(_resolve_ref(schema["$ref"], root), root, name)
    if "const" in schema:
        return schema["const"]
    if schema.get("enum"):
        return schema["enum"][0]
    if "default" in schema:
        return schema["default"]

    for key in ("anyOf", "oneOf"):
        branches = [b for b in schema.get(key) or [] if b.get("type") != "null"]
        if branches:
            return _sample_for_schema(branches[0], root, name)
    if schema.get("allOf"):
        return _sample_for_schema(schema["allOf"][0], root, name)

    schema_type = schema.get("type")
    if isinstance(schema_type, list):
        schema_type = next((t for t in schema_type if t != "null"), None)
    if schema_type is None and "properties" in schema:
        schema_type = "object"

    if schema_type == "object":
        sample = {
            prop: _sample_for_schema(sub, root, prop) for prop, sub in (schema.get("properties") or {}).items()
        }
        for prop in schema.get("required") or []:
            sample.setdefault(prop, None)
        return sample
    if schema_type == "array":
        item = _sample_for_schema(schema.get("items") or {}, root, name)
        return [item] * max(1, int(schema.get("minItems", 1)))
    if schema_type == "string":
        return _SAMPLE_STRINGS.get(schema.get("format", ""), f"stub {name}")
    if schema_type in ("number", "integer"):
        low = schema.get("minimum", schema.get("exclusiveMinimum"))
        high = schema.get("maximum", schema.get("exclusiveMaximum"))
        if low is not None and high is not None:
            value = (low + high) / 2
        elif low is not None:
            value = low + 1
        elif high is not None:
            value = high - 1
        else:
            value = 1
        return int(value) if schema_type == "integer" else float(value)
    if schema_type == "boolean":
        return True
    return None


# ─── Google (Gemini) ─────────────────────────────────────────────────────────


class GoogleProvider(BaseProvider):
    """Gemini `generateContent` over REST."""

    name = "google"

    def __init__(self, api_key: Optional[str], transport: Optional[httpx.AsyncBaseTransport] = None) -> None:
        self.api_key = api_key
        self._transport = transport

    async def complete(
        self,
        prompt: str,
        context: str,
        persona: PersonaDefinition,
        config: AgentConfig,
        options: CallOptions,
    ) -> AgentResult:
        if not self.api_key:
            raise ProviderError(
                "MISSING_API_KEY",
                "No Gemini API key configured (set GEMINI_API_KEY or pass api_key to init())",
            )

        start = time.monotonic()
        model_name = options.model or config.model
        schema = options.output_schema()
        timeout_s = (options.timeout_ms or config.timeout) / 1000.0
        logger.debug("Using model: %s", model_name)
        logger.debug("Persona: %s", persona.name)

        tools: List[Dict[str, Any]] = []
        if not config.local_only:
            if options.tools:
                tools = resolve_tools(options.tools)
            else:
                logger.debug("Persona tools (informational): %s", ", ".join(persona.default_tools))

        body = self._build_body(prompt, context, persona, config, options, schema, tools)
        url = GEMINI_API_URL.format(model=model_name)
        headers = {"x-goog-api-key": self.api_key, "Content-Type": "application/json"}

        try:
            async with httpx.AsyncClient(timeout=timeout_s, transport=self._transport) as client:
                resp = await client.post(url, headers=headers, json=body)
        except httpx.HTTPError as exc:
            raise ProviderError("NETWORK_ERROR", f"Gemini request failed: {exc}", retryable=True) from exc

        _raise_for_status("Gemini", resp)
        payload = _read_json("Gemini", resp)
        text, thoughts, tool_calls = _read_candidate(payload)

        latency_ms = int((time.monotonic() - start) * 1000)
        tokens_used = int((payload.get("usageMetadata") or {}).get("totalTokenCount") or 0)
        logger.debug("Response received: %sms, %s tokens", latency_ms, tokens_used)

        if schema is not None:
            return wrap_structured_output(
                text, options, model=model_name, tokens_used=tokens_used, latency_ms=latency_ms, tool_calls=tool_calls
            )
        return normalize_output(
            text,
            model=model_name,
            tokens_used=tokens_used,
            latency_ms=latency_ms,
            tool_calls=tool_calls,
            reasoning=thoughts or None,
        )

    def _build_body(
        self,
        prompt: str,
        context: str,
        persona: PersonaDefinition,
        config: AgentConfig,
        options: CallOptions,
        schema: Optional[Dict[str, Any]],
        tools: List[Dict[str, Any]],
    ) -> Dict[str, Any]:
        instructions = persona.system_prompt
        if schema is not None:
            instructions += CUSTOM_SCHEMA_INSTRUCTION

        generation_config: Dict[str, Any] = {"maxOutputTokens": config.budget.max_tokens_per_call}
        if tools:
            # Built-in tools cannot be combined with JSON response mode; ask for JSON in the prompt instead.
            if schema is None:
                instructions += JSON_RESPONSE_INSTRUCTION
        else:
            generation_config["responseMimeType"] = "application/json"
            generation_config["responseJsonSchema"] = schema if schema is not None else AGENT_OUTPUT_SCHEMA

        thinking = options.thinking
        if thinking is not None:
            thinking_config: Dict[str, Any] = {}
            if thinking.budget is not None:
                thinking_config["thinkingBudget"] = thinking.budget
            elif thinking.level:
                thinking_config["thinkingLevel"] = thinking.level
            if thinking.include_thoughts:
                thinking_config["includeThoughts"] = True
            if thinking_config:
                generation_config["thinkingConfig"] = thinking_config

        parts: List[Dict[str, Any]] = [{"text": build_user_message(prompt, context)}]
        for attachment in options.files or []:
            parts.append(prepare_file_content(attachment.data, attachment_mime_type(attachment)))

        body: Dict[str, Any] = {
            "systemInstruction": {"parts": [{"text": instructions}]},
            "contents": [{"role": "user", "parts": parts}],
            "generationConfig": generation_config,
        }
        if tools:
            body["tools"] = tools
        if config.safety_settings:
            body["safetySettings"] = [s.model_dump() for s in config.safety_settings]
        return body


def _read_candidate(payload: Mapping[str, Any]) -> Tuple[str, str, List[ToolCall]]:
    """Split the first candidate into answer text, thought summary and tool calls."""
    candidates = payload.get("candidates") or []
    if not candidates:
        block_reason = (payload.get("promptFeedback") or {}).get("blockReason")
        if block_reason:
            raise ProviderError("BLOCKED", f"Gemini blocked the prompt: {block_reason}")
        raise ProviderError("MALFORMED_RESPONSE", "Gemini returned no candidates")

    parts = ((candidates[0].get("content") or {}).get("parts")) or []
    text_parts: List[str] = []
    thought_parts: List[str] = []
    tool_calls: List[ToolCall] = []
    for part in parts:
        if "functionCall" in part:
            call = part["functionCall"] or {}
            tool_calls.append(ToolCall(name=str(call.get("name", "")), args=call.get("args") or {}))
        elif "executableCode" in part:
            code = part["executableCode"] or {}
            tool_calls.append(ToolCall(name="code_execution", args={"code": code.get("code", "")}))
        elif "codeExecutionResult" in part:
            if tool_calls and tool_calls[-1].name == "code_execution":
                tool_calls[-1].result = (part["codeExecutionResult"] or {}).get("output")
        elif "text" in part:
            if part.get("thought"):
                thought_parts.append(part["text"])
            else:
                text_parts.append(part["text"])
    return "".join(text_parts), "\n".join(thought_parts), tool_calls


# ─── Ollama ──────────────────────────────────────────────────────────────────


class OllamaProvider(BaseProvider):
    """
    Local or self-hosted models through Ollama's `/api/chat`.

    Tools and thinking config are not supported and are ignored.
    """

    name = "ollama"

    def __init__(self, host: str, transport: Optional[httpx.AsyncBaseTransport] = None) -> None:
        self.host = host.rstrip("/")
        self._transport = transport

    async def complete(
        self,
        prompt: str,
        context: str,
        persona: PersonaDefinition,
        config: AgentConfig,
        options: CallOptions,
    ) -> AgentResult:
        start = time.monotonic()
        model_name = options.model or config.model
        if model_name.startswith("gemini"):
            model_name = OLLAMA_DEFAULT_MODEL
            logger.debug("Ollama provider: defaulting model to %s", model_name)
        timeout_s = (options.timeout_ms or config.timeout) / 1000.0

        if options.tools:
            logger.debug("Tools are not supported with the Ollama provider and will be ignored")
        if options.thinking:
            logger.debug("Thinking config is not supported with the Ollama provider and will be ignored")
        logger.debug("Ollama host: %s", self.host)

        schema = options.output_schema()
        system_prompt = persona.system_prompt + (
            CUSTOM_SCHEMA_INSTRUCTION if schema is not None else JSON_RESPONSE_INSTRUCTION
        )

        user_message: Dict[str, Any] = {"role": "user", "content": build_user_message(prompt, context)}
        images: List[str] = []
        for attachment in options.files or []:
            mime_type = attachment_mime_type(attachment)
            if mime_type.startswith("text/") or mime_type == "application/json":
                label = attachment.file_name or "attachment"
                user_message["content"] += f"\n\n--- File: {label} ---\n{attachment.data.decode('utf-8', errors='replace')}"
            elif mime_type.startswith("image/"):
                images.append(prepare_file_content(attachment.data, mime_type)["inlineData"]["data"])
            else:
                logger.debug("Skipping attachment %s: %s is not supported by Ollama", attachment.file_name, mime_type)
        if images:
            user_message["images"] = images

        body = {
            "model": model_name,
            "messages": [{"role": "system", "content": system_prompt}, user_message],
            "stream": False,
            "format": schema if schema is not None else "json",
            "options": {"num_predict": config.budget.max_tokens_per_call},
        }

        try:
            async with httpx.AsyncClient(timeout=timeout_s, transport=self._transport) as client:
                resp = await client.post(f"{self.host}/api/chat", json=body)
        except httpx.HTTPError as exc:
            raise ProviderError("NETWORK_ERROR", f"Ollama request failed: {exc}", retryable=True) from exc

        _raise_for_status("Ollama", resp)
        payload = _read_json("Ollama", resp)
        text = str((payload.get("message") or {}).get("content") or "")

        latency_ms = int((time.monotonic() - start) * 1000)
        tokens_used = int(payload.get("prompt_eval_count") or 0) + int(payload.get("eval_count") or 0)
        logger.debug("Response received: %sms, %s tokens", latency_ms, tokens_used)

        if schema is not None:
            return wrap_structured_output(text, options, model=model_name, tokens_used=tokens_used, latency_ms=latency_ms)
        return normalize_output(text, model=model_name, tokens_used=tokens_used, latency_ms=latency_ms)


def build_provider(config: AgentConfig) -> BaseProvider:
    """Factory that chooses the concrete provider implementation."""
    if config.provider == "ollama":
        return OllamaProvider(host=config.ollama_host or _get_env("OLLAMA_HOST") or "http://localhost:11434")
    if config.provider == "stub":
        return StubProvider()
    api_key = config.api_key or _get_env("GEMINI_API_KEY") or _get_env("GOOGLE_GENERATIVE_AI_API_KEY")
    return GoogleProvider(api_key=api_key)


def _get_env(name: str) -> Optional[str]:
    return os.getenv(name) or None
