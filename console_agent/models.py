"""
Data models for console-agent.

Defines the per-call options, the persona profile shape, and the normalized
AgentResult contract every provider maps into. Do not duplicate these
definitions elsewhere.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Dict, List, Literal, Optional, Type, Union

from jsonschema import Draft7Validator
from jsonschema.exceptions import SchemaError
from pydantic import BaseModel, ConfigDict, Field, field_validator

PersonaName = Literal["general", "debugger", "security", "architect"]
ToolName = Literal["code_execution", "google_search", "url_context", "file_analysis"]
ExecutionMode = Literal["fire-and-forget", "blocking"]
LogLevel = Literal["silent", "errors", "info", "debug"]


class ToolCall(BaseModel):
    """A single tool invocation reported by the provider."""

    name: str
    args: Dict[str, Any] = Field(default_factory=dict)
    result: Optional[Any] = None


class AgentMetadata(BaseModel):
    model: str
    tokens_used: int = 0
    latency_ms: int = 0
    tool_calls: List[ToolCall] = Field(default_factory=list)
    cached: bool = False


class AgentResult(BaseModel):
    """
    Normalized result of one agent call.

    `metadata` is always populated, including on dry-run and failure paths,
    so callers can read it without checking for None.
    """

    success: bool
    summary: str
    reasoning: Optional[str] = None
    data: Dict[str, Any] = Field(default_factory=dict)
    actions: List[str] = Field(default_factory=list)
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    metadata: AgentMetadata


class PersonaDefinition(BaseModel):
    """A named behavior profile. Loaded once from YAML and never mutated."""

    model_config = ConfigDict(frozen=True)

    name: PersonaName
    label: str
    icon: str
    system_prompt: str
    default_tools: List[ToolName] = Field(default_factory=list)
    keywords: List[str] = Field(default_factory=list)


class GoogleSearchConfig(BaseModel):
    mode: Optional[Literal["MODE_DYNAMIC", "MODE_UNSPECIFIED"]] = None
    dynamic_threshold: Optional[float] = None


class ToolConfig(BaseModel):
    type: ToolName
    config: Optional[GoogleSearchConfig] = None


class ThinkingConfig(BaseModel):
    """Reasoning controls: `level` for gemini-3 models, `budget` for gemini-2.5."""

    level: Optional[Literal["minimal", "low", "medium", "high"]] = None
    budget: Optional[int] = None
    include_thoughts: bool = False


class SafetySetting(BaseModel):
    category: Literal[
        "HARM_CATEGORY_HATE_SPEECH",
        "HARM_CATEGORY_DANGEROUS_CONTENT",
        "HARM_CATEGORY_HARASSMENT",
        "HARM_CATEGORY_SEXUALLY_EXPLICIT",
    ]
    threshold: Literal[
        "BLOCK_NONE",
        "BLOCK_ONLY_HIGH",
        "BLOCK_MEDIUM_AND_ABOVE",
        "BLOCK_LOW_AND_ABOVE",
    ]


class FileAttachment(BaseModel):
    """
    Raw file content sent alongside the prompt (PDF, image, text...).

    When `media_type` is omitted it is guessed from the `file_name` extension.
    """

    data: bytes
    media_type: Optional[str] = None
    file_name: Optional[str] = None


class ResponseFormat(BaseModel):
    """Plain JSON Schema for structured output. The result lands in AgentResult.data."""

    type: Literal["json_object"] = "json_object"
    schema_: Dict[str, Any] = Field(alias="schema")

    model_config = ConfigDict(populate_by_name=True)

    @field_validator("schema_")
    @classmethod
    def _check_schema(cls, value: Dict[str, Any]) -> Dict[str, Any]:
        try:
            Draft7Validator.check_schema(value)
        except SchemaError as exc:
            raise ValueError(f"Invalid JSON Schema: {exc.message}") from exc
        return value


class CallOptions(BaseModel):
    """Per-call overrides. Every field falls back to AgentConfig when absent."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    model: Optional[str] = None
    persona: Optional[PersonaName] = None
    mode: Optional[ExecutionMode] = None
    tools: Optional[List[Union[ToolName, ToolConfig]]] = None
    thinking: Optional[ThinkingConfig] = None
    verbose: Optional[bool] = None
    response_format: Optional[ResponseFormat] = None
    # Pydantic model class for typed output; wins over response_format.
    output_model: Optional[Type[BaseModel]] = None
    files: Optional[List[FileAttachment]] = None
    timeout_ms: Optional[int] = Field(default=None, gt=0)

    @field_validator("output_model")
    @classmethod
    def _check_output_model(cls, value: Optional[type]) -> Optional[type]:
        if value is not None and not (isinstance(value, type) and issubclass(value, BaseModel)):
            raise ValueError("output_model must be a pydantic BaseModel subclass")
        return value

    def output_schema(self) -> Optional[Dict[str, Any]]:
        """JSON Schema requested by the caller, if any."""
        if self.output_model is not None:
            return self.output_model.model_json_schema()
        if self.response_format is not None:
            return self.response_format.schema_
        return None


class ContextKind(str, Enum):
    """Shape of the caller-supplied context value."""

    ABSENT = "absent"
    TEXT = "text"
    STRUCTURED = "structured"
    ERROR = "error"


class CallRequest(BaseModel):
    """One invocation's inputs. Never persisted."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    prompt: str
    context: Any = None
    options: CallOptions = Field(default_factory=CallOptions)

    @property
    def context_kind(self) -> ContextKind:
        if self.context is None:
            return ContextKind.ABSENT
        if isinstance(self.context, BaseException):
            return ContextKind.ERROR
        if isinstance(self.context, str):
            return ContextKind.TEXT
        return ContextKind.STRUCTURED
