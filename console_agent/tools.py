"""Resolve tool names into Gemini tool entries, plus file attachment helpers."""

from __future__ import annotations

import base64
from typing import Any, Dict, List, Optional, Sequence, Union

from .models import FileAttachment, GoogleSearchConfig, ToolConfig, ToolName

MIME_TYPES: Dict[str, str] = {
    "pdf": "application/pdf",
    "png": "image/png",
    "jpg": "image/jpeg",
    "jpeg": "image/jpeg",
    "gif": "image/gif",
    "webp": "image/webp",
    "mp4": "video/mp4",
    "webm": "video/webm",
    "txt": "text/plain",
    "md": "text/markdown",
    "json": "application/json",
    "csv": "text/csv",
}


def _search_tool(config: Optional[GoogleSearchConfig] = None) -> Dict[str, Any]:
    if config is None or config.mode is None:
        return {"googleSearch": {}}
    retrieval: Dict[str, Any] = {"mode": config.mode}
    if config.dynamic_threshold is not None:
        retrieval["dynamicThreshold"] = config.dynamic_threshold
    return {"googleSearchRetrieval": {"dynamicRetrievalConfig": retrieval}}


def resolve_tools(tools: Sequence[Union[ToolName, ToolConfig]]) -> List[Dict[str, Any]]:
    """
    Translate tool names/configs to the request format.

    `file_analysis` is served through multimodal input rather than a tool
    entry, so it resolves to nothing.
    """
    resolved: List[Dict[str, Any]] = []
    for tool in tools:
        if isinstance(tool, ToolConfig):
            name, config = tool.type, tool.config
        else:
            name, config = tool, None

        if name == "code_execution":
            resolved.append({"codeExecution": {}})
        elif name == "google_search":
            resolved.append(_search_tool(config))
        elif name == "url_context":
            resolved.append({"urlContext": {}})
    return resolved


def detect_mime_type(filename: str) -> str:
    ext = filename.lower().rsplit(".", 1)[-1] if "." in filename else ""
    return MIME_TYPES.get(ext, "application/octet-stream")


def attachment_mime_type(attachment: FileAttachment) -> str:
    return attachment.media_type or detect_mime_type(attachment.file_name or "")


def prepare_file_content(file_data: bytes, mime_type: str) -> Dict[str, Any]:
    """Inline-data part for a file attachment."""
    return {
        "inlineData": {
            "mimeType": mime_type,
            "data": base64.b64encode(file_data).decode("ascii"),
        }
    }
