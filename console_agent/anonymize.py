"""
Content anonymization: strips secrets and PII before anything is sent to a
provider.

Passes run in a fixed order, most specific first, so that e.g. a connection
string is redacted as a whole before the email or IP passes could chew on
its host part. Every placeholder is chosen so that no later pass (and no
second run) matches it again.
"""

from __future__ import annotations

import re
from typing import Any, Callable, List, Tuple, Union

_PRIVATE_KEY = re.compile(
    r"-----BEGIN (?:RSA |EC |OPENSSH )?PRIVATE KEY-----[\s\S]*?-----END (?:RSA |EC |OPENSSH )?PRIVATE KEY-----"
)
_CONNECTION_STRING = re.compile(
    r"(?:mongodb(?:\+srv)?|postgres(?:ql)?|mysql|rediss?|amqps?)://[^\s'\"]+",
    re.IGNORECASE,
)
_AWS_KEY = re.compile(r"(?:AKIA|ASIA)[A-Z0-9]{16}")
_BEARER = re.compile(r"Bearer\s+[A-Za-z0-9_\-/.+]{20,}", re.IGNORECASE)
_LABELLED_SECRET = re.compile(
    r"(?:api[_-]?key|token|secret|password|credential|auth)['\":\s=]+['\"]?([A-Za-z0-9_\-/.]{20,})['\"]?",
    re.IGNORECASE,
)
_ENV_SECRET = re.compile(
    r"^(?:DATABASE_URL|DB_PASSWORD|SECRET_KEY|PRIVATE_KEY|AWS_SECRET|STRIPE_KEY|SENDGRID_KEY)[=:].+$",
    re.MULTILINE,
)
_EMAIL = re.compile(r"[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}")
_IPV4 = re.compile(r"\b(?:\d{1,3}\.){3}\d{1,3}\b")
_IPV6 = re.compile(r"(?:[0-9a-fA-F]{1,4}:){7}[0-9a-fA-F]{1,4}")

_SEPARATOR = re.compile(r"['\":\s=]")
_ASSIGNMENT = re.compile(r"[=:]")


def _keep_label(match: re.Match) -> str:
    text = match.group(0)
    label = text[: _SEPARATOR.search(text).start()]
    return f"{label}: [REDACTED]"


def _keep_env_name(match: re.Match) -> str:
    text = match.group(0)
    name = text[: _ASSIGNMENT.search(text).start()]
    return f"{name}=[REDACTED]"


Replacement = Union[str, Callable[[re.Match], str]]

_PASSES: List[Tuple[re.Pattern, Replacement]] = [
    (_PRIVATE_KEY, "[REDACTED_PRIVATE_KEY]"),
    (_CONNECTION_STRING, "[REDACTED_CONNECTION_STRING]"),
    (_AWS_KEY, "[REDACTED_AWS_KEY]"),
    (_BEARER, "Bearer [REDACTED_TOKEN]"),
    (_LABELLED_SECRET, _keep_label),
    (_ENV_SECRET, _keep_env_name),
    (_EMAIL, "[EMAIL]"),
    (_IPV4, "[IP]"),
    (_IPV6, "[IP]"),
]


def anonymize(content: str) -> str:
    """Replace detected secrets/PII in `content` with category placeholders."""
    result = content
    for pattern, replacement in _PASSES:
        result = pattern.sub(replacement, result)
    return result


def anonymize_value(value: Any) -> Any:
    """Anonymize every string inside `value`, recursing through dicts, lists and tuples."""
    if isinstance(value, str):
        return anonymize(value)
    if isinstance(value, dict):
        return {k: anonymize_value(v) for k, v in value.items()}
    if isinstance(value, list):
        return [anonymize_value(v) for v in value]
    if isinstance(value, tuple):
        return tuple(anonymize_value(v) for v in value)
    return value
