from __future__ import annotations

import logging
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, List, Tuple

import yaml
from pydantic import ValidationError

from .models import PersonaDefinition, PersonaName

logger = logging.getLogger("console-agent")

# Persona YAML files ship as package data (console_agent/personas/*.yaml).
PERSONAS_DIR = Path(__file__).parent / "personas"

PERSONA_NAMES: Tuple[PersonaName, ...] = ("general", "debugger", "security", "architect")

# Keyword scan order. Security concerns dominate, so a prompt mentioning both
# a security and a debugging keyword resolves to security.
DETECTION_ORDER: Tuple[PersonaName, ...] = ("security", "debugger", "architect")

_REQUIRED_FIELDS = ("name", "label", "icon", "system_prompt")


class PersonaLoadError(RuntimeError):
    """Raised when a persona file cannot be loaded or validated."""


def _read_persona_yaml(name: str) -> Dict[str, Any]:
    persona_path = PERSONAS_DIR / f"{name}.yaml"
    if not persona_path.exists():
        raise PersonaLoadError(f"Persona file not found: {persona_path}")

    with persona_path.open("r", encoding="utf-8") as f:
        data = yaml.safe_load(f)

    if not isinstance(data, dict):
        raise PersonaLoadError("Persona YAML must deserialize to a mapping")

    return data


def load_persona(name: str) -> PersonaDefinition:
    """Load and validate a persona by name."""
    raw = _read_persona_yaml(name)

    for key in _REQUIRED_FIELDS:
        if key not in raw:
            raise PersonaLoadError(f"Persona '{name}' missing required field: {key}")
    if raw["name"] != name:
        raise PersonaLoadError(f"Persona name '{raw['name']}' does not match file '{name}.yaml'")

    raw["keywords"] = [str(kw).lower() for kw in (raw.get("keywords") or [])]
    raw["default_tools"] = raw.get("default_tools") or []
    raw["system_prompt"] = str(raw["system_prompt"]).strip()

    try:
        return PersonaDefinition.model_validate(raw)
    except ValidationError as exc:
        raise PersonaLoadError(f"Invalid persona '{name}': {exc}") from exc


@lru_cache(maxsize=1)
def _registry() -> Dict[str, PersonaDefinition]:
    personas = {name: load_persona(name) for name in PERSONA_NAMES}
    logger.debug("Loaded personas: %s", ", ".join(personas))
    return personas


def list_persona_names() -> List[str]:
    return list(_registry())


def get_persona(name: PersonaName) -> PersonaDefinition:
    return _registry()[name]


def detect_persona(prompt: str, fallback: PersonaName) -> PersonaDefinition:
    """
    Pick a persona from keywords in the prompt.

    Keywords match as plain substrings of the lower-cased prompt, so "auth"
    also matches "author". Falls back to `fallback` when nothing matches.
    """
    lower = prompt.lower()
    registry = _registry()
    for name in DETECTION_ORDER:
        persona = registry[name]
        if any(kw in lower for kw in persona.keywords):
            return persona
    return registry[fallback]
