"""CLI entry point for the console-agent package."""

from __future__ import annotations

import platform
import shutil
import subprocess
import sys
from typing import List, Optional

GEMINI_KEYS_URL = "https://aistudio.google.com/apikey"
MIN_PYTHON = (3, 10)
PERSONA_CHOICES = ("general", "debugger", "security", "architect")


def _print_setup_banner(provider: str, model: str, *, has_key: bool) -> None:
    """Print setup guidance for API keys and the .env file."""
    if provider == "google":
        key_note = "API key found" if has_key else "API key missing"
    else:
        key_note = "no API key required"
    print()
    print("Console Agent: Setup")
    print("Provider: {} ({})  |  Model: {}".format(provider, key_note, model))
    print()
    print("────────────────────────────────────────────")
    print("Get a Gemini API key:")
    print("   {}".format(GEMINI_KEYS_URL))
    print()
    print("Create a .env file in this folder (or edit it if you already have one).")
    print("   Mac/Linux:  nano .env")
    print("   Windows:    notepad .env")
    print()
    print("Copy the block below into .env and replace YOUR_KEY_HERE with your key.")
    print()
    print("   GEMINI_API_KEY=YOUR_KEY_HERE")
    print("   CONSOLE_AGENT_MODEL=gemini-2.5-flash-lite")
    print("   CONSOLE_AGENT_LOG_LEVEL=info")
    print()
    print("For a local model via Ollama instead:")
    print()
    print("   CONSOLE_AGENT_PROVIDER=ollama")
    print("   CONSOLE_AGENT_MODEL=llama3.2")
    print("   OLLAMA_HOST=http://localhost:11434")
    print()


def _python_version_str() -> str:
    return ".".join(str(part) for part in sys.version_info[:3])


def _ensure_supported_python() -> None:
    if sys.version_info < MIN_PYTHON:
        print(
            "Error: Python {} detected. console-agent requires Python {}.{}+.".format(
                _python_version_str(),
                MIN_PYTHON[0],
                MIN_PYTHON[1],
            ),
            file=sys.stderr,
        )
        sys.exit(2)


def _print_help() -> None:
    print("Console Agent CLI")
    print()
    print("Usage:")
    print("  console-agent ask <prompt>             Run one blocking agent call, print JSON")
    print("      --persona <name>                   Force a persona ({})".format(", ".join(PERSONA_CHOICES)))
    print("      --dry-run                          Resolve persona and gates without calling the provider")
    print("      --verbose                          Print the full execution trace")
    print("  console-agent setup                    Print setup/env guidance")
    print("  console-agent doctor                   Print install/environment diagnostics")
    print()


def _print_doctor() -> None:
    from .config import load_config

    config = load_config()
    print("Console Agent Doctor")
    print()
    print(f"Platform: {platform.platform()}")
    print(f"Python:   {_python_version_str()}")
    print(f"Exe:      {sys.executable}")
    print(f"In venv:  {'yes' if sys.prefix != sys.base_prefix else 'no'}")
    print(f"PATH bin: {shutil.which('console-agent') or 'not found'}")

    try:
        pip_version = subprocess.check_output(
            [sys.executable, "-m", "pip", "--version"],
            text=True,
            stderr=subprocess.STDOUT,
        ).strip()
    except Exception as exc:  # pragma: no cover - diagnostics fallback
        pip_version = f"unavailable ({exc})"
    print(f"Pip:      {pip_version}")
    print()
    print(f"Provider: {config.provider}")
    print(f"Model:    {config.model}")
    print(f"API key:  {'set' if config.api_key else 'not set'}")
    if config.provider == "ollama":
        print(f"Ollama:   {config.ollama_host}")
    print(
        "Budget:   {} calls/day, ${:.2f}/day, {} tokens/call".format(
            config.budget.max_calls_per_day,
            config.budget.cost_cap_daily,
            config.budget.max_tokens_per_call,
        )
    )
    if sys.version_info < MIN_PYTHON:
        print(f"Issue: Python is below required minimum {MIN_PYTHON[0]}.{MIN_PYTHON[1]}.")
    if config.provider == "google" and not config.api_key:
        print("Issue: no Gemini API key. Run `console-agent setup` for instructions.")
    print()


def _run_ask(args: List[str]) -> int:
    persona: Optional[str] = None
    dry_run = False
    verbose = False
    words: List[str] = []

    it = iter(args)
    for arg in it:
        if arg == "--persona":
            persona = next(it, None)
            if persona not in PERSONA_CHOICES:
                print(f"Error: --persona must be one of: {', '.join(PERSONA_CHOICES)}", file=sys.stderr)
                return 2
        elif arg == "--dry-run":
            dry_run = True
        elif arg == "--verbose":
            verbose = True
        else:
            words.append(arg)

    if not words:
        print("Error: missing prompt. Usage: console-agent ask <prompt>", file=sys.stderr)
        return 2

    from . import agent

    if dry_run:
        agent.configure(dry_run=True)
    result = agent(" ".join(words), None, mode="blocking", persona=persona, verbose=verbose)
    print(result.model_dump_json(indent=2))
    return 0 if result.success else 1


def main() -> None:
    """Handle help/setup/doctor/ask subcommands."""
    _ensure_supported_python()

    if len(sys.argv) < 2:
        _print_help()
        sys.exit(0)

    subcommand = sys.argv[1].strip().lower()
    if subcommand in {"-h", "--help", "help"}:
        _print_help()
        sys.exit(0)
    if subcommand == "setup":
        from .config import load_config

        config = load_config()
        _print_setup_banner(config.provider, config.model, has_key=bool(config.api_key))
        sys.exit(0)
    if subcommand == "doctor":
        _print_doctor()
        sys.exit(0)
    if subcommand == "ask":
        sys.exit(_run_ask(sys.argv[2:]))

    print(f"Unknown command: {sys.argv[1]}", file=sys.stderr)
    _print_help()
    sys.exit(2)


if __name__ == "__main__":
    main()
