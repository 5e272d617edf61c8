"""
System prompt resolution.

SYSTEM_PROMPT (inline) beats SYSTEM_PROMPT_FILE, which beats the built-in
Lithuanian prompt. Relative file paths are taken from the repository root so
the same .env works from any working directory.
"""

from __future__ import annotations

from pathlib import Path

import structlog

from src.relay.config import Config, DEFAULT_SYSTEM_PROMPT

logger = structlog.get_logger(__name__)

MAX_PROMPT_CHARS = 40_000

_REPO_ROOT = Path(__file__).resolve().parents[2]


def _clip(prompt: str, max_chars: int, source: str) -> str:
    if len(prompt) <= max_chars:
        return prompt
    logger.warning("System prompt clipped", source=source, chars=len(prompt), max_chars=max_chars)
    return prompt[:max_chars]


def load_prompt_file(path: str, max_chars: int = MAX_PROMPT_CHARS) -> str:
    """Read a prompt file; "" when it is unset, missing or unreadable."""
    if not path:
        return ""

    prompt_path = Path(path)
    if not prompt_path.is_absolute():
        prompt_path = _REPO_ROOT / prompt_path

    try:
        # utf-8-sig also accepts files saved with a BOM.
        text = prompt_path.read_text(encoding="utf-8-sig")
    except FileNotFoundError:
        logger.warning("System prompt file not found", path=str(prompt_path))
        return ""
    except (OSError, UnicodeDecodeError) as e:
        logger.warning("System prompt file unreadable", path=str(prompt_path), error=str(e))
        return ""

    return _clip(text.strip(), max_chars, source=str(prompt_path))


def resolve_prompt(*, inline_text: str, file_path: str, max_chars: int = MAX_PROMPT_CHARS) -> str:
    inline = (inline_text or "").strip()
    if inline:
        return _clip(inline, max_chars, source="inline")
    return load_prompt_file(file_path, max_chars)


def get_system_prompt(config: Config) -> str:
    """System instructions sent with every generation request."""
    return (
        resolve_prompt(inline_text=config.system_prompt, file_path=config.system_prompt_file)
        or DEFAULT_SYSTEM_PROMPT
    )
