from __future__ import annotations

from pathlib import Path

import structlog

from src.relay.config import Config

logger = structlog.get_logger(__name__)

MAX_PROMPT_CHARS = 40_000

# Relative prompt paths resolve against the project root (two levels above src/relay/).
_PROJECT_ROOT = Path(__file__).resolve().parents[2]


def load_prompt_file(path: str, *, max_chars: int = MAX_PROMPT_CHARS) -> str:
    """Read a prompt file; "" if unset, missing, unreadable or blank."""
    if not path:
        return ""

    prompt_path = Path(path)
    if not prompt_path.is_absolute():
        prompt_path = _PROJECT_ROOT / prompt_path

    try:
        # utf-8-sig also accepts files saved with a BOM.
        text = prompt_path.read_text(encoding="utf-8-sig").strip()
    except FileNotFoundError:
        logger.warning("Prompt file not found", path=str(prompt_path))
        return ""
    except (OSError, UnicodeDecodeError) as e:
        logger.warning("Prompt file unreadable", path=str(prompt_path), error=str(e))
        return ""

    if len(text) > max_chars:
        logger.warning("Prompt truncated", path=str(prompt_path), max_chars=max_chars)
        text = text[:max_chars]
    return text


def resolve_prompt(*, inline_text: str, file_path: str, max_chars: int = MAX_PROMPT_CHARS) -> str:
    """File contents win over `inline_text`; both are capped at `max_chars`."""
    return load_prompt_file(file_path, max_chars=max_chars) or (inline_text or "").strip()[:max_chars]


def system_instructions(config: Config) -> str:
    """Behavioural instructions sent to the AI channel at connect."""
    return resolve_prompt(inline_text=config.system_prompt, file_path=config.system_prompt_file)
