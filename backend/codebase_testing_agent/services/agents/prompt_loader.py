import json
import logging
import re
from pathlib import Path
from typing import Any, Optional

logger = logging.getLogger(__name__)

PROMPTS_ROOT = Path(__file__).resolve().parents[1] / "prompts"

# Reusable JSON helpers
JSON_OBJECT_RE = re.compile(r"\{.*\}", re.DOTALL)
JSON_ARRAY_RE = re.compile(r"\[.*\]", re.DOTALL)


def load_agent_prompt(role: str, name: str) -> str:
    """
    Load a prompt file from services/prompts/<role>/<name>.
    Returns empty string and logs a warning if not found.
    """
    path = PROMPTS_ROOT / role / name
    try:
        text = path.read_text(encoding="utf-8")
        logger.debug("Loaded %s prompt from %s", role, path)
        return text
    except FileNotFoundError:
        logger.warning("Prompt file not found: %s", path)
        return ""


def strip_markdown_fences(text: str) -> str:
    """Remove wrapping ``` fences from LLM output."""
    if not text:
        return text

    text = text.strip()
    if text.startswith("```"):
        first_newline = text.find("\n")
        if first_newline != -1:
            text = text[first_newline:].strip()

    if text.endswith("```"):
        text = text[:-3].strip()

    return text


def extract_json_payload(text: str) -> Optional[str]:
    """
    Extract the outermost JSON object or array from the text, whichever
    opens first. Returns the JSON substring or None.
    """
    if not text:
        return None

    text = strip_markdown_fences(text)

    obj_match = JSON_OBJECT_RE.search(text)
    arr_match = JSON_ARRAY_RE.search(text)
    if obj_match and arr_match:
        match = obj_match if obj_match.start() < arr_match.start() else arr_match
    else:
        match = obj_match or arr_match

    if match:
        return match.group(0).strip()
    return None


def safe_json_loads(text: str) -> Optional[Any]:
    """
    Attempts to extract a JSON object/array from messy LLM output.
    """
    if not text:
        return None

    extracted = extract_json_payload(text)
    if not extracted:
        return None

    try:
        return json.loads(extracted)
    except ValueError as exc:
        logger.debug("Failed to json.loads extracted payload: %s", exc)
        return None
