"""Defensive parsing of JSON embedded in generated text.

Generated output is untrusted: it may be wrapped in code fences, preceded by
prose, truncated, or shaped differently than requested. Every call site goes
through these helpers and validates the result against a pydantic schema, so
a malformed response surfaces as a single ``LLMOutputError`` that the caller
maps to its documented fail-safe.
"""

import json
import re
from typing import List, Optional, Type, TypeVar

from pydantic import BaseModel, TypeAdapter, ValidationError

from factcheck.core.exceptions import LLMOutputError
from factcheck.utils.logging import get_logger

LOGGER = get_logger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)

_FENCE_PATTERN = re.compile(r"```(?:[a-zA-Z]+)?\n?|\n?```")


def strip_code_fences(text: str) -> str:
    """Remove markdown code fences (```json, ```markdown, ```) and trim."""
    if not text:
        return ""
    return _FENCE_PATTERN.sub("", text).strip()


def extract_json_array(text: str) -> Optional[str]:
    """Locate a JSON array inside generated text.

    Tolerates wrapper prose and code fences by slicing from the first ``[``
    to the last ``]``.

    Args:
        text: Raw generated text

    Returns:
        The candidate array text, or None when no bracket pair exists
    """
    cleaned = strip_code_fences(text)
    if cleaned.startswith("["):
        return cleaned

    start_idx = cleaned.find("[")
    end_idx = cleaned.rfind("]")
    if start_idx != -1 and end_idx > start_idx:
        return cleaned[start_idx:end_idx + 1]
    return None


def extract_json_object(text: str) -> Optional[str]:
    """Locate a JSON object inside generated text (first ``{`` to last ``}``)."""
    cleaned = strip_code_fences(text)
    start_idx = cleaned.find("{")
    end_idx = cleaned.rfind("}")
    if start_idx != -1 and end_idx > start_idx:
        return cleaned[start_idx:end_idx + 1]
    return None


def parse_model_list(text: str, model: Type[ModelT]) -> List[ModelT]:
    """Parse a JSON array of ``model`` items from generated text.

    This is the single strict parse path for list-shaped responses.

    Args:
        text: Raw generated text
        model: Pydantic model every array item must satisfy

    Returns:
        Validated model instances

    Raises:
        LLMOutputError: If no array is found, it is not valid JSON, or any
            item fails schema validation
    """
    array_text = extract_json_array(text)
    if array_text is None:
        raise LLMOutputError("No JSON array found in response")

    try:
        raw = json.loads(array_text)
    except json.JSONDecodeError as e:
        LOGGER.warning(f"Invalid JSON array in generated text: {e}", extra={"preview": array_text[:200]})
        raise LLMOutputError(f"Invalid JSON array: {e}", original_error=e) from e

    try:
        return TypeAdapter(List[model]).validate_python(raw)
    except ValidationError as e:
        raise LLMOutputError(f"Response failed schema validation: {e.error_count()} errors", original_error=e) from e


def parse_model_object(text: str, model: Type[ModelT]) -> ModelT:
    """Parse a single JSON object of ``model`` from generated text.

    Raises:
        LLMOutputError: If no object is found, it is not valid JSON, or it
            fails schema validation
    """
    object_text = extract_json_object(text)
    if object_text is None:
        raise LLMOutputError("No JSON object found in response")

    try:
        return model.model_validate_json(object_text)
    except ValidationError as e:
        raise LLMOutputError(f"Response failed schema validation: {e.error_count()} errors", original_error=e) from e
