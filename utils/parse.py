"""Model-output parsing.

The LLM scorer asks for a bare JSON object, but models routinely wrap it in
```json fences, prepend a sentence, or answer 1.02 for "between 0 and 1".
parse_llm_json() absorbs those habits and hands back a validated model, or
raises LLMParseError carrying the raw text for the log line.
"""

import json
import re
from typing import Iterable, TypeVar

from pydantic import BaseModel, ValidationError

ModelT = TypeVar("ModelT", bound=BaseModel)

_FENCE = re.compile(r"```[a-zA-Z]*")
_decoder = json.JSONDecoder()


class LLMParseError(Exception):
    """The response held no usable JSON object, or it failed validation.

    Attributes:
        raw: The response exactly as the model returned it.
    """

    def __init__(self, message: str, raw: str):
        super().__init__(message)
        self.raw = raw


def parse_llm_json(
    response: str,
    schema: type[ModelT],
    clamp: Iterable[str] = ("score",),
) -> ModelT:
    """Validate the first JSON object in a model response against schema.

    Args:
        response: Raw text from LLMClient.complete().
        schema: Pydantic model to validate against.
        clamp: Top-level numeric fields pulled into [0.0, 1.0] before
            validation. Non-numeric values are left for the schema to reject.

    Raises:
        LLMParseError: No JSON object in the text, or validation failed.
    """
    data = first_json_object(_FENCE.sub("", response or ""))
    if data is None:
        raise LLMParseError(f"No JSON object found for {schema.__name__}", raw=response)

    for key in clamp:
        value = data.get(key)
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            data[key] = min(1.0, max(0.0, float(value)))

    try:
        return schema.model_validate(data)
    except ValidationError as exc:
        raise LLMParseError(
            f"LLM response does not match schema {schema.__name__}: {exc.error_count()} error(s)",
            raw=response,
        ) from exc


def first_json_object(text: str) -> dict | None:
    """Decode the first complete {...} object in text, skipping anything around it."""
    start = text.find("{")
    while start != -1:
        try:
            value, _ = _decoder.raw_decode(text, start)
        except json.JSONDecodeError:
            start = text.find("{", start + 1)
            continue
        if isinstance(value, dict):
            return value
        start = text.find("{", start + 1)
    return None
