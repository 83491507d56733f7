from __future__ import annotations

import json
from typing import TypeVar

from jsonschema import Draft202012Validator
from jsonschema import ValidationError as JSONSchemaValidationError
from pydantic import BaseModel, ValidationError

from daggergm.modules.generation.errors import (
    GRAMMAR_JSON_PARSE,
    GRAMMAR_OUTPUT_SHAPE,
    GRAMMAR_SCHEMA_VALIDATE,
    GrammarCheckError,
)

ModelT = TypeVar("ModelT", bound=BaseModel)

_SNIPPET_LIMIT = 240


def _snippet(raw: object) -> str | None:
    if raw is None:
        return None
    text = raw if isinstance(raw, str) else json.dumps(raw, ensure_ascii=False, default=str)
    text = " ".join(str(text).split())
    return text[:_SNIPPET_LIMIT] or None


def _strip_code_fence(text: str) -> str:
    stripped = text.strip()
    if not stripped.startswith("```"):
        return stripped
    lines = stripped.splitlines()
    if lines and lines[0].startswith("```"):
        lines = lines[1:]
    if lines and lines[-1].strip() == "```":
        lines = lines[:-1]
    return "\n".join(lines).strip()


def parse_payload(raw: object) -> object:
    if isinstance(raw, (dict, list)):
        return raw
    if not isinstance(raw, str):
        raise GrammarCheckError(
            f"unsupported payload type: {type(raw).__name__}",
            error_kind=GRAMMAR_JSON_PARSE,
            raw_snippet=_snippet(raw),
        )
    text = _strip_code_fence(raw)
    if not text:
        raise GrammarCheckError("empty json content", error_kind=GRAMMAR_JSON_PARSE)
    try:
        return json.loads(text)
    except json.JSONDecodeError as exc:
        raise GrammarCheckError(
            f"json parse failed: {exc.msg} at line {exc.lineno}",
            error_kind=GRAMMAR_JSON_PARSE,
            raw_snippet=_snippet(raw),
        ) from exc


def validate_schema(payload: object, *, schema_name: str, schema: dict) -> None:
    if not schema:
        raise GrammarCheckError(f"schema {schema_name} is empty", error_kind=GRAMMAR_SCHEMA_VALIDATE)
    errors = sorted(Draft202012Validator(schema).iter_errors(payload), key=lambda err: list(err.path))
    if not errors:
        return
    first: JSONSchemaValidationError = errors[0]
    location = "/".join(str(part) for part in first.path) or "<root>"
    raise GrammarCheckError(
        f"{schema_name} failed at {location}: {first.message}",
        error_kind=GRAMMAR_SCHEMA_VALIDATE,
        raw_snippet=_snippet(payload),
    )


def validate_structured_output(raw: object, *, schema_name: str, schema: dict) -> dict:
    parsed = parse_payload(raw)
    if not isinstance(parsed, dict):
        raise GrammarCheckError(
            f"{schema_name} output must be a json object",
            error_kind=GRAMMAR_OUTPUT_SHAPE,
            raw_snippet=_snippet(parsed),
        )
    validate_schema(parsed, schema_name=schema_name, schema=schema)
    return parsed


def coerce_output(raw: object, *, schema_name: str, schema: dict, model: type[ModelT]) -> ModelT:
    """Grammar-check a generator payload and load it into its typed model."""
    payload = validate_structured_output(raw, schema_name=schema_name, schema=schema)
    try:
        return model.model_validate(payload)
    except ValidationError as exc:
        raise GrammarCheckError(
            f"{schema_name} rejected by {model.__name__}: {exc.error_count()} error(s)",
            error_kind=GRAMMAR_OUTPUT_SHAPE,
            raw_snippet=_snippet(payload),
        ) from exc
