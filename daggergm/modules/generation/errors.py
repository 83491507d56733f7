from __future__ import annotations


class GenerationError(RuntimeError):
    """Raised when the generator cannot produce a valid structured result."""

    def __init__(self, message: str, *, operation: str = "", reason: str = "provider_error"):
        super().__init__(message)
        self.operation = operation
        self.reason = reason


class GrammarCheckError(RuntimeError):
    def __init__(self, message: str, *, error_kind: str, raw_snippet: str | None = None):
        super().__init__(message)
        self.error_kind = error_kind
        self.raw_snippet = raw_snippet


GRAMMAR_JSON_PARSE = "GRAMMAR_JSON_PARSE"
GRAMMAR_SCHEMA_VALIDATE = "GRAMMAR_SCHEMA_VALIDATE"
GRAMMAR_OUTPUT_SHAPE = "GRAMMAR_OUTPUT_SHAPE"
