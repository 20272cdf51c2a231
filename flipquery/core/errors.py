"""
Error taxonomy for the hybrid query pipeline.

  ValidationError      spec breaks a capability rule; never triggers fallback
  ImpossibleQueryError spec matches a known unsupported pattern; terminal
  ParsingError         local parsing failed; always triggers fallback
  SQLGenerationError   remote endpoint failed or timed out
  UninitializedError   processor used before initialize()
  ConfigError          capability / rules / patterns document is malformed
  QueryExecutionError  generated SQL refused by the read-only executor or failed
"""
from __future__ import annotations


class HybridQueryError(Exception):
    """Base class for every pipeline error."""


class ValidationError(HybridQueryError):
    def __init__(
        self,
        message: str,
        suggestions: list[str] | None = None,
        alternatives: list[str] | None = None,
    ):
        super().__init__(message)
        self.suggestions = suggestions or []
        self.alternatives = alternatives or []


class ImpossibleQueryError(ValidationError):
    def __init__(self, message: str, alternatives: list[str] | None = None):
        super().__init__(message, alternatives=alternatives)


class ParsingError(HybridQueryError):
    def __init__(self, message: str, original_query: str = "", confidence: float | None = None):
        super().__init__(message)
        self.original_query = original_query
        self.confidence = confidence


class SQLGenerationError(HybridQueryError):
    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class UninitializedError(HybridQueryError):
    pass


class ConfigError(HybridQueryError):
    pass


class QueryExecutionError(HybridQueryError):
    """Generated SQL was refused or failed against the flip database."""
