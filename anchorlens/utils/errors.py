from typing import Any, Dict, Optional

from anchorlens.models import EngineError, ErrorKind, Span


class AnchorLensError(Exception):
    """Base for every error the engine surfaces. Carries a stable kind."""

    kind: ErrorKind = ErrorKind.INVALID_REQUEST

    def __init__(self, message: str, rule_id: Optional[str] = None, location: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.rule_id = rule_id
        self.location = location or {}

    def to_detail(self) -> EngineError:
        return EngineError(
            kind=self.kind,
            message=self.message,
            rule_id=self.rule_id,
            location=self.location,
        )


class ParseError(AnchorLensError):
    """Source cannot be modeled. Fatal for the run."""

    kind = ErrorKind.PARSE_ERROR

    def __init__(self, message: str, span: Optional[Span] = None, line: Optional[int] = None):
        location: Dict[str, Any] = {}
        if span is not None:
            location["start"] = span.start
            location["end"] = span.end
        if line is not None:
            location["line"] = line
        super().__init__(message, location=location)
        self.span = span
        self.line = line


class RuleEvaluationError(AnchorLensError):
    """A single rule predicate faulted. Only that rule's findings are lost."""

    kind = ErrorKind.RULE_EVALUATION_ERROR


class ModelDriftError(AnchorLensError):
    """Captured edit span no longer matches the source it is applied to."""

    kind = ErrorKind.MODEL_DRIFT_ERROR


class CorrelationConflictUnresolved(AnchorLensError):
    """Two correlation rules disagree on precedence for the same finding."""

    kind = ErrorKind.CORRELATION_CONFLICT


def error_response(request_id: str, code: str, message: str, location: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    error: Dict[str, Any] = {
        "code": code,
        "message": message,
    }
    if location:
        error["location"] = location
    return {
        "request_id": request_id,
        "type": "error",
        "data": None, # Explicitly null for error responses
        "error": error
    }
