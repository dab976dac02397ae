from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple

# Turn failure taxonomy. These are the codes persisted on the session row and
# carried by turn notifications.
INPUT_VALIDATION = "INPUT_VALIDATION"
CONFIG_ERROR = "CONFIG_ERROR"
ACTION_EXECUTION_FAILED = "ACTION_EXECUTION_FAILED"
ACTION_HANDLER_NULL_RESULT = "ACTION_HANDLER_NULL_RESULT"
LLM_CALL_FAILED = "LLM_CALL_FAILED"
MAX_TURNS_EXCEEDED = "MAX_TURNS_EXCEEDED"
SYSTEM_LIMIT_EXCEEDED = "SYSTEM_LIMIT_EXCEEDED"
UNEXPECTED_ERROR = "UNEXPECTED_ERROR"

ERROR_CODES = frozenset(
    {
        INPUT_VALIDATION,
        CONFIG_ERROR,
        ACTION_EXECUTION_FAILED,
        ACTION_HANDLER_NULL_RESULT,
        LLM_CALL_FAILED,
        MAX_TURNS_EXCEEDED,
        SYSTEM_LIMIT_EXCEEDED,
        UNEXPECTED_ERROR,
    }
)


@dataclass
class TurnRelayError(Exception):
    """Base application error with a stable error code."""

    message: str
    code: str = UNEXPECTED_ERROR
    detail: Any = None

    def __str__(self) -> str:  # pragma: no cover - trivial
        return self.message

    def as_error_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"error_code": self.code, "error_message": self.message}
        if self.detail is not None:
            data["detail"] = self.detail
        return data


class InputValidationError(TurnRelayError):
    def __init__(self, message: str, *, detail: Any = None):
        super().__init__(message=message, code=INPUT_VALIDATION, detail=detail)


class ConfigError(TurnRelayError):
    def __init__(self, message: str, *, detail: Any = None):
        super().__init__(message=message, code=CONFIG_ERROR, detail=detail)


class TurnInFlightError(TurnRelayError):
    """A new turn was requested while the session still has one in flight."""

    def __init__(self, message: str, *, detail: Any = None):
        super().__init__(message=message, code=INPUT_VALIDATION, detail=detail)


class InvalidTransitionError(TurnRelayError):
    def __init__(self, message: str, *, detail: Any = None):
        super().__init__(message=message, code=UNEXPECTED_ERROR, detail=detail)


class ProviderCallError(TurnRelayError):
    """Outbound provider call failed after the retry policy gave up."""

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        attempts: int = 0,
        retryable: bool = False,
        detail: Any = None,
    ):
        super().__init__(message=message, code=LLM_CALL_FAILED, detail=detail)
        self.status_code = status_code
        self.attempts = attempts
        self.retryable = retryable


class DispatchError(TurnRelayError):
    """Submitting the next hop failed; the turn has already been failed."""

    def __init__(self, message: str, *, hop_kind: Optional[str] = None, detail: Any = None):
        super().__init__(message=message, code=SYSTEM_LIMIT_EXCEEDED, detail=detail)
        self.hop_kind = hop_kind


def truncate_message(message: Any, max_chars: int) -> str:
    text = "" if message is None else str(message)
    if max_chars <= 0 or len(text) <= max_chars:
        return text
    if max_chars <= 3:
        return text[:max_chars]
    return text[: max_chars - 3] + "..."


def classify_exception(exc: Exception, *, default_code: str = UNEXPECTED_ERROR) -> Tuple[str, str, Any]:
    if isinstance(exc, TurnRelayError):
        return exc.code, exc.message, exc.detail
    if isinstance(exc, (ValueError, TypeError)):
        return INPUT_VALIDATION, str(exc) or type(exc).__name__, None
    return default_code, str(exc) or type(exc).__name__, None


def build_error_payload(
    code: str,
    message: str,
    detail: Any = None,
    *,
    source: str = "unknown",
    retryable: Optional[bool] = None,
) -> Dict[str, Any]:
    payload: Dict[str, Any] = {"code": code, "message": message, "source": source}
    if detail is not None:
        payload["detail"] = detail
    if retryable is not None:
        payload["retryable"] = retryable
    return payload


def normalize_error(
    error: Any,
    *,
    default_code: str = UNEXPECTED_ERROR,
    source: str = "unknown",
    retryable: Optional[bool] = None,
) -> Dict[str, Any]:
    if error is None:
        return build_error_payload(default_code, "unknown error", source=source, retryable=retryable)

    if isinstance(error, dict):
        if "code" in error and "message" in error:
            payload = dict(error)
        elif "error_code" in error or "error_message" in error:
            payload = {
                "code": error.get("error_code") or default_code,
                "message": error.get("error_message") or "unknown error",
            }
            if "detail" in error:
                payload["detail"] = error.get("detail")
        else:
            payload = {"code": default_code, "message": str(error)}

        payload.setdefault("source", source)
        if retryable is not None and "retryable" not in payload:
            payload["retryable"] = retryable
        return payload

    if isinstance(error, ProviderCallError):
        return build_error_payload(
            error.code,
            error.message,
            error.detail,
            source=source,
            retryable=error.retryable if retryable is None else retryable,
        )

    if isinstance(error, Exception):
        code, message, detail = classify_exception(error, default_code=default_code)
        return build_error_payload(code, message, detail, source=source, retryable=retryable)

    return build_error_payload(default_code, str(error), source=source, retryable=retryable)
