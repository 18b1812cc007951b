from dataclasses import dataclass
from typing import Generic, Optional, TypeVar

T = TypeVar("T")


class ErrorCode:
    """Failure codes surfaced at the pass boundary."""

    LOCK_REJECTED = "lock_rejected"
    UPSTREAM_CALL_FAILED = "upstream_call_failed"
    RESPONSE_PARSE_FAILED = "response_parse_failed"
    CONDITION_NO_MATCH = "condition_no_match"
    PROMPT_NOT_CONFIGURED = "prompt_not_configured"
    FLOW_DEFINITION_ERROR = "flow_definition_error"
    UNSUPPORTED_PROVIDER = "unsupported_provider"
    STEP_LIMIT = "step_limit"
    INTERNAL_ERROR = "internal_error"


@dataclass
class Result(Generic[T]):
    ok: bool
    value: Optional[T] = None
    error: Optional[str] = None
    error_code: Optional[str] = None

    @staticmethod
    def success(value: T) -> "Result[T]":
        return Result(ok=True, value=value)

    @staticmethod
    def failure(error: str, code: str = ErrorCode.INTERNAL_ERROR) -> "Result[T]":
        return Result(ok=False, error=error, error_code=code)

    def unwrap_or(self, default: T) -> T:
        return self.value if self.ok else default
