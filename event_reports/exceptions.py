"""
Error taxonomy and tagged results for the event report system
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Generic, Optional, TypeVar, Union

T = TypeVar("T")


class ErrorCategory(str, Enum):
    """Coarse error classes used for retry and reporting decisions"""
    VALIDATION = "VALIDATION"
    PROVIDER = "PROVIDER"
    RATE_LIMIT = "RATE_LIMIT"
    STORE = "STORE"
    INTERNAL = "INTERNAL"


class ErrorCode:
    """Machine-readable error codes"""
    # Market metadata
    PROVIDER_PM_EVENT_NOT_FOUND = "PROVIDER_PM_EVENT_NOT_FOUND"
    PROVIDER_PM_EVENT_NOT_UNIQUE = "PROVIDER_PM_EVENT_NOT_UNIQUE"
    PROVIDER_PM_EVENT_INVALID = "PROVIDER_PM_EVENT_INVALID"
    PROVIDER_PM_MARKETS_EMPTY = "PROVIDER_PM_MARKETS_EMPTY"
    PROVIDER_PM_MARKETS_INVALID = "PROVIDER_PM_MARKETS_INVALID"
    PROVIDER_PM_MARKET_INVALID = "PROVIDER_PM_MARKET_INVALID"
    PROVIDER_PM_PRIMARY_MARKET_NOT_FOUND = "PROVIDER_PM_PRIMARY_MARKET_NOT_FOUND"
    PROVIDER_PM_GAMMA_REQUEST_FAILED = "PROVIDER_PM_GAMMA_REQUEST_FAILED"
    # Order book and pricing
    PROVIDER_PM_CLOB_REQUEST_FAILED = "PROVIDER_PM_CLOB_REQUEST_FAILED"
    PROVIDER_PM_CLOB_RESPONSE_INVALID = "PROVIDER_PM_CLOB_RESPONSE_INVALID"
    PROVIDER_PM_PRICING_REQUEST_FAILED = "PROVIDER_PM_PRICING_REQUEST_FAILED"
    PROVIDER_PM_PRICING_RESPONSE_INVALID = "PROVIDER_PM_PRICING_RESPONSE_INVALID"
    # Web search
    PROVIDER_TAVILY_REQUEST_FAILED = "PROVIDER_TAVILY_REQUEST_FAILED"
    PROVIDER_TAVILY_RESPONSE_INVALID = "PROVIDER_TAVILY_RESPONSE_INVALID"
    PROVIDER_TAVILY_CONFIG_MISSING = "PROVIDER_TAVILY_CONFIG_MISSING"
    PROVIDER_TAVILY_QUERY_EMPTY = "PROVIDER_TAVILY_QUERY_EMPTY"
    PROVIDER_OFFICIAL_REQUEST_FAILED = "PROVIDER_OFFICIAL_REQUEST_FAILED"
    PROVIDER_PUBLISH_FAILED = "PROVIDER_PUBLISH_FAILED"
    # Steps
    STEP_MISSING_INPUT = "STEP_MISSING_INPUT"
    STEP_QUERY_PLAN_EMPTY_INPUT = "STEP_QUERY_PLAN_EMPTY_INPUT"
    STEP_EVIDENCE_BUILD_MISSING_INPUT = "STEP_EVIDENCE_BUILD_MISSING_INPUT"
    STEP_REPORT_GENERATE_FAILED = "STEP_REPORT_GENERATE_FAILED"
    STEP_UNKNOWN = "STEP_UNKNOWN"
    # Report validation
    VALIDATOR_SCHEMA_INVALID = "VALIDATOR_SCHEMA_INVALID"
    VALIDATOR_JSON_PARSE_FAILED = "VALIDATOR_JSON_PARSE_FAILED"
    VALIDATOR_INSUFFICIENT_URLS = "VALIDATOR_INSUFFICIENT_URLS"
    VALIDATOR_EVIDENCE_DOMAIN_INSUFFICIENT = "VALIDATOR_EVIDENCE_DOMAIN_INSUFFICIENT"
    VALIDATOR_DISAGREEMENT_INSUFFICIENT = "VALIDATOR_DISAGREEMENT_INSUFFICIENT"
    VALIDATOR_EVIDENCE_SNIPPET_INSUFFICIENT = "VALIDATOR_EVIDENCE_SNIPPET_INSUFFICIENT"
    # Storage
    STORE_PERSIST_FAILED = "STORE_PERSIST_FAILED"
    STORE_STATUS_NOT_FOUND = "STORE_STATUS_NOT_FOUND"
    # Orchestration
    ORCH_PIPELINE_FAILED = "ORCH_PIPELINE_FAILED"
    ORCH_BATCH_PIPELINE_FAILED = "ORCH_BATCH_PIPELINE_FAILED"
    ORCH_BATCH_ITEM_INVALID = "ORCH_BATCH_ITEM_INVALID"
    ORCH_SUPPLEMENT_EXHAUSTED = "ORCH_SUPPLEMENT_EXHAUSTED"
    ORCH_SUPPLEMENT_RATE_LIMIT = "ORCH_SUPPLEMENT_RATE_LIMIT"


# Validator codes that ask for more evidence rather than reject the report
INSUFFICIENT_EVIDENCE_CODES = frozenset({
    ErrorCode.VALIDATOR_INSUFFICIENT_URLS,
    ErrorCode.VALIDATOR_EVIDENCE_DOMAIN_INSUFFICIENT,
    ErrorCode.VALIDATOR_DISAGREEMENT_INSUFFICIENT,
    ErrorCode.VALIDATOR_EVIDENCE_SNIPPET_INSUFFICIENT,
})


class EventReportsError(Exception):
    """Base exception for the event report system"""
    pass


class ConfigurationError(EventReportsError):
    """Configuration related errors"""
    pass


class AppError(EventReportsError):
    """Typed error carried through clients, steps and batch receipts"""

    def __init__(
        self,
        code: str,
        message: str,
        category: ErrorCategory = ErrorCategory.INTERNAL,
        retryable: bool = False,
        details: Optional[Dict[str, Any]] = None,
        suggestion: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.code = code
        self.message = message
        self.category = ErrorCategory(category)
        self.retryable = retryable
        self.details = details or {}
        self.suggestion = suggestion

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "code": self.code,
            "message": self.message,
            "category": self.category.value,
            "retryable": self.retryable,
            "details": self.details,
        }
        if self.suggestion:
            data["suggestion"] = self.suggestion
        return data

    def __repr__(self) -> str:
        return f"AppError(code={self.code!r}, category={self.category.value}, retryable={self.retryable})"


def to_app_error(exc: BaseException, code: str = ErrorCode.ORCH_PIPELINE_FAILED) -> AppError:
    """Wrap an arbitrary exception as an INTERNAL AppError, passing AppErrors through."""
    if isinstance(exc, AppError):
        return exc
    return AppError(
        code=code,
        message=str(exc) or exc.__class__.__name__,
        category=ErrorCategory.INTERNAL,
        retryable=False,
        details={"exception": exc.__class__.__name__},
    )


@dataclass(frozen=True)
class Ok(Generic[T]):
    """Successful outcome"""
    value: T

    @property
    def is_ok(self) -> bool:
        return True

    def unwrap(self) -> T:
        return self.value


@dataclass(frozen=True)
class Err:
    """Failed outcome carrying the typed error"""
    error: AppError
    # Extra data the failure came with, e.g. response headers
    meta: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_ok(self) -> bool:
        return False

    @property
    def retryable(self) -> bool:
        return self.error.retryable

    def unwrap(self):
        raise self.error


Result = Union[Ok[T], Err]
