"""
Interfaces for the collaborators the pipeline drives but does not implement:
persistence, report generation and validation, rendering and publishing.
"""

from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol, TypeVar, runtime_checkable

T = TypeVar("T")


@dataclass(frozen=True)
class ValidationOutcome:
    """
    Verdict on a generated report.

    A failed outcome carries a validator error code; `suggestion` may ask for
    more evidence, e.g. {"action": "ADD_SEARCH", "preferred_lane": "C"}.
    """
    ok: bool
    report: Optional[Dict[str, Any]] = None
    code: Optional[str] = None
    message: Optional[str] = None
    suggestion: Optional[Dict[str, Any]] = field(default=None)

    @classmethod
    def passed(cls, report: Dict[str, Any]) -> "ValidationOutcome":
        return cls(ok=True, report=report)

    @classmethod
    def failed(cls, code: str, message: str,
               suggestion: Optional[Dict[str, Any]] = None) -> "ValidationOutcome":
        return cls(ok=False, code=code, message=message, suggestion=suggestion)


@runtime_checkable
class Storage(Protocol):
    async def upsert_event(self, record: Dict[str, Any]) -> None: ...

    async def append_evidence(self, records: List[Dict[str, Any]]) -> None: ...

    async def save_report(self, record: Dict[str, Any]) -> None: ...

    async def get_latest_report(self, event_slug: str) -> Optional[Dict[str, Any]]: ...

    async def update_report_status(self, run_id: str, status: str,
                                   error_code: Optional[str] = None,
                                   error_message: Optional[str] = None) -> None: ...

    async def run_in_transaction(self, fn: Callable[["Storage"], Awaitable[T]]) -> T: ...


@runtime_checkable
class ReportGenerator(Protocol):
    async def generate_report_v1(self, payload: Dict[str, Any]) -> Dict[str, Any]: ...


@runtime_checkable
class ReportValidator(Protocol):
    async def validate_report(self, report: Dict[str, Any]) -> ValidationOutcome: ...


@runtime_checkable
class ReportRenderer(Protocol):
    def render(self, report: Dict[str, Any]) -> str: ...


@runtime_checkable
class PublishSink(Protocol):
    async def publish_to_channel(self, text: str) -> Dict[str, Any]:
        """Publish rendered text; returns at least {"message_id": ...}."""
        ...
