from typing import Any, Dict

from ..collaborators import Storage
from ..exceptions import AppError, ErrorCategory, ErrorCode


async def get_latest_status(storage: Storage, event_slug: str) -> Dict[str, Any]:
    """Latest stored report record for an event."""
    slug = (event_slug or "").strip()
    report = await storage.get_latest_report(slug)
    if not report:
        raise AppError(code=ErrorCode.STORE_STATUS_NOT_FOUND,
                       message=f"No report stored for {slug!r}",
                       category=ErrorCategory.STORE,
                       retryable=False,
                       details={"event_slug": slug})
    return report
