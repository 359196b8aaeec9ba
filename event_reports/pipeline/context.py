"""
Per-run context threaded through pipeline steps.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional
import uuid


@dataclass
class StepRecord:
    """Telemetry for one executed step."""
    step_id: str
    status: str
    latency_ms: int
    input_keys: List[str] = field(default_factory=list)
    output_keys: List[str] = field(default_factory=list)
    error_code: Optional[str] = None
    error_category: Optional[str] = None


@dataclass
class PipelineContext:
    """
    Mutable accumulator for a single run.

    Steps read the keys they require from `data` and write the keys they
    produce. A context is never shared between runs.
    """
    event_slug: str
    request_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    run_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    data: Dict[str, Any] = field(default_factory=dict)
    steps: List[StepRecord] = field(default_factory=list)
    supplement_attempts: int = 0
    stopped_at: Optional[str] = None

    def get(self, key: str, default: Any = None) -> Any:
        return self.data.get(key, default)

    def __contains__(self, key: str) -> bool:
        return key in self.data

    def require(self, key: str) -> Any:
        return self.data[key]

    def update(self, values: Dict[str, Any]) -> None:
        self.data.update(values)

    def missing(self, keys: Iterable[str]) -> List[str]:
        return [k for k in keys if k not in self.data]

    def executed_step_ids(self) -> List[str]:
        return [record.step_id for record in self.steps]
