"""Evidence candidate construction and near-duplicate clustering."""

from .clustering import build_evidence_candidates

__all__ = ["build_evidence_candidates"]
