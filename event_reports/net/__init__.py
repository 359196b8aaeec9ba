"""Shared upstream plumbing: caching, pacing and resilient requests."""
