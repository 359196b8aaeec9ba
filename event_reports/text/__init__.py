"""Text normalization and similarity helpers."""
