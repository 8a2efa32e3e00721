"""Test fixtures for the agglomeration engine.

Provides small hand-built graphs and label volumes.
"""

from .mock_graphs import (
    make_rag,
    make_nested_rag,
    make_label_volume,
)

__all__ = [
    "make_rag",
    "make_nested_rag",
    "make_label_volume",
]
