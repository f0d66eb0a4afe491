"""High-level model interface for permde."""

from .de import (
    PermDE,
    PermDEResult,
    assemble_result,
)

__all__ = [
    "PermDE",
    "PermDEResult",
    "assemble_result",
]
