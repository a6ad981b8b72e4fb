"""Node operations shipped with the engine."""

from .builtin import BUILTIN_OPERATIONS, register_builtin_operations

__all__ = ["BUILTIN_OPERATIONS", "register_builtin_operations"]
