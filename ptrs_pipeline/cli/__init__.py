from __future__ import annotations

from .__main__ import EXIT_FATAL, EXIT_PARTIAL, EXIT_SUCCESS, main

__all__ = ["main", "EXIT_SUCCESS", "EXIT_PARTIAL", "EXIT_FATAL"]
