from __future__ import annotations

import secrets
import threading

"""Identifier generation service.

Constructed once at process start and passed into every component that needs
ids. Ids are short url-safe strings (10 chars by default, matching the width
of the id columns in ``db/schema.sql``).
"""

__all__ = [
    "IdGenerator",
    "SequentialIdGenerator",
]

ALPHABET = "0123456789ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz_-"


class IdGenerator:
    """Random id generator backed by :mod:`secrets`."""

    def __init__(self, size: int = 10) -> None:
        if size < 6:
            raise ValueError("id size must be >= 6")
        self.size = size

    def new_id(self) -> str:
        return "".join(secrets.choice(ALPHABET) for _ in range(self.size))


class SequentialIdGenerator(IdGenerator):
    """Deterministic ids (``<prefix>0000001`` ...) for tests and dry runs."""

    def __init__(self, prefix: str = "id", size: int = 10) -> None:
        super().__init__(size=size)
        self.prefix = prefix
        self._counter = 0
        self._lock = threading.Lock()

    def new_id(self) -> str:
        with self._lock:
            self._counter += 1
            n = self._counter
        width = max(self.size - len(self.prefix), 1)
        return f"{self.prefix}{n:0{width}d}"
