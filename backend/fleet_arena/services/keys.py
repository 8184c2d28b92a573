"""Round-robin rotation over a pool of upstream credentials."""

from __future__ import annotations

import itertools
from typing import Iterable, Optional

from pydantic import SecretStr


class MissingCredentialsError(RuntimeError):
    pass


class KeyRing:
    """Hand out keys from a fixed pool in rotation.

    ``next(itertools.count())`` is atomic under the GIL, so one instance can be
    shared by every concurrent upstream call without a lock.
    """

    def __init__(self, keys: Iterable[str]) -> None:
        self._keys = tuple(key.strip() for key in keys if key and key.strip())
        self._counter = itertools.count()

    @classmethod
    def from_secret(cls, secret: Optional[SecretStr]) -> "KeyRing":
        raw = secret.get_secret_value() if secret else ""
        return cls(raw.split(","))

    def __len__(self) -> int:
        return len(self._keys)

    def next_key(self) -> str:
        if not self._keys:
            raise MissingCredentialsError("OPENROUTER_API_KEY is not configured")
        return self._keys[next(self._counter) % len(self._keys)]
