from __future__ import annotations

import json
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any


def canonical_json(obj: Any) -> str:
    # stable serialization for storage and change detection
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=True, default=str)


def new_visitor_id() -> str:
    """High-entropy visitor token (122 random bits)."""
    return str(uuid.uuid4())


@dataclass(slots=True)
class TokenFactory:
    """
    Source of fresh visitor identifiers.
    Tests inject a deterministic `generate`; production uses UUID4.
    """

    generate: Callable[[], str] = new_visitor_id
    _issued: int = field(default=0, init=False, repr=False)

    def next_id(self) -> str:
        self._issued += 1
        return self.generate()

    @property
    def issued(self) -> int:
        return self._issued
