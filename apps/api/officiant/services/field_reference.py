"""Typed references to submission fields."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class ReferenceKind(str, Enum):
    """How a rule author referred to a field."""

    ANY = "any"  # plain name; every strategy applies
    IDENTIFIER = "identifier"
    STABLE_ID = "stable_id"
    LABEL = "label"


@dataclass(frozen=True)
class FieldReference:
    value: str
    kind: ReferenceKind = ReferenceKind.ANY

    @classmethod
    def of(cls, value: "str | FieldReference") -> "FieldReference":
        if isinstance(value, FieldReference):
            return value
        return cls(str(value))

    @property
    def cache_key(self) -> str:
        return f"{self.kind.value}:{self.value}"

    def __str__(self) -> str:
        return self.value


class _Missing:
    """Sentinel for 'no field found', distinct from a present ``None`` value."""

    _instance: "_Missing | None" = None

    def __new__(cls) -> "_Missing":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __bool__(self) -> bool:
        return False

    def __repr__(self) -> str:
        return "MISSING"


MISSING = _Missing()


def is_missing(value: object) -> bool:
    return value is MISSING
