"""Shared type aliases for JSON-like payloads."""

from __future__ import annotations

from typing import TypeAlias

JsonValue: TypeAlias = object
JsonObject: TypeAlias = dict[str, JsonValue]
JsonArray: TypeAlias = list[JsonValue]

# Raw submission payload, keyed by opaque field ids plus side-structures.
SubmissionData: TypeAlias = dict[str, JsonValue]
