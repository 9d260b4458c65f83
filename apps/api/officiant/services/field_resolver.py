"""
Field identity resolution.

Submission payloads are keyed by field ids generated when a form is built,
while rules and templates refer to fields by stable id, label or a common
name. ``FieldResolver`` maps such a reference to the submitted value by
trying an ordered chain of strategies and stopping at the first hit.
Misses are cached too, so repeated lookups within the TTL stay cheap.
"""

from __future__ import annotations

import hashlib
import json
import logging
import re
import secrets
import time
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Protocol

import anyio

from officiant.services.definitions import FieldDefinition, FormDefinition
from officiant.services.field_reference import MISSING, FieldReference, ReferenceKind
from officiant.services.resolution_cache import ResolutionCache
from officiant.types import SubmissionData

logger = logging.getLogger(__name__)

MAPPED_FIELDS_KEY = "__mappedFields"
SECTION_INFO_KEY = "__sectionInfo"

_ALL_KINDS = frozenset(ReferenceKind)

COMMON_ALIASES: dict[str, tuple[str, ...]] = {
    "firstName": ("first_name", "firstname", "fname", "first-name", "givenName"),
    "lastName": ("last_name", "lastname", "lname", "last-name", "familyName", "surname"),
    "email": ("email", "emailAddress", "email_address", "email-address"),
}

# Normalized reference -> canonical alias group.
_ALIAS_TRIGGERS = {
    "firstname": "firstName",
    "fname": "firstName",
    "lastname": "lastName",
    "lname": "lastName",
    "email": "email",
    "emailaddress": "email",
}


class FormSource(Protocol):
    async def get_form(self, form_id: str) -> FormDefinition | None: ...


def camel_case(label: str) -> str:
    """'First Name' -> 'firstName'."""
    return re.sub(r"[^a-z0-9]+(.)", lambda m: m.group(1).upper(), label.strip().lower())


def submission_key(data: SubmissionData) -> str:
    """Stable fingerprint of a payload, used to scope cached values to one submission."""
    encoded = json.dumps(data, sort_keys=True, default=str).encode("utf-8")
    return hashlib.sha256(encoded).hexdigest()[:32]


def index_stable_ids(fields: Iterable[FieldDefinition]) -> dict[str, str]:
    mapping: dict[str, str] = {}
    for f in fields:
        # First field wins when stable ids collide.
        if f.stable_id and f.stable_id not in mapping:
            mapping[f.stable_id] = f.id
    return mapping


def _user_keys(data: SubmissionData) -> Iterable[str]:
    return (key for key in data if not key.startswith("__"))


@dataclass
class ResolutionContext:
    form_id: str
    reference: FieldReference
    data: SubmissionData
    load_fields: Callable[[], Awaitable[tuple[FieldDefinition, ...]]]
    load_mapping: Callable[[], Awaitable[dict[str, str]]]
    now_ms: Callable[[], int] = field(default=lambda: int(time.time() * 1000))

    @property
    def name(self) -> str:
        return self.reference.value

    def value_of(self, field_id: str) -> Any:
        if field_id in self.data:
            return self.data[field_id]
        return MISSING


class ResolutionStrategy(Protocol):
    name: str
    kinds: frozenset[ReferenceKind]

    async def lookup(self, ctx: ResolutionContext) -> Any:
        """Return the value, or ``MISSING``."""
        ...


class SpecialVariableStrategy:
    """Computed values: timestamp, leadId and trackingToken."""

    name = "special"
    kinds = frozenset({ReferenceKind.ANY, ReferenceKind.STABLE_ID})

    async def lookup(self, ctx: ResolutionContext) -> Any:
        key = ctx.name.lower()
        if key in ("timestamp", "time_stamp"):
            return str(ctx.now_ms())
        if key in ("leadid", "lead_id"):
            lead_id = derive_lead_id(ctx.data)
            return lead_id if lead_id else MISSING
        if key in ("trackingtoken", "tracking_token"):
            return derive_tracking_token(ctx.data, ctx.form_id, ctx.now_ms())
        return MISSING


def derive_lead_id(data: SubmissionData) -> str | None:
    for key in ("id", "leadId", "lead_id", "submissionId"):
        value = data.get(key)
        if value:
            return str(value)
    token = data.get("trackingToken") or data.get("tracking_token")
    if isinstance(token, str) and "-" in token:
        lead_id, _, _ = token.rpartition("-")
        return lead_id or None
    return None


def derive_tracking_token(data: SubmissionData, form_id: str, now_ms: int) -> str:
    existing = data.get("trackingToken") or data.get("tracking_token")
    if existing:
        return str(existing)
    lead_id = derive_lead_id(data) or f"lead-{str(form_id)[:8]}-{secrets.token_hex(3)}"
    return f"{lead_id}-{now_ms}"


class MappedFieldsStrategy:
    """Match ``__mappedFields`` entries by display key, case-insensitively."""

    name = "mapped_fields"
    kinds = frozenset({ReferenceKind.ANY, ReferenceKind.STABLE_ID, ReferenceKind.LABEL})

    async def lookup(self, ctx: ResolutionContext) -> Any:
        mapped = ctx.data.get(MAPPED_FIELDS_KEY)
        if not isinstance(mapped, dict):
            return MISSING
        wanted = ctx.name.lower()
        for entry in mapped.values():
            if not isinstance(entry, dict):
                continue
            display_key = entry.get("displayKey")
            if isinstance(display_key, str) and display_key.lower() == wanted:
                return entry.get("value")
        return MISSING


class DirectKeyStrategy:
    name = "direct"
    kinds = frozenset({ReferenceKind.ANY, ReferenceKind.IDENTIFIER, ReferenceKind.STABLE_ID})

    async def lookup(self, ctx: ResolutionContext) -> Any:
        if ctx.name.startswith("__"):
            return MISSING
        return ctx.value_of(ctx.name)


class StableIdMappingStrategy:
    """Cached stable id -> field id index for the form."""

    name = "stable_id_mapping"
    kinds = frozenset({ReferenceKind.ANY, ReferenceKind.STABLE_ID})

    async def lookup(self, ctx: ResolutionContext) -> Any:
        mapping = await ctx.load_mapping()
        field_id = mapping.get(ctx.name)
        if field_id is None:
            return MISSING
        return ctx.value_of(field_id)


class FieldScanStrategy:
    """Scan the form's fields by stable id, then mapping key, then label."""

    name = "field_scan"
    kinds = frozenset({ReferenceKind.ANY, ReferenceKind.STABLE_ID, ReferenceKind.LABEL})

    async def lookup(self, ctx: ResolutionContext) -> Any:
        fields = await ctx.load_fields()
        if not fields:
            return MISSING
        name = ctx.name
        lowered = name.lower()
        kind = ctx.reference.kind

        if kind is not ReferenceKind.LABEL:
            for candidate in fields:
                if candidate.stable_id == name:
                    value = ctx.value_of(candidate.id)
                    if value is not MISSING:
                        return value
            for candidate in fields:
                key = candidate.mapping_key
                if key and key.lower() == lowered:
                    value = ctx.value_of(candidate.id)
                    if value is not MISSING:
                        return value

        if kind is not ReferenceKind.STABLE_ID:
            for candidate in fields:
                if not candidate.label:
                    continue
                label = candidate.label.strip()
                if label.lower() == lowered or camel_case(label).lower() == lowered:
                    value = ctx.value_of(candidate.id)
                    if value is not MISSING:
                        return value
        return MISSING


class CommonAliasStrategy:
    """Well-known spellings of firstName, lastName and email."""

    name = "common_alias"
    kinds = frozenset({ReferenceKind.ANY, ReferenceKind.STABLE_ID, ReferenceKind.LABEL})

    async def lookup(self, ctx: ResolutionContext) -> Any:
        normalized = re.sub(r"[\s_-]+", "", ctx.name).lower()
        group = _ALIAS_TRIGGERS.get(normalized)
        if group is None:
            return MISSING
        aliases = (group, *COMMON_ALIASES[group])
        for alias in aliases:
            value = ctx.value_of(alias)
            if value is not MISSING:
                return value
        lowered = {alias.lower() for alias in aliases}
        for key in _user_keys(ctx.data):
            if key.lower() in lowered:
                return ctx.data[key]
        return MISSING


class SubstringStrategy:
    """Last resort: first key whose name contains the reference."""

    name = "substring"
    kinds = frozenset({ReferenceKind.ANY, ReferenceKind.LABEL})

    async def lookup(self, ctx: ResolutionContext) -> Any:
        wanted = ctx.name.lower()
        if not wanted:
            return MISSING
        for key in _user_keys(ctx.data):
            if wanted in key.lower():
                return ctx.data[key]
        return MISSING


DEFAULT_STRATEGIES: tuple[ResolutionStrategy, ...] = (
    SpecialVariableStrategy(),
    MappedFieldsStrategy(),
    DirectKeyStrategy(),
    StableIdMappingStrategy(),
    FieldScanStrategy(),
    CommonAliasStrategy(),
    SubstringStrategy(),
)


class FieldResolver:
    """Resolve field references against a submission through the strategy chain."""

    def __init__(
        self,
        forms: FormSource,
        cache: ResolutionCache | None = None,
        strategies: Iterable[ResolutionStrategy] | None = None,
        now_ms: Callable[[], int] | None = None,
    ) -> None:
        self.forms = forms
        self.cache = cache or ResolutionCache()
        self.strategies = tuple(strategies) if strategies is not None else DEFAULT_STRATEGIES
        self._now_ms = now_ms or (lambda: int(time.time() * 1000))
        self._form_locks: dict[str, anyio.Lock] = {}

    async def resolve(
        self,
        form_id: str,
        reference: str | FieldReference,
        data: SubmissionData,
    ) -> Any:
        """Return the submitted value for ``reference``, or ``MISSING``."""
        form_id = str(form_id)
        ref = FieldReference.of(reference)
        sub_key = submission_key(data)

        hit, cached = self.cache.get_value(form_id, sub_key, ref.cache_key)
        if hit:
            return cached

        ctx = ResolutionContext(
            form_id=form_id,
            reference=ref,
            data=data,
            load_fields=lambda: self.load_fields(form_id),
            load_mapping=lambda: self.load_mapping(form_id),
            now_ms=self._now_ms,
        )
        value = MISSING
        for strategy in self.strategies:
            if ref.kind not in strategy.kinds:
                continue
            value = await strategy.lookup(ctx)
            if value is not MISSING:
                logger.debug("Resolved %s via %s", ref.value, strategy.name)
                break
        else:
            logger.debug("No field found for %s on form %s", ref.value, form_id)

        self.cache.set_value(form_id, sub_key, ref.cache_key, value)
        return value

    async def resolve_first(
        self,
        form_id: str,
        references: Iterable[str | FieldReference],
        data: SubmissionData,
    ) -> Any:
        """Try each reference in order; first hit wins."""
        for reference in references:
            value = await self.resolve(form_id, reference, data)
            if value is not MISSING:
                return value
        return MISSING

    async def resolve_many(
        self,
        form_id: str,
        references: Iterable[str | FieldReference],
        data: SubmissionData,
    ) -> dict[str, Any]:
        """Resolve each distinct reference once; keyed by ``FieldReference.cache_key``."""
        results: dict[str, Any] = {}
        for reference in references:
            ref = FieldReference.of(reference)
            if ref.cache_key in results:
                continue
            results[ref.cache_key] = await self.resolve(form_id, ref, data)
        return results

    async def load_fields(self, form_id: str) -> tuple[FieldDefinition, ...]:
        cached = self.cache.get_fields(form_id)
        if cached is not None:
            return cached
        lock = self._form_locks.setdefault(form_id, anyio.Lock())
        try:
            async with lock:
                cached = self.cache.get_fields(form_id)
                if cached is not None:
                    return cached
                try:
                    form = await self.forms.get_form(form_id)
                except Exception:
                    logger.exception("Failed to load fields for form %s", form_id)
                    return ()
                fields = form.fields if form else ()
                self.cache.set_fields(form_id, fields)
                self.cache.set_mapping(form_id, index_stable_ids(fields))
                return fields
        finally:
            # Locks only live while a load is in flight or queued.
            if (
                not lock.locked()
                and not lock.statistics().tasks_waiting
                and self._form_locks.get(form_id) is lock
            ):
                del self._form_locks[form_id]

    async def load_mapping(self, form_id: str) -> dict[str, str]:
        cached = self.cache.get_mapping(form_id)
        if cached is not None:
            return cached
        mapping = index_stable_ids(await self.load_fields(form_id))
        self.cache.set_mapping(form_id, mapping)
        return mapping

    def invalidate(self, form_id: str | None = None) -> None:
        self.cache.invalidate(form_id)
