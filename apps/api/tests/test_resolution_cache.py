"""Tests for the resolution TTL caches."""

from officiant.services.definitions import FieldDefinition
from officiant.services.field_reference import MISSING
from officiant.services.resolution_cache import ResolutionCache
from support import FakeClock


def test_entries_expire_after_ttl():
    clock = FakeClock()
    cache = ResolutionCache(ttl=300, clock=clock)
    fields = (FieldDefinition(id="f1"),)
    cache.set_fields("form-1", fields)

    clock.advance(299)
    assert cache.get_fields("form-1") == fields

    clock.advance(1)
    assert cache.get_fields("form-1") is None


def test_each_entry_has_its_own_timestamp():
    clock = FakeClock()
    cache = ResolutionCache(ttl=10, clock=clock)
    cache.set_mapping("form-1", {"email": "f1"})
    clock.advance(6)
    cache.set_mapping("form-2", {"email": "f9"})
    clock.advance(5)

    assert cache.get_mapping("form-1") is None
    assert cache.get_mapping("form-2") == {"email": "f9"}


def test_negative_results_are_cache_hits():
    cache = ResolutionCache(ttl=10, clock=FakeClock())
    cache.set_value("form-1", "sub", "any:status", MISSING)

    assert cache.get_value("form-1", "sub", "any:status") == (True, MISSING)
    assert cache.get_value("form-1", "sub", "any:other") == (False, None)


def test_invalidate_single_form():
    cache = ResolutionCache(ttl=10, clock=FakeClock())
    for form_id in ("form-1", "form-2"):
        cache.set_fields(form_id, ())
        cache.set_mapping(form_id, {})
        cache.set_value(form_id, "sub", "any:x", 1)

    cache.invalidate("form-1")

    assert cache.get_fields("form-1") is None
    assert cache.get_value("form-1", "sub", "any:x") == (False, None)
    assert cache.get_fields("form-2") == ()
    assert cache.stats() == {"fields": 1, "mappings": 1, "values": 1}


def test_invalidate_everything():
    cache = ResolutionCache(ttl=10, clock=FakeClock())
    cache.set_fields("form-1", ())
    cache.set_value("form-2", "sub", "any:x", 1)

    cache.invalidate()

    assert cache.stats() == {"fields": 0, "mappings": 0, "values": 0}


def test_writes_sweep_expired_values():
    clock = FakeClock()
    cache = ResolutionCache(ttl=300, clock=clock)
    for n in range(100):
        cache.set_value("form-1", f"sub-{n}", "any:email", n)
    clock.advance(100)
    cache.set_value("form-1", "sub-fresh", "any:email", "kept")

    clock.advance(250)
    cache.set_value("form-1", "sub-new", "any:email", "new")

    assert cache.stats()["values"] == 2
    assert cache.get_value("form-1", "sub-fresh", "any:email") == (True, "kept")


def test_explicit_sweep_drops_every_expired_entry():
    clock = FakeClock()
    cache = ResolutionCache(ttl=10, clock=clock)
    cache.set_fields("form-1", ())
    cache.set_mapping("form-1", {})
    cache.set_value("form-1", "sub", "any:x", 1)
    clock.advance(10)

    assert cache.sweep() == 3
    assert cache.stats() == {"fields": 0, "mappings": 0, "values": 0}
