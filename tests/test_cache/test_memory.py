"""Tests for the in-memory metadata store."""

from tryon_render.cache.memory import InMemoryMetadataStore
from tryon_render.cache.stats import CacheWrite

NOW = 1_700_000_000.0
TTL = 14 * 24 * 3600


def _write(render_hash: str = "h1", **overrides) -> CacheWrite:
    fields = {
        "user_id": "u1",
        "render_hash": render_hash,
        "storage_path": f"cache/u1/{render_hash}.webp",
        "source_surface": "studio",
        "quality": "flash",
        "preset": "overlay",
        "view": "front",
        "slot_signature": {"top": "itemA"},
        "model": "m1",
    }
    fields.update(overrides)
    return CacheWrite(**fields)


class TestInMemoryMetadataStore:
    def test_upsert_then_get(self):
        store = InMemoryMetadataStore()
        created = store.upsert(_write(), TTL, NOW)
        assert created.hit_count == 0
        assert created.last_hit_at == NOW
        assert created.expires_at == NOW + TTL

        entry = store.get("u1", "h1", NOW + 1)
        assert entry is not None
        assert entry.id == created.id
        assert entry.slot_signature == {"top": "itemA"}

    def test_get_miss(self):
        assert InMemoryMetadataStore().get("u1", "nope", NOW) is None

    def test_scoped_per_user(self):
        store = InMemoryMetadataStore()
        store.upsert(_write(), TTL, NOW)
        assert store.get("u2", "h1", NOW) is None

    def test_expired_entry_not_returned(self):
        store = InMemoryMetadataStore()
        store.upsert(_write(), 10, NOW)
        assert store.get("u1", "h1", NOW + 9) is not None
        assert store.get("u1", "h1", NOW + 10) is None

    def test_conflict_refreshes_and_keeps_hits(self):
        store = InMemoryMetadataStore()
        first = store.upsert(_write(), TTL, NOW)
        store.increment_hit("u1", "h1", NOW + 5)
        store.increment_hit("u1", "h1", NOW + 6)

        second = store.upsert(_write(model="m2", storage_path="cache/u1/h1.png"), TTL, NOW + 100)
        assert second.id == first.id
        assert second.hit_count == 2
        assert second.model == "m2"
        assert second.storage_path == "cache/u1/h1.png"
        assert second.created_at == NOW
        assert second.updated_at == NOW + 100
        assert second.expires_at == NOW + 100 + TTL
        assert len(store) == 1

    def test_increment_hit(self):
        store = InMemoryMetadataStore()
        store.upsert(_write(), TTL, NOW)
        assert store.increment_hit("u1", "h1", NOW + 42) is True
        entry = store.get("u1", "h1", NOW + 43)
        assert entry.hit_count == 1
        assert entry.last_hit_at == NOW + 42

    def test_increment_hit_missing_is_noop(self):
        store = InMemoryMetadataStore()
        assert store.increment_hit("u1", "ghost", NOW) is False
        assert store.count() == 0

    def test_returned_entries_are_copies(self):
        store = InMemoryMetadataStore()
        store.upsert(_write(), TTL, NOW)
        entry = store.get("u1", "h1", NOW)
        entry.slot_signature["bottom"] = "x"
        assert store.get("u1", "h1", NOW).slot_signature == {"top": "itemA"}

    def test_purge_expired(self):
        store = InMemoryMetadataStore()
        store.upsert(_write("old"), 10, NOW)
        store.upsert(_write("new"), TTL, NOW)
        assert store.purge_expired(NOW + 60) == 1
        assert store.count() == 1
        assert store.get("u1", "new", NOW + 60) is not None
