"""Tests for the generation orchestrator."""

import asyncio
import logging

import pytest

from conftest import Clock, CountingProvider, FakeStorage, no_sleep
from tryon_render.cache.keys import compute_render_hash
from tryon_render.cache.memory import InMemoryMetadataStore
from tryon_render.cache.store import CacheStore
from tryon_render.concurrency.lease import InProcessLeaseRegistry
from tryon_render.errors.exceptions import (
    ProviderRejected,
    ProviderServerError,
    ProviderUnavailable,
    QuotaExceeded,
    ValidationError,
)
from tryon_render.gate.usage import InMemoryUsageLedger, UsageGate
from tryon_render.orchestrator import GenerationOrchestrator, RenderState
from tryon_render.types import OperationKind, RenderAssets, RenderRequest


class SpyCacheStore(CacheStore):
    """CacheStore that records which operations ran."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.lookups = 0
        self.hits_recorded = 0

    async def lookup(self, user_id, render_hash):
        self.lookups += 1
        return await super().lookup(user_id, render_hash)

    async def record_hit(self, user_id, render_hash):
        self.hits_recorded += 1
        await super().record_hit(user_id, render_hash)


@pytest.fixture
def spy_store(clock):
    return SpyCacheStore(InMemoryMetadataStore(), FakeStorage(), optimize_images=False, clock=clock)


class TestCacheMiss:
    async def test_generates_and_persists(self, make_orchestrator, provider, overlay_request):
        orchestrator = make_orchestrator()
        result = await orchestrator.generate_render(overlay_request)

        assert provider.calls == 1
        assert not result.cache_hit
        assert result.render_hash == compute_render_hash(overlay_request)
        assert result.model == "fake-model-flash"
        assert result.slots_used == ["top"]
        assert result.storage_path == f"cache/u1/{result.render_hash}.png"
        assert result.image_url.startswith("https://cdn.test/signed/")
        assert result.result_image == result.image_url
        assert result.image_bytes is not None
        assert result.cache_warning is None

    async def test_accepts_payload_dict(self, make_orchestrator, provider):
        orchestrator = make_orchestrator()
        result = await orchestrator.generate_render(
            {"user_id": "u1", "preset": "overlay", "slot_signature": {"top": "itemA"}}
        )
        assert provider.calls == 1
        assert result.slots_used == ["top"]

    async def test_invalid_payload(self, make_orchestrator, provider):
        with pytest.raises(ValidationError):
            await make_orchestrator().generate_render(
                {"user_id": "u1", "preset": "overlay", "slot_signature": {"hat": "x"}}
            )
        assert provider.calls == 0

    async def test_assets_for_unknown_slot_rejected(self, make_orchestrator, overlay_request):
        assets = RenderAssets(slot_images={"shoes": b"x"})
        with pytest.raises(ValidationError):
            await make_orchestrator().generate_render(overlay_request, assets)

    async def test_assets_reach_provider(self, make_orchestrator, provider, overlay_request):
        assets = RenderAssets(
            base_image=b"person", slot_images={"top": b"shirt"}, face_references=[b"face"]
        )
        result = await make_orchestrator().generate_render(overlay_request, assets)
        assert provider.images_seen[0] == [b"person", b"shirt", b"face"]
        assert result.face_references_used == 1
        assert "- top" in provider.prompts[0]

    async def test_slots_in_canonical_order(self, make_orchestrator):
        request = RenderRequest(
            user_id="u1",
            preset="studio",
            slot_signature={"shoes": "s", "outerwear": "o", "top": "t"},
        )
        result = await make_orchestrator().generate_render(request)
        assert result.slots_used == ["top", "outerwear", "shoes"]


class TestCacheHit:
    async def test_hit_skips_provider(self, make_orchestrator, spy_store, provider, overlay_request):
        orchestrator = make_orchestrator(cache_store=spy_store)
        first = await orchestrator.generate_render(overlay_request)
        second = await orchestrator.generate_render(overlay_request)
        await orchestrator.drain()

        assert provider.calls == 1
        assert spy_store.hits_recorded == 1
        assert second.cache_hit
        assert second.image_url == first.image_url
        assert second.image_bytes is None
        assert second.model == first.model

    async def test_hit_count_accumulates(self, make_orchestrator, cache_store, overlay_request):
        orchestrator = make_orchestrator()
        await orchestrator.generate_render(overlay_request)
        for _ in range(3):
            await orchestrator.generate_render(overlay_request)
        await orchestrator.drain()
        entry = await cache_store.lookup("u1", compute_render_hash(overlay_request))
        assert entry.hit_count == 3

    async def test_different_users_do_not_share(self, make_orchestrator, provider):
        orchestrator = make_orchestrator()
        for user in ("u1", "u2"):
            await orchestrator.generate_render(
                RenderRequest(user_id=user, preset="overlay", slot_signature={"top": "itemA"})
            )
        assert provider.calls == 2

    async def test_expired_entry_regenerates(self, render_config, provider, overlay_request):
        clock = Clock()
        store = CacheStore(
            InMemoryMetadataStore(), FakeStorage(), ttl_days=1, optimize_images=False, clock=clock
        )
        orchestrator = GenerationOrchestrator(render_config, store, provider, sleep=no_sleep)
        await orchestrator.generate_render(overlay_request)
        clock.advance(24 * 3600 + 1)
        result = await orchestrator.generate_render(overlay_request)
        assert provider.calls == 2
        assert not result.cache_hit


class TestEndToEnd:
    async def test_first_miss_then_hit(self, make_orchestrator, cache_store, provider):
        request = RenderRequest(
            user_id="u1",
            preset="overlay",
            slot_signature={"top": "itemA"},
            view="front",
            quality="flash",
        )
        orchestrator = make_orchestrator()

        first = await orchestrator.generate_render(request)
        entry = await cache_store.lookup("u1", first.render_hash)
        assert entry.hit_count == 0

        second = await orchestrator.generate_render(request)
        await orchestrator.drain()
        entry = await cache_store.lookup("u1", first.render_hash)

        assert second.cache_hit
        assert second.image_url == first.image_url
        assert entry.hit_count == 1
        assert provider.calls == 1


class TestSingleFlight:
    async def test_concurrent_identical_requests_share_one_call(
        self, make_orchestrator, sample_image_bytes, overlay_request
    ):
        slow = CountingProvider(name="slow", image=sample_image_bytes, delay=0.05)
        orchestrator = make_orchestrator(primary=slow)

        results = await asyncio.gather(
            *(orchestrator.generate_render(overlay_request) for _ in range(10))
        )
        await orchestrator.drain()

        assert slow.calls == 1
        assert len({r.image_url for r in results}) == 1
        assert sum(not r.cache_hit for r in results) == 1
        assert len(orchestrator.leases) == 0

    async def test_different_hashes_run_in_parallel(self, make_orchestrator, sample_image_bytes):
        slow = CountingProvider(name="slow", image=sample_image_bytes, delay=0.05)
        orchestrator = make_orchestrator(primary=slow)
        requests = [
            RenderRequest(user_id="u1", preset="overlay", slot_signature={"top": f"item{i}"})
            for i in range(5)
        ]
        await asyncio.gather(*(orchestrator.generate_render(r) for r in requests))
        assert slow.calls == 5

    async def test_waiters_take_over_after_leader_failure(
        self, make_orchestrator, sample_image_bytes, overlay_request
    ):
        flaky = CountingProvider(
            name="flaky",
            image=sample_image_bytes,
            delay=0.02,
            outcomes=[ProviderRejected("policy", error_type="content_policy")],
        )
        orchestrator = make_orchestrator(primary=flaky)

        results = await asyncio.gather(
            orchestrator.generate_render(overlay_request),
            orchestrator.generate_render(overlay_request),
            return_exceptions=True,
        )
        assert isinstance(results[0], ProviderRejected)
        assert not isinstance(results[1], Exception)
        assert flaky.calls == 2

    async def test_wait_timeout_generates_without_lease(
        self, render_config, cache_store, provider, overlay_request
    ):
        leases = InProcessLeaseRegistry()
        config = render_config.model_copy(update={"lease_wait_timeout_ms": 10})
        orchestrator = GenerationOrchestrator(
            config, cache_store, provider, lease_registry=leases, sleep=no_sleep
        )
        stuck = leases.try_acquire(("u1", compute_render_hash(overlay_request)))

        result = await orchestrator.generate_render(overlay_request)
        assert provider.calls == 1
        assert not result.cache_hit
        assert not stuck.released

    async def test_lease_released_after_failure(self, make_orchestrator, overlay_request):
        failing = CountingProvider(
            name="failing", outcomes=[ProviderRejected("no", error_type="bad_input")]
        )
        orchestrator = make_orchestrator(primary=failing)
        with pytest.raises(ProviderRejected):
            await orchestrator.generate_render(overlay_request)
        assert len(orchestrator.leases) == 0

    async def test_cancelled_caller_still_populates_cache(
        self, make_orchestrator, cache_store, sample_image_bytes, overlay_request
    ):
        slow = CountingProvider(name="slow", image=sample_image_bytes, delay=0.05)
        orchestrator = make_orchestrator(primary=slow)

        caller = asyncio.create_task(orchestrator.generate_render(overlay_request))
        await asyncio.sleep(0.01)
        caller.cancel()
        with pytest.raises(asyncio.CancelledError):
            await caller

        await orchestrator.drain()
        assert len(orchestrator.leases) == 0
        assert await cache_store.lookup("u1", compute_render_hash(overlay_request)) is not None

        again = await orchestrator.generate_render(overlay_request)
        assert again.cache_hit
        await orchestrator.drain()
        assert slow.calls == 1


class TestRetryAndFallback:
    async def test_retry_bound(self, make_orchestrator, render_config, overlay_request):
        always_down = CountingProvider(
            name="down", outcomes=[ProviderServerError("503")] * 10
        )
        orchestrator = make_orchestrator(primary=always_down)
        with pytest.raises(ProviderUnavailable):
            await orchestrator.generate_render(overlay_request)
        assert always_down.calls == render_config.max_retries + 1

    async def test_transient_then_success(self, make_orchestrator, sample_image_bytes, overlay_request):
        flaky = CountingProvider(
            name="flaky", image=sample_image_bytes, outcomes=[ProviderServerError("503")]
        )
        result = await make_orchestrator(primary=flaky).generate_render(overlay_request)
        assert flaky.calls == 2
        assert not result.cache_hit

    async def test_fatal_short_circuit(self, make_orchestrator, overlay_request):
        blocked = CountingProvider(
            name="blocked", outcomes=[ProviderRejected("unsafe", error_type="content_policy")]
        )
        fallback = CountingProvider(name="backup")
        orchestrator = make_orchestrator(primary=blocked, fallback=fallback)
        with pytest.raises(ProviderRejected):
            await orchestrator.generate_render(overlay_request)
        assert blocked.calls == 1
        assert fallback.calls == 0

    async def test_account_rejection_falls_back(
        self, make_orchestrator, sample_image_bytes, overlay_request
    ):
        unverified = CountingProvider(
            name="gemini",
            outcomes=[ProviderRejected("verify org", error_type="account_verification",
                                       account_state=True)],
        )
        backup = CountingProvider(name="openai", image=sample_image_bytes, model="gpt-image-1")
        orchestrator = make_orchestrator(primary=unverified, fallback=backup)

        result = await orchestrator.generate_render(overlay_request)
        assert unverified.calls == 1
        assert backup.calls == 1
        assert result.model == "gpt-image-1-flash"
        assert backup.prompts[0] == unverified.prompts[0]

    async def test_account_rejection_without_fallback(self, make_orchestrator, overlay_request):
        unverified = CountingProvider(
            name="gemini", outcomes=[ProviderRejected("verify", account_state=True)]
        )
        with pytest.raises(ProviderRejected):
            await make_orchestrator(primary=unverified).generate_render(overlay_request)

    async def test_unavailable_does_not_fall_back(self, make_orchestrator, overlay_request):
        down = CountingProvider(name="gemini", outcomes=[ProviderServerError("503")] * 10)
        backup = CountingProvider(name="openai")
        with pytest.raises(ProviderUnavailable):
            await make_orchestrator(primary=down, fallback=backup).generate_render(overlay_request)
        assert backup.calls == 0


    async def test_unclassified_provider_error_is_typed(self, make_orchestrator, overlay_request):
        broken = CountingProvider(name="gemini", outcomes=[RuntimeError("sdk parse failed")])
        backup = CountingProvider(name="openai")
        orchestrator = make_orchestrator(primary=broken, fallback=backup)

        with pytest.raises(ProviderRejected) as exc_info:
            await orchestrator.generate_render(overlay_request)

        assert exc_info.value.error_type == "unknown"
        assert isinstance(exc_info.value.__cause__, RuntimeError)
        assert broken.calls == 1
        assert backup.calls == 0
        assert len(orchestrator.leases) == 0


class TestGate:
    async def test_denial_short_circuits(self, make_orchestrator, spy_store, provider,
                                         overlay_request, monkeypatch):
        hashed = []
        import tryon_render.orchestrator as orchestrator_module

        original = orchestrator_module.compute_render_hash
        monkeypatch.setattr(
            orchestrator_module,
            "compute_render_hash",
            lambda request: hashed.append(request) or original(request),
        )
        gate = UsageGate(InMemoryUsageLedger(balances={"u1": 0}))
        orchestrator = make_orchestrator(cache_store=spy_store, gate=gate)

        with pytest.raises(QuotaExceeded) as exc_info:
            await orchestrator.generate_render(overlay_request)
        assert exc_info.value.reason == "insufficient_credits"
        assert hashed == []
        assert spy_store.lookups == 0
        assert provider.calls == 0

    async def test_daily_limit_reports_retry_after(self, make_orchestrator, overlay_request):
        ledger = InMemoryUsageLedger()
        orchestrator = make_orchestrator(gate=UsageGate(ledger))
        for _ in range(10):
            await orchestrator.generate_render(overlay_request)
        with pytest.raises(QuotaExceeded) as exc_info:
            await orchestrator.generate_render(overlay_request)
        assert exc_info.value.reason == "daily_request_limit"
        assert exc_info.value.retry_after_seconds > 0
        await orchestrator.drain()

    async def test_hit_consumes_no_credits(self, make_orchestrator, overlay_request):
        ledger = InMemoryUsageLedger()
        orchestrator = make_orchestrator(gate=UsageGate(ledger))
        await orchestrator.generate_render(overlay_request)
        await orchestrator.generate_render(overlay_request)
        await orchestrator.drain()
        usage = ledger.usage_today("u1", OperationKind.VIRTUAL_TRY_ON)
        assert usage.credits == 0

    async def test_fail_closed_ledger(self, make_orchestrator, provider, overlay_request):
        class Broken(InMemoryUsageLedger):
            async def authorize(self, user_id, kind, expected_credits):
                raise ConnectionError("down")

        orchestrator = make_orchestrator(gate=UsageGate(Broken(), fail_open=False))
        with pytest.raises(QuotaExceeded) as exc_info:
            await orchestrator.generate_render(overlay_request)
        assert exc_info.value.reason == "usage_guard_unavailable"
        assert provider.calls == 0


class TestCacheFailures:
    async def test_persist_failure_is_soft(self, render_config, provider, overlay_request, clock):
        store = CacheStore(
            InMemoryMetadataStore(), FakeStorage(fail_put=True), optimize_images=False, clock=clock
        )
        orchestrator = GenerationOrchestrator(render_config, store, provider, sleep=no_sleep)
        result = await orchestrator.generate_render(overlay_request)

        assert result.cache_warning is not None
        assert result.image_url is None
        assert result.result_image == result.image_bytes
        assert len(orchestrator.leases) == 0

    async def test_lookup_failure_degrades_to_generation(
        self, render_config, provider, overlay_request, clock
    ):
        class FlakyMetadata(InMemoryMetadataStore):
            def get(self, user_id, render_hash, now):
                raise RuntimeError("connection reset")

        store = CacheStore(FlakyMetadata(), FakeStorage(), optimize_images=False, clock=clock)
        orchestrator = GenerationOrchestrator(render_config, store, provider, sleep=no_sleep)
        result = await orchestrator.generate_render(overlay_request)
        assert provider.calls == 1
        assert result.image_url is not None


class TestLifecycle:
    async def test_aclose_closes_collaborators(self, render_config, fake_storage, clock,
                                               overlay_request, sample_image_bytes):
        store = CacheStore(InMemoryMetadataStore(), fake_storage, optimize_images=False, clock=clock)
        primary = CountingProvider("a", image=sample_image_bytes)
        fallback = CountingProvider("b")
        orchestrator = GenerationOrchestrator(render_config, store, primary, fallback,
                                              sleep=no_sleep)
        await orchestrator.generate_render(overlay_request)
        await orchestrator.generate_render(overlay_request)
        await orchestrator.aclose()

        assert orchestrator.pending_tasks == 0
        assert fake_storage.closed
        assert primary.closed and fallback.closed

    async def test_state_transitions_logged(self, make_orchestrator, overlay_request, caplog):
        with caplog.at_level(logging.DEBUG, logger="tryon_render.orchestrator"):
            await make_orchestrator().generate_render(overlay_request)
        logged = caplog.text
        for state in (
            RenderState.GATING,
            RenderState.HASHING,
            RenderState.LOOKUP,
            RenderState.LEASE_ACQUIRE,
            RenderState.GENERATING,
            RenderState.PERSISTING,
            RenderState.MISS_DONE,
            RenderState.TERMINAL,
        ):
            assert state.value in logged
