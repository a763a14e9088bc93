"""Generation orchestrator: gate, hash, cache lookup, single-flight generation."""

from __future__ import annotations

import asyncio
import functools
import logging
from collections.abc import Awaitable, Callable
from enum import StrEnum
from typing import Any

from tryon_render.cache.keys import compute_render_hash
from tryon_render.cache.stats import CacheEntry, CacheWrite
from tryon_render.cache.store import CacheStore
from tryon_render.concurrency.lease import InProcessLeaseRegistry, Lease
from tryon_render.config.schema import RenderConfig
from tryon_render.errors.exceptions import (
    CacheUnavailable,
    ProviderRejected,
    QuotaExceeded,
    ValidationError,
)
from tryon_render.errors.fallback import FallbackChain, should_fall_back
from tryon_render.errors.retry import with_retry
from tryon_render.gate.usage import UsageGate
from tryon_render.providers.base import GenerationOptions, Provider
from tryon_render.providers.prompts import build_render_prompt
from tryon_render.types import (
    GenerationResult,
    ProviderImage,
    RenderAssets,
    RenderRequest,
)

logger = logging.getLogger(__name__)

_MAX_LEASE_ROUNDS = 3


class RenderState(StrEnum):
    GATING = "gating"
    HASHING = "hashing"
    LOOKUP = "lookup"
    HIT_DONE = "hit_done"
    LEASE_ACQUIRE = "lease_acquire"
    GENERATING = "generating"
    PERSISTING = "persisting"
    MISS_DONE = "miss_done"
    TERMINAL = "terminal"


class GenerationOrchestrator:
    """Turns a render request into a cache hit or one deduplicated generation.

    Flow per request::

        GATING -> HASHING -> LOOKUP -> HIT_DONE
                                    -> LEASE_ACQUIRE -> GENERATING -> PERSISTING -> MISS_DONE

    Concurrent identical requests share one provider call: the first caller
    holds the lease for ``(user_id, render_hash)`` and the rest wait for it,
    then read the result from the cache. The leader's work runs in its own
    task, so a cancelled caller still leaves a populated cache and a released
    lease behind.
    """

    def __init__(
        self,
        config: RenderConfig,
        cache_store: CacheStore,
        primary: Provider,
        fallback: Provider | None = None,
        gate: UsageGate | None = None,
        lease_registry: InProcessLeaseRegistry | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._config = config
        self._cache = cache_store
        self._primary = primary
        self._fallback = fallback
        self._gate = gate or UsageGate(None, enabled=False)
        self._leases = lease_registry or InProcessLeaseRegistry()
        self._retry_config = config.retry_config
        self._lease_wait_timeout = config.lease_wait_timeout_seconds
        self._operation_kind = config.operation_kind
        self._sleep = sleep
        self._tasks: set[asyncio.Task[Any]] = set()

    @property
    def cache(self) -> CacheStore:
        return self._cache

    @property
    def leases(self) -> InProcessLeaseRegistry:
        return self._leases

    @property
    def pending_tasks(self) -> int:
        return len(self._tasks)

    async def generate_render(
        self,
        request: RenderRequest | dict[str, Any],
        assets: RenderAssets | None = None,
    ) -> GenerationResult:
        """Return the render for ``request``, generating it at most once.

        Raises QuotaExceeded when the usage gate denies the request,
        ValidationError for malformed input, and ProviderRejected or
        ProviderUnavailable when generation fails. Cache failures never
        fail the request.
        """
        if not isinstance(request, RenderRequest):
            request = RenderRequest.from_payload(request)
        assets = assets or RenderAssets()
        _check_assets(request, assets)

        try:
            self._log_state(RenderState.GATING, request.user_id)
            decision = await self._gate.authorize(request.user_id, self._operation_kind)
            if not decision.allowed:
                reason = decision.reason.value if decision.reason else "usage_guard_unavailable"
                raise QuotaExceeded(
                    f"Usage limit reached for {self._operation_kind.value}: {reason}",
                    reason=reason,
                    retry_after_seconds=decision.retry_after_seconds,
                )

            self._log_state(RenderState.HASHING, request.user_id)
            render_hash = compute_render_hash(request)
            return await self._resolve(request, render_hash, assets)
        finally:
            self._log_state(RenderState.TERMINAL, request.user_id)

    async def drain(self) -> None:
        """Wait for background hit accounting and detached generations."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def aclose(self) -> None:
        await self.drain()
        await self._cache.close()
        await self._primary.close()
        if self._fallback is not None and self._fallback is not self._primary:
            await self._fallback.close()

    async def _resolve(
        self, request: RenderRequest, render_hash: str, assets: RenderAssets
    ) -> GenerationResult:
        key = (request.user_id, render_hash)

        for _ in range(_MAX_LEASE_ROUNDS):
            self._log_state(RenderState.LOOKUP, render_hash)
            entry = await self._cache.lookup(request.user_id, render_hash)
            if entry is not None:
                return self._hit(request, render_hash, entry, assets)

            self._log_state(RenderState.LEASE_ACQUIRE, render_hash)
            lease = self._leases.try_acquire(key)
            if lease is not None:
                logger.info("Generating render %s for %s", render_hash[:12], request.user_id)
                return await self._run_detached(request, render_hash, assets, lease)

            if not await self._leases.wait(key, self._lease_wait_timeout):
                logger.warning(
                    "Lease wait for %s timed out, generating without a lease", render_hash[:12]
                )
                return await self._run_detached(request, render_hash, assets, None)

        logger.warning(
            "Render %s still missing after %d lease rounds, generating without a lease",
            render_hash[:12],
            _MAX_LEASE_ROUNDS,
        )
        return await self._run_detached(request, render_hash, assets, None)

    def _hit(
        self,
        request: RenderRequest,
        render_hash: str,
        entry: CacheEntry,
        assets: RenderAssets,
    ) -> GenerationResult:
        self._log_state(RenderState.HIT_DONE, render_hash)
        self._spawn(self._cache.record_hit(request.user_id, render_hash))
        return GenerationResult(
            render_hash=render_hash,
            model=entry.model,
            slots_used=request.slots,
            face_references_used=_face_refs_used(request, assets),
            cache_hit=True,
            image_url=entry.image_url,
            storage_path=entry.storage_path,
        )

    async def _run_detached(
        self,
        request: RenderRequest,
        render_hash: str,
        assets: RenderAssets,
        lease: Lease | None,
    ) -> GenerationResult:
        task = self._spawn(self._generate_and_persist(request, render_hash, assets, lease))
        return await asyncio.shield(task)

    async def _generate_and_persist(
        self,
        request: RenderRequest,
        render_hash: str,
        assets: RenderAssets,
        lease: Lease | None,
    ) -> GenerationResult:
        try:
            self._log_state(RenderState.GENERATING, render_hash)
            prompt, images = build_render_prompt(request, assets)
            options = GenerationOptions(quality=request.quality, view=request.view)
            image = await self._generate(prompt, images, options)

            self._log_state(RenderState.PERSISTING, render_hash)
            result = await self._persist(request, render_hash, image, assets)
            self._log_state(RenderState.MISS_DONE, render_hash)
            return result
        finally:
            if lease is not None:
                lease.release()

    async def _generate(
        self, prompt: str, images: list[bytes], options: GenerationOptions
    ) -> ProviderImage:
        chain = FallbackChain(self._primary, self._fallback)
        while True:
            provider = chain.current
            try:
                image = await with_retry(
                    functools.partial(provider.generate, prompt, images, options),
                    self._retry_config,
                    provider_name=provider.name,
                    sleep=self._sleep,
                )
            except ProviderRejected as exc:
                if not should_fall_back(exc):
                    raise
                chain.next_provider(exc)
                continue
            if not image.model:
                image = image.model_copy(update={"model": provider.model_for(options.quality)})
            return image

    async def _persist(
        self,
        request: RenderRequest,
        render_hash: str,
        image: ProviderImage,
        assets: RenderAssets,
    ) -> GenerationResult:
        result = GenerationResult(
            render_hash=render_hash,
            model=image.model,
            slots_used=request.slots,
            face_references_used=_face_refs_used(request, assets),
            image_bytes=image.data,
        )
        try:
            storage_path = await self._cache.put_blob(request.user_id, render_hash, image.data)
            entry = await self._cache.upsert(
                CacheWrite(
                    user_id=request.user_id,
                    render_hash=render_hash,
                    storage_path=storage_path,
                    source_surface=request.source_surface,
                    quality=request.quality,
                    preset=request.preset,
                    view=request.view,
                    keep_pose=request.keep_pose,
                    use_face_refs=request.use_face_refs,
                    slot_signature=dict(request.slot_signature),
                    face_refs_signature=request.face_refs_signature,
                    model=image.model,
                )
            )
        except CacheUnavailable as exc:
            logger.warning("Render %s not cached: %s", render_hash[:12], exc)
            return result.model_copy(update={"cache_warning": str(exc)})

        return result.model_copy(
            update={"image_url": entry.image_url, "storage_path": entry.storage_path}
        )

    def _spawn(self, coro: Awaitable[Any]) -> asyncio.Task[Any]:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task[Any]) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.debug("Background render task finished with %s: %s", type(exc).__name__, exc)

    @staticmethod
    def _log_state(state: RenderState, subject: str) -> None:
        logger.debug("[%s] %s", subject[:12], state.value)


def _face_refs_used(request: RenderRequest, assets: RenderAssets) -> int:
    return len(assets.face_references) if request.use_face_refs else 0


def _check_assets(request: RenderRequest, assets: RenderAssets) -> None:
    stray = sorted(set(assets.slot_images) - set(request.slot_signature))
    if stray:
        raise ValidationError(f"Images given for slot(s) not in the request: {', '.join(stray)}")
