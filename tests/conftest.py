import asyncio
import io

import pytest
from PIL import Image

from tryon_render.cache.memory import InMemoryMetadataStore
from tryon_render.cache.store import CacheStore
from tryon_render.config.schema import MetadataBackend, RenderConfig
from tryon_render.orchestrator import GenerationOrchestrator
from tryon_render.providers.base import GenerationOptions, Provider
from tryon_render.storage.base import ObjectStorage
from tryon_render.types import ProviderImage, Quality, RenderRequest


@pytest.fixture
def sample_image_bytes():
    """Minimal valid PNG for testing (1x1 white pixel)."""
    import base64
    return base64.b64decode(
        "iVBORw0KGgoAAAANSUhEUgAAAAEAAAABCAYAAAAfFcSJAAAADUlEQVR4"
        "nGP4z8BQDwAEgAF/pooBPQAAAABJRU5ErkJggg=="
    )


@pytest.fixture
def large_image_bytes():
    """2000x1000 PNG, wider than the cache's max side."""
    buf = io.BytesIO()
    Image.new("RGB", (2000, 1000), color=(200, 30, 30)).save(buf, format="PNG")
    return buf.getvalue()


class FakeStorage(ObjectStorage):
    """Dict-backed storage with deterministic URLs."""

    def __init__(self, fail_put: bool = False, fail_sign: bool = False) -> None:
        self.objects: dict[str, tuple[bytes, str]] = {}
        self.fail_put = fail_put
        self.fail_sign = fail_sign
        self.closed = False

    async def put(self, path, data, content_type):
        if self.fail_put:
            raise OSError("bucket unavailable")
        self.objects[path] = (data, content_type)

    async def signed_url(self, path, ttl_seconds):
        if self.fail_sign:
            raise RuntimeError("signing disabled")
        return f"https://cdn.test/signed/{path}?ttl={ttl_seconds}"

    def public_url(self, path):
        return f"https://cdn.test/public/{path}"

    async def close(self):
        self.closed = True


class CountingProvider(Provider):
    """Provider double that counts calls and replays scripted outcomes.

    ``outcomes`` is consumed one per call; an exception instance is raised,
    anything else falls through to returning ``image``. Once exhausted every
    call succeeds.
    """

    def __init__(self, name="fake", image=b"", outcomes=None, delay=0.0, model="fake-model"):
        self.name = name
        self.image = image
        self.outcomes = list(outcomes or [])
        self.delay = delay
        self.model = model
        self.calls = 0
        self.prompts: list[str] = []
        self.images_seen: list[list[bytes]] = []
        self.closed = False

    def model_for(self, quality: Quality) -> str:
        return f"{self.model}-{quality.value}"

    async def generate(self, prompt, images, options: GenerationOptions):
        self.calls += 1
        self.prompts.append(prompt)
        self.images_seen.append(list(images))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.outcomes:
            outcome = self.outcomes.pop(0)
            if isinstance(outcome, BaseException):
                raise outcome
        return ProviderImage(
            data=self.image, mime_type="image/png", model=self.model_for(options.quality)
        )

    async def close(self):
        self.closed = True


async def no_sleep(_seconds):
    return None


class Clock:
    def __init__(self, now=1_700_000_000.0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def fake_storage():
    return FakeStorage()


@pytest.fixture
def metadata_store():
    return InMemoryMetadataStore()


@pytest.fixture
def cache_store(metadata_store, fake_storage, clock):
    return CacheStore(metadata_store, fake_storage, optimize_images=False, clock=clock)


@pytest.fixture
def render_config():
    return RenderConfig(
        metadata_backend=MetadataBackend.MEMORY,
        max_retries=2,
        retry_initial_wait=0.0,
        retry_jitter=0.0,
        provider_timeout_ms=5_000,
        lease_wait_timeout_ms=5_000,
    )


@pytest.fixture
def provider(sample_image_bytes):
    return CountingProvider(name="primary", image=sample_image_bytes)


@pytest.fixture
def make_orchestrator(render_config, cache_store, provider):
    def _make(**kwargs):
        kwargs.setdefault("config", render_config)
        kwargs.setdefault("cache_store", cache_store)
        kwargs.setdefault("primary", provider)
        kwargs.setdefault("sleep", no_sleep)
        return GenerationOrchestrator(**kwargs)

    return _make


@pytest.fixture
def overlay_request():
    return RenderRequest(
        user_id="u1",
        preset="overlay",
        view="front",
        quality="flash",
        slot_signature={"top": "itemA"},
    )


@pytest.fixture
def isolated_config(tmp_path, monkeypatch):
    """Run with no config files and none of the recognised env vars set."""
    from tryon_render.config import hierarchy

    for env_key in hierarchy._ENV_MAP:
        monkeypatch.delenv(env_key, raising=False)
    monkeypatch.delenv("TRYON_CONFIG", raising=False)
    monkeypatch.setattr(hierarchy, "_GLOBAL_CONFIG_PATH", tmp_path / "home" / "config.yaml")
    workdir = tmp_path / "work"
    workdir.mkdir()
    monkeypatch.chdir(workdir)
    return workdir
