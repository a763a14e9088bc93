"""Provider capability shared by every image-generation backend."""

from __future__ import annotations

from abc import ABC, abstractmethod

from pydantic import BaseModel

from tryon_render.types import ProviderImage, Quality, View


class GenerationOptions(BaseModel):
    quality: Quality = Quality.FLASH
    view: View = View.FRONT
    model: str | None = None


class Provider(ABC):
    """Turns a prompt plus reference images into one rendered image.

    Implementations raise only TryOnRenderError subclasses: SDK errors are
    classified at this seam so the retry policy can act on them.
    """

    name: str = "provider"

    @abstractmethod
    def model_for(self, quality: Quality) -> str: ...

    @abstractmethod
    async def generate(
        self,
        prompt: str,
        images: list[bytes],
        options: GenerationOptions,
    ) -> ProviderImage: ...

    async def close(self) -> None:
        return None
