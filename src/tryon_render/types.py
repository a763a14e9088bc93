"""Shared Pydantic models for tryon-render."""

from __future__ import annotations

from enum import StrEnum
from typing import Any

import pydantic
from pydantic import BaseModel, Field, field_validator, model_validator

from tryon_render.errors.exceptions import ValidationError

# ── Enums ──


class SourceSurface(StrEnum):
    MIRROR = "mirror"
    STUDIO = "studio"
    CHAT = "chat"


class Quality(StrEnum):
    FLASH = "flash"
    PRO = "pro"


class View(StrEnum):
    FRONT = "front"
    BACK = "back"
    SIDE = "side"


class SlotName(StrEnum):
    """Clothing slots a render can dress, in canonical layering order."""

    TOP = "top"
    TOP_BASE = "top_base"
    TOP_MID = "top_mid"
    OUTERWEAR = "outerwear"
    ONE_PIECE = "one_piece"
    BOTTOM = "bottom"
    SHOES = "shoes"
    ACCESSORY = "accessory"


class GenerationFit(StrEnum):
    REGULAR = "regular"
    OVERSIZED = "oversized"
    TIGHT = "tight"


class OperationKind(StrEnum):
    VIRTUAL_TRY_ON = "virtual_try_on"
    GENERATE_FASHION_IMAGE = "generate_fashion_image"


class RetryStrategy(StrEnum):
    EXPONENTIAL = "exponential"
    LINEAR = "linear"
    FIXED = "fixed"


_SLOT_ORDER = {slot.value: index for index, slot in enumerate(SlotName)}


def ordered_slots(slots: Any) -> list[str]:
    """Return slot names sorted in canonical layering order."""
    return sorted(slots, key=lambda name: _SLOT_ORDER.get(name, len(_SLOT_ORDER)))


# ── Config models ──


class RetryConfig(BaseModel):
    max_retries: int = Field(default=2, ge=0)
    strategy: RetryStrategy = RetryStrategy.EXPONENTIAL
    initial_wait: float = Field(default=1.0, ge=0)
    jitter: float = Field(default=0.25, ge=0, le=1)
    max_wait: float = Field(default=30.0, ge=0)
    timeout_seconds: float | None = 60.0

    @property
    def max_attempts(self) -> int:
        return self.max_retries + 1


# ── Request / result models ──


class RenderRequest(BaseModel):
    """Everything that determines what a try-on render looks like.

    Two requests are the same render iff all fields match, with
    ``slot_signature`` and ``slot_fits`` compared as unordered mappings.
    """

    model_config = {"frozen": True}

    user_id: str = Field(min_length=1)
    source_surface: SourceSurface = SourceSurface.STUDIO
    quality: Quality = Quality.FLASH
    preset: str = Field(min_length=1)
    view: View = View.FRONT
    keep_pose: bool = False
    use_face_refs: bool = True
    slot_signature: dict[str, str] = Field(default_factory=dict)
    face_refs_signature: str | None = None
    base_image_signature: str = ""
    custom_scene: str | None = None
    slot_fits: dict[str, GenerationFit] = Field(default_factory=dict)

    @field_validator("slot_signature")
    @classmethod
    def _known_slots(cls, value: dict[str, str]) -> dict[str, str]:
        unknown = sorted(set(value) - set(_SLOT_ORDER))
        if unknown:
            raise ValueError(f"unknown slot name(s): {', '.join(unknown)}")
        empty = sorted(slot for slot, item in value.items() if not item)
        if empty:
            raise ValueError(f"empty item identifier for slot(s): {', '.join(empty)}")
        return value

    @model_validator(mode="after")
    def _fits_match_slots(self) -> RenderRequest:
        stray = sorted(set(self.slot_fits) - set(self.slot_signature))
        if stray:
            raise ValueError(f"slot_fits given for unused slot(s): {', '.join(stray)}")
        return self

    def __init__(self, **data: Any) -> None:
        try:
            super().__init__(**data)
        except pydantic.ValidationError as exc:
            raise _invalid_request(exc) from exc

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> RenderRequest:
        """Validate an untyped payload, raising the package ValidationError."""
        try:
            return cls.model_validate(payload)
        except pydantic.ValidationError as exc:
            raise _invalid_request(exc) from exc

    @property
    def slots(self) -> list[str]:
        return ordered_slots(self.slot_signature)


def _invalid_request(exc: pydantic.ValidationError) -> ValidationError:
    details = "; ".join(
        f"{'.'.join(str(p) for p in err['loc']) or 'request'}: {err['msg']}"
        for err in exc.errors()
    )
    return ValidationError(f"Invalid render request: {details}")


class RenderAssets(BaseModel):
    """Image payloads handed to the provider. Never part of the render hash."""

    base_image: bytes | None = None
    slot_images: dict[str, bytes] = Field(default_factory=dict)
    face_references: list[bytes] = Field(default_factory=list)


class ProviderImage(BaseModel):
    data: bytes
    mime_type: str = "image/png"
    model: str = ""


class GenerationResult(BaseModel):
    render_hash: str
    model: str
    slots_used: list[str] = Field(default_factory=list)
    face_references_used: int = 0
    cache_hit: bool = False
    image_url: str | None = None
    image_bytes: bytes | None = None
    storage_path: str | None = None
    cache_warning: str | None = None

    @property
    def result_image(self) -> str | bytes | None:
        """The resolved URL when the render is cached, else the raw bytes."""
        return self.image_url if self.image_url is not None else self.image_bytes
