"""Jinja2-based prompt builder for try-on renders."""

from __future__ import annotations

from jinja2 import ChainableUndefined
from jinja2.sandbox import SandboxedEnvironment

from tryon_render.types import RenderAssets, RenderRequest

_jinja_env = SandboxedEnvironment(
    autoescape=False,
    keep_trailing_newline=False,
    trim_blocks=True,
    lstrip_blocks=True,
    undefined=ChainableUndefined,
)

PRESET_SCENES: dict[str, str] = {
    "overlay": "Keep the original photo's background, lighting and framing untouched.",
    "studio": "Place the person in a clean, evenly lit photo studio with a seamless light-grey backdrop.",
    "street": "Place the person on a sunny city street with soft natural light and a shallow depth of field.",
    "editorial": "Stage an editorial fashion shot with dramatic directional light and a minimal set.",
    "mirror": "Frame the result as a full-length mirror selfie in a bright bedroom.",
}

_VIEW_TEXT = {
    "front": "Show the person from the front, full body.",
    "back": "Show the person from behind, full body, so the back of every garment is visible.",
    "side": "Show the person in profile, full body.",
}

_SLOT_LABELS = {
    "top": "top",
    "top_base": "base layer top",
    "top_mid": "mid layer top",
    "outerwear": "jacket or coat",
    "one_piece": "dress or jumpsuit",
    "bottom": "trousers, skirt or shorts",
    "shoes": "shoes",
    "accessory": "accessory",
}

RENDER_TEMPLATE = """\
Virtual try-on. The first image is the person. Dress them in the garments shown in the following images, one garment per image, in this order:
{% for slot in slots %}
- {{ slot_labels[slot] }}{% if fits.get(slot) and fits[slot] != "regular" %} ({{ fits[slot] }} fit){% endif %}

{% endfor %}
{{ scene }}
{{ view_text }}
{% if keep_pose %}
Keep the person's exact pose and body proportions from the original photo.
{% endif %}
{% if face_refs %}
The last {{ face_refs }} image(s) are reference photos of the same person's face; preserve their identity exactly.
{% endif %}
Render garments with their true colours, textures, prints and logos. Photorealistic, no text or watermarks."""


def build_render_prompt(
    request: RenderRequest,
    assets: RenderAssets | None = None,
) -> tuple[str, list[bytes]]:
    """Render the provider prompt and the ordered image list.

    Images go person first, then one image per slot in canonical slot
    order, then face references when enabled. Slots without an image in
    ``assets`` are described but not attached.
    """
    assets = assets or RenderAssets()
    slots = request.slots
    face_refs = assets.face_references if request.use_face_refs else []

    images: list[bytes] = []
    if assets.base_image is not None:
        images.append(assets.base_image)
    images.extend(assets.slot_images[slot] for slot in slots if slot in assets.slot_images)
    images.extend(face_refs)

    prompt = _jinja_env.from_string(RENDER_TEMPLATE).render(
        slots=slots,
        slot_labels=_SLOT_LABELS,
        fits={slot: fit.value for slot, fit in request.slot_fits.items()},
        scene=resolve_scene(request),
        view_text=_VIEW_TEXT[request.view.value],
        keep_pose=request.keep_pose,
        face_refs=len(face_refs),
    )
    return prompt.strip(), images


def resolve_scene(request: RenderRequest) -> str:
    if request.preset == "custom":
        return f"Scene: {request.custom_scene}" if request.custom_scene else PRESET_SCENES["overlay"]
    return PRESET_SCENES.get(request.preset, f"Style the shot as '{request.preset}'.")
