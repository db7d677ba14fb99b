"""
Preset Library: hidden prompts for photo transformations.
Users pick a look, we inject the actual edit prompt.

Prompts carry a preservation + single-frame guard so image-to-image edits
keep the subject intact; strengths are tuned for edits and the job builder
still clamps them into EDIT_STRENGTH_RANGE.
"""

from .pipeline.models import GenerationMode, PresetDefinition

EDIT_STRENGTH_RANGE = (0.08, 0.22)

SINGLE_FRAME_GUARD = (
    "Render as one continuous single frame (no grid, collage, split-screen, mirror, "
    "border or frame). Show only one instance of the subject."
)
PRESERVE_IDENTITY = (
    "Preserve the original composition, crop, subject identity and facial geometry. "
    "Do not add or remove objects."
)
PROMPT_SUFFIX = f"{SINGLE_FRAME_GUARD} {PRESERVE_IDENTITY}"
BASE_NEGATIVE = (
    "duplicate face, extra limb, split screen, collage, grid, border, frame, text, "
    "watermark, logo, cartoon, low quality, jpeg artifacts, oversharpened, waxy skin, "
    "deformed, distorted"
)

PRESETS = {
    "cinematic_glow": {
        "label": "Cinematic Glow",
        "prompt": "Cinematic color grade: warm highlights, deep shadows, rich blacks, subtle teal-orange balance, natural skin.",
        "negative": "harsh color shifts",
        "strength": 0.16,
    },
    "bright_airy": {
        "label": "Clean Minimal",
        "prompt": "Clean airy edit: soft light, pastel tones, balanced whites and gentle shadows.",
        "negative": "crushed blacks, blown highlights",
        "strength": 0.12,
    },
    "vivid_pop": {
        "label": "Color Pop",
        "prompt": "Boost saturation and micro-contrast for punchy color while keeping skin tones realistic.",
        "negative": "posterization, oversaturation",
        "strength": 0.18,
    },
    "vintage_film_35mm": {
        "label": "Film Look 35mm",
        "prompt": "Retro 35mm look: warm faded tones, fine film grain, soft shadows, detail intact.",
        "negative": "digital noise, plastic skin",
        "strength": 0.18,
    },
    "tropical_boost": {
        "label": "Tropical Vibes",
        "prompt": "Lift blues and greens with warm sunlit tones and a gentle landscape HDR; people stay natural.",
        "negative": "cyan shift on skin",
        "strength": 0.18,
    },
    "urban_grit": {
        "label": "Urban Grit",
        "prompt": "Desaturated blues, strong contrast, crisp micro-detail; modern street mood.",
        "negative": "halos, over-sharpening",
        "strength": 0.18,
    },
    "mono_drama": {
        "label": "B&W Drama",
        "prompt": "Rich black and white conversion with strong contrast, bright highlights and filmic tonality.",
        "negative": "color",
        "strength": 0.20,
    },
    "dreamy_pastels": {
        "label": "Soft Pastel Glow",
        "prompt": "Soft-focus glow, pastel palette, warm highlights, natural detail retained.",
        "negative": "haze artifacts, plastic skin",
        "strength": 0.14,
    },
    "golden_hour_magic": {
        "label": "Golden Hour Magic",
        "prompt": "Golden hour simulation: warm tones, glowing highlights, soft shadow rolloff.",
        "negative": "orange cast on whites",
        "strength": 0.16,
    },
    "high_fashion_editorial": {
        "label": "Fashion Editorial",
        "prompt": "Sleek editorial finish: gently desaturated palette, strong contrast, subtle skin polish.",
        "negative": "plastic skin",
        "strength": 0.18,
    },
    "moody_forest": {
        "label": "Forest Mood",
        "prompt": "Deep greens, soft diffused light and a light fog atmosphere.",
        "negative": "muddy shadows",
        "strength": 0.16,
    },
    "retro_polaroid": {
        "label": "Instant Retro",
        "prompt": "Warm faded tones, soft focus and a subtle edge vignette for an instant-camera feel.",
        "negative": "hard frame",
        "strength": 0.16,
    },
    "crystal_clear": {
        "label": "Sharp Clarity",
        "prompt": "Increase clarity and sharpness, remove haze, keep colors true-to-life.",
        "negative": "halos",
        "strength": 0.12,
    },
    "sun_kissed": {
        "label": "Warm Glow",
        "prompt": "Golden warmth, soft shadows and glowing skin tones for outdoor sunlight.",
        "negative": "blown whites",
        "strength": 0.16,
    },
    "frost_light": {
        "label": "Winter Chill",
        "prompt": "Cool blues and crisp whites, clean snow texture, neutral skin.",
        "negative": "gray mush",
        "strength": 0.16,
    },
    "neon_nights": {
        "label": "Neon Nights",
        "prompt": "Vivid neon contrast with deep blacks and high clarity for night city scenes.",
        "negative": "skin color shift",
        "strength": 0.20,
    },
    "noir_classic": {
        "label": "Noir Cinema",
        "prompt": "High-contrast monochrome with deep blacks and crisp detail.",
        "negative": "color",
        "strength": 0.20,
    },
    "express_enhance": {
        "label": "Express Enhance",
        "prompt": "Quick clarity boost: sharpen, dehaze and polish.",
        "negative": "oversharpened",
        "strength": 0.12,
    },
    "concept_sketch": {
        "label": "Concept Sketch",
        "prompt": "Loose graphite concept sketch on warm paper, confident linework, soft shading.",
        "strength": 1.0,
        "mode": GenerationMode.T2I,
        "requires_source": False,
        "model": "fal-ai/flux/dev",
    },
}

# Presets the "auto" story theme draws from, in rotation order.
ACTIVE_PRESET_IDS = [
    "cinematic_glow",
    "vivid_pop",
    "bright_airy",
    "vintage_film_35mm",
    "high_fashion_editorial",
    "urban_grit",
]


def _build(preset_id: str, raw: dict) -> PresetDefinition:
    mode = raw.get("mode", GenerationMode.I2I)
    prompt = raw["prompt"]
    negative = raw.get("negative")
    if mode == GenerationMode.I2I:
        prompt = f"{prompt} {PROMPT_SUFFIX}"
        negative = f"{BASE_NEGATIVE}, {negative}" if negative else BASE_NEGATIVE
    return PresetDefinition(
        id=preset_id,
        label=raw["label"],
        prompt=prompt,
        negative_prompt=negative,
        strength=raw["strength"],
        provider_model_hint=raw.get("model"),
        mode=mode,
        requires_source=raw.get("requires_source", True),
    )


def load_presets(raw_presets: dict = None) -> dict[str, PresetDefinition]:
    """Build the id-keyed, read-only preset map. Called once at startup."""
    raw_presets = PRESETS if raw_presets is None else raw_presets
    return {pid: _build(pid, raw) for pid, raw in raw_presets.items()}


def clamp_strength(preset: PresetDefinition) -> float:
    """Image edits stay inside the edit-safe band; other modes pass through."""
    if preset.mode != GenerationMode.I2I:
        return preset.strength
    low, high = EDIT_STRENGTH_RANGE
    return max(low, min(high, preset.strength))
