"""
Option groups that point at presets.

Time Machine eras and Restore operations map an option key to a preset id
(plus optional overrides). Story themes map to an ordered list of beats.
Every `use` must exist in the preset library; PresetResolver.validate_mappings()
checks that at startup and in tests.
"""

from .pipeline.models import GenerationMode, OptionMapping, StoryBeat

TIME_MACHINE_GROUP = "time_machine"
RESTORE_GROUP = "restore"

_TIME_MACHINE = {
    # Historical periods
    "1920s_art_deco": "vintage_film_35mm",
    "1930s_golden_age": "cinematic_glow",
    "1940s_wartime": "mono_drama",
    "1950s_americana": "retro_polaroid",
    "1960s_psychedelic": "vivid_pop",
    "1960s_kodachrome": "retro_polaroid",
    "1970s_disco": "neon_nights",
    "1980s_neon": "neon_nights",
    "1990s_grunge": "urban_grit",
    "2000s_y2k": "crystal_clear",
    "2010s_hipster": "retro_polaroid",
    "2020s_minimalist": "bright_airy",
    "2100_cyberpunk": "neon_nights",
    # Movements
    "art_nouveau": "vintage_film_35mm",
    "bauhaus": "mono_drama",
    "pop_art": "vivid_pop",
    "punk_rock": "urban_grit",
    "victorian_era": "vintage_film_35mm",
    "jazz_age": "cinematic_glow",
    "space_age": "crystal_clear",
    "impressionism": "dreamy_pastels",
    "surrealism": "dreamy_pastels",
    "street_art": "urban_grit",
}

TIME_MACHINE_MAP = {key: OptionMapping(use=preset_id) for key, preset_id in _TIME_MACHINE.items()}

RESTORE_MAP = {
    "enhance_details": OptionMapping(use="crystal_clear", overrides={"mode": GenerationMode.RESTORE}),
    "fix_colors": OptionMapping(use="vivid_pop", overrides={"mode": GenerationMode.RESTORE}),
    "remove_noise": OptionMapping(
        use="crystal_clear",
        overrides={"mode": GenerationMode.RESTORE, "prompt": "Remove sensor noise and compression artifacts, keep fine texture."},
    ),
    "sharpen_focus": OptionMapping(use="crystal_clear", overrides={"mode": GenerationMode.RESTORE}),
    "restore_vintage": OptionMapping(use="vintage_film_35mm", overrides={"mode": GenerationMode.RESTORE}),
    "brighten_shadows": OptionMapping(use="vivid_pop", overrides={"mode": GenerationMode.RESTORE}),
}

OPTION_GROUPS = {
    TIME_MACHINE_GROUP: TIME_MACHINE_MAP,
    RESTORE_GROUP: RESTORE_MAP,
}

# Theme → 4 beats. "auto" is expanded from the active presets at run time.
AUTO_THEME = "auto"
STORY_BEATS_PER_THEME = 4

STORY_THEMES = {
    "four_seasons": [
        StoryBeat(label="Spring", use="dreamy_pastels"),
        StoryBeat(label="Summer", use="sun_kissed"),
        StoryBeat(label="Autumn", use="moody_forest"),
        StoryBeat(label="Winter", use="frost_light"),
    ],
    "time_of_day": [
        StoryBeat(label="Sunrise", use="golden_hour_magic"),
        StoryBeat(label="Day", use="crystal_clear"),
        StoryBeat(label="Sunset", use="cinematic_glow"),
        StoryBeat(label="Night", use="neon_nights"),
    ],
    "mood_shift": [
        StoryBeat(
            label="Calm",
            use="crystal_clear",
            overrides={"prompt": "Crisp clean detail, bright and airy with soft highlights."},
        ),
        StoryBeat(label="Vibrant", use="vivid_pop"),
        StoryBeat(label="Dramatic", use="urban_grit"),
        StoryBeat(label="Dreamy", use="dreamy_pastels"),
    ],
    "style_remix": [
        StoryBeat(label="Photorealistic", use="crystal_clear"),
        StoryBeat(label="Vintage Film", use="vintage_film_35mm"),
        StoryBeat(label="Pastels", use="dreamy_pastels"),
        StoryBeat(label="Neon Pop", use="neon_nights"),
    ],
}
