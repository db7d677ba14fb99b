"""
Preset Resolver: abstract option keys → concrete PresetDefinitions.

Time Machine / Restore options and Story beats all end up as a preset id
plus shallow overrides. A mapping that points at a preset we don't have is
a configuration bug: it surfaces as MissingMappingError so callers can show
"temporarily unavailable" instead of crashing.
"""

import logging
import random
from typing import Any, Optional

from pydantic import ValidationError

from .. import option_maps
from ..presets import ACTIVE_PRESET_IDS
from .errors import ConfigurationError, MissingMappingError, UnknownPresetError
from .models import OptionMapping, PresetDefinition, StoryBeat

logger = logging.getLogger(__name__)


class MappingReport:
    """Result of validate_mappings(): which options are switched off."""

    def __init__(self, time_machine: set[str], restore: set[str], story: set[str]):
        self.unavailable = {
            option_maps.TIME_MACHINE_GROUP: time_machine,
            option_maps.RESTORE_GROUP: restore,
        }
        self.unavailable_story_themes = story

    @property
    def ok(self) -> bool:
        return not any(self.unavailable.values()) and not self.unavailable_story_themes

    @property
    def story_disabled(self) -> bool:
        return bool(self.unavailable_story_themes)


class PresetResolver:
    def __init__(
        self,
        presets: dict[str, PresetDefinition],
        option_groups: Optional[dict[str, dict[str, OptionMapping]]] = None,
        story_themes: Optional[dict[str, list[StoryBeat]]] = None,
        active_preset_ids: Optional[list[str]] = None,
        rng: Optional[random.Random] = None,
    ):
        self._presets = dict(presets)
        self._groups = option_maps.OPTION_GROUPS if option_groups is None else option_groups
        self._themes = option_maps.STORY_THEMES if story_themes is None else story_themes
        self._active = ACTIVE_PRESET_IDS if active_preset_ids is None else active_preset_ids
        self._rng = rng or random.Random()
        self._report: Optional[MappingReport] = None

    @property
    def presets(self) -> dict[str, PresetDefinition]:
        return dict(self._presets)

    # ── Presets ──────────────────────────────────────────────────────────

    def resolve(self, preset_id: str, overrides: Optional[dict[str, Any]] = None) -> PresetDefinition:
        """Look up a preset and shallow-merge overrides onto it (overrides win)."""
        base = self._presets.get(preset_id)
        if base is None:
            raise UnknownPresetError(preset_id)
        if not overrides:
            return base

        # Overrides can't rename a preset or invent fields.
        bad = sorted((set(overrides) - set(PresetDefinition.model_fields)) | ({"id"} & set(overrides)))
        if bad:
            raise ConfigurationError(f"Invalid override fields for {preset_id}: {bad}")
        try:
            return PresetDefinition.model_validate({**base.model_dump(), **overrides})
        except ValidationError as e:
            raise ConfigurationError(f"Invalid overrides for {preset_id}: {e}") from e

    # ── Option groups (time machine / restore) ───────────────────────────

    def resolve_option(self, group: str, key: str) -> PresetDefinition:
        mapping = self._groups.get(group, {}).get(key)
        if mapping is None:
            raise MissingMappingError(group, key)
        if mapping.use not in self._presets:
            # Dangling mapping: configured, but the preset is gone.
            raise MissingMappingError(group, key, f"target preset '{mapping.use}' not loaded")
        return self.resolve(mapping.use, mapping.overrides)

    # ── Story ────────────────────────────────────────────────────────────

    def story_beats(self, theme: str) -> list[StoryBeat]:
        if theme == option_maps.AUTO_THEME:
            pool = [pid for pid in self._active if pid in self._presets]
            count = min(option_maps.STORY_BEATS_PER_THEME, len(pool))
            if count == 0:
                raise MissingMappingError("story", theme, "no active presets")
            picked = self._rng.sample(pool, count)
            return [StoryBeat(label=f"Shot {i + 1}", use=pid) for i, pid in enumerate(picked)]

        beats = self._themes.get(theme)
        if not beats:
            raise MissingMappingError("story", theme)
        return list(beats)

    def resolve_story(self, theme: str) -> list[tuple[StoryBeat, PresetDefinition]]:
        """Resolve every beat of a theme; one missing beat makes the whole theme unavailable."""
        resolved = []
        for beat in self.story_beats(theme):
            if beat.use not in self._presets:
                raise MissingMappingError("story", f"{theme}/{beat.label}", f"target preset '{beat.use}' not loaded")
            resolved.append((beat, self.resolve(beat.use, beat.overrides)))
        return resolved

    # ── Validation ───────────────────────────────────────────────────────

    def validate_mappings(self) -> MappingReport:
        """Check every configured mapping once; log and remember what's broken."""
        missing = {}
        for group, mappings in self._groups.items():
            missing[group] = {key for key, m in mappings.items() if m.use not in self._presets}

        story_missing = {
            theme for theme, beats in self._themes.items()
            if any(beat.use not in self._presets for beat in beats)
        }

        report = MappingReport(
            time_machine=missing.get(option_maps.TIME_MACHINE_GROUP, set()),
            restore=missing.get(option_maps.RESTORE_GROUP, set()),
            story=story_missing,
        )
        for group, keys in report.unavailable.items():
            if keys:
                logger.error(f"Missing {group} mappings (disabled): {sorted(keys)}")
        if story_missing:
            logger.error(f"Story themes with missing presets (disabled): {sorted(story_missing)}")
        if report.ok:
            logger.info("All preset mappings valid")

        self._report = report
        return report

    def is_option_available(self, group: str, key: str) -> bool:
        if key not in self._groups.get(group, {}):
            return False
        if self._report is None:
            self.validate_mappings()
        return key not in self._report.unavailable.get(group, set())
