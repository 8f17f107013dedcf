"""Translation presets stored in the ``translation_settings`` table.

A preset bundles the model, sampling parameters and system prompt used by
:mod:`rayin.translator`. Presets may belong to a novel; exactly one is
marked as the default and cannot be deleted.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, fields
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from .errors import PresetError
from .logger import activity
from .supabase import SupabaseClient

log = logging.getLogger("rayin.presets")

DEFAULT_MODEL = "openrouter/pony-alpha"
NEW_PRESET = "__new__"
TABLE = "translation_settings"

FIELD_TYPES = {
    "temperature": float,
    "top_p": float,
    "top_k": int,
    "max_tokens": int,
    "reasoning": bool,
    "model": str,
    "system_prompt": str,
}


def _coerce(name: str, value: Any) -> Any:
    kind = FIELD_TYPES[name]
    if kind is bool or kind is str:
        if isinstance(value, kind):
            return value
    elif not isinstance(value, bool):
        try:
            return kind(value)
        except (TypeError, ValueError):
            pass
    raise PresetError(f"Invalid value for {name}: {value!r}")


@dataclass
class AISettings:
    temperature: float = 0.7
    top_p: float = 1.0
    top_k: int = 0
    max_tokens: int = 8192
    reasoning: bool = False
    model: str = DEFAULT_MODEL
    system_prompt: str = ""

    @classmethod
    def from_preset(cls, preset: Dict[str, Any]) -> "AISettings":
        defaults = cls()
        values = {}
        for f in fields(cls):
            value = preset.get(f.name)
            values[f.name] = getattr(defaults, f.name) if value is None else value
        # Empty strings in the table mean "use the default".
        values["model"] = preset.get("model") or DEFAULT_MODEL
        values["system_prompt"] = preset.get("system_prompt") or ""
        return cls(**values)

    @classmethod
    def from_dict(cls, data: Any) -> "AISettings":
        """Build settings from untrusted input such as a request body.

        Unknown keys and ``None`` values are ignored. Numbers given as
        strings are converted; anything else of the wrong type raises
        :class:`PresetError`.
        """
        if data is None:
            return cls()
        if not isinstance(data, dict):
            raise PresetError("Settings must be an object.")
        values = {}
        for f in fields(cls):
            value = data.get(f.name)
            if value is not None:
                values[f.name] = _coerce(f.name, value)
        return cls(**values)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class PresetManager:
    """Loads, selects and saves presets for one (optional) novel."""

    def __init__(self, client: SupabaseClient, novel: Optional[Dict[str, Any]] = None) -> None:
        self.client = client
        self.novel = novel
        self.presets: List[Dict[str, Any]] = []
        self.active_preset_id: Optional[str] = None
        self.settings = AISettings()
        self.show_prompt_editor = False

    def _find(self, preset_id: Optional[str]) -> Optional[Dict[str, Any]]:
        return next((p for p in self.presets if p.get("id") == preset_id), None)

    @property
    def default_preset(self) -> Optional[Dict[str, Any]]:
        return next((p for p in self.presets if p.get("is_default")), None)

    async def load_presets(self) -> List[Dict[str, Any]]:
        """Reload the list and select the best match.

        The novel's own preset wins, then the default one, then whatever
        comes first.
        """
        result = await (
            self.client.table(TABLE)
            .select("*")
            .order("is_default", ascending=False)
            .order("name")
            .execute()
        )
        self.presets = result.data or []
        if self.presets:
            novel_id = (self.novel or {}).get("id")
            novel_preset = next((p for p in self.presets if novel_id and p.get("novel_id") == novel_id), None)
            self.apply_preset(novel_preset or self.default_preset or self.presets[0])
        return self.presets

    def apply_preset(self, preset: Optional[Dict[str, Any]]) -> None:
        if not preset:
            return
        self.active_preset_id = preset.get("id")
        self.settings = AISettings.from_preset(preset)
        activity("PRESET", "Applied", preset_id=self.active_preset_id, name=preset.get("name"))

    def select_preset(self, preset_id: str) -> None:
        if preset_id == NEW_PRESET:
            self.active_preset_id = None
            self.settings = AISettings()
            self.show_prompt_editor = True
            return
        self.apply_preset(self._find(preset_id))

    async def save_current_preset(self, name: Optional[str] = None) -> Optional[str]:
        """Write the current settings back and return the preset id.

        Updates the active preset, or creates a new one called ``name``
        (tied to the current novel) when none is active.
        """
        payload: Dict[str, Any] = {
            **self.settings.to_dict(),
            "updated_at": datetime.now(timezone.utc).isoformat(),
        }
        if self.active_preset_id:
            await (
                self.client.table(TABLE)
                .update(payload)
                .eq("id", self.active_preset_id)
                .execute()
            )
            activity("PRESET", "Updated", preset_id=self.active_preset_id)
        else:
            if not name:
                raise PresetError("A new preset needs a name.")
            payload["name"] = name
            payload["novel_id"] = (self.novel or {}).get("id")
            result = await self.client.table(TABLE).insert(payload).select().execute()
            if result.data:
                self.active_preset_id = result.data[0].get("id")
            activity("PRESET", "Created", preset_id=self.active_preset_id, name=name)
        saved_id = self.active_preset_id
        await self.load_presets()
        # Reloading may auto-select another preset; keep the one just saved.
        saved = self._find(saved_id)
        if saved is not None:
            self.apply_preset(saved)
        return saved_id

    async def delete_preset(self) -> None:
        if not self.active_preset_id:
            return
        preset = self._find(self.active_preset_id)
        if preset and preset.get("is_default"):
            raise PresetError("Cannot delete the default preset.")
        await self.client.table(TABLE).delete().eq("id", self.active_preset_id).execute()
        activity("PRESET", "Deleted", preset_id=self.active_preset_id)
        self.active_preset_id = None
        await self.load_presets()

    def reset_to_default(self) -> None:
        default = self.default_preset
        if default:
            self.apply_preset(default)
        else:
            self.settings = AISettings()
            self.active_preset_id = None
