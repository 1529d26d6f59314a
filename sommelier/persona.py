from __future__ import annotations

import functools
import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping

import yaml

from sommelier.config import package_root


@dataclass(frozen=True, slots=True)
class Persona:
    name: str
    system_prompt: str
    speed_hint: str
    wine_context_intro: str
    welcome_template: str
    welcome_fallback: str

    def system_message(self, wine_context: Mapping[str, Any] | None = None, optimize_for_speed: bool = False) -> str:
        parts = [self.system_prompt]
        if optimize_for_speed:
            parts.append(self.speed_hint)
        if wine_context:
            parts.append(f"{self.wine_context_intro}\n{json.dumps(dict(wine_context), ensure_ascii=False, indent=2)}")
        return "\n\n".join(parts)

    def welcome_message(self, wine_context: Mapping[str, Any] | None = None) -> str:
        name = (wine_context or {}).get("name")
        if not name:
            return self.welcome_fallback
        vintage = (wine_context or {}).get("vintage")
        return self.welcome_template.format(name=name, vintage_suffix=f" {vintage}" if vintage else "")


def persona_path() -> Path:
    return package_root() / "data" / "persona.yml"


@functools.lru_cache(maxsize=1)
def load_persona(path: Path | None = None) -> Persona:
    config_path = path or persona_path()
    if not config_path.exists():
        raise FileNotFoundError(config_path)
    raw = yaml.safe_load(config_path.read_text(encoding="utf-8"))
    if not isinstance(raw, dict) or not isinstance(raw.get("persona"), dict):
        raise ValueError("persona.yml must define a 'persona' mapping")
    cfg = raw["persona"]
    return Persona(
        name=str(cfg.get("name", "sommelier")),
        system_prompt=str(cfg["system_prompt"]).strip(),
        speed_hint=str(cfg.get("speed_hint", "")).strip(),
        wine_context_intro=str(cfg.get("wine_context_intro", "")).strip(),
        welcome_template=str(cfg["welcome_template"]).strip(),
        welcome_fallback=str(cfg["welcome_fallback"]).strip(),
    )


__all__ = ["Persona", "load_persona", "persona_path"]
