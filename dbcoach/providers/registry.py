"""TOML configuration loader.

Loads the model definition and pipeline defaults from defaults.toml.
"""

from __future__ import annotations

import tomllib
from pathlib import Path

from dbcoach.schemas.pipeline import (
    ModelConfig,
    PersistenceBackend,
    PhaseConfig,
    PipelineConfig,
)

# Default config directory relative to the dbcoach package
_CONFIG_DIR = Path(__file__).parent.parent / "config"


def _read_toml(config_path: Path | None) -> tuple[Path, dict]:
    path = config_path or _CONFIG_DIR / "defaults.toml"
    if not path.exists():
        raise FileNotFoundError(f"Configuration not found: {path}")
    with open(path, "rb") as f:
        return path, tomllib.load(f)


def load_model_config(config_path: Path | None = None) -> ModelConfig:
    """Load the [model] table from a TOML file.

    Args:
        config_path: Path to the TOML file. Defaults to dbcoach/config/defaults.toml.

    Raises:
        FileNotFoundError: If the config file does not exist.
        ValueError: If the [model] table is missing.
    """
    path, raw = _read_toml(config_path)
    model_section = raw.get("model")
    if not model_section or not isinstance(model_section, dict):
        raise ValueError(f"No [model] section found in {path}")
    return ModelConfig(**model_section)


def load_pipeline_config(config_path: Path | None = None) -> PipelineConfig:
    """Load pipeline defaults from the [pipeline] table of a TOML file.

    Raises:
        FileNotFoundError: If the config file does not exist.
    """
    _, raw = _read_toml(config_path)
    section = dict(raw.get("pipeline", {}))

    phases: dict[str, PhaseConfig] = {
        key: PhaseConfig(**data)
        for key, data in section.pop("phases", {}).items()
    }

    replay = section.pop("replay", {})
    if "persistence" in section:
        section["persistence"] = PersistenceBackend(section["persistence"])

    return PipelineConfig(
        **section,
        phases=phases,
        replay_speed=replay.get("speed", 1.0),
        replay_tick_interval=replay.get("tick_interval", 0.025),
        replay_chars_per_tick=replay.get("chars_per_tick", 4),
    )
