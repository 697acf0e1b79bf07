"""
Query Presets - Named callstack query configurations.

A preset bundles the entry/exit patterns and the fields used to resolve
tracks and labels, so common instrumentation schemes can be queried by
name. Additional presets can be loaded from YAML files.
"""

import logging
from dataclasses import asdict, dataclass, fields
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from ctfq.core.errors import IOFailure, MalformedInput


logger = logging.getLogger(__name__)


@dataclass
class QueryConfig:
    """Parameters of a callstack query."""

    entry_pattern: str
    exit_pattern: str
    entry_track_field: str
    exit_track_field: str
    entry_label_field: str
    exit_label_field: str
    entry_match_mode: str = "exact"
    exit_match_mode: str = "exact"
    description: str = ""

    def override(self, **values: Optional[str]) -> "QueryConfig":
        """Return a copy with every non-None value replaced."""
        merged = asdict(self)
        merged.update({k: v for k, v in values.items() if v is not None})
        return QueryConfig(**merged)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class PresetRegistry:
    """
    Registry of named query presets.
    Supports loading from YAML config files.
    """

    DEFAULT_PRESETS = {
        "func": {
            "entry_pattern": "func_entry",
            "exit_pattern": "func_exit",
            "entry_track_field": "/common-context/tid",
            "exit_track_field": "/common-context/tid",
            "entry_label_field": "/payload/addr",
            "exit_label_field": "/payload/addr",
            "description": "Function entry/exit instrumentation keyed by thread and address",
        },
        "lttng-ust-cyg-profile": {
            "entry_pattern": "lttng_ust_cyg_profile:func_entry",
            "exit_pattern": "lttng_ust_cyg_profile:func_exit",
            "entry_track_field": "/common-context/vtid",
            "exit_track_field": "/common-context/vtid",
            "entry_label_field": "/payload/addr",
            "exit_label_field": "/payload/addr",
            "description": "liblttng-ust-cyg-profile function tracing",
        },
    }

    def __init__(self, config_path: Optional[str] = None):
        self.presets: Dict[str, QueryConfig] = {}

        # Load default presets
        self._load_defaults()

        # Load from config if provided
        if config_path:
            self.load_config(config_path)

    def _load_defaults(self) -> None:
        """Load built-in presets."""
        for name, preset in self.DEFAULT_PRESETS.items():
            self.presets[name] = QueryConfig(**preset)

    def load_config(self, config_path: str) -> None:
        """Load presets from YAML file."""
        path = Path(config_path)

        try:
            with open(path, "r") as f:
                config = yaml.safe_load(f) or {}
        except OSError as e:
            raise IOFailure(f"Cannot read preset config {config_path}: {e}", path=str(path))
        except yaml.YAMLError as e:
            raise MalformedInput(f"Invalid YAML in preset config {config_path}: {e}")

        known = {f.name for f in fields(QueryConfig)}
        for name, preset_cfg in config.get("presets", {}).items():
            unknown = set(preset_cfg) - known
            if unknown:
                raise MalformedInput(
                    f"Preset '{name}' has unknown keys: {', '.join(sorted(unknown))}"
                )
            base = self.presets.get(name)
            if base is not None:
                self.presets[name] = base.override(**preset_cfg)
                continue
            try:
                self.presets[name] = QueryConfig(**preset_cfg)
            except TypeError as e:
                raise MalformedInput(f"Preset '{name}' is incomplete: {e}")

        logger.info(f"Loaded {len(config.get('presets', {}))} presets from {config_path}")

    def get(self, name: str) -> Optional[QueryConfig]:
        """Get preset by name."""
        return self.presets.get(name)

    def list_presets(self) -> List[str]:
        """List available preset names."""
        return list(self.presets.keys())

    def register(self, name: str, config: QueryConfig) -> None:
        """Register a new preset."""
        self.presets[name] = config
        logger.info(f"Registered preset: {name}")
