"""Configuration loader for pgclusters."""

from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import yaml

from pgclusters.errors import UsageError
from pgclusters.models import Settings


class ConfigLoader:
    """Loads the YAML file holding host layout overrides and CLI defaults."""

    CLI_KEYS = {
        "verbose",
        "log_file",
    }

    @property
    def supported_keys(self):
        return set(Settings.keys()) | self.CLI_KEYS

    def load(self, config_path: Optional[str]) -> Dict[str, Any]:
        if not config_path:
            return {}

        path = Path(config_path)
        if not path.exists():
            raise UsageError(f"Config file not found: {config_path}")

        try:
            parsed = yaml.safe_load(path.read_text(encoding="utf-8"))
        except (yaml.YAMLError, OSError) as exc:
            raise UsageError(f"Invalid config file '{config_path}': {exc}") from exc

        if parsed is None:
            return {}
        if not isinstance(parsed, dict):
            raise UsageError("Config file must contain a YAML mapping at the root.")

        unknown = sorted(set(parsed.keys()) - self.supported_keys)
        if unknown:
            unknown_list = ", ".join(str(key) for key in unknown)
            raise UsageError(f"Unknown configuration keys: {unknown_list}")

        if "default_port" in parsed:
            try:
                parsed["default_port"] = int(parsed["default_port"])
            except (TypeError, ValueError) as exc:
                raise UsageError(f"default_port must be an integer, got {parsed['default_port']!r}") from exc

        return parsed

    def settings(self, values: Mapping[str, Any], environ=None) -> Settings:
        """Builds :class:`Settings` from values returned by :meth:`load`."""
        layout = {key: value for key, value in values.items() if key in Settings.keys()}
        return Settings.from_sources(layout, environ)
