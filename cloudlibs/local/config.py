import json
import logging
from pathlib import Path
from typing import Dict, Any, Optional

import cloudlibs.settings as default_settings

log = logging.getLogger(__name__)

TRUE_STRINGS = ('true', '1', 't', 'yes', 'on')
FALSE_STRINGS = ('false', '0', 'f', 'no', 'off')


class MergedSettings:
    """
    Settings of the supervisor and its workers, as one attribute namespace.

    Values come from `settings.py` (which already applied `.env` and the
    environment), then from `overrides.json` for the keys in
    `MODIFIABLE_SETTINGS`. Overrides are typed like the default they replace,
    so a poll interval stays a float and a watch flag stays a bool no matter
    how the value was written. Every process reads the file once at import,
    so a changed override applies to the next run_scripts invocation and the
    workers it spawns.
    """

    def __init__(self, overrides_path: Optional[Path] = None) -> None:
        """:param overrides_path: Alternative overrides file, mainly for tests."""
        self._load_defaults()
        if overrides_path is not None:
            self.OVERRIDES_JSON_PATH = Path(overrides_path)
        for key, value in self.read_overrides().items():
            self._apply_override(key, value)

    def _load_defaults(self) -> None:
        for key in dir(default_settings):
            if key.isupper():
                setattr(self, key, getattr(default_settings, key))

    #* --- Reading ---
    def read_overrides(self) -> Dict[str, Any]:
        """
        Returns the raw contents of the overrides file.

        A missing file means no overrides. A file that cannot be parsed is
        logged and treated the same way.
        """
        if not self.OVERRIDES_JSON_PATH.exists():
            return {}
        try:
            with self.OVERRIDES_JSON_PATH.open('r') as f:
                overrides = json.load(f)
        except (json.JSONDecodeError, IOError) as e:
            log.error(f"Failed to load or parse overrides file '{self.OVERRIDES_JSON_PATH}': {e}")
            return {}
        if not isinstance(overrides, dict):
            log.error(f"Overrides file '{self.OVERRIDES_JSON_PATH}' does not hold an object. Ignoring it.")
            return {}
        return overrides

    def _apply_override(self, key: str, value: Any) -> None:
        if not hasattr(default_settings, key):
            log.warning(f"Override setting '{key}' not found in default settings. Ignoring.")
            return
        if key not in self.MODIFIABLE_SETTINGS:
            log.warning(f"Attempted to override non-modifiable setting '{key}'. Ignoring.")
            return
        try:
            setattr(self, key, self.coerce_value(key, value))
        except ValueError as e:
            log.error(f"Ignoring override for '{key}': {e}")
            return
        log.debug(f"Overridden setting: {key} = {value}")

    def coerce_value(self, key: str, value: Any) -> Any:
        """
        Converts `value` to the type of the default of `key`.

        :param key: Name of a setting.
        :param value: A JSON value or a string typed on the console.
        :return: The converted value.
        :raises ValueError: If the value cannot be converted.
        """
        default = getattr(default_settings, key)
        if isinstance(default, bool):
            if isinstance(value, bool):
                return value
            text = str(value).strip().lower()
            if text in TRUE_STRINGS:
                return True
            if text in FALSE_STRINGS:
                return False
            raise ValueError(f"'{value}' is not a boolean")
        if isinstance(default, int):
            if isinstance(value, bool) or (isinstance(value, float) and not value.is_integer()):
                raise ValueError(f"'{value}' is not an integer")
            return int(value)
        if isinstance(default, float):
            if isinstance(value, bool):
                raise ValueError(f"'{value}' is not a number")
            return float(value)
        if isinstance(default, Path):
            return Path(value)
        return value

    def modifiable_values(self) -> Dict[str, Any]:
        """Returns the effective value of every modifiable setting, sorted by name."""
        return {key: getattr(self, key) for key in sorted(self.MODIFIABLE_SETTINGS)}

    #* --- Writing ---
    def set_override(self, key: str, value: Any) -> Any:
        """
        Validates one setting, persists it with the existing overrides and applies it here.

        :param key: Name of a modifiable setting. Case insensitive.
        :param value: New value, converted like the default.
        :return: The converted value.
        :raises ValueError: If the key is not modifiable or the value does not convert.
        :raises OSError: If the overrides file cannot be written.
        """
        key = key.upper()
        if key not in self.MODIFIABLE_SETTINGS:
            raise ValueError(f"'{key}' is not a modifiable setting")
        converted = self.coerce_value(key, value)

        overrides = self.read_overrides()
        overrides[key] = str(converted) if isinstance(converted, Path) else converted
        self.save_overrides(overrides)
        setattr(self, key, converted)
        return converted

    def save_overrides(self, overrides_to_save: Dict[str, Any]) -> None:
        """
        Writes the overrides file. Keys outside `MODIFIABLE_SETTINGS` are dropped.

        :param overrides_to_save: A dictionary of settings to persist.
        :raises OSError: If the file cannot be written.
        """
        filtered_overrides = {
            key: value
            for key, value in overrides_to_save.items()
            if key in self.MODIFIABLE_SETTINGS
        }

        if not filtered_overrides:
            log.warning("No modifiable settings provided to save.")
            return

        try:
            self.OVERRIDES_JSON_PATH.parent.mkdir(parents=True, exist_ok=True)
            with self.OVERRIDES_JSON_PATH.open('w') as f:
                json.dump(filtered_overrides, f, indent=4)
        except OSError as e:
            log.error(f"Failed to write to overrides file '{self.OVERRIDES_JSON_PATH}': {e}")
            raise
        log.info(f"Configuration overrides saved to {self.OVERRIDES_JSON_PATH}")


# Create a singleton instance to be imported by other modules
effective_settings = MergedSettings()
