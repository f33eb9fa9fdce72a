import logging
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from .errors import ConfigRejected

NUMBER_OF_CONNECTORS = "NumberOfConnectors"
METER_VALUES_SAMPLE_INTERVAL = "MeterValuesSampleInterval"
SUPPORTED_FEATURE_PROFILES = "SupportedFeatureProfiles"


def int_in_range(low: int, high: Optional[int] = None) -> Callable[[str], str]:
    """Build a validator accepting integers in [low, high] (high open if None)."""

    def validate(value: str) -> str:
        try:
            n = int(str(value).strip())
        except (TypeError, ValueError):
            raise ConfigRejected(f"{value!r} is not an integer")
        if n < low or (high is not None and n > high):
            raise ConfigRejected(f"{n} outside accepted range")
        return str(n)

    return validate


@dataclass
class ConfigEntry:
    key: str
    value: str
    readonly: bool = False
    validator: Optional[Callable[[str], str]] = None

    def to_ocpp(self) -> dict:
        return {"key": self.key, "readonly": self.readonly, "value": self.value}


class ConfigurationStore:
    """Case-insensitive key/value registry behind Get/ChangeConfiguration."""

    def __init__(self, entries: Iterable[ConfigEntry]):
        self._entries: Dict[str, ConfigEntry] = {}
        for entry in entries:
            self._entries[entry.key.lower()] = entry

    @classmethod
    def default(cls, connectors: int, sample_interval_sec: int) -> "ConfigurationStore":
        return cls([
            ConfigEntry(NUMBER_OF_CONNECTORS, str(connectors), validator=int_in_range(1, 32)),
            ConfigEntry(METER_VALUES_SAMPLE_INTERVAL, str(sample_interval_sec), validator=int_in_range(0)),
            ConfigEntry(SUPPORTED_FEATURE_PROFILES, "Core,RemoteTrigger", readonly=True),
        ])

    def __contains__(self, key: str) -> bool:
        return str(key).lower() in self._entries

    def get(self, key: str) -> Optional[ConfigEntry]:
        return self._entries.get(str(key).lower())

    def get_int(self, key: str) -> int:
        return int(self._entries[key.lower()].value)

    def entries(self) -> List[ConfigEntry]:
        return list(self._entries.values())

    def lookup(self, keys: Optional[Iterable[str]] = None) -> Tuple[List[ConfigEntry], List[str]]:
        """Split requested keys into known entries and unknown names.

        An empty or missing request returns every known entry.
        """
        keys = list(keys or [])
        if not keys:
            return self.entries(), []
        known, unknown = [], []
        for key in keys:
            entry = self.get(key)
            if entry is None:
                unknown.append(key)
            else:
                known.append(entry)
        return known, unknown

    def change(self, key: str, value) -> ConfigEntry:
        entry = self.get(key)
        if entry is None:
            raise ConfigRejected(f"unknown key {key!r}")
        if entry.readonly:
            raise ConfigRejected(f"{entry.key} is read-only")
        new_value = entry.validator(value) if entry.validator else str(value)
        logging.info(f"Configuration {entry.key}: {entry.value} -> {new_value}")
        entry.value = new_value
        return entry
