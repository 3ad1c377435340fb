"""
Operator Settings
=================

The two settings that outlive a release session: whether the telemetry
network is enabled and the default canary percentage. They are stored as a
small JSON document so any host can keep them wherever it likes.
"""

import json
from dataclasses import dataclass, asdict
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from canarypilot.models import ALLOWED_CANARY_PERCENTS

SETTINGS_FILE = "canarypilot_settings.json"

DEFAULT_NETWORK_ENABLED = True
DEFAULT_CANARY_PERCENT = 5


@dataclass
class ReleaseSettings:
    """Persisted operator preferences."""
    network_enabled: bool = DEFAULT_NETWORK_ENABLED
    default_canary_percent: int = DEFAULT_CANARY_PERCENT

    def to_dict(self) -> dict:
        return asdict(self)


class SettingsStore:
    """
    Loads and saves ReleaseSettings as JSON.

    A missing or unreadable file yields defaults rather than an error, and
    values that are out of range fall back to their defaults.
    """

    def __init__(self, path: Optional[Path] = None):
        self.path = Path(path) if path else Path(SETTINGS_FILE)

    def load(self) -> ReleaseSettings:
        if not self.path.exists():
            return ReleaseSettings()
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (json.JSONDecodeError, OSError, ValueError):
            return ReleaseSettings()
        if not isinstance(data, dict):
            return ReleaseSettings()

        network = data.get("network_enabled", DEFAULT_NETWORK_ENABLED)
        percent = data.get("default_canary_percent", DEFAULT_CANARY_PERCENT)
        return ReleaseSettings(
            network_enabled=network if isinstance(network, bool) else DEFAULT_NETWORK_ENABLED,
            default_canary_percent=percent if percent in ALLOWED_CANARY_PERCENTS else DEFAULT_CANARY_PERCENT,
        )

    def save(self, settings: ReleaseSettings) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        data = settings.to_dict()
        data["updated_at"] = datetime.now(timezone.utc).isoformat()
        self.path.write_text(json.dumps(data, indent=2), encoding="utf-8")
