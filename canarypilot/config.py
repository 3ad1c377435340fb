"""
Configuration Management
========================

Engine timing and simulation constants, loaded from environment variables
and an optional config file.
"""

import json
import logging
import os
from dataclasses import dataclass, fields, asdict
from pathlib import Path
from typing import Any, Optional

logger = logging.getLogger(__name__)

CONFIG_FILENAME = "canarypilot_config.json"
ENV_PREFIX = "CANARYPILOT_"

# Simulation constants
ANOMALY_TICK_INDEX = 3
TICK_INTERVAL_SECONDS = 1.0
HISTORY_CAPACITY = 30
WARMUP_SAMPLES = 10

# Decision window
DECISION_TIMEOUT_SECONDS = 60.0
SHADOW_TEST_SECONDS = 2.0
CHAT_ACK_SECONDS = 1.0

# Advisory message offsets, relative to anomaly confirmation
ADVISORY_ALERT_OFFSET = 0.5
ADVISORY_DETAIL_OFFSET = 1.5
ADVISORY_RECOMMENDATION_OFFSET = 3.0

# Baseline telemetry shape
BASELINE_ERROR_RATE = 0.008
BASELINE_DRIFT_USER_REGION = 0.02

# Anomaly telemetry shape (latency is baseline * 1.22)
ANOMALY_LATENCY_MS = 256.0
ANOMALY_ERROR_RATE = 0.019
ANOMALY_DRIFT_USER_REGION = 0.18


@dataclass
class EngineConfig:
    """Timing and shape parameters for a release session."""
    tick_interval: float = TICK_INTERVAL_SECONDS
    anomaly_tick_index: int = ANOMALY_TICK_INDEX
    history_capacity: int = HISTORY_CAPACITY
    warmup_samples: int = WARMUP_SAMPLES
    decision_timeout: float = DECISION_TIMEOUT_SECONDS
    shadow_test_seconds: float = SHADOW_TEST_SECONDS
    chat_ack_seconds: float = CHAT_ACK_SECONDS
    advisory_offsets: tuple = (
        ADVISORY_ALERT_OFFSET,
        ADVISORY_DETAIL_OFFSET,
        ADVISORY_RECOMMENDATION_OFFSET,
    )
    seed: Optional[int] = None

    def scaled(self, factor: float) -> "EngineConfig":
        """Copy with every duration multiplied by factor (for fast demos)."""
        return EngineConfig(
            tick_interval=self.tick_interval * factor,
            anomaly_tick_index=self.anomaly_tick_index,
            history_capacity=self.history_capacity,
            warmup_samples=self.warmup_samples,
            decision_timeout=self.decision_timeout * factor,
            shadow_test_seconds=self.shadow_test_seconds * factor,
            chat_ack_seconds=self.chat_ack_seconds * factor,
            advisory_offsets=tuple(o * factor for o in self.advisory_offsets),
            seed=self.seed,
        )

    def to_dict(self) -> dict:
        data = asdict(self)
        data["advisory_offsets"] = list(self.advisory_offsets)
        return data

    @classmethod
    def load(cls, config_path: Optional[Path] = None) -> "EngineConfig":
        """
        Load configuration from multiple sources in precedence order:
        1. Environment variables (CANARYPILOT_TICK_INTERVAL, ...)
        2. Local config file (canarypilot_config.json)
        3. Default values
        """
        values: dict[str, Any] = {}

        path = Path(config_path) if config_path else Path(CONFIG_FILENAME)
        if path.exists():
            try:
                with open(path, "r", encoding="utf-8") as f:
                    values.update(json.load(f))
            except (OSError, json.JSONDecodeError) as e:
                logger.warning("Failed to load config file %s: %s", path, e)

        for f in fields(cls):
            env_value = os.environ.get(f"{ENV_PREFIX}{f.name.upper()}")
            if env_value is not None:
                values[f.name] = env_value

        return cls._from_values(values)

    @classmethod
    def _from_values(cls, values: dict[str, Any]) -> "EngineConfig":
        config = cls()
        for f in fields(cls):
            if f.name not in values:
                continue
            raw = values[f.name]
            if f.name == "advisory_offsets":
                if isinstance(raw, str):
                    raw = [part for part in raw.split(",") if part.strip()]
                setattr(config, f.name, tuple(float(v) for v in raw))
            elif f.name == "seed":
                setattr(config, f.name, None if raw in (None, "") else int(raw))
            elif isinstance(getattr(config, f.name), int):
                setattr(config, f.name, int(raw))
            else:
                setattr(config, f.name, float(raw))
        return config
