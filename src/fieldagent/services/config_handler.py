"""Persistent configuration store with atomic snapshot swapping."""

import json
import logging
import os
import threading
from pathlib import Path
from typing import Any, Dict, Optional

from pydantic import ValidationError

from fieldagent.models.config import AgentConfig
from fieldagent.services.event_bus import TOPIC_CONFIG_CHANGED, EventBus

ENV_PREFIX = "FIELDAGENT_"
CONFIG_FILE_NAME = "config.json"


def _env_overrides(environ) -> Dict[str, str]:
    """Collect FIELDAGENT_<FIELD> variables that name a config field."""
    overrides = {}
    for field_name in AgentConfig.model_fields:
        value = environ.get(f"{ENV_PREFIX}{field_name.upper()}")
        if value is None:
            continue
        if field_name == "feedback_channels":
            overrides[field_name] = [name.strip() for name in value.split(",") if name.strip()]
        else:
            overrides[field_name] = value
    return overrides


class ConfigurationHandler:
    """Holds the current AgentConfig and persists it across restarts.

    Manages:
    - The in-memory snapshot returned by get()
    - The JSON file at {work_dir}/config.json
    - Publishing config-changed events on update()
    """

    def __init__(
        self,
        config: Optional[AgentConfig] = None,
        event_bus: Optional[EventBus] = None,
        persist: bool = True,
    ):
        """Initialize configuration handler.

        Args:
            config: Initial snapshot (defaults to AgentConfig())
            event_bus: Bus to publish config-changed events on
            persist: Write snapshots to {work_dir}/config.json
        """
        self.logger = logging.getLogger("fieldagent.config")
        self.event_bus = event_bus
        self.persist = persist
        self._lock = threading.Lock()
        self._config = config or AgentConfig()

    @classmethod
    def load(
        cls,
        work_dir: Path,
        event_bus: Optional[EventBus] = None,
        environ=None,
    ) -> "ConfigurationHandler":
        """Load configuration from {work_dir}/config.json plus environment overrides.

        A corrupted config file is logged and ignored (defaults are used).

        Args:
            work_dir: Agent data directory
            event_bus: Bus to publish config-changed events on
            environ: Environment mapping (defaults to os.environ)

        Returns:
            ConfigurationHandler with the loaded snapshot
        """
        logger = logging.getLogger("fieldagent.config")
        environ = os.environ if environ is None else environ
        config_path = Path(work_dir) / CONFIG_FILE_NAME

        data: Dict[str, Any] = {}
        if config_path.exists():
            try:
                with open(config_path, "r", encoding="utf-8") as f:
                    data = json.load(f)
                logger.info(f"Loaded configuration from {config_path}")
            except (OSError, json.JSONDecodeError) as e:
                logger.error(f"Failed to load configuration file {config_path}: {e}")
                data = {}

        data.update(_env_overrides(environ))
        data["work_dir"] = str(work_dir)
        try:
            config = AgentConfig(**data)
        except ValidationError as e:
            logger.error(f"Invalid stored configuration, using defaults: {e}")
            config = AgentConfig(work_dir=Path(work_dir))
        return cls(config=config, event_bus=event_bus)

    def get(self) -> AgentConfig:
        """Return the current snapshot."""
        return self._config

    def update(self, **changes: Any) -> AgentConfig:
        """Swap in a new snapshot with the given fields changed.

        Args:
            **changes: AgentConfig field values

        Returns:
            The new snapshot

        Raises:
            pydantic.ValidationError: If the resulting config is invalid
            ValueError: If an unknown field is given
        """
        unknown = set(changes) - set(AgentConfig.model_fields)
        if unknown:
            raise ValueError(f"Unknown configuration keys: {sorted(unknown)}")

        with self._lock:
            old = self._config
            merged = old.model_dump()
            merged.update(changes)
            new = AgentConfig(**merged)
            self._config = new
            if self.persist:
                self.save()

        changed = sorted(k for k in changes if getattr(old, k) != getattr(new, k))
        self.logger.info(f"Configuration updated: {changed}")
        if self.event_bus is not None and changed:
            self.event_bus.publish(TOPIC_CONFIG_CHANGED, {"changed": changed})
        return new

    def save(self) -> None:
        """Persist the current snapshot to {work_dir}/config.json."""
        config = self._config
        config_path = Path(config.work_dir) / CONFIG_FILE_NAME
        try:
            config_path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path = config_path.with_suffix(".json.tmp")
            with open(tmp_path, "w", encoding="utf-8") as f:
                json.dump(config.model_dump(mode="json"), f, indent=2)
            tmp_path.replace(config_path)
            self.logger.debug(f"Saved configuration to {config_path}")
        except OSError as e:
            self.logger.error(f"Failed to save configuration file: {e}", exc_info=True)
            raise
