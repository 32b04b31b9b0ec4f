"""Agent settings from NODEKEEPER_* environment variables."""

from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path
from typing import Mapping, Optional
import os

from croniter import croniter

from .errors import ConfigError, UnrecognizedValueError
from .models import UpgradeSpec, parse_duration


@dataclass
class AgentConfig:
    root_path: Path
    namespace: str
    store_path: Path
    config_repo_path: Path
    forgiveness_period: timedelta = timedelta(minutes=1)
    backoff_min: timedelta = timedelta(seconds=3)
    backoff_max: timedelta = timedelta(minutes=3)
    lock_timeout: timedelta = timedelta(hours=3)
    unlock_timeout: timedelta = timedelta(hours=1)
    reconcile_interval: timedelta = timedelta(minutes=5)
    file_owner: str = ""  # empty: OS default
    file_group: str = ""
    # None: the upgrade spec on the node record is left as it is
    upgrade: Optional[UpgradeSpec] = None

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "AgentConfig":
        """Build the config from the environment.

        Raises:
            ConfigError on an unparseable duration or upgrade schedule
        """
        env = os.environ if environ is None else environ
        root = Path(env.get("NODEKEEPER_ROOT_PATH", ".")).resolve()

        def duration(key: str, default: str) -> timedelta:
            raw = env.get(key, default)
            try:
                return parse_duration(raw)
            except UnrecognizedValueError as e:
                raise ConfigError(f"{key}: {e}") from e

        config = cls(
            root_path=root,
            namespace=env.get("NODEKEEPER_NAMESPACE", "default"),
            store_path=Path(env.get("NODEKEEPER_STORE_PATH", str(root / "data" / "nodes.db"))),
            config_repo_path=Path(env.get("NODEKEEPER_CONFIG_REPO", str(root / "data" / "desired"))),
            forgiveness_period=duration("NODEKEEPER_FORGIVENESS_PERIOD", "1m"),
            backoff_min=duration("NODEKEEPER_BACKOFF_MIN", "3s"),
            backoff_max=duration("NODEKEEPER_BACKOFF_MAX", "3m"),
            lock_timeout=duration("NODEKEEPER_LOCK_TIMEOUT", "3h"),
            unlock_timeout=duration("NODEKEEPER_UNLOCK_TIMEOUT", "1h"),
            reconcile_interval=duration("NODEKEEPER_RECONCILE_INTERVAL", "5m"),
            file_owner=env.get("NODEKEEPER_FILE_OWNER", ""),
            file_group=env.get("NODEKEEPER_FILE_GROUP", ""),
            upgrade=cls._upgrade_from_env(env),
        )

        if config.backoff_min > config.backoff_max:
            raise ConfigError("NODEKEEPER_BACKOFF_MIN must not exceed NODEKEEPER_BACKOFF_MAX")
        return config

    @staticmethod
    def _upgrade_from_env(env: Mapping[str, str]) -> Optional[UpgradeSpec]:
        keys = ("NODEKEEPER_UPGRADE_GROUP", "NODEKEEPER_UPGRADE_SCHEDULE", "NODEKEEPER_UPGRADE_DELAY")
        if not any(key in env for key in keys):
            return None

        spec = UpgradeSpec(
            group=env.get("NODEKEEPER_UPGRADE_GROUP", ""),
            schedule=env.get("NODEKEEPER_UPGRADE_SCHEDULE", ""),
            delay=env.get("NODEKEEPER_UPGRADE_DELAY", ""),
        )
        if spec.schedule and not croniter.is_valid(spec.schedule):
            raise ConfigError(f"NODEKEEPER_UPGRADE_SCHEDULE: invalid cron expression {spec.schedule!r}")
        if spec.delay:
            try:
                parse_duration(spec.delay)
            except UnrecognizedValueError as e:
                raise ConfigError(f"NODEKEEPER_UPGRADE_DELAY: {e}") from e
        return spec
