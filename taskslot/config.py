"""
Engine configuration.

Defaults live in EngineConfig; a YAML file can override any of them. The
file path is taken from the argument to ``load_config`` or, failing that,
from the ``TASKSLOT_CONFIG`` environment variable.

Example config.yaml:

    proposal_ttl_minutes: 60
    default_suggestion_count: 3
    external_timeout_seconds: 10
    max_retries: 2
    scoring_weights:
      task_type_preference: 25
      due_date_proximity: 20
      buffer_availability: 15
      contiguous_time: 15
      priority_alignment: 15
      time_of_day: 10
"""

import logging
import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, Optional, Union

import yaml

from .errors import ValidationError

logger = logging.getLogger(__name__)

CONFIG_ENV_VAR = "TASKSLOT_CONFIG"

DEFAULT_SCORING_WEIGHTS: Dict[str, int] = {
    "task_type_preference": 25,
    "due_date_proximity": 20,
    "buffer_availability": 15,
    "contiguous_time": 15,
    "priority_alignment": 15,
    "time_of_day": 10,
}


@dataclass
class EngineConfig:
    """Tunable settings for the scheduling engine."""

    # Proposals
    proposal_ttl_minutes: int = 60
    default_range_days: int = 7

    # Suggestions
    default_suggestion_count: int = 3
    default_task_duration: int = 60
    candidate_interval_minutes: int = 15
    default_granularity_minutes: int = 30

    # Scoring
    scoring_weights: Dict[str, int] = field(default_factory=lambda: dict(DEFAULT_SCORING_WEIGHTS))
    info_conflict_penalty: int = 5
    warning_conflict_penalty: int = 15

    # External calls
    external_timeout_seconds: float = 10.0
    max_retries: int = 2
    retry_backoff_seconds: float = 0.5
    retry_backoff_max_seconds: float = 8.0
    max_concurrent_writes: int = 5

    log_level: str = "INFO"

    def __post_init__(self):
        self.validate()

    def validate(self) -> None:
        """Check value ranges and that scoring weights sum to 100."""
        positive = (
            "proposal_ttl_minutes",
            "default_range_days",
            "default_suggestion_count",
            "default_task_duration",
            "candidate_interval_minutes",
            "default_granularity_minutes",
            "max_concurrent_writes",
        )
        for name in positive:
            if getattr(self, name) <= 0:
                raise ValidationError(f"{name} must be positive", field=name)
        if self.external_timeout_seconds <= 0:
            raise ValidationError("external_timeout_seconds must be positive", field="external_timeout_seconds")
        if self.max_retries < 0:
            raise ValidationError("max_retries must not be negative", field="max_retries")
        if self.retry_backoff_seconds < 0 or self.retry_backoff_max_seconds < 0:
            raise ValidationError("retry backoff must not be negative", field="retry_backoff_seconds")

        unknown = set(self.scoring_weights) - set(DEFAULT_SCORING_WEIGHTS)
        if unknown:
            raise ValidationError(f"Unknown scoring factors: {sorted(unknown)}", field="scoring_weights")
        total = sum(self.scoring_weights.values())
        if total != 100:
            raise ValidationError(f"Scoring weights must sum to 100, got {total}", field="scoring_weights")

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "EngineConfig":
        data = dict(data or {})
        known = {f.name for f in fields(cls)}
        unknown = set(data) - known
        if unknown:
            logger.warning(f"Ignoring unknown config keys: {sorted(unknown)}")
        values = {k: v for k, v in data.items() if k in known}
        if "scoring_weights" in values:
            # Partial overrides are merged onto the defaults
            weights = dict(DEFAULT_SCORING_WEIGHTS)
            weights.update(values["scoring_weights"] or {})
            values["scoring_weights"] = weights
        return cls(**values)

    def to_dict(self) -> Dict[str, Any]:
        return {f.name: getattr(self, f.name) for f in fields(self)}


def load_config(path: Optional[Union[str, Path]] = None) -> EngineConfig:
    """
    Load engine configuration from YAML.

    Args:
        path: Config file path. Falls back to $TASKSLOT_CONFIG, then defaults.

    Returns:
        Validated EngineConfig

    Raises:
        ValidationError: If the file is missing, malformed or out of range
    """
    path = path or os.environ.get(CONFIG_ENV_VAR)
    if not path:
        return EngineConfig()

    config_file = Path(path)
    if not config_file.exists():
        raise ValidationError(f"Config file not found: {config_file}", field="config")

    with open(config_file) as f:
        try:
            data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ValidationError(f"Invalid YAML in {config_file}: {e}", field="config") from e

    if data is not None and not isinstance(data, dict):
        raise ValidationError(f"Config root must be a mapping: {config_file}", field="config")

    config = EngineConfig.from_dict(data)
    logger.debug(f"Loaded config from {config_file}")
    return config
