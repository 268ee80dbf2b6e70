"""
Configuration for the routing and resilience engine.

Every component takes a frozen dataclass config. Values can be customized
in code, through ``ROUTEGUARD_*`` environment variables, or through a JSON
config file whose layout follows the automation settings file:

    {
      "auto_routing": {"stage1_threshold": 4},
      "adaptive_routing": {
        "weights": {"success_rate": 0.4, "avg_latency": 0.25, ...},
        "thresholds": {"min_confidence": 0.7, ...},
        "learning": {"adaptation_rate": 0.05, "min_samples": 20}
      },
      "auto_cleanup": {
        "circuit_breaker": {"failure_threshold": 3, ...},
        "automatic_recovery": {"max_retries": 3, ...}
      }
    }
"""

from __future__ import annotations

import json
import logging
import os
import threading
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Optional

from routeguard.exceptions import ConfigurationError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Stage1Config:
    """Thresholds for the lexical pre-filter.

    Attributes:
        threshold: Minimum aggregate score for a ``proceed`` decision.
        token_budget_threshold: Budgets strictly above this add one point.
        keyword_min: Distinct domain keywords needed for the keyword signal.
        category_min: Distinct domain categories needed for the category signal.
        complexity_min: Distinct complexity words needed for that signal.
        word_count_threshold: Word counts strictly above this add one point.
    """

    threshold: int = 4
    token_budget_threshold: int = 30000
    keyword_min: int = 3
    category_min: int = 2
    complexity_min: int = 2
    word_count_threshold: int = 200

    def __post_init__(self) -> None:
        if self.threshold < 0:
            raise ValueError("threshold must be non-negative")
        if self.token_budget_threshold < 0:
            raise ValueError("token_budget_threshold must be non-negative")
        for name in ("keyword_min", "category_min", "complexity_min"):
            if getattr(self, name) < 1:
                raise ValueError(f"{name} must be at least 1")
        if self.word_count_threshold < 0:
            raise ValueError("word_count_threshold must be non-negative")


@dataclass(frozen=True)
class ScorerConfig:
    """Fitness scoring parameters."""

    baseline_latency_ms: float = 5000.0
    experience_divisor: float = 1000.0
    experience_cap: float = 1.2
    cold_start_fitness: float = 0.5
    unknown_latency_score: float = 0.5
    unseen_pattern_success_rate: float = 0.5
    parallel_min_success: float = 0.70
    hierarchical_min_agents: int = 4

    def __post_init__(self) -> None:
        if self.baseline_latency_ms <= 0:
            raise ValueError("baseline_latency_ms must be positive")
        if self.experience_divisor <= 0:
            raise ValueError("experience_divisor must be positive")
        if self.experience_cap < 1.0:
            raise ValueError("experience_cap must be at least 1.0")
        for name in (
            "cold_start_fitness",
            "unknown_latency_score",
            "unseen_pattern_success_rate",
            "parallel_min_success",
        ):
            value = getattr(self, name)
            if not 0.0 <= value <= 1.0:
                raise ValueError(f"{name} must be between 0 and 1")
        if self.hierarchical_min_agents < 2:
            raise ValueError("hierarchical_min_agents must be at least 2")


@dataclass(frozen=True)
class WeightsConfig:
    """Initial routing weights, used when none are persisted yet.

    The four factor weights are fixed for the lifetime of a store; only
    ``min_confidence`` is moved by the weight adapter.
    """

    w_success: float = 0.40
    w_latency: float = 0.25
    w_cost: float = 0.15
    w_approval: float = 0.20
    min_confidence: float = 0.70
    adaptation_rate: float = 0.05
    min_samples: int = 20
    complexity_simple: int = 30
    complexity_complex: int = 60
    max_agents_parallel: int = 4

    def __post_init__(self) -> None:
        for name in ("w_success", "w_latency", "w_cost", "w_approval"):
            if getattr(self, name) < 0:
                raise ValueError(f"{name} must be non-negative")
        if not 0.0 <= self.min_confidence <= 1.0:
            raise ValueError("min_confidence must be between 0 and 1")
        if not 0.0 < self.adaptation_rate < 1.0:
            raise ValueError("adaptation_rate must be between 0 and 1")
        if self.min_samples < 1:
            raise ValueError("min_samples must be at least 1")
        if not 0 <= self.complexity_simple <= self.complexity_complex <= 100:
            raise ValueError("complexity bands must satisfy 0 <= simple <= complex <= 100")
        if self.max_agents_parallel < 1:
            raise ValueError("max_agents_parallel must be at least 1")


@dataclass(frozen=True)
class AdaptationConfig:
    """Bounds for the min_confidence controller."""

    window: int = 100
    raise_above: float = 0.80
    lower_below: float = 0.60
    ceiling: float = 0.90
    floor: float = 0.50

    def __post_init__(self) -> None:
        if self.window < 1:
            raise ValueError("window must be at least 1")
        if not 0.0 <= self.lower_below <= self.raise_above <= 1.0:
            raise ValueError("expected 0 <= lower_below <= raise_above <= 1")
        if not 0.0 <= self.floor <= self.ceiling <= 1.0:
            raise ValueError("expected 0 <= floor <= ceiling <= 1")


@dataclass(frozen=True)
class CircuitBreakerConfig:
    """Configuration for per-resource circuit breakers.

    Attributes:
        failure_threshold: Consecutive failures before a closed circuit opens.
        success_threshold: Consecutive half-open successes before closing.
        half_open_after_seconds: Time an open circuit waits before probing.
        half_open_max_probes: Concurrent probes allowed while half-open.

    Example:
        strict = CircuitBreakerConfig(failure_threshold=2, half_open_after_seconds=120.0)
    """

    failure_threshold: int = 3
    success_threshold: int = 2
    half_open_after_seconds: float = 60.0
    half_open_max_probes: int = 1

    def __post_init__(self) -> None:
        if self.failure_threshold < 1:
            raise ValueError("failure_threshold must be at least 1")
        if self.success_threshold < 1:
            raise ValueError("success_threshold must be at least 1")
        if self.half_open_after_seconds < 0:
            raise ValueError("half_open_after_seconds must be non-negative")
        if self.half_open_max_probes < 1:
            raise ValueError("half_open_max_probes must be at least 1")

    def with_overrides(
        self,
        failure_threshold: Optional[int] = None,
        success_threshold: Optional[int] = None,
        half_open_after_seconds: Optional[float] = None,
        half_open_max_probes: Optional[int] = None,
    ) -> CircuitBreakerConfig:
        """Create a new config with the given (non-None) overrides applied."""
        return CircuitBreakerConfig(
            failure_threshold=(
                failure_threshold if failure_threshold is not None else self.failure_threshold
            ),
            success_threshold=(
                success_threshold if success_threshold is not None else self.success_threshold
            ),
            half_open_after_seconds=(
                half_open_after_seconds
                if half_open_after_seconds is not None
                else self.half_open_after_seconds
            ),
            half_open_max_probes=(
                half_open_max_probes
                if half_open_max_probes is not None
                else self.half_open_max_probes
            ),
        )


@dataclass(frozen=True)
class RetryConfig:
    """Backoff and retry limits for the retry orchestrator.

    Backoff values are integer milliseconds.
    """

    max_retries: int = 3
    initial_backoff_ms: int = 1000
    max_backoff_ms: int = 30000
    backoff_multiplier: float = 2.0
    enable_jitter: bool = True

    def __post_init__(self) -> None:
        if self.max_retries < 1:
            raise ValueError("max_retries must be at least 1")
        if self.initial_backoff_ms < 0:
            raise ValueError("initial_backoff_ms must be non-negative")
        if self.max_backoff_ms < self.initial_backoff_ms:
            raise ValueError("max_backoff_ms must be >= initial_backoff_ms")
        if self.backoff_multiplier < 1.0:
            raise ValueError("backoff_multiplier must be at least 1.0")


@dataclass(frozen=True)
class RouteguardConfig:
    """Aggregate configuration for a RoutingEngine."""

    stage1: Stage1Config = field(default_factory=Stage1Config)
    scorer: ScorerConfig = field(default_factory=ScorerConfig)
    weights: WeightsConfig = field(default_factory=WeightsConfig)
    adaptation: AdaptationConfig = field(default_factory=AdaptationConfig)
    circuit_breaker: CircuitBreakerConfig = field(default_factory=CircuitBreakerConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)
    db_path: Optional[str] = None


def _get_env_int(name: str) -> Optional[int]:
    """Get an integer from environment variable, or None if not set/invalid."""
    value = os.environ.get(name)
    if value is None:
        return None
    try:
        return int(value)
    except ValueError:
        logger.warning("Ignoring non-integer value for %s: %r", name, value)
        return None


def _get_env_float(name: str) -> Optional[float]:
    """Get a float from environment variable, or None if not set/invalid."""
    value = os.environ.get(name)
    if value is None:
        return None
    try:
        return float(value)
    except ValueError:
        logger.warning("Ignoring non-numeric value for %s: %r", name, value)
        return None


def _get_env_bool(name: str) -> Optional[bool]:
    value = os.environ.get(name)
    if value is None:
        return None
    return value.strip().lower() in ("1", "true", "yes", "on")


# Per-resource circuit breaker configs (can be extended at runtime)
_RESOURCE_CONFIGS: dict[str, CircuitBreakerConfig] = {}
_resource_configs_lock = threading.Lock()


def get_circuit_breaker_config(
    resource_id: Optional[str] = None,
    base: Optional[CircuitBreakerConfig] = None,
) -> CircuitBreakerConfig:
    """Get circuit breaker configuration for a resource.

    Resolution order:
    1. Environment variable overrides (applied on top of the base config)
    2. Resource-specific config (if registered)
    3. ``base`` (or the defaults)

    Environment variables:
        ROUTEGUARD_CB_FAILURE_THRESHOLD
        ROUTEGUARD_CB_SUCCESS_THRESHOLD
        ROUTEGUARD_CB_HALF_OPEN_AFTER_SECONDS
        ROUTEGUARD_CB_HALF_OPEN_MAX_PROBES
    """
    with _resource_configs_lock:
        registered = _RESOURCE_CONFIGS.get(resource_id) if resource_id else None
    base_config = registered or base or CircuitBreakerConfig()

    env_failure = _get_env_int("ROUTEGUARD_CB_FAILURE_THRESHOLD")
    env_success = _get_env_int("ROUTEGUARD_CB_SUCCESS_THRESHOLD")
    env_timeout = _get_env_float("ROUTEGUARD_CB_HALF_OPEN_AFTER_SECONDS")
    env_probes = _get_env_int("ROUTEGUARD_CB_HALF_OPEN_MAX_PROBES")

    if any(v is not None for v in [env_failure, env_success, env_timeout, env_probes]):
        return base_config.with_overrides(
            failure_threshold=env_failure,
            success_threshold=env_success,
            half_open_after_seconds=env_timeout,
            half_open_max_probes=env_probes,
        )

    return base_config


def register_resource_config(resource_id: str, config: CircuitBreakerConfig) -> None:
    """Register a circuit breaker configuration for a specific resource.

    Example:
        register_resource_config(
            "agent:security-auditor",
            CircuitBreakerConfig(failure_threshold=5, half_open_after_seconds=120),
        )
    """
    with _resource_configs_lock:
        _RESOURCE_CONFIGS[resource_id] = config


def unregister_resource_config(resource_id: str) -> bool:
    """Remove a resource-specific configuration. Returns True if one existed."""
    with _resource_configs_lock:
        return _RESOURCE_CONFIGS.pop(resource_id, None) is not None


def get_registered_resource_configs() -> dict[str, CircuitBreakerConfig]:
    with _resource_configs_lock:
        return dict(_RESOURCE_CONFIGS)


def clear_resource_configs() -> None:
    """Clear all resource-specific configurations. Useful for testing."""
    with _resource_configs_lock:
        _RESOURCE_CONFIGS.clear()


# (section, field) -> environment variable
_ENV_OVERRIDES: dict[tuple[str, str], tuple[str, Any]] = {
    ("stage1", "threshold"): ("ROUTEGUARD_STAGE1_THRESHOLD", _get_env_int),
    ("weights", "min_confidence"): ("ROUTEGUARD_MIN_CONFIDENCE", _get_env_float),
    ("weights", "adaptation_rate"): ("ROUTEGUARD_ADAPTATION_RATE", _get_env_float),
    ("weights", "min_samples"): ("ROUTEGUARD_MIN_SAMPLES", _get_env_int),
    ("retry", "max_retries"): ("ROUTEGUARD_RETRY_MAX_RETRIES", _get_env_int),
    ("retry", "initial_backoff_ms"): ("ROUTEGUARD_RETRY_INITIAL_BACKOFF_MS", _get_env_int),
    ("retry", "max_backoff_ms"): ("ROUTEGUARD_RETRY_MAX_BACKOFF_MS", _get_env_int),
    ("retry", "backoff_multiplier"): ("ROUTEGUARD_RETRY_BACKOFF_MULTIPLIER", _get_env_float),
    ("retry", "enable_jitter"): ("ROUTEGUARD_RETRY_ENABLE_JITTER", _get_env_bool),
}

# JSON path -> (section, field)
_FILE_KEYS: dict[tuple[str, ...], tuple[str, str]] = {
    ("auto_routing", "stage1_threshold"): ("stage1", "threshold"),
    ("adaptive_routing", "weights", "success_rate"): ("weights", "w_success"),
    ("adaptive_routing", "weights", "avg_latency"): ("weights", "w_latency"),
    ("adaptive_routing", "weights", "cost_efficiency"): ("weights", "w_cost"),
    ("adaptive_routing", "weights", "user_approval"): ("weights", "w_approval"),
    ("adaptive_routing", "thresholds", "min_confidence"): ("weights", "min_confidence"),
    ("adaptive_routing", "thresholds", "complexity_simple"): ("weights", "complexity_simple"),
    ("adaptive_routing", "thresholds", "complexity_complex"): ("weights", "complexity_complex"),
    ("adaptive_routing", "thresholds", "max_agents_parallel"): ("weights", "max_agents_parallel"),
    ("adaptive_routing", "learning", "adaptation_rate"): ("weights", "adaptation_rate"),
    ("adaptive_routing", "learning", "min_samples"): ("weights", "min_samples"),
    ("auto_cleanup", "circuit_breaker", "failure_threshold"): (
        "circuit_breaker",
        "failure_threshold",
    ),
    ("auto_cleanup", "circuit_breaker", "success_threshold"): (
        "circuit_breaker",
        "success_threshold",
    ),
    ("auto_cleanup", "circuit_breaker", "half_open_after_seconds"): (
        "circuit_breaker",
        "half_open_after_seconds",
    ),
    ("auto_cleanup", "automatic_recovery", "max_retries"): ("retry", "max_retries"),
    ("auto_cleanup", "automatic_recovery", "initial_backoff_ms"): ("retry", "initial_backoff_ms"),
    ("auto_cleanup", "automatic_recovery", "max_backoff_ms"): ("retry", "max_backoff_ms"),
    ("auto_cleanup", "automatic_recovery", "backoff_multiplier"): ("retry", "backoff_multiplier"),
    ("auto_cleanup", "automatic_recovery", "enable_jitter"): ("retry", "enable_jitter"),
}


def _lookup(data: dict[str, Any], path: tuple[str, ...]) -> Any:
    node: Any = data
    for part in path:
        if not isinstance(node, dict) or part not in node:
            return None
        node = node[part]
    return node


def _apply(
    config: RouteguardConfig, overrides: dict[str, dict[str, Any]]
) -> RouteguardConfig:
    """Rebuild the section dataclasses with overrides; revalidates each."""
    sections: dict[str, Any] = {}
    for section, values in overrides.items():
        if not values:
            continue
        current = getattr(config, section)
        valid = {f.name for f in fields(current)}
        unknown = set(values) - valid
        if unknown:
            raise ConfigurationError(section, f"unknown keys {sorted(unknown)}")
        try:
            sections[section] = replace(current, **values)
        except (TypeError, ValueError) as e:
            raise ConfigurationError(section, str(e)) from e
    return replace(config, **sections) if sections else config


def config_from_dict(
    data: dict[str, Any], base: Optional[RouteguardConfig] = None
) -> RouteguardConfig:
    """Build a config from a settings dict in the automation file layout."""
    overrides: dict[str, dict[str, Any]] = {}
    for path, (section, name) in _FILE_KEYS.items():
        value = _lookup(data, path)
        if value is not None:
            overrides.setdefault(section, {})[name] = value
    config = _apply(base or RouteguardConfig(), overrides)
    db_path = _lookup(data, ("routeguard", "db_path"))
    if db_path:
        config = replace(config, db_path=str(db_path))
    return config


def load_config(path: str | Path | None = None, use_env: bool = True) -> RouteguardConfig:
    """Load configuration from an optional JSON file plus environment overrides.

    ``path`` defaults to ``ROUTEGUARD_CONFIG`` when set. A missing file is
    an error; an unset path yields the defaults.

    Raises:
        ConfigurationError: If the file cannot be read or holds invalid values.
    """
    config = RouteguardConfig()
    file_path = path or os.environ.get("ROUTEGUARD_CONFIG")
    if file_path:
        try:
            data = json.loads(Path(file_path).read_text())
        except FileNotFoundError as e:
            raise ConfigurationError("config", f"file not found: {file_path}") from e
        except json.JSONDecodeError as e:
            raise ConfigurationError("config", f"invalid JSON in {file_path}: {e}") from e
        if not isinstance(data, dict):
            raise ConfigurationError("config", f"{file_path} must contain a JSON object")
        config = config_from_dict(data, config)
        logger.debug("Loaded configuration from %s", file_path)

    if use_env:
        env: dict[str, dict[str, Any]] = {}
        for (section, name), (var, getter) in _ENV_OVERRIDES.items():
            value = getter(var)
            if value is not None:
                env.setdefault(section, {})[name] = value
        config = _apply(config, env)
        config = replace(
            config,
            circuit_breaker=get_circuit_breaker_config(base=config.circuit_breaker),
        )
        db_path = os.environ.get("ROUTEGUARD_DB_PATH")
        if db_path:
            config = replace(config, db_path=db_path)

    return config


__all__ = [
    "Stage1Config",
    "ScorerConfig",
    "WeightsConfig",
    "AdaptationConfig",
    "CircuitBreakerConfig",
    "RetryConfig",
    "RouteguardConfig",
    "get_circuit_breaker_config",
    "register_resource_config",
    "unregister_resource_config",
    "get_registered_resource_configs",
    "clear_resource_configs",
    "config_from_dict",
    "load_config",
]
