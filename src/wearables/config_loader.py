"""Load, validate, and hot-reload the PulseBridge source priority policy.

The policy lives in ``source_policy.yaml`` alongside this module.  At startup
it is loaded once and cached.  Call ``reload_source_policy()`` to re-read from
disk after an admin update — no restart required.

Usage::

    from src.wearables.config_loader import get_source_policy_config

    config = get_source_policy_config()
    rank = config.rank("Steps", "garmin")   # SourceRank(priority=1, confidence=95)
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from pathlib import Path

import yaml

logger = logging.getLogger("pulsebridge.wearables.config")

# Path to the YAML file sitting next to this module
_CONFIG_PATH = Path(__file__).parent / "source_policy.yaml"

TIE_BREAKS = ("latest", "max_value", "min_value")


# ---------------------------------------------------------------------------
# Typed config sections
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SourceRank:
    """Priority (lower wins) and confidence (0–100) for one source."""

    priority: int
    confidence: int


@dataclass
class MetricPolicy:
    """Per-metric overrides of the global source ranking."""

    sources: dict[str, SourceRank] = field(default_factory=dict)
    tie_break: str = "latest"
    override_if_longer_by: float | None = None


@dataclass
class SourcePolicyConfig:
    """Complete, validated source policy.

    Attributes:
        version:  Config schema version string.
        default:  Rank applied to unlisted sources.
        sources:  Global source → rank table.
        metrics:  Metric name → MetricPolicy overrides.
    """

    version: str
    default: SourceRank
    sources: dict[str, SourceRank]
    metrics: dict[str, MetricPolicy]
    _raw: dict = field(default_factory=dict, repr=False)

    def rank(self, metric_name: str, source: str) -> SourceRank:
        """Return the rank for a metric+source pair.

        Metric overrides take precedence over the global table, which
        takes precedence over the default.
        """
        override = self.metrics.get(metric_name)
        if override and source in override.sources:
            return override.sources[source]
        return self.sources.get(source, self.default)

    def metric_policy(self, metric_name: str) -> MetricPolicy:
        return self.metrics.get(metric_name) or MetricPolicy()


# ---------------------------------------------------------------------------
# Loader / validation
# ---------------------------------------------------------------------------


class ConfigValidationError(ValueError):
    """Raised when source_policy.yaml fails validation."""


def _load_yaml(path: Path) -> dict:
    """Read and parse a YAML file.

    Raises:
        FileNotFoundError: If the file does not exist.
        ConfigValidationError: If the YAML is malformed.
    """
    if not path.exists():
        raise FileNotFoundError(f"Source policy not found: {path}")

    with path.open("r", encoding="utf-8") as fh:
        try:
            return yaml.safe_load(fh) or {}
        except yaml.YAMLError as exc:
            raise ConfigValidationError(f"YAML parse error in {path}: {exc}") from exc


def _build_rank(raw: object, where: str, errors: list[str]) -> SourceRank | None:
    if not isinstance(raw, dict):
        errors.append(f"{where} must be a mapping with priority and confidence")
        return None
    try:
        priority = int(raw["priority"])
        confidence = int(raw.get("confidence", 50))
    except KeyError:
        errors.append(f"{where}.priority is required")
        return None
    except (TypeError, ValueError):
        errors.append(f"{where} priority/confidence must be integers, got {raw!r}")
        return None
    if priority < 1:
        errors.append(f"{where}.priority = {priority} must be >= 1")
    if not (0 <= confidence <= 100):
        errors.append(f"{where}.confidence = {confidence} is out of range [0, 100]")
    return SourceRank(priority=priority, confidence=confidence)


def _validate_and_build(raw: dict) -> SourcePolicyConfig:
    """Validate the raw YAML dict and construct a SourcePolicyConfig.

    All problems are collected and reported together.

    Raises:
        ConfigValidationError: If required sections are missing or invalid.
    """
    errors: list[str] = []

    version = str(raw.get("version", "1.0"))

    # ── Default rank ──
    default = _build_rank(raw.get("default", {"priority": 10, "confidence": 50}), "default", errors)

    # ── Global sources ──
    sources_raw = raw.get("sources", {})
    if not sources_raw:
        errors.append("'sources' section is missing or empty")
    sources: dict[str, SourceRank] = {}
    for source, rank_raw in (sources_raw or {}).items():
        rank = _build_rank(rank_raw, f"sources.{source}", errors)
        if rank is not None:
            sources[str(source)] = rank

    # ── Metric overrides ──
    metrics: dict[str, MetricPolicy] = {}
    for metric, cfg in (raw.get("metrics") or {}).items():
        if not isinstance(cfg, dict):
            errors.append(f"metrics.{metric} must be a mapping")
            continue
        overrides: dict[str, SourceRank] = {}
        for source, rank_raw in (cfg.get("sources") or {}).items():
            rank = _build_rank(rank_raw, f"metrics.{metric}.sources.{source}", errors)
            if rank is not None:
                overrides[str(source)] = rank
        tie_break = cfg.get("tie_break", "latest")
        if tie_break not in TIE_BREAKS:
            errors.append(
                f"metrics.{metric}.tie_break = {tie_break!r} must be one of {', '.join(TIE_BREAKS)}"
            )
        margin = cfg.get("override_if_longer_by")
        if margin is not None:
            try:
                margin = float(margin)
            except (TypeError, ValueError):
                errors.append(f"metrics.{metric}.override_if_longer_by must be a number")
                margin = None
        metrics[str(metric)] = MetricPolicy(
            sources=overrides,
            tie_break=tie_break,
            override_if_longer_by=margin,
        )

    if errors:
        raise ConfigValidationError(
            f"source_policy.yaml has {len(errors)} validation error(s):\n"
            + "\n".join(f"  • {e}" for e in errors)
        )

    return SourcePolicyConfig(
        version=version,
        default=default,  # type: ignore[arg-type]
        sources=sources,
        metrics=metrics,
        _raw=raw,
    )


def load_source_policy(path: Path | None = None) -> SourcePolicyConfig:
    """Load and validate the source policy from disk.

    Args:
        path: Override path to YAML. Uses the bundled source_policy.yaml by default.
    """
    target = path or _CONFIG_PATH
    raw = _load_yaml(target)
    config = _validate_and_build(raw)
    logger.info("Loaded source policy v%s from %s", config.version, target)
    return config


# ---------------------------------------------------------------------------
# Global singleton with hot-reload support
# ---------------------------------------------------------------------------

_config: SourcePolicyConfig | None = None
_config_lock = threading.Lock()


def get_source_policy_config() -> SourcePolicyConfig:
    """Return the global SourcePolicyConfig singleton, loading it on first call."""
    global _config
    if _config is None:
        with _config_lock:
            if _config is None:  # double-checked locking
                _config = load_source_policy()
    return _config


def reload_source_policy(path: Path | None = None) -> SourcePolicyConfig:
    """Reload the policy from disk and replace the global singleton.

    If validation fails, the old policy is retained and the error is re-raised.

    Raises:
        ConfigValidationError: If the new config is invalid.
        FileNotFoundError:     If the config file is missing.
    """
    global _config
    new_config = load_source_policy(path)  # validate before acquiring lock
    with _config_lock:
        old_version = _config.version if _config else "none"
        _config = new_config
    logger.info("Reloaded source policy: %s → %s", old_version, new_config.version)
    return new_config
