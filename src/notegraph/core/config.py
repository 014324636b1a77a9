"""
NoteGraph Configuration System
==============================
Centralized, validated configuration with environment variable overrides.

Priority: ENV (NOTEGRAPH_<KEY>) > YAML (``notegraph:`` root key) > defaults.
"""

import os
from pathlib import Path
from typing import Optional
from dataclasses import dataclass, field

import yaml

from notegraph.core.exceptions import ConfigurationError


@dataclass(frozen=True)
class SyncConfig:
    flush_delay_ms: int = 100


@dataclass(frozen=True)
class ProjectionConfig:
    confidence_threshold: float = 0.5
    rebuild_delay_ms: int = 500
    centrality_node_ceiling: int = 100
    include_extracted_entities: bool = True
    include_concepts: bool = True


@dataclass(frozen=True)
class SearchConfig:
    default_profile: str = "balanced"
    overfetch_factor: int = 5
    anchor_fraction: float = 0.2
    min_anchors: int = 3
    propagation_boost: float = 0.15
    fallback_boost: float = 0.1
    degree_cap: int = 20
    connectivity_cap: int = 10
    model_tier: str = "small"


@dataclass(frozen=True)
class SearchCacheConfig:
    max_entries: int = 100
    ttl_seconds: float = 300.0


@dataclass(frozen=True)
class StoreConfig:
    sqlite_path: str = "./data/notegraph.db"
    timeout_seconds: float = 30.0


@dataclass(frozen=True)
class ObservabilityConfig:
    log_level: str = "INFO"
    json_logs: bool = False


@dataclass(frozen=True)
class NoteGraphConfig:
    """Root configuration object."""
    sync: SyncConfig = field(default_factory=SyncConfig)
    projection: ProjectionConfig = field(default_factory=ProjectionConfig)
    search: SearchConfig = field(default_factory=SearchConfig)
    search_cache: SearchCacheConfig = field(default_factory=SearchCacheConfig)
    store: StoreConfig = field(default_factory=StoreConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)


def _env_override(key: str, default):
    """Check for NOTEGRAPH_<KEY> environment variable override."""
    env_key = f"NOTEGRAPH_{key.upper()}"
    val = os.environ.get(env_key)
    if val is None:
        return default
    # Type coercion based on the default's type
    try:
        if isinstance(default, bool):
            return val.lower() in ("true", "1", "yes")
        if isinstance(default, int):
            return int(val)
        if isinstance(default, float):
            return float(val)
    except ValueError as exc:
        raise ConfigurationError(config_key=env_key, reason=f"cannot parse {val!r}: {exc}") from exc
    return val


def _require_positive(key: str, value) -> None:
    if value <= 0:
        raise ConfigurationError(config_key=key, reason=f"must be positive, got {value}")


def _require_unit_interval(key: str, value) -> None:
    if not 0.0 <= value <= 1.0:
        raise ConfigurationError(config_key=key, reason=f"must be within [0, 1], got {value}")


def _build_sync(raw: dict) -> SyncConfig:
    cfg = SyncConfig(
        flush_delay_ms=_env_override("SYNC_FLUSH_DELAY_MS", raw.get("flush_delay_ms", 100)),
    )
    _require_positive("sync.flush_delay_ms", cfg.flush_delay_ms)
    return cfg


def _build_projection(raw: dict) -> ProjectionConfig:
    cfg = ProjectionConfig(
        confidence_threshold=_env_override(
            "PROJECTION_CONFIDENCE_THRESHOLD", float(raw.get("confidence_threshold", 0.5))
        ),
        rebuild_delay_ms=_env_override("PROJECTION_REBUILD_DELAY_MS", raw.get("rebuild_delay_ms", 500)),
        centrality_node_ceiling=_env_override(
            "PROJECTION_CENTRALITY_NODE_CEILING", raw.get("centrality_node_ceiling", 100)
        ),
        include_extracted_entities=raw.get("include_extracted_entities", True),
        include_concepts=raw.get("include_concepts", True),
    )
    _require_unit_interval("projection.confidence_threshold", cfg.confidence_threshold)
    _require_positive("projection.rebuild_delay_ms", cfg.rebuild_delay_ms)
    if cfg.centrality_node_ceiling < 0:
        raise ConfigurationError(
            config_key="projection.centrality_node_ceiling",
            reason=f"must not be negative, got {cfg.centrality_node_ceiling}",
        )
    return cfg


def _build_search(raw: dict) -> SearchConfig:
    cfg = SearchConfig(
        default_profile=_env_override("SEARCH_DEFAULT_PROFILE", raw.get("default_profile", "balanced")),
        overfetch_factor=_env_override("SEARCH_OVERFETCH_FACTOR", raw.get("overfetch_factor", 5)),
        anchor_fraction=float(raw.get("anchor_fraction", 0.2)),
        min_anchors=raw.get("min_anchors", 3),
        propagation_boost=float(raw.get("propagation_boost", 0.15)),
        fallback_boost=float(raw.get("fallback_boost", 0.1)),
        degree_cap=raw.get("degree_cap", 20),
        connectivity_cap=raw.get("connectivity_cap", 10),
        model_tier=_env_override("SEARCH_MODEL_TIER", raw.get("model_tier", "small")),
    )
    _require_positive("search.overfetch_factor", cfg.overfetch_factor)
    _require_unit_interval("search.anchor_fraction", cfg.anchor_fraction)
    _require_positive("search.degree_cap", cfg.degree_cap)
    _require_positive("search.connectivity_cap", cfg.connectivity_cap)
    return cfg


def _build_search_cache(raw: dict) -> SearchCacheConfig:
    cfg = SearchCacheConfig(
        max_entries=_env_override("SEARCH_CACHE_MAX_ENTRIES", raw.get("max_entries", 100)),
        ttl_seconds=_env_override("SEARCH_CACHE_TTL_SECONDS", float(raw.get("ttl_seconds", 300.0))),
    )
    _require_positive("search_cache.max_entries", cfg.max_entries)
    _require_positive("search_cache.ttl_seconds", cfg.ttl_seconds)
    return cfg


def load_config(path: Optional[Path] = None) -> NoteGraphConfig:
    """
    Load configuration from YAML file with environment variable overrides.

    Args:
        path: Path to config.yaml. If None, searches ./config.yaml and the
            repository root.

    Returns:
        Validated NoteGraphConfig instance.

    Raises:
        ConfigurationError: If a value is out of range.
    """
    if path is None:
        candidates = [
            Path("config.yaml"),
            Path(__file__).parent.parent.parent.parent / "config.yaml",
        ]
        for candidate in candidates:
            if candidate.exists():
                path = candidate
                break
    else:
        path = Path(path)

    raw = {}
    if path is not None and path.exists():
        with open(path) as f:
            loaded = yaml.safe_load(f) or {}
            raw = loaded.get("notegraph") or {}

    store_raw = raw.get("store") or {}
    obs_raw = raw.get("observability") or {}

    return NoteGraphConfig(
        sync=_build_sync(raw.get("sync") or {}),
        projection=_build_projection(raw.get("projection") or {}),
        search=_build_search(raw.get("search") or {}),
        search_cache=_build_search_cache(raw.get("search_cache") or {}),
        store=StoreConfig(
            sqlite_path=_env_override("SQLITE_PATH", store_raw.get("sqlite_path", "./data/notegraph.db")),
            timeout_seconds=float(store_raw.get("timeout_seconds", 30.0)),
        ),
        observability=ObservabilityConfig(
            log_level=_env_override("LOG_LEVEL", obs_raw.get("log_level", "INFO")),
            json_logs=_env_override("JSON_LOGS", obs_raw.get("json_logs", False)),
        ),
    )


_CONFIG: Optional[NoteGraphConfig] = None


def get_config() -> NoteGraphConfig:
    """Get or initialize the global config singleton."""
    global _CONFIG
    if _CONFIG is None:
        _CONFIG = load_config()
    return _CONFIG


def reset_config():
    """Reset the global config singleton (useful for testing)."""
    global _CONFIG
    _CONFIG = None
