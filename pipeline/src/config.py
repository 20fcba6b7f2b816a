"""
Neighborhood News: Pipeline Configuration
Loads config files from the project config directory.
Environment variables override individual values.
"""

from __future__ import annotations
import os
from pathlib import Path
from typing import Optional

import yaml

CONFIG_DIR = Path(
    os.environ.get(
        "PIPELINE_CONFIG_DIR",
        str(Path(__file__).parent.parent.parent / "config"),
    )
)

DEFAULTS: dict = {
    "thresholds": {
        "qualify": 0.6,
        "auto_approve": 0.85,
        "auto_reject_below": None,
    },
    "batches": {
        "score": 20,
        "generate": 10,
        "validate": 20,
        "publish": 20,
        "max_items_per_source": 10,
    },
    "workers": {
        "collect": 4,
        "llm": 4,
    },
    "timeouts": {
        "feed_seconds": 10,
        "oracle_seconds": 60,
    },
    "retries": {
        "feed_max_attempts": 3,
        "feed_delay_seconds": 2.0,
        "oracle_max_retries": 2,
        "oracle_backoff_seconds": 1.0,
        "generation_max_attempts": 3,
    },
    "models": {
        "scorer": {"name": "claude-sonnet-4-20250514", "max_tokens": 200},
        "generator": {"name": "claude-sonnet-4-20250514", "max_tokens": 800},
        "validator": {"name": "claude-sonnet-4-20250514", "max_tokens": 300},
    },
    "default_neighborhood": "praha4",
    "lease_ttl_seconds": 3600,
}


def _load_yaml(name: str) -> dict:
    path = CONFIG_DIR / name
    if not path.exists():
        return {}
    with open(path) as f:
        return yaml.safe_load(f) or {}


def _merge(base: dict, override: dict) -> dict:
    merged = dict(base)
    for key, val in override.items():
        if isinstance(val, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge(merged[key], val)
        else:
            merged[key] = val
    return merged


def load_pipeline() -> dict:
    return _merge(DEFAULTS, _load_yaml("pipeline.yaml"))


def load_sources() -> list[dict]:
    return list(_load_yaml("sources.yaml").get("sources", []))


def get_thresholds() -> dict[str, Optional[float]]:
    cfg = load_pipeline()["thresholds"]
    auto_reject = os.environ.get("AUTO_REJECT_BELOW", cfg.get("auto_reject_below"))
    return {
        "qualify": float(os.environ.get("QUALIFY_THRESHOLD", cfg["qualify"])),
        "auto_approve": float(os.environ.get("AUTO_APPROVE_THRESHOLD", cfg["auto_approve"])),
        "auto_reject_below": float(auto_reject) if auto_reject not in (None, "") else None,
    }


def get_batch_sizes() -> dict[str, int]:
    cfg = load_pipeline()["batches"]
    return {key: int(val) for key, val in cfg.items()}


def get_worker_counts() -> dict[str, int]:
    cfg = load_pipeline()["workers"]
    return {
        "collect": int(os.environ.get("COLLECT_WORKERS", cfg["collect"])),
        "llm": int(os.environ.get("LLM_WORKERS", cfg["llm"])),
    }


def get_timeouts() -> dict[str, float]:
    cfg = load_pipeline()["timeouts"]
    return {
        "feed_seconds": float(os.environ.get("COLLECTION_TIMEOUT", cfg["feed_seconds"])),
        "oracle_seconds": float(os.environ.get("ORACLE_TIMEOUT", cfg["oracle_seconds"])),
    }


def get_retry_policy() -> dict[str, float]:
    cfg = load_pipeline()["retries"]
    return {
        "feed_max_attempts": int(os.environ.get("COLLECTION_MAX_RETRIES", cfg["feed_max_attempts"])),
        "feed_delay_seconds": float(os.environ.get("COLLECTION_RETRY_DELAY", cfg["feed_delay_seconds"])),
        "oracle_max_retries": int(os.environ.get("ORACLE_MAX_RETRIES", cfg["oracle_max_retries"])),
        "oracle_backoff_seconds": float(os.environ.get("ORACLE_BACKOFF", cfg["oracle_backoff_seconds"])),
        "generation_max_attempts": int(os.environ.get("GENERATION_MAX_ATTEMPTS", cfg["generation_max_attempts"])),
    }


def get_model(stage: str) -> dict:
    """Model name and token cap for an oracle stage ("scorer", "generator", "validator")."""
    cfg = load_pipeline()["models"][stage]
    return {
        "name": os.environ.get(f"{stage.upper()}_MODEL", cfg["name"]),
        "max_tokens": int(cfg.get("max_tokens", 300)),
    }


def get_default_neighborhood() -> str:
    return os.environ.get("DEFAULT_NEIGHBORHOOD", load_pipeline()["default_neighborhood"])


def get_lease_ttl() -> int:
    return int(load_pipeline()["lease_ttl_seconds"])
