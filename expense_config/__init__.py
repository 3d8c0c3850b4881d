"""
expense_config -- public entrypoints for approval engine configuration.

Responsibility:
    Provides ``get_engine_settings()`` for runtime settings and
    ``get_rule_set()`` / ``load_rule_set()`` for YAML-authored approval
    rules.  YAML parsing details stay in ``expense_config.loader``.

Architecture position:
    Configuration -- sits above ``expense_kernel`` and ``expense_engines``.
    The kernel MUST NEVER import from ``expense_config``.

Invariants enforced:
    - Every returned rule has passed ``validate_rule``.
    - Deterministic: the same YAML always yields the same checksum.

Failure modes:
    - ``FileNotFoundError`` -- the configuration set does not exist.
    - ``ConfigurationError`` -- a setting or rule is malformed.

Audit relevance:
    Every successful load emits an ``EXPENSE_CONFIG_TRACE`` log entry with
    the set name, version, checksum and rule count.
"""

from __future__ import annotations

import logging
from pathlib import Path

from expense_config.loader import (
    DATABASE_URL_ENV,
    compute_checksum,
    load_rule_set,
    load_yaml_file,
    parse_engine_settings,
)
from expense_config.schema import EngineSettings, RuleSet

_logger = logging.getLogger("expense_kernel.config")

# Default configuration sets directory
_DEFAULT_CONFIG_DIR = Path(__file__).parent / "sets" / "default"

ENGINE_FILE = "engine.yaml"
RULES_FILE = "approval_rules.yaml"


def get_engine_settings(config_dir: Path | None = None) -> EngineSettings:
    """Load ``engine.yaml`` from ``config_dir`` (the default set when None)."""
    directory = Path(config_dir) if config_dir is not None else _DEFAULT_CONFIG_DIR
    data = load_yaml_file(directory / ENGINE_FILE)
    settings = parse_engine_settings(data)
    _logger.info(
        "EXPENSE_CONFIG_TRACE",
        extra={
            "trace_type": "EXPENSE_CONFIG_TRACE",
            "config_file": ENGINE_FILE,
            "config_dir": str(directory),
            "checksum": compute_checksum(data),
            "escalation_tick_seconds": settings.escalation_tick_seconds,
        },
    )
    return settings


def get_rule_set(config_dir: Path | None = None) -> RuleSet:
    """Load and validate ``approval_rules.yaml`` from a configuration set.

    Escalation policies that omit ``timeout_hours`` inherit the set's
    ``default_timeout_hours`` from ``engine.yaml``.
    """
    directory = Path(config_dir) if config_dir is not None else _DEFAULT_CONFIG_DIR
    settings = get_engine_settings(directory)
    rule_set = load_rule_set(directory / RULES_FILE, settings.default_timeout_hours)
    _logger.info(
        "EXPENSE_CONFIG_TRACE",
        extra={
            "trace_type": "EXPENSE_CONFIG_TRACE",
            "config_file": RULES_FILE,
            "rule_set": rule_set.name,
            "rule_set_version": rule_set.version,
            "checksum": rule_set.checksum,
            "rule_count": len(rule_set.rules),
        },
    )
    return rule_set


__all__ = [
    "DATABASE_URL_ENV",
    "EngineSettings",
    "RuleSet",
    "compute_checksum",
    "get_engine_settings",
    "get_rule_set",
    "load_rule_set",
]
