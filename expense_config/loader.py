"""
Configuration Loader (``expense_config.loader``).

Responsibility
--------------
Loads YAML files and parses them into typed ``expense_config.schema``
instances.  Rule definitions go through the kernel's rule codec so that
YAML, the database ``definition`` column and rule fingerprints share one
payload shape.

Architecture position
---------------------
**Config layer** -- infrastructure tooling.  Depends on the kernel domain
codec and on ``expense_engines.rule_validation``; nothing in the kernel
imports this package.

Invariants enforced
-------------------
* Every rule in a rule set passes ``validate_rule`` before the set is
  returned.
* Rule names are unique within a set.
* ``compute_checksum`` produces a deterministic SHA-256 hash for
  configuration identity and change detection.

Failure modes
-------------
* Missing YAML file  -> ``FileNotFoundError`` propagates.
* Malformed YAML  -> ``yaml.YAMLError`` propagates.
* Malformed or invalid rule  -> ``ConfigurationError`` naming the rule.
* Bad settings value  -> ``ConfigurationError``.
"""

from __future__ import annotations

import hashlib
import json
import os
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any
from uuid import NAMESPACE_URL, uuid5

import yaml

from expense_config.schema import EngineSettings, RuleSet
from expense_engines.rule_validation import validate_rule
from expense_kernel.domain.codec import rule_from_payload
from expense_kernel.domain.rules import ApprovalRule
from expense_kernel.exceptions import ConfigurationError

DATABASE_URL_ENV = "EXPENSE_ENGINE_DATABASE_URL"


def load_yaml_file(path: Path) -> dict[str, Any]:
    """
    Load a single YAML file and return its contents as a dict.

    Raises:
        FileNotFoundError: if the file does not exist.
        yaml.YAMLError: if the file contains invalid YAML.
    """
    with open(path) as f:
        return yaml.safe_load(f) or {}


def compute_checksum(data: dict[str, Any]) -> str:
    """
    Compute SHA-256 checksum of canonical JSON serialization.

    Identical ``data`` always produces identical checksums.
    """
    canonical = json.dumps(data, sort_keys=True, default=str)
    return hashlib.sha256(canonical.encode()).hexdigest()


def parse_engine_settings(
    data: dict[str, Any],
    environ: dict[str, str] | None = None,
) -> EngineSettings:
    """Parse ``engine.yaml`` contents.

    ``EXPENSE_ENGINE_DATABASE_URL`` in ``environ`` (``os.environ`` by
    default) overrides ``database_url``.
    """
    environ = os.environ if environ is None else environ
    defaults = EngineSettings()
    section = data.get("engine", data) or {}

    try:
        tick = float(section.get("escalation_tick_seconds", defaults.escalation_tick_seconds))
        timeout = Decimal(str(section.get("default_timeout_hours", defaults.default_timeout_hours)))
    except (TypeError, ValueError, InvalidOperation) as exc:
        raise ConfigurationError(f"invalid engine setting: {exc}") from exc
    if tick <= 0:
        raise ConfigurationError(f"escalation_tick_seconds must be positive, got {tick}")
    if timeout <= 0:
        raise ConfigurationError(f"default_timeout_hours must be positive, got {timeout}")

    return EngineSettings(
        database_url=environ.get(DATABASE_URL_ENV)
        or section.get("database_url", defaults.database_url),
        escalation_tick_seconds=tick,
        default_timeout_hours=timeout,
        log_level=str(section.get("log_level", defaults.log_level)).upper(),
    )


def _apply_rule_defaults(
    payload: dict[str, Any],
    set_name: str,
    company_id: str | None,
    default_timeout_hours: Decimal | None,
) -> dict[str, Any]:
    payload = dict(payload)
    if not payload.get("rule_id") and payload.get("name"):
        # Stable ids so reloading a set yields identical rules
        payload["rule_id"] = str(
            uuid5(NAMESPACE_URL, f"expense-rule:{company_id}:{set_name}:{payload['name']}")
        )
    if company_id is not None and payload.get("company_id") is None:
        payload["company_id"] = company_id
    escalation = payload.get("escalation")
    if (
        default_timeout_hours is not None
        and isinstance(escalation, dict)
        and "timeout_hours" not in escalation
    ):
        payload["escalation"] = {**escalation, "timeout_hours": str(default_timeout_hours)}
    return payload


def parse_rule_set(
    data: dict[str, Any],
    default_timeout_hours: Decimal | None = None,
) -> RuleSet:
    """
    Parse and validate a rule set document.

    Raises:
        ConfigurationError: if any rule is malformed, invalid, or the set
            contains duplicate rule names.
    """
    raw_rules = data.get("rules") or []
    if not isinstance(raw_rules, list):
        raise ConfigurationError(f"rules must be a list, got {type(raw_rules).__name__}")

    company_id = data.get("company_id")
    set_name = str(data.get("name", "default"))
    rules: list[ApprovalRule] = []
    seen: set[str] = set()
    for raw in raw_rules:
        if not isinstance(raw, dict):
            raise ConfigurationError(f"rule entries must be mappings, got {raw!r}")
        rule = rule_from_payload(
            _apply_rule_defaults(raw, set_name, company_id, default_timeout_hours)
        )
        if rule.name in seen:
            raise ConfigurationError("duplicate rule name in rule set", rule_name=rule.name)
        seen.add(rule.name)
        validate_rule(rule)
        rules.append(rule)

    return RuleSet(
        name=set_name,
        version=int(data.get("version", 1)),
        rules=tuple(rules),
        checksum=compute_checksum(data),
        company_id=company_id,
        description=data.get("description") or "",
    )


def load_rule_set(
    path: Path,
    default_timeout_hours: Decimal | None = None,
) -> RuleSet:
    """Load and validate an ``approval_rules.yaml`` file."""
    return parse_rule_set(load_yaml_file(Path(path)), default_timeout_hours)
