"""
Configuration schema (``expense_config.schema``).

Responsibility
--------------
Frozen dataclasses for the parsed form of the YAML configuration files:
engine runtime settings and approval rule sets.

Architecture position
---------------------
**Config layer** -- pure data definitions.  Rule sets hold kernel domain
``ApprovalRule`` values; nothing here performs I/O.

Invariants enforced
-------------------
* All dataclasses are frozen.
* ``RuleSet.checksum`` is the SHA-256 of the source YAML document and
  changes whenever any rule changes.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal

from expense_kernel.domain.rules import ApprovalRule


@dataclass(frozen=True)
class EngineSettings:
    """Runtime settings of the approval engine (``engine.yaml``)."""

    database_url: str = "sqlite://"
    escalation_tick_seconds: float = 60.0
    default_timeout_hours: Decimal = Decimal("72")
    log_level: str = "INFO"


@dataclass(frozen=True)
class RuleSet:
    """A named, versioned collection of approval rules (``approval_rules.yaml``)."""

    name: str
    version: int
    rules: tuple[ApprovalRule, ...]
    checksum: str
    company_id: str | None = None
    description: str = ""
