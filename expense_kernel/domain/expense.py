"""
Expense and directory value objects (``expense_kernel.domain.expense``).

Responsibility
--------------
The engine's view of its external collaborators: the expense being routed
and the company directory used to expand approver selectors.

Architecture position
---------------------
**Kernel domain layer** -- pure value objects.  ZERO I/O.

Invariants enforced
-------------------
* ``ExpenseSnapshot.amount`` is a ``Decimal`` already converted to the
  company currency; currency conversion happens outside the engine.
* Directory lookups happen once, at flow-build time.  Nothing downstream of
  the flow builder holds a directory reference.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Protocol, runtime_checkable
from uuid import UUID


class UserRole(str, Enum):
    """Directory roles relevant to approver selection."""

    ADMIN = "admin"
    MANAGER = "manager"
    EMPLOYEE = "employee"


@dataclass(frozen=True)
class ExpenseSnapshot:
    """Immutable view of the expense submitted for approval."""

    expense_id: UUID
    amount: Decimal
    category: str
    employee_id: str
    department: str | None = None
    currency: str = "USD"
    company_id: str | None = None

    def __post_init__(self) -> None:
        if not isinstance(self.amount, Decimal):
            object.__setattr__(self, "amount", Decimal(str(self.amount)))


@dataclass(frozen=True)
class DirectoryUser:
    """A user as seen by the company directory."""

    user_id: str
    role: UserRole
    department: str | None = None
    is_active: bool = True


@runtime_checkable
class CompanyDirectory(Protocol):
    """Pluggable interface for company user lookups."""

    def list_users(self) -> Sequence[DirectoryUser]:
        """Return every user of the company (active and inactive)."""
        ...


class StaticCompanyDirectory:
    """Directory backed by a fixed, pre-loaded list of users."""

    def __init__(self, users: Sequence[DirectoryUser] = ()):
        self._users = tuple(users)

    def list_users(self) -> Sequence[DirectoryUser]:
        return self._users
