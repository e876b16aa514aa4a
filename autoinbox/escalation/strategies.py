"""Employee selection policies for queued messages.

A strategy only suggests who should pick an entry up (``offered_to``). The
claim itself stays first-come-first-served.
"""

from __future__ import annotations

import threading
from collections.abc import Mapping, Sequence
from typing import Protocol


class EmployeeDirectory(Protocol):
    def list_available(self, workspace_id: str) -> list[str]: ...


class StaticEmployeeDirectory:
    """Employees per workspace supplied at startup."""

    def __init__(self, employees: Mapping[str, Sequence[str]] | None = None) -> None:
        self._employees = {ws: list(ids) for ws, ids in (employees or {}).items()}

    def list_available(self, workspace_id: str) -> list[str]:
        return list(self._employees.get(workspace_id, []))


class AssignmentStrategy(Protocol):
    def select(
        self, workspace_id: str, employees: Sequence[str], open_load: Mapping[str, int]
    ) -> str | None: ...


class RoundRobinStrategy:
    """Cycle through available employees, per workspace."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._cursor: dict[str, int] = {}

    def select(
        self, workspace_id: str, employees: Sequence[str], open_load: Mapping[str, int]
    ) -> str | None:
        if not employees:
            return None
        with self._lock:
            index = self._cursor.get(workspace_id, 0) % len(employees)
            self._cursor[workspace_id] = index + 1
        return employees[index]


class LeastLoadedStrategy:
    """Pick the employee with the fewest open claims; ties keep directory order."""

    def select(
        self, workspace_id: str, employees: Sequence[str], open_load: Mapping[str, int]
    ) -> str | None:
        if not employees:
            return None
        return min(employees, key=lambda employee: open_load.get(employee, 0))


_STRATEGIES = {
    "round_robin": RoundRobinStrategy,
    "least_loaded": LeastLoadedStrategy,
}


def get_strategy(name: str) -> AssignmentStrategy:
    """Instantiate the strategy registered as ``name`` or raise ``KeyError``."""
    normalized = name.lower().replace("-", "_")
    if normalized not in _STRATEGIES:
        raise KeyError(f"Unknown assignment strategy '{name}'")
    return _STRATEGIES[normalized]()
