"""Human escalation queue with atomic claims."""

from .manager import EscalationManager
from .repository import (
    EscalationRepository,
    InMemoryEscalationRepository,
    PostgresEscalationRepository,
)
from .schemas import ClaimResult, EscalationQueueEntry, EscalationReason
from .strategies import (
    AssignmentStrategy,
    EmployeeDirectory,
    LeastLoadedStrategy,
    RoundRobinStrategy,
    StaticEmployeeDirectory,
    get_strategy,
)

__all__ = [
    "AssignmentStrategy",
    "ClaimResult",
    "EmployeeDirectory",
    "EscalationManager",
    "EscalationQueueEntry",
    "EscalationReason",
    "EscalationRepository",
    "InMemoryEscalationRepository",
    "LeastLoadedStrategy",
    "PostgresEscalationRepository",
    "RoundRobinStrategy",
    "StaticEmployeeDirectory",
    "get_strategy",
]
