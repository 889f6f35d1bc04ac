from dataclasses import dataclass
from enum import Enum

from app.core.query.parser import OperationKind


class Category(str, Enum):
    READ = "read"
    WRITE = "write"


@dataclass(frozen=True)
class Classification:
    category: Category
    auto_execute_eligible: bool


READ_OPERATIONS = frozenset(
    {
        OperationKind.FIND,
        OperationKind.AGGREGATE,
        OperationKind.COUNT_DOCUMENTS,
    }
)

WRITE_OPERATIONS = frozenset(
    {
        OperationKind.INSERT_ONE,
        OperationKind.INSERT_MANY,
        OperationKind.UPDATE_ONE,
        OperationKind.UPDATE_MANY,
        OperationKind.DELETE_ONE,
        OperationKind.DELETE_MANY,
    }
)


def classify(kind: OperationKind) -> Classification:
    """
    Decide whether an operation may run without approval.

    Only the operation kind counts; arguments are never inspected, so a
    write is never auto-executed however harmless it looks.
    """
    kind = OperationKind(kind)
    if kind in READ_OPERATIONS:
        return Classification(Category.READ, auto_execute_eligible=True)
    if kind in WRITE_OPERATIONS:
        return Classification(Category.WRITE, auto_execute_eligible=False)
    raise ValueError(f"Unclassified operation: {kind.value}")
