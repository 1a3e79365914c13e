"""AumAI StoreTx: atomic writes across object storage and a document store."""

from aumai_storetx.booking import BookingWorkflow
from aumai_storetx.compensation import CompensationEngine
from aumai_storetx.config import CoordinatorConfig, StrategyMode
from aumai_storetx.conflicts import ConflictDetector
from aumai_storetx.core import TransactionCoordinator
from aumai_storetx.models import (
    CommitResult,
    ErrorCode,
    OperationResponse,
    RollbackResult,
    TransactionContext,
    TransactionMode,
    TransactionState,
    UniquenessConstraint,
)
from aumai_storetx.signup import SignupWorkflow

__version__ = "0.1.0"

__all__ = [
    "BookingWorkflow",
    "CommitResult",
    "CompensationEngine",
    "ConflictDetector",
    "CoordinatorConfig",
    "ErrorCode",
    "OperationResponse",
    "RollbackResult",
    "SignupWorkflow",
    "StrategyMode",
    "TransactionContext",
    "TransactionCoordinator",
    "TransactionMode",
    "TransactionState",
    "UniquenessConstraint",
]
