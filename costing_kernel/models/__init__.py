"""ORM models for the costing engine.

Importing this package registers every table on ``Base.metadata``.
"""

from costing_kernel.models.cogs import (
    ORIGINAL_REFERENCE,
    CogsAllocation,
    CogsAllocationClaim,
    CogsApplyRun,
    CogsApplyRunItem,
    RunStatus,
)
from costing_kernel.models.imports import (
    AdDailyPerformance,
    ImportBatch,
    ImportBatchStatus,
    WalletLedgerEntry,
)
from costing_kernel.models.inventory import (
    BundleComponent,
    CostSnapshot,
    InventoryItem,
    ReceiptLayer,
)
from costing_kernel.models.returns import InventoryReturn, ReturnAction
from costing_kernel.models.sales import SalesOrder
from costing_kernel.services.sequence_service import SequenceCounter

__all__ = [
    "AdDailyPerformance",
    "BundleComponent",
    "CogsAllocation",
    "CogsAllocationClaim",
    "CogsApplyRun",
    "CogsApplyRunItem",
    "CostSnapshot",
    "ImportBatch",
    "ImportBatchStatus",
    "InventoryItem",
    "InventoryReturn",
    "ORIGINAL_REFERENCE",
    "ReceiptLayer",
    "ReturnAction",
    "RunStatus",
    "SalesOrder",
    "SequenceCounter",
    "WalletLedgerEntry",
]
