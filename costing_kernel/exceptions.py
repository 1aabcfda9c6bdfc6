"""
Typed Exception Hierarchy for the Costing Engine.

===============================================================================
WHY TYPED EXCEPTIONS
===============================================================================

A COGS run over thousands of orders reports every failure back to the
operator as a structured row.  Callers branch on exception TYPE and read
structured ATTRIBUTES; they never parse messages.

  1. Every error has a typed class (catch by type, not message).
  2. Every class has a machine-readable ``code``.
  3. Every instance carries its context as attributes (sku, shortfall, ...).

===============================================================================
EXCEPTION HIERARCHY
===============================================================================

    CostingError (base)
    |
    +-- ConfigurationError            bundle has no components
    +-- InsufficientStockError        not enough qty_remaining
    +-- AlreadyAllocatedError         idempotence signal (a skip, not a failure)
    +-- DataIntegrityError            impossible ledger state, never clamped
    |
    +-- LedgerError
    |   +-- ItemNotFoundError
    |   +-- ItemAlreadyExistsError
    |   +-- BundleNotStockableError
    |   +-- InvalidQuantityError
    |   +-- InvalidBundleRecipeError
    |   +-- LayerNotFoundError
    |   +-- LayerNotVoidableError
    |
    +-- ReversalError
    |   +-- NothingToReverseError
    |   +-- ReturnExceedsAllocationError
    |   +-- AlreadyReversedError
    |   +-- ReturnNotFoundError
    |   +-- ReturnAlreadyUndoneError
    |
    +-- SnapshotNotFoundError
    |
    +-- ImportBatchError
        +-- ImportBatchNotFoundError
        +-- DuplicateImportError
        +-- ImportBatchStateError

===============================================================================
ERROR CODES - QUICK REFERENCE
===============================================================================

Category     | Code                          | When Raised
-------------|-------------------------------|-------------------------------------
Costing      | CONFIGURATION_ERROR           | Bundle SKU has zero components
             | INSUFFICIENT_STOCK            | Eligible layers cannot cover need
             | ALREADY_ALLOCATED             | Claim for (order, line, sku) exists
             | DATA_INTEGRITY_ERROR          | Layer outside 0 <= remaining <= received
-------------|-------------------------------|-------------------------------------
Ledger       | ITEM_NOT_FOUND                | Unknown SKU
             | ITEM_ALREADY_EXISTS           | Duplicate sku_internal
             | BUNDLE_NOT_STOCKABLE          | Receipt recorded against a bundle
             | INVALID_QUANTITY              | qty <= 0 or negative cost
             | INVALID_BUNDLE_RECIPE         | Self reference, unknown component
             | LAYER_NOT_FOUND               | Unknown layer id
             | LAYER_NOT_VOIDABLE            | Layer already drawn from or voided
-------------|-------------------------------|-------------------------------------
Reversal     | NOTHING_TO_REVERSE            | Order line has no live allocation
             | RETURN_EXCEEDS_ALLOCATION     | Return qty > outstanding qty
             | ALREADY_REVERSED              | Return reference already applied
             | RETURN_NOT_FOUND              | Undo of an unknown return
             | RETURN_ALREADY_UNDONE         | Return was already undone
-------------|-------------------------------|-------------------------------------
Snapshot     | SNAPSHOT_NOT_FOUND            | No average cost on/before a date
-------------|-------------------------------|-------------------------------------
Import       | IMPORT_BATCH_NOT_FOUND        | Unknown batch id
             | DUPLICATE_IMPORT              | Same file hash already imported
             | IMPORT_BATCH_STATE            | Illegal status transition

===============================================================================
HANDLING PATTERNS
===============================================================================

Per-order isolation in batch runs:

    try:
        outcome = engine.apply_cogs(order)
    except InsufficientStockError as e:
        report(order.order_id, e.code, sku=e.sku, shortfall=e.shortfall)

Database errors (sqlalchemy.exc.SQLAlchemyError) are NOT CostingErrors and
propagate out of a run as run-level failures.
"""

from decimal import Decimal


class CostingError(Exception):
    """
    Base exception for all costing errors.

    All subclasses carry a ``code`` class attribute for machine-readable
    identification.
    """

    code: str = "COSTING_ERROR"


class ConfigurationError(CostingError):
    """A bundle SKU resolves to zero components."""

    code: str = "CONFIGURATION_ERROR"

    def __init__(self, bundle_sku: str, detail: str = "bundle has no components"):
        self.bundle_sku = bundle_sku
        self.detail = detail
        super().__init__(f"{detail}: {bundle_sku}")


class InsufficientStockError(CostingError):
    """Eligible receipt layers cannot cover the requested quantity."""

    code: str = "INSUFFICIENT_STOCK"

    def __init__(self, sku: str, requested: Decimal, available: Decimal):
        self.sku = sku
        self.requested = requested
        self.available = available
        self.shortfall = requested - available
        super().__init__(
            f"Insufficient stock for {sku}: requested {requested}, "
            f"available {available}, shortfall {self.shortfall}"
        )


class AlreadyAllocatedError(CostingError):
    """COGS already recorded for this order line and component."""

    code: str = "ALREADY_ALLOCATED"

    def __init__(self, order_id: str, sku: str):
        self.order_id = order_id
        self.sku = sku
        super().__init__(f"COGS already allocated for order {order_id}, sku {sku}")


class DataIntegrityError(CostingError):
    """A ledger record violates a structural invariant."""

    code: str = "DATA_INTEGRITY_ERROR"

    def __init__(self, message: str, sku: str | None = None, layer_id: str | None = None):
        self.sku = sku
        self.layer_id = layer_id
        super().__init__(message)


# Ledger maintenance


class LedgerError(CostingError):
    """Base exception for inventory ledger maintenance errors."""

    code: str = "LEDGER_ERROR"


class ItemNotFoundError(LedgerError):
    """Inventory item with the given SKU does not exist."""

    code: str = "ITEM_NOT_FOUND"

    def __init__(self, sku: str):
        self.sku = sku
        super().__init__(f"Inventory item not found: {sku}")


class ItemAlreadyExistsError(LedgerError):
    """Inventory item with the given SKU already exists."""

    code: str = "ITEM_ALREADY_EXISTS"

    def __init__(self, sku: str):
        self.sku = sku
        super().__init__(f"Inventory item already exists: {sku}")


class BundleNotStockableError(LedgerError):
    """Bundles are virtual and cannot carry receipt layers."""

    code: str = "BUNDLE_NOT_STOCKABLE"

    def __init__(self, sku: str):
        self.sku = sku
        super().__init__(f"Bundle SKU cannot be stocked directly: {sku}")


class InvalidQuantityError(LedgerError):
    """Quantity or cost outside its legal range."""

    code: str = "INVALID_QUANTITY"

    def __init__(self, field: str, value: Decimal):
        self.field = field
        self.value = value
        super().__init__(f"Invalid {field}: {value}")


class InvalidBundleRecipeError(LedgerError):
    """Bundle recipe rejected."""

    code: str = "INVALID_BUNDLE_RECIPE"

    def __init__(self, bundle_sku: str, reason: str):
        self.bundle_sku = bundle_sku
        self.reason = reason
        super().__init__(f"Invalid recipe for bundle {bundle_sku}: {reason}")


class LayerNotFoundError(LedgerError):
    """Receipt layer with the given id does not exist."""

    code: str = "LAYER_NOT_FOUND"

    def __init__(self, layer_id: str):
        self.layer_id = layer_id
        super().__init__(f"Receipt layer not found: {layer_id}")


class LayerNotVoidableError(LedgerError):
    """Layer has already been drawn from, or is already voided."""

    code: str = "LAYER_NOT_VOIDABLE"

    def __init__(self, layer_id: str, reason: str):
        self.layer_id = layer_id
        self.reason = reason
        super().__init__(f"Layer {layer_id} cannot be changed: {reason}")


# Reversal


class ReversalError(CostingError):
    """Base exception for COGS reversal errors."""

    code: str = "REVERSAL_ERROR"


class NothingToReverseError(ReversalError):
    """Order line has no outstanding allocation."""

    code: str = "NOTHING_TO_REVERSE"

    def __init__(self, order_id: str, line_sku: str):
        self.order_id = order_id
        self.line_sku = line_sku
        super().__init__(f"No outstanding COGS for order {order_id}, sku {line_sku}")


class ReturnExceedsAllocationError(ReversalError):
    """Returned quantity is larger than what is still allocated."""

    code: str = "RETURN_EXCEEDS_ALLOCATION"

    def __init__(self, order_id: str, line_sku: str, requested: Decimal, outstanding: Decimal):
        self.order_id = order_id
        self.line_sku = line_sku
        self.requested = requested
        self.outstanding = outstanding
        super().__init__(
            f"Return of {requested} for order {order_id}, sku {line_sku} "
            f"exceeds outstanding {outstanding}"
        )


class AlreadyReversedError(ReversalError):
    """The return reference has already been applied."""

    code: str = "ALREADY_REVERSED"

    def __init__(self, order_id: str, reference: str):
        self.order_id = order_id
        self.reference = reference
        super().__init__(f"Return {reference} already applied to order {order_id}")


class ReturnNotFoundError(ReversalError):
    """No return with this reference exists for the order line."""

    code: str = "RETURN_NOT_FOUND"

    def __init__(self, order_id: str, reference: str):
        self.order_id = order_id
        self.reference = reference
        super().__init__(f"No return {reference} recorded for order {order_id}")


class ReturnAlreadyUndoneError(ReversalError):
    """The return has already been undone."""

    code: str = "RETURN_ALREADY_UNDONE"

    def __init__(self, order_id: str, reference: str):
        self.order_id = order_id
        self.reference = reference
        super().__init__(f"Return {reference} on order {order_id} was already undone")


# Snapshots


class SnapshotNotFoundError(CostingError):
    """No cost snapshot exists on or before the requested date."""

    code: str = "SNAPSHOT_NOT_FOUND"

    def __init__(self, sku: str, as_of: object):
        self.sku = sku
        self.as_of = as_of
        super().__init__(f"No cost snapshot for {sku} on or before {as_of}")


# Import batches


class ImportBatchError(CostingError):
    """Base exception for import batch lifecycle errors."""

    code: str = "IMPORT_BATCH_ERROR"


class ImportBatchNotFoundError(ImportBatchError):
    """Import batch with the given id does not exist."""

    code: str = "IMPORT_BATCH_NOT_FOUND"

    def __init__(self, batch_id: str):
        self.batch_id = batch_id
        super().__init__(f"Import batch not found: {batch_id}")


class DuplicateImportError(ImportBatchError):
    """The same file content has already been imported successfully."""

    code: str = "DUPLICATE_IMPORT"

    def __init__(self, file_hash: str, existing_batch_id: str):
        self.file_hash = file_hash
        self.existing_batch_id = existing_batch_id
        super().__init__(
            f"File already imported as batch {existing_batch_id} (hash {file_hash[:12]})"
        )


class ImportBatchStateError(ImportBatchError):
    """Illegal import batch status transition."""

    code: str = "IMPORT_BATCH_STATE"

    def __init__(self, batch_id: str, current_status: str, action: str):
        self.batch_id = batch_id
        self.current_status = current_status
        self.action = action
        super().__init__(f"Cannot {action} batch {batch_id} in status {current_status}")
