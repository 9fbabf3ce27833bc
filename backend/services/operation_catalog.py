"""Operation Catalog

Immutable registry of chargeable operations. Built once at startup and
injected into the metering service and the execution gateway; lookups are
pure and safe to share between concurrent requests.
"""
import logging
from typing import Dict, Iterable, Optional, Tuple

from models.operations import OperationDefinition, OPERATION_CATALOG, OPERATION_PRICING

logger = logging.getLogger(__name__)

# Upper bound on units per request; larger values are rejected at the API
MAX_OPERATION_QUANTITY = 10_000


def normalize_action_key(action_key: Optional[str]) -> Optional[str]:
    if action_key is None:
        return None
    return action_key.strip().lower() or None


def normalize_quantity(quantity) -> int:
    """Quantities below 1 (or unparseable) count as one unit."""
    try:
        value = int(quantity)
    except (TypeError, ValueError):
        return 1
    return max(1, value)


class OperationCatalog:
    """Lookup table of operation id -> OperationDefinition, in catalog order."""

    def __init__(self, operations: Iterable[OperationDefinition]):
        ordered = tuple(operations)
        by_id: Dict[str, OperationDefinition] = {}
        for operation in ordered:
            key = normalize_action_key(operation.id)
            if key != operation.id:
                raise ValueError(f"Operation id must be a lower-case action key: {operation.id!r}")
            if key in by_id:
                raise ValueError(f"Duplicate operation id in catalog: {key}")
            by_id[key] = operation
        self._operations: Tuple[OperationDefinition, ...] = ordered
        self._by_id = by_id

    @classmethod
    def from_config(cls, pricing: Optional[Dict[str, int]] = None) -> "OperationCatalog":
        """Build the default catalog, applying the price table on top."""
        pricing = OPERATION_PRICING if pricing is None else pricing
        operations = []
        for operation in OPERATION_CATALOG:
            cost = pricing.get(operation.id, operation.credit_cost)
            if cost < 0:
                raise ValueError(f"Negative credit cost for {operation.id}")
            if cost != operation.credit_cost:
                operation = operation.model_copy(update={"credit_cost": cost})
            operations.append(operation)
        catalog = cls(operations)
        logger.info(f"Operation catalog loaded: {len(catalog)} operations")
        return catalog

    def __len__(self) -> int:
        return len(self._operations)

    def get_operation(self, operation_id: Optional[str]) -> Optional[OperationDefinition]:
        key = normalize_action_key(operation_id)
        if not key:
            return None
        return self._by_id.get(key)

    def list_operations(self) -> Tuple[OperationDefinition, ...]:
        return self._operations

    def cost(self, operation_id: Optional[str], quantity=1) -> Optional[int]:
        """credit_cost * max(1, quantity), or None for an unknown operation."""
        operation = self.get_operation(operation_id)
        if operation is None:
            return None
        return operation.credit_cost * normalize_quantity(quantity)
