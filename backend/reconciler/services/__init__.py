"""Services for ledger access, gateway verification and plan derivation."""

from reconciler.services.gateway_status import (
    GatewayOutcome,
    GatewayStatusAdapter,
    GatewayVerdict,
    classify_payload,
    get_gateway_status_adapter,
)
from reconciler.services.ledger_service import (
    LedgerError,
    LedgerService,
    TransactionNotFoundError,
    TransactionOwnershipError,
    get_ledger_service,
)
from reconciler.services.plan_repair import PlanRepairService, get_plan_repair_service
from reconciler.services.plan_resolver import PlanResolver, get_plan_resolver
from reconciler.services.reconciliation import (
    ReconciliationOrchestrator,
    ReconciliationState,
    RedirectParams,
    get_reconciliation_orchestrator,
)
from reconciler.services.subscription_service import (
    InvalidSubscriptionStateError,
    SubscriptionService,
    get_subscription_service,
)
from reconciler.services.transition_guard import (
    SettlementMode,
    TransitionGuard,
)

__all__ = [
    "GatewayOutcome",
    "GatewayStatusAdapter",
    "GatewayVerdict",
    "classify_payload",
    "get_gateway_status_adapter",
    "LedgerError",
    "LedgerService",
    "TransactionNotFoundError",
    "TransactionOwnershipError",
    "get_ledger_service",
    "PlanRepairService",
    "get_plan_repair_service",
    "PlanResolver",
    "get_plan_resolver",
    "ReconciliationOrchestrator",
    "ReconciliationState",
    "RedirectParams",
    "get_reconciliation_orchestrator",
    "InvalidSubscriptionStateError",
    "SubscriptionService",
    "get_subscription_service",
    "SettlementMode",
    "TransitionGuard",
]
