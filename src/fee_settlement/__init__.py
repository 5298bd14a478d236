# fee_settlement package
__version__ = "0.1.0"

from .errors import (
    FeeSettlementError,
    NotFoundError,
    ValidationError,
    ConflictError,
    GatewayError,
    PersistenceError,
    NotificationError,
)
from .database import (
    Student,
    Fee,
    Transaction,
    TransactionHistory,
    TransactionStatus,
    FeeStatus,
    ReconcileTrigger,
    DatabaseManager,
    SqlTransactionStore,
    SqlFeeLedger,
    StudentRepository,
)
from .ledger import Balance, compute_balance
from .gateways import get_gateway
from .side_effects import SideEffectDispatcher
from .reconciliation import (
    ReconciliationEngine,
    ReconcileResult,
    poll_until_settled,
)
from .services import PaymentService, ServiceContainer, build_services
