"""Database module for fee and transaction persistence."""

from .models import (
    Base,
    Student,
    Fee,
    Transaction,
    TransactionHistory,
    TransactionStatus,
    FeeStatus,
    ReconcileTrigger,
)
from .session import (
    get_database_url,
    create_async_engine,
    get_async_session_factory,
    session_scope,
    create_tables,
    DatabaseManager,
)
from .repository import (
    SqlTransactionStore,
    SqlFeeLedger,
    StudentRepository,
)

__all__ = [
    # Models
    "Base",
    "Student",
    "Fee",
    "Transaction",
    "TransactionHistory",
    "TransactionStatus",
    "FeeStatus",
    "ReconcileTrigger",
    # Session management
    "get_database_url",
    "create_async_engine",
    "get_async_session_factory",
    "session_scope",
    "create_tables",
    "DatabaseManager",
    # Repositories
    "SqlTransactionStore",
    "SqlFeeLedger",
    "StudentRepository",
]
