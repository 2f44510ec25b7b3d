"""Payment routing, circuit breaker and disbursement control for GBML tenants."""

from .config import GbmlSettings, ChainSettings, load_settings
from .identity import Actor, Role
from .rbac import Capability, RBACEngine
from .amounts import AmountUnit, parse_units, format_units, to_smallest_unit
from .audit import AuditAction, AuditRecord, AuditTrail, InMemoryAuditSink, LoggingAuditSink, PostgresAuditSink
from .database import Database, init_database, SCHEMA_SQL
from .pause_store import PauseScope, PauseState, PauseStore
from .pause_store_memory import InMemoryPauseStore
from .pause_store_postgres import PostgresPauseStore
from .pause_registry import PauseRegistry, PauseSnapshot
from .token_ledger import TokenLedger, TxReceipt, Web3TokenLedger, SimulatedTokenLedger
from .router import FundingStrategy, PaymentReceipt, PaymentRouter
from .modules import PaymentModule, ModuleRegistry, InMemoryModuleRepository, PostgresModuleRepository
from .payments import PaymentService
from .disbursements import DisbursementRequest, DisbursementStatus
from .disbursement_repository import (
    DisbursementRepository,
    InMemoryDisbursementRepository,
    PostgresDisbursementRepository,
)
from .disbursement_service import DisbursementService
from .engine import Engine, build_engine
from .exceptions import (
    GbmlException,
    ValidationError,
    AuthorizationError,
    NotFoundError,
    InvalidStateError,
    PausedError,
    RoutingError,
    ExecutionTimeoutError,
    StorageError,
    ConfigurationError,
)

__all__ = [
    "GbmlSettings",
    "ChainSettings",
    "load_settings",
    "Actor",
    "Role",
    "Capability",
    "RBACEngine",
    "AmountUnit",
    "parse_units",
    "format_units",
    "to_smallest_unit",
    "AuditAction",
    "AuditRecord",
    "AuditTrail",
    "InMemoryAuditSink",
    "LoggingAuditSink",
    "PostgresAuditSink",
    "Database",
    "init_database",
    "SCHEMA_SQL",
    "PauseScope",
    "PauseState",
    "PauseStore",
    "InMemoryPauseStore",
    "PostgresPauseStore",
    "PauseRegistry",
    "PauseSnapshot",
    "TokenLedger",
    "TxReceipt",
    "Web3TokenLedger",
    "SimulatedTokenLedger",
    "FundingStrategy",
    "PaymentReceipt",
    "PaymentRouter",
    "PaymentModule",
    "ModuleRegistry",
    "InMemoryModuleRepository",
    "PostgresModuleRepository",
    "PaymentService",
    "DisbursementRequest",
    "DisbursementStatus",
    "DisbursementRepository",
    "InMemoryDisbursementRepository",
    "PostgresDisbursementRepository",
    "DisbursementService",
    "Engine",
    "build_engine",
    "GbmlException",
    "ValidationError",
    "AuthorizationError",
    "NotFoundError",
    "InvalidStateError",
    "PausedError",
    "RoutingError",
    "ExecutionTimeoutError",
    "StorageError",
    "ConfigurationError",
]
