"""Assemble the engine components from settings."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Optional

from .audit import AuditSink, AuditTrail, InMemoryAuditSink, LoggingAuditSink, PostgresAuditSink
from .config import GbmlSettings, load_settings
from .database import Database, init_database
from .disbursement_repository import InMemoryDisbursementRepository, PostgresDisbursementRepository
from .disbursement_service import DisbursementService
from .logging import configure_logging, get_logger
from .modules import InMemoryModuleRepository, ModuleRegistry, PostgresModuleRepository
from .pause_registry import PauseRegistry
from .pause_store_memory import InMemoryPauseStore
from .pause_store_postgres import PostgresPauseStore
from .payments import PaymentService
from .router import PaymentRouter
from .token_ledger import SimulatedTokenLedger, TokenLedger, Web3TokenLedger

logger = get_logger(__name__)


@dataclass
class Engine:
    """The wired set of engine services."""
    settings: GbmlSettings
    ledger: TokenLedger
    audit: AuditTrail
    pause: PauseRegistry
    router: PaymentRouter
    modules: ModuleRegistry
    payments: PaymentService
    disbursements: DisbursementService

    async def start(self) -> None:
        """Create the schema when Postgres-backed and load the first pause snapshot.

        Raises StorageError if storage is down.
        """
        if self.settings.use_postgres:
            await init_database()
        await self.pause.load()

    async def close(self) -> None:
        if self.settings.use_postgres:
            await Database.close()


def build_engine(
    settings: Optional[GbmlSettings] = None,
    *,
    ledger: Optional[TokenLedger] = None,
    audit_sink: Optional[AuditSink] = None,
    clock: Optional[Callable[[], float]] = None,
    setup_logging: bool = False,
) -> Engine:
    """Build an Engine.

    Postgres-backed stores are used when ``database_url`` is set, in-memory
    stores otherwise. ``ledger`` overrides the ledger chosen by ``chain_mode``.
    ``setup_logging`` configures the root logger from the log_* settings.
    """
    settings = settings or load_settings()
    if setup_logging:
        configure_logging(settings.log_level, json_format=settings.log_json, log_file=settings.log_file)

    if ledger is None:
        if settings.chain_mode == "live":
            ledger = Web3TokenLedger(settings.chain)
        else:
            ledger = SimulatedTokenLedger()

    if settings.use_postgres:
        Database.configure(settings.database_url)
        pause_store = PostgresPauseStore()
        disbursement_repository = PostgresDisbursementRepository()
        module_repository = PostgresModuleRepository()
        sink = audit_sink or PostgresAuditSink()
    else:
        pause_store = InMemoryPauseStore()
        disbursement_repository = InMemoryDisbursementRepository()
        module_repository = InMemoryModuleRepository()
        sink = audit_sink or InMemoryAuditSink()

    if audit_sink is None and settings.audit_sink == "logging":
        sink = LoggingAuditSink()

    audit = AuditTrail(sink)
    pause_kwargs = {"clock": clock} if clock is not None else {}
    pause = PauseRegistry(
        pause_store,
        audit,
        ttl_seconds=settings.pause_cache_ttl_seconds,
        fail_closed=settings.pause_fail_closed,
        **pause_kwargs,
    )
    router = PaymentRouter(
        ledger,
        confirmation_timeout=settings.chain.confirmation_timeout_seconds,
        serialize_per_token=settings.serialize_per_token,
    )
    modules = ModuleRegistry(module_repository, ledger, audit)
    payments = PaymentService(router, pause, modules, audit)
    disbursements = DisbursementService(
        disbursement_repository,
        router,
        pause,
        audit,
        default_decimals=settings.disbursement_decimals,
    )

    logger.info(
        "Engine built",
        environment=settings.environment,
        chain_mode=settings.chain_mode,
        storage="postgres" if settings.use_postgres else "memory",
    )
    return Engine(
        settings=settings,
        ledger=ledger,
        audit=audit,
        pause=pause,
        router=router,
        modules=modules,
        payments=payments,
        disbursements=disbursements,
    )


__all__ = ["Engine", "build_engine"]
