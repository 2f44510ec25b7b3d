"""
Pytest configuration for gbml-engine tests.
"""
from __future__ import annotations

import asyncio
import os
import sys
from pathlib import Path

import pytest

# Add package source to path
package_src = Path(__file__).parent.parent / "src"
if str(package_src) not in sys.path:
    sys.path.insert(0, str(package_src))

# Set test environment
os.environ.setdefault("GBML_ENVIRONMENT", "dev")
os.environ.setdefault("GBML_CHAIN_MODE", "simulated")

from gbml_engine.audit import AuditTrail, InMemoryAuditSink
from gbml_engine.disbursement_repository import InMemoryDisbursementRepository
from gbml_engine.disbursement_service import DisbursementService
from gbml_engine.exceptions import StorageError
from gbml_engine.identity import Actor, Role
from gbml_engine.modules import InMemoryModuleRepository, ModuleRegistry
from gbml_engine.pause_registry import PauseRegistry
from gbml_engine.pause_store_memory import InMemoryPauseStore
from gbml_engine.payments import PaymentService
from gbml_engine.router import PaymentRouter
from gbml_engine.token_ledger import SimulatedTokenLedger

# Digit-only addresses are their own EIP-55 checksum form
TOKEN = "0x1111111111111111111111111111111111111111"
OTHER_TOKEN = "0x4444444444444444444444444444444444444444"
RECIPIENT = "0x2222222222222222222222222222222222222222"
TREASURY = "0x3333333333333333333333333333333333333333"

TENANT = "tenant_a"
OTHER_TENANT = "tenant_b"

ONE_TOKEN = 10**18


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FlakyPauseStore(InMemoryPauseStore):
    """Pause store whose reads/writes can be switched to fail."""

    def __init__(self) -> None:
        super().__init__()
        self.fail_reads = False
        self.fail_writes = False
        self.load_calls = 0

    async def load_all(self):
        self.load_calls += 1
        # Yield so concurrent readers can pile up on the refresh lock
        await asyncio.sleep(0)
        if self.fail_reads:
            raise StorageError("pause store unavailable", operation="pause_load")
        return await super().load_all()

    async def upsert(self, state):
        if self.fail_writes:
            raise StorageError("pause store unavailable", operation="pause_upsert")
        return await super().upsert(state)


@pytest.fixture
def admin() -> Actor:
    return Actor.of("admin_1", TENANT, ["admin"])


@pytest.fixture
def program_actor() -> Actor:
    return Actor.of("program_1", TENANT, [Role.PROGRAM])


@pytest.fixture
def treasury_actor() -> Actor:
    return Actor.of("treasury_1", TENANT, [Role.TREASURY])


@pytest.fixture
def compliance_actor() -> Actor:
    return Actor.of("compliance_1", TENANT, [Role.COMPLIANCE])


@pytest.fixture
def outsider_treasury() -> Actor:
    """TREASURY actor of another tenant."""
    return Actor.of("treasury_b", OTHER_TENANT, [Role.TREASURY])


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def ledger() -> SimulatedTokenLedger:
    ledger = SimulatedTokenLedger()
    ledger.add_token(TOKEN, decimals=18, treasury=TREASURY, treasury_balance=1_000 * ONE_TOKEN)
    return ledger


@pytest.fixture
def audit_sink() -> InMemoryAuditSink:
    return InMemoryAuditSink()


@pytest.fixture
def audit(audit_sink) -> AuditTrail:
    return AuditTrail(audit_sink)


@pytest.fixture
def pause_store() -> FlakyPauseStore:
    return FlakyPauseStore()


@pytest.fixture
def pause(pause_store, audit, clock) -> PauseRegistry:
    return PauseRegistry(pause_store, audit, ttl_seconds=30.0, clock=clock)


@pytest.fixture
def router(ledger) -> PaymentRouter:
    return PaymentRouter(ledger, confirmation_timeout=5.0)


@pytest.fixture
def modules(ledger, audit) -> ModuleRegistry:
    return ModuleRegistry(InMemoryModuleRepository(), ledger, audit)


@pytest.fixture
def payments(router, pause, modules, audit) -> PaymentService:
    return PaymentService(router, pause, modules, audit)


@pytest.fixture
def disbursement_repository() -> InMemoryDisbursementRepository:
    return InMemoryDisbursementRepository()


@pytest.fixture
def disbursements(disbursement_repository, router, pause, audit) -> DisbursementService:
    return DisbursementService(disbursement_repository, router, pause, audit)
