"""
Pytest fixtures for the requisition backend test suite.

Provides:
- An in-memory SQLite ``Database`` per test (file-backed for thread tests)
- A DeterministicClock shared by every service in a test
- Seeded users (manager, store, employee) and a seeded inventory ledger
- A ``backend`` fixture wired to a RecordingTransport
- Structured-log capture
"""

import json
import logging
from datetime import datetime, timezone
from io import StringIO

import pytest

from requisition_config.schema import BackendConfig, NotificationSettings
from requisition_kernel.db.engine import Database
from requisition_kernel.domain.clock import DeterministicClock
from requisition_kernel.logging_config import (
    LogContext,
    StructuredFormatter,
    configure_logging,
    reset_logging,
)
from requisition_kernel.services.inventory_ledger_service import InventoryLedgerService
from requisition_kernel.services.user_service import UserService
from requisition_services.backend import RequisitionBackend
from requisition_services.transports import RecordingTransport

MANAGER_EMAIL = "boss@plant.example"
STORE_EMAIL = "store@plant.example"
EMPLOYEE_EMAIL = "jane@plant.example"
PASSWORD = "secret123"

SEED_USERS = [
    {"email": MANAGER_EMAIL, "password": PASSWORD, "name": "Boss", "role": "Inventory Manager"},
    {"email": STORE_EMAIL, "password": PASSWORD, "name": "Store", "role": "Store Keeper"},
    {"email": EMPLOYEE_EMAIL, "password": PASSWORD, "name": "Jane", "role": "Employee"},
]


def ledger_payload(resin: float = 100, bottles: float = 50, labels: float = 200) -> dict:
    return {
        "inventory": {
            "rawMaterials": [
                {"id": "RM-1", "name": "Resin", "quantity": resin, "unit": "kg"},
                {"id": "RM-2", "name": "Hardener", "quantity": 40, "unit": "kg"},
            ],
            "packingMaterials": [
                {"id": "PK-1", "name": "Bottle", "quantity": bottles, "unit": "pcs"},
            ],
            "labels": [
                {"id": "LB-1", "name": "Front Label", "quantity": labels, "unit": "pcs"},
            ],
            "finishedGoods": [
                {"id": "FG-1", "name": "Epoxy Kit", "quantity": 5, "unit": "kits"},
            ],
        },
        "transactions": [],
    }


# =============================================================================
# Logging fixtures
# =============================================================================


@pytest.fixture(autouse=True, scope="session")
def _configure_test_logging():
    """Configure structured logging for the test suite."""
    reset_logging()
    configure_logging(level=logging.DEBUG)
    yield
    reset_logging()


@pytest.fixture(autouse=True)
def _clear_log_context():
    """Clear LogContext between tests to prevent cross-test contamination."""
    LogContext.clear()
    yield
    LogContext.clear()


@pytest.fixture
def captured_logs():
    """
    Capture requisition_kernel logs as parsed JSON dicts.

    Usage::

        def test_something(captured_logs, backend):
            backend.invoke(...)
            logs = captured_logs()
            assert any(r["message"] == "requisition_transitioned" for r in logs)
    """
    stream = StringIO()
    handler = logging.StreamHandler(stream)
    handler.setFormatter(StructuredFormatter())
    root = logging.getLogger("requisition_kernel")
    previous_level = root.level
    root.setLevel(logging.DEBUG)
    root.addHandler(handler)

    def _get_records() -> list[dict]:
        lines = stream.getvalue().strip().split("\n")
        return [json.loads(line) for line in lines if line]

    yield _get_records

    root.removeHandler(handler)
    root.setLevel(previous_level)


# =============================================================================
# Database and clock
# =============================================================================


@pytest.fixture
def clock() -> DeterministicClock:
    return DeterministicClock(datetime(2024, 3, 4, 9, 0, 0, tzinfo=timezone.utc))


@pytest.fixture
def database():
    db = Database("sqlite://")
    db.create_tables()
    yield db
    db.close()


@pytest.fixture
def file_database(tmp_path):
    """A file-backed database; threads get their own connections."""
    db = Database(f"sqlite:///{tmp_path / 'requisitions.db'}")
    db.create_tables()
    yield db
    db.close()


@pytest.fixture
def session(database):
    """A session whose work is committed at the end of the test body."""
    with database.session_scope() as s:
        yield s


def _seed(database: Database, clock: DeterministicClock) -> None:
    with database.session_scope() as s:
        UserService(s, clock).seed(SEED_USERS)
        InventoryLedgerService(s, clock).save(ledger_payload(), user="seed")


@pytest.fixture
def seeded(database, clock):
    """Users and an inventory ledger (Resin 100) in the in-memory database."""
    _seed(database, clock)
    return database


# =============================================================================
# Backend
# =============================================================================


@pytest.fixture
def transport() -> RecordingTransport:
    return RecordingTransport()


def make_backend(database, clock, transport, **config_overrides) -> RequisitionBackend:
    config = BackendConfig(
        database_url=database.database_url,
        notifications=NotificationSettings(transport="recording", deliver_inline=True),
        **config_overrides,
    )
    return RequisitionBackend(config, database=database, clock=clock, transport=transport).init()


@pytest.fixture
def backend(seeded, clock, transport):
    """A backend over the seeded in-memory database."""
    instance = make_backend(seeded, clock, transport)
    yield instance
    instance.close()


@pytest.fixture
def submit(backend):
    """Submit a requisition for ``qty`` of Resin and return its id."""

    def _submit(qty: float = 10, **extra) -> str:
        params = {
            "type": "Production",
            "requesterEmail": EMPLOYEE_EMAIL,
            "requesterName": "Jane",
            "productName": "Epoxy Kit",
            "requestedQty": 1,
            "unit": "kits",
            "ingredients": [{"id": "RM-1", "name": "Resin", "quantity": qty}],
            "packing": [],
            "labels": [],
            "managerEmail": MANAGER_EMAIL,
            **extra,
        }
        result = backend.invoke("submit_request", params)
        assert result["result"] == "success", result
        return result["requestId"]

    return _submit
