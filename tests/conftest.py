"""
Shared fixtures: a pinned clock, in-memory storage and a fully wired ledger
system whose notifications are captured instead of delivered.
"""

import pytest
from datetime import datetime, timezone
from zoneinfo import ZoneInfo

from emi_ledger.clock import FixedClock
from emi_ledger.config import LedgerConfig
from emi_ledger.storage import InMemoryStorage
from emi_ledger.system import LedgerSystem
from emi_ledger.notifications import Broadcaster


# 12:00 IST on 2024-01-10; schedules approved now start on 2024-01-11
NOW = datetime(2024, 1, 10, 6, 30, tzinfo=timezone.utc)

KEY_SECRET = "test_key_secret"
WEBHOOK_SECRET = "test_webhook_secret"


class RecordingBroadcaster(Broadcaster):
    """Keeps every delivered notification in memory"""

    def __init__(self):
        self.sent = []

    def send(self, notification):
        self.sent.append(notification)


@pytest.fixture
def clock():
    return FixedClock(NOW, ZoneInfo("Asia/Kolkata"))


@pytest.fixture
def config():
    return LedgerConfig(
        _env_file=None,
        database_url="memory://",
        gateway_key_secret=KEY_SECRET,
        gateway_webhook_secret=WEBHOOK_SECRET,
    )


@pytest.fixture
def storage():
    return InMemoryStorage()


@pytest.fixture
def broadcaster():
    return RecordingBroadcaster()


@pytest.fixture
def system(config, storage, clock, broadcaster):
    return LedgerSystem(config=config, storage=storage, clock=clock, broadcaster=broadcaster)


@pytest.fixture
def published(system):
    """Every domain event published through the system's dispatcher"""
    events = []
    system.events.subscribe_all(events.append)
    return events


def apply_loan(system, borrower_id="borrower-1", amount=10000, **overrides):
    details = {
        "name": "Asha Verma",
        "mobile": "9876543210",
        "address": "12 MG Road, Pune",
        "aadhaar_number": "123412341234",
        "pan_number": "ABCDE1234F",
    }
    details.update(overrides)
    return system.loans.apply_for_loan(borrower_id, amount, **details)


def approved_loan(system, borrower_id="borrower-1", amount=10000, total_days=None):
    loan = apply_loan(system, borrower_id=borrower_id, amount=amount)
    return system.loans.approve_loan(loan.id, total_days=total_days, admin_id="admin-1")
