"""
Pytest fixtures for escrow tests.

Services are exercised against FakeGateway, an in-memory PaymentGateway that
honours idempotency keys and can be told to fail the next call of an
operation. Redis is mocked for every test so DistributedLock always acquires.

Usage:
    def test_release(funded_account, submitted_milestone, escrow_service, business):
        escrow_service.release_milestone(funded_account.id, submitted_milestone.id, business)
"""

from __future__ import annotations

from unittest.mock import MagicMock, patch

import pytest
from rest_framework.test import APIClient

from escrow.adapters import GatewayResult
from escrow.locks import DistributedLock
from escrow.services import (
    Actor,
    BiweeklyPaymentService,
    DisputeService,
    EscrowAccountService,
    MilestoneService,
    MilestoneSpec,
    ReconciliationService,
)
from escrow.tests.factories import BUSINESS_ID, TALENT_ID, PayeeAccountFactory, UserFactory


class FakeGateway:
    """
    In-memory PaymentGateway.

    A repeated idempotency key returns the original result without a new
    money movement, like Stripe does.

    Example:
        gateway.fail_next("payout", GatewayTimeoutError("timed out"))
    """

    def __init__(self) -> None:
        self.calls: list[dict] = []
        self.failures: dict[str, list[Exception]] = {"capture": [], "payout": [], "refund": []}
        self.results: dict[str, GatewayResult] = {}

    def fail_next(self, operation: str, error: Exception, times: int = 1) -> None:
        self.failures[operation].extend([error] * times)

    def calls_for(self, operation: str) -> list[dict]:
        return [call for call in self.calls if call["operation"] == operation]

    def _run(self, operation: str, prefix: str, amount_cents: int, currency: str, idempotency_key: str, **extra):
        self.calls.append(
            {"operation": operation, "amount_cents": amount_cents, "idempotency_key": idempotency_key, **extra}
        )
        if self.failures[operation]:
            raise self.failures[operation].pop(0)
        if idempotency_key not in self.results:
            self.results[idempotency_key] = GatewayResult(
                gateway_tx_id=f"{prefix}_{len(self.results) + 1}",
                status="succeeded",
                amount_cents=amount_cents,
                currency=currency,
            )
        return self.results[idempotency_key]

    def capture(self, amount_cents, currency, payment_method_ref, idempotency_key, metadata=None):
        return self._run("capture", "pi", amount_cents, currency, idempotency_key, target=payment_method_ref)

    def payout(self, amount_cents, currency, payee_account_ref, idempotency_key, metadata=None):
        return self._run("payout", "tr", amount_cents, currency, idempotency_key, target=payee_account_ref)

    def refund(self, gateway_tx_id, amount_cents, idempotency_key, metadata=None):
        return self._run("refund", "re", amount_cents, "cad", idempotency_key, target=gateway_tx_id)

    @property
    def money_movements(self) -> int:
        """Distinct operations that actually moved money."""
        return len(self.results)


# =============================================================================
# Infrastructure
# =============================================================================


@pytest.fixture(autouse=True)
def mock_redis():
    """Mock Redis for distributed locking; every lock acquires and releases."""
    mock_client = MagicMock()
    mock_client.set.return_value = True
    mock_client.eval.return_value = 1

    with patch("escrow.locks.get_redis_connection", return_value=mock_client):
        yield mock_client


@pytest.fixture
def redis_locks(mock_redis, settings):
    """
    Make the mocked Redis honour SET NX and the owner-checked scripts.

    Locks then contend like they do against a real server; a blocked
    acquisition gives up after 0.1s.
    """
    settings.ESCROW_LOCK_TIMEOUT_SECONDS = 0.1
    held: dict[str, str] = {}

    def _set(key, value, nx=False, ex=None):
        if nx and key in held:
            return False
        held[key] = value
        return True

    def _eval(script, numkeys, key, token, *args):
        if held.get(key) != token:
            return 0
        if script == DistributedLock.RELEASE_SCRIPT:
            del held[key]
        return 1

    mock_redis.set.side_effect = _set
    mock_redis.eval.side_effect = _eval
    return held


@pytest.fixture
def gateway():
    return FakeGateway()


# =============================================================================
# Actors
# =============================================================================


@pytest.fixture
def business():
    return Actor(actor_id=BUSINESS_ID)


@pytest.fixture
def talent():
    return Actor(actor_id=TALENT_ID)


@pytest.fixture
def admin():
    return Actor(actor_id="admin-1", is_admin=True)


@pytest.fixture
def stranger():
    return Actor(actor_id="someone-else")


@pytest.fixture
def payee(db):
    """Payout-ready account of the default talent."""
    return PayeeAccountFactory()


# =============================================================================
# Services
# =============================================================================


@pytest.fixture
def escrow_service(gateway):
    return EscrowAccountService(gateway=gateway)


@pytest.fixture
def milestone_service(gateway):
    return MilestoneService(gateway=gateway)


@pytest.fixture
def dispute_service(gateway):
    return DisputeService(gateway=gateway)


@pytest.fixture
def biweekly_service(gateway):
    return BiweeklyPaymentService(gateway=gateway)


@pytest.fixture
def reconciliation_service(gateway):
    return ReconciliationService(gateway=gateway)


# =============================================================================
# Escrow Account States
# =============================================================================


@pytest.fixture
def created_account(db, escrow_service, business):
    """Unfunded account with two milestones of $500 each."""
    return escrow_service.create(
        contract_id="contract-1",
        business_id=BUSINESS_ID,
        talent_id=TALENT_ID,
        milestone_specs=[MilestoneSpec("Design", 50000), MilestoneSpec("Build", 50000)],
        actor=business,
    )


@pytest.fixture
def funded_account(created_account, escrow_service, business, payee):
    return escrow_service.fund(created_account.id, payment_method_ref="pm_card_visa", actor=business)


@pytest.fixture
def milestones(funded_account):
    return list(funded_account.milestones.order_by("position"))


@pytest.fixture
def submit_milestone(milestone_service, talent):
    """Drive a milestone of a funded account to SUBMITTED with one deliverable."""

    def _submit(account, milestone):
        milestone_service.start(account.id, milestone.id, talent)
        milestone_service.add_deliverable(account.id, milestone.id, talent, title="Final files", file_ref="files/a.zip")
        return milestone_service.submit(account.id, milestone.id, talent, notes="Ready for review")

    return _submit


@pytest.fixture
def submitted_milestone(funded_account, milestones, submit_milestone):
    return submit_milestone(funded_account, milestones[0])


# =============================================================================
# API
# =============================================================================


@pytest.fixture
def api_gateway(gateway):
    """Make every service built by the views use the fake gateway."""
    with patch("escrow.services.base.StripeGateway", return_value=gateway):
        yield gateway


@pytest.fixture
def api_client_for(db, api_gateway):
    """
    Build an APIClient authenticated as a user whose pk is the actor id.

    Escrow parties are opaque ids, so the account under test is created with
    the user's pk as business_id / talent_id.
    """

    def _client(is_staff: bool = False):
        user = UserFactory(is_staff=is_staff)
        client = APIClient()
        client.force_authenticate(user=user)
        return client, Actor(actor_id=str(user.pk), is_admin=is_staff)

    return _client
