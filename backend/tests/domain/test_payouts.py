"""Tests for the payout and transfer ledger."""

import pytest

from reconciler.core.exceptions import MalformedPayload
from reconciler.domain.payouts import PayoutTransferLedger, can_advance
from reconciler.schemas.records import PayoutStatus

pytestmark = pytest.mark.unit


@pytest.fixture
def ledger(store, clock):
    return PayoutTransferLedger(store, clock=clock)


def payout(**overrides) -> dict:
    data = {
        "id": "po_1",
        "object": "payout",
        "amount": 5000,
        "currency": "usd",
        "status": "pending",
        "destination": "ba_1",
        "arrival_date": 1772668800,
    }
    data.update(overrides)
    return data


@pytest.mark.parametrize(
    ("current", "target", "allowed"),
    [
        (PayoutStatus.PENDING, PayoutStatus.PAID, True),
        (PayoutStatus.IN_TRANSIT, PayoutStatus.FAILED, True),
        (PayoutStatus.PAID, PayoutStatus.PAID, False),
        (PayoutStatus.PAID, PayoutStatus.FAILED, False),
        (PayoutStatus.FAILED, PayoutStatus.PAID, False),
    ],
)
def test_payout_status_only_advances(current, target, allowed):
    assert can_advance({"status": current.value}, target) is allowed


async def test_payout_created_inserts_once(ledger, store, make_event):
    await ledger.handle_payout_created(make_event("payout.created", payout(), account="acct_1"))
    await ledger.handle_payout_created(make_event("payout.created", payout(amount=1), account="acct_1"))

    record = await store.get("payouts", "po_1")
    assert record["amount"] == 5000
    assert record["account_id"] == "acct_1"
    assert [doc_id for doc_id, _ in await store.find("payouts", "account_id", "acct_1")] == ["po_1"]


async def test_payout_with_unknown_status_is_malformed(ledger, store, make_event):
    with pytest.raises(MalformedPayload, match="teleported"):
        await ledger.handle_payout_created(make_event("payout.created", payout(status="teleported"), account="acct_1"))

    assert await store.get("payouts", "po_1") is None


async def test_payout_paid_transitions_existing_record(ledger, store, make_event):
    await ledger.handle_payout_created(make_event("payout.created", payout(), account="acct_1"))

    await ledger.handle_payout_paid(make_event("payout.paid", payout(status="paid"), account="acct_1"))

    assert (await store.get("payouts", "po_1"))["status"] == "paid"


async def test_paid_without_created_fabricates_nothing(ledger, store, make_event):
    """payout.paid delivered before payout.created leaves no row behind."""
    await ledger.handle_payout_paid(make_event("payout.paid", payout(status="paid"), account="acct_1"))

    assert await store.get("payouts", "po_1") is None


async def test_delayed_failed_after_paid_is_noop(ledger, store, make_event):
    await ledger.handle_payout_created(make_event("payout.created", payout(), account="acct_1"))
    await ledger.handle_payout_paid(make_event("payout.paid", payout(status="paid"), account="acct_1"))

    await ledger.handle_payout_failed(
        make_event("payout.failed", payout(status="failed", failure_code="account_closed"), account="acct_1")
    )

    record = await store.get("payouts", "po_1")
    assert record["status"] == "paid"
    assert record["failure_code"] is None


async def test_payout_failed_stores_failure_details(ledger, store, make_event):
    await ledger.handle_payout_created(make_event("payout.created", payout(), account="acct_1"))

    await ledger.handle_payout_failed(
        make_event(
            "payout.failed",
            payout(status="failed", failure_code="account_closed", failure_message="The bank account has been closed"),
            account="acct_1",
        )
    )

    record = await store.get("payouts", "po_1")
    assert record["status"] == "failed"
    assert record["failure_code"] == "account_closed"


def transfer(**overrides) -> dict:
    data = {
        "id": "tr_1",
        "object": "transfer",
        "amount": 1700,
        "currency": "usd",
        "destination": "acct_1",
        "reversed": False,
        "amount_reversed": 0,
        "reversals": {"object": "list", "data": []},
        "metadata": {"transaction_id": "t1"},
    }
    data.update(overrides)
    return data


async def test_transfer_created_links_transaction(ledger, seeded, store, make_event):
    await ledger.handle_transfer_created(make_event("transfer.created", transfer()))

    record = await store.get("transfers", "tr_1")
    assert record["destination"] == "acct_1"
    assert record["transaction_id"] == "t1"
    assert (await store.get("transactions", "t1"))["transfer_id"] == "tr_1"


async def test_transfer_link_never_overwrites_existing(ledger, seeded, store, make_event):
    await store.update("transactions", "t1", {"transfer_id": "tr_original"})

    await ledger.handle_transfer_created(make_event("transfer.created", transfer()))

    assert (await store.get("transactions", "t1"))["transfer_id"] == "tr_original"


async def test_transfer_updated_overwrites_reversals_verbatim(ledger, store, make_event):
    await ledger.handle_transfer_created(make_event("transfer.created", transfer(metadata={})))
    reversals = [{"id": "trr_1", "amount": 1700, "object": "transfer_reversal"}]

    await ledger.handle_transfer_updated(
        make_event(
            "transfer.updated",
            transfer(reversed=True, amount_reversed=1700, reversals={"object": "list", "data": reversals}),
        )
    )

    record = await store.get("transfers", "tr_1")
    assert record["reversed"] is True
    assert record["amount_reversed"] == 1700
    assert record["reversals"] == reversals


async def test_transfer_updated_without_record_is_noop(ledger, store, make_event):
    await ledger.handle_transfer_updated(make_event("transfer.updated", transfer(reversed=True)))

    assert await store.get("transfers", "tr_1") is None
