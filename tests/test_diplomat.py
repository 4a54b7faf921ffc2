"""
test_diplomat.py — Tests for the negotiation worker.

Covers: initiation (strategy choice, email + message log + activity),
reply processing through every branch, the round limit, time-based
expiry, quote/expedite emails and bulk negotiation.

The language model and the mail transport are mocked; the database is
the in-memory SQLite from conftest.

Called by: pytest
Depends on: supplybot/agents/diplomat.py
"""

from datetime import timedelta
from unittest.mock import AsyncMock, patch

import pytest
import pytest_asyncio

from supplybot.agents import AgentTask, DiplomatAgent
from supplybot.errors import MailDeliveryError
from supplybot.models import ActivityLog, Negotiation, NegotiationMessage, Product, PurchaseOrder
from supplybot.utils import utc, utcnow

DRAFT = "Subject: Pricing review\n\nDear Steel Supply Co team,\nWe'd like to discuss pricing."


@pytest.fixture()
def diplomat(session_factory, mail):
    return DiplomatAgent(session_factory, mail=mail, max_rounds=3, target_improvement=0.05, expiry_days=7)


@pytest.fixture(autouse=True)
def llm_draft():
    with patch(
        "supplybot.services.negotiation_emails.claude_text", new_callable=AsyncMock, return_value=DRAFT
    ) as mock:
        yield mock


def _classified(*replies):
    """Patch the classifier's model call with one JSON verdict per reply."""
    return patch(
        "supplybot.services.reply_classifier.claude_json",
        new_callable=AsyncMock,
        side_effect=list(replies),
    )


def _counter(price):
    return {"accepted": False, "rejected": False, "counterOffer": {"products": {"SSC-BOLT-M8": price}}, "reason": "costs"}


async def _initiate(diplomat, org, supplier, product, quantity=10):
    return await diplomat.execute_task(
        AgentTask(
            type="initiate_negotiation",
            payload={
                "organization_id": org.id,
                "supplier_id": supplier.id,
                "products": [{"product_id": product.id, "quantity": quantity}],
            },
        )
    )


async def _reply(diplomat, negotiation_id, text="See attached"):
    return await diplomat.execute_task(
        AgentTask(type="process_response", payload={"negotiation_id": negotiation_id, "response_content": text})
    )


@pytest_asyncio.fixture()
async def negotiation_id(diplomat, test_org, test_supplier, test_product, test_offer):
    result = await _initiate(diplomat, test_org, test_supplier, test_product)
    assert result.success, result.error
    return result.data["negotiation_id"]


# ── initiate_negotiation ────────────────────────────────────────────


@pytest.mark.asyncio
async def test_initiate_sends_and_logs(diplomat, mail, db_session, negotiation_id):
    mail.send.assert_awaited_once()
    to, subject, body = mail.send.await_args.args
    assert to == "sales@steelsupply.example"
    assert subject == "Pricing review"
    assert body.startswith("Dear Steel Supply Co team")

    neg = db_session.get(Negotiation, negotiation_id)
    assert neg.status == "in_progress"
    assert neg.meta["strategy"]["approach"] == "collaborative"
    assert neg.meta["max_rounds"] == 3
    assert utc(neg.expires_at) > utcnow() + timedelta(days=6)
    [line] = neg.initial_offer["products"]
    assert (line["sku"], line["current_price"], line["target_price"]) == ("SSC-BOLT-M8", 100.0, 95.0)

    [msg] = neg.messages
    assert msg.direction == "outbound"
    assert msg.meta["kind"] == "negotiation"
    assert db_session.query(ActivityLog).filter_by(action="email_negotiation").count() == 1


@pytest.mark.asyncio
async def test_initiate_competitive_when_other_supplier_cheaper(
    diplomat, db_session, test_org, test_supplier, test_product, test_offer, make_supplier, make_offer
):
    rival = make_supplier("Bolt Barn")
    make_offer(rival, test_product, 92.0)

    result = await _initiate(diplomat, test_org, test_supplier, test_product)

    assert result.data["strategy"] == "competitive"
    neg = db_session.get(Negotiation, result.data["negotiation_id"])
    assert neg.initial_offer["products"][0]["competitor_price"] == 92.0


@pytest.mark.asyncio
async def test_initiate_volume_leverage_from_order_history(
    diplomat, db_session, test_org, test_supplier, test_product, test_offer
):
    for i, status in enumerate(["received", "shipped", "cancelled"]):
        db_session.add(
            PurchaseOrder(
                organization_id=test_org.id,
                supplier_id=test_supplier.id,
                order_number=f"PO-{i}",
                status=status,
                total_amount=30_000,
            )
        )
    db_session.commit()

    result = await _initiate(diplomat, test_org, test_supplier, test_product)

    assert result.data["strategy"] == "volume_leverage"


@pytest.mark.asyncio
async def test_initiate_requires_contact_email(diplomat, db_session, test_org, test_supplier, test_product, test_offer, mail):
    test_supplier.contact_email = None
    db_session.commit()

    result = await _initiate(diplomat, test_org, test_supplier, test_product)

    assert not result.success
    assert "no contact email" in result.error
    mail.send.assert_not_awaited()


@pytest.mark.asyncio
async def test_initiate_requires_offer(diplomat, test_org, test_supplier, test_product):
    result = await _initiate(diplomat, test_org, test_supplier, test_product)
    assert not result.success
    assert "has no offer" in result.error


@pytest.mark.asyncio
async def test_initiate_rejects_bad_payload(diplomat, test_org, test_supplier, test_product, test_offer):
    result = await _initiate(diplomat, test_org, test_supplier, test_product, quantity=0)
    assert not result.success
    assert result.error.startswith("Invalid payload for initiate_negotiation")


@pytest.mark.asyncio
async def test_mail_failure_is_retryable_and_rolls_back(
    diplomat, mail, db_session, test_org, test_supplier, test_product, test_offer
):
    mail.send.side_effect = MailDeliveryError("Mail transport unavailable")

    result = await _initiate(diplomat, test_org, test_supplier, test_product)

    assert not result.success
    assert result.retryable is True
    assert db_session.query(Negotiation).count() == 0
    assert db_session.query(NegotiationMessage).count() == 0


# ── process_response ────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_acceptance_uses_target_prices(diplomat, db_session, negotiation_id):
    with _classified({"accepted": True, "rejected": False, "counterOffer": None, "reason": "ok"}):
        result = await _reply(diplomat, negotiation_id, "We accept your proposal.")

    assert result.data["status"] == "accepted"
    neg = db_session.get(Negotiation, negotiation_id)
    assert neg.status == "accepted"
    assert neg.final_terms == {"products": {"SSC-BOLT-M8": 95.0}}
    assert neg.savings == pytest.approx(50.0)
    assert neg.completed_at is not None
    assert [m.direction for m in neg.messages] == ["outbound", "inbound"]
    assert db_session.query(ActivityLog).filter_by(action="negotiation_accepted").count() == 1


@pytest.mark.asyncio
async def test_rejection(diplomat, db_session, negotiation_id):
    with _classified({"accepted": False, "rejected": True, "counterOffer": None, "reason": "margins"}):
        result = await _reply(diplomat, negotiation_id, "Sorry, we cannot lower prices.")

    assert result.data["status"] == "rejected"
    assert result.data["suggested_action"] == "try_alternative_supplier"
    assert db_session.get(Negotiation, negotiation_id).status == "rejected"


@pytest.mark.asyncio
async def test_ambiguous_reply_flags_review(diplomat, db_session, negotiation_id, mail):
    with _classified(None):
        result = await _reply(diplomat, negotiation_id, "Out of office until Monday.")

    assert result.success
    assert result.data == {"negotiation_id": negotiation_id, "round": 1, "status": "in_progress", "needs_review": True}
    neg = db_session.get(Negotiation, negotiation_id)
    assert neg.status == "in_progress"
    assert neg.meta["needs_review"] is True
    assert mail.send.await_count == 1


@pytest.mark.asyncio
async def test_acceptable_counter_is_accepted(diplomat, db_session, negotiation_id, mail):
    with _classified(_counter(96.0)):
        result = await _reply(diplomat, negotiation_id, "Best we can do is 96.")

    assert result.data["status"] == "accepted"
    assert result.data["savings"] == pytest.approx(40.0)
    assert mail.send.await_count == 2
    assert mail.send.await_args.args[1] == "Order Confirmation - Acme Fabrication"
    neg = db_session.get(Negotiation, negotiation_id)
    assert neg.counter_offers == [{"products": {"SSC-BOLT-M8": 96.0}}]


@pytest.mark.asyncio
async def test_counter_at_half_target_is_accepted(diplomat, db_session, negotiation_id):
    # 2.5% off a 100.0 price with a 5% target
    with _classified(_counter(97.5)):
        result = await _reply(diplomat, negotiation_id, "97.50 is our floor.")

    assert result.data["status"] == "accepted"
    assert result.data["savings"] == pytest.approx(25.0)
    assert db_session.get(Negotiation, negotiation_id).status == "accepted"


@pytest.mark.asyncio
async def test_counter_just_short_of_half_target_gets_counter(diplomat, db_session, negotiation_id):
    with _classified(_counter(97.51)):
        result = await _reply(diplomat, negotiation_id, "97.51 is our floor.")

    assert result.data["status"] == "counter_sent"
    assert result.data["round"] == 2
    assert db_session.get(Negotiation, negotiation_id).status == "in_progress"


@pytest.mark.asyncio
async def test_expires_after_max_rounds(diplomat, db_session, negotiation_id, mail):
    statuses = []
    with _classified(_counter(99.5), _counter(99.5), _counter(99.5)):
        for _ in range(3):
            result = await _reply(diplomat, negotiation_id, "We can do 99.50.")
            statuses.append((result.data["status"], result.data["round"]))

    assert statuses == [("counter_sent", 2), ("counter_sent", 3), ("expired", 3)]
    assert mail.send.await_count == 3
    neg = db_session.get(Negotiation, negotiation_id)
    assert neg.status == "expired"
    assert len(neg.counter_offers) == 3
    assert [m.direction for m in neg.messages] == ["outbound", "inbound"] * 3


@pytest.mark.asyncio
async def test_reply_after_expiry_skips_classification(diplomat, db_session, negotiation_id):
    neg = db_session.get(Negotiation, negotiation_id)
    neg.expires_at = utcnow() - timedelta(hours=1)
    db_session.commit()

    with _classified() as mock_llm:
        result = await _reply(diplomat, negotiation_id, "Sure, 5% off.")

    mock_llm.assert_not_awaited()
    assert result.data["status"] == "expired"
    db_session.expire_all()
    assert db_session.get(Negotiation, negotiation_id).status == "expired"


@pytest.mark.asyncio
async def test_terminal_negotiation_rejects_replies(diplomat, negotiation_id):
    with _classified({"accepted": False, "rejected": True}):
        await _reply(diplomat, negotiation_id)
    result = await _reply(diplomat, negotiation_id)
    assert not result.success
    assert "already rejected" in result.error


@pytest.mark.asyncio
async def test_reply_to_missing_negotiation(diplomat):
    result = await _reply(diplomat, 404)
    assert not result.success
    assert result.error == "Negotiation 404 not found"


# ── expire_negotiations ─────────────────────────────────────────────


@pytest.mark.asyncio
async def test_expiry_sweep(diplomat, db_session, negotiation_id):
    neg = db_session.get(Negotiation, negotiation_id)
    neg.expires_at = utcnow() - timedelta(minutes=5)
    db_session.commit()

    result = await diplomat.execute_task(AgentTask(type="expire_negotiations", payload={}))

    assert result.data == {"expired": 1, "negotiation_ids": [negotiation_id]}
    db_session.expire_all()
    neg = db_session.get(Negotiation, negotiation_id)
    assert neg.status == "expired"
    assert neg.meta["expired_reason"] == "no_response"


@pytest.mark.asyncio
async def test_expiry_sweep_leaves_open_negotiations(diplomat, negotiation_id):
    result = await diplomat.execute_task(AgentTask(type="expire_negotiations", payload={}))
    assert result.data["expired"] == 0


# ── Quotes, bulk orders, expedite ───────────────────────────────────


@pytest.mark.asyncio
async def test_request_quote(diplomat, mail, db_session, test_org, test_supplier, test_product, test_offer):
    result = await diplomat.execute_task(
        AgentTask(
            type="request_quote",
            payload={
                "organization_id": test_org.id,
                "supplier_id": test_supplier.id,
                "products": [{"product_id": test_product.id, "quantity": 200}],
            },
        )
    )

    assert result.success
    _, subject, body = mail.send.await_args.args
    assert subject == "Quote Request from Acme Fabrication"
    assert "SSC-BOLT-M8" in body
    assert db_session.query(Negotiation).count() == 0
    assert db_session.query(ActivityLog).filter_by(action="email_quote_request").count() == 1


@pytest.mark.asyncio
async def test_bulk_order_one_negotiation_per_supplier(
    diplomat, db_session, test_org, test_product, test_offer, make_supplier, make_offer
):
    nut = Product(organization_id=test_org.id, sku="NUT-M8", name="M8 Nut")
    orphan = Product(organization_id=test_org.id, sku="RIVET-4", name="Rivet")
    db_session.add_all([nut, orphan])
    db_session.commit()
    nut_house = make_supplier("Nut House", contact_email="orders@nuthouse.example")
    make_offer(nut_house, nut, 5.0)

    result = await diplomat.execute_task(
        AgentTask(
            type="negotiate_bulk_order",
            payload={
                "organization_id": test_org.id,
                "products": [
                    {"product_id": test_product.id, "quantity": 100},
                    {"product_id": nut.id, "quantity": 400},
                    {"product_id": orphan.id, "quantity": 5},
                ],
            },
        )
    )

    assert result.success
    assert result.data["suppliers_contacted"] == 2
    assert result.data["unsourced"] == [orphan.id]
    assert db_session.query(Negotiation).count() == 2


@pytest.mark.asyncio
async def test_bulk_order_mail_failure_is_retryable(
    diplomat, mail, db_session, test_org, test_supplier, test_product, test_offer
):
    mail.send.side_effect = MailDeliveryError("smtp down")

    result = await diplomat.execute_task(
        AgentTask(
            type="negotiate_bulk_order",
            payload={"organization_id": test_org.id, "products": [{"product_id": test_product.id, "quantity": 100}]},
        )
    )

    assert not result.success
    assert result.retryable is True
    assert result.metadata["undelivered"] == [{"supplier_id": test_supplier.id, "error": "smtp down"}]
    assert db_session.query(Negotiation).count() == 0


@pytest.mark.asyncio
async def test_expedite_order(diplomat, mail, db_session, test_org, test_supplier):
    po = PurchaseOrder(
        organization_id=test_org.id,
        supplier_id=test_supplier.id,
        order_number="PO-1001",
        status="sent",
        items=[{"product_name": "M8 Hex Bolt", "quantity": 15}],
    )
    db_session.add(po)
    db_session.commit()

    result = await diplomat.execute_task(
        AgentTask(
            type="expedite_order",
            payload={"purchase_order_id": po.id, "reason": "Line stoppage", "urgency": "critical"},
        )
    )

    assert result.success
    _, subject, body = mail.send.await_args.args
    assert subject == "[URGENT] Expedite Request - Order #PO-1001"
    assert "- M8 Hex Bolt: 15 units" in body
    assert "Reason: Line stoppage" in body


@pytest.mark.asyncio
async def test_expedite_missing_order(diplomat):
    result = await diplomat.execute_task(
        AgentTask(type="expedite_order", payload={"purchase_order_id": 77, "reason": "x"})
    )
    assert not result.success
    assert result.error == "Purchase order 77 not found"
