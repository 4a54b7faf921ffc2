"""Diplomat agent — supplier negotiation state machine and procurement emails.

States: initiated → in_progress → accepted | rejected | expired.
Negotiations are created directly in in_progress.

Business Rules:
  - Strategy is chosen at initiation and stored in metadata; later rounds reuse it
  - Round = outbound message count (see negotiation_strategy.negotiation_round)
  - Every processed reply is logged inbound before it is classified
  - Past expires_at → expired without classification
  - Ambiguous reply (no accept/reject/counter) stays in_progress with
    needs_review set; the expiry sweep closes it once expires_at passes
  - Every outbound email is sent first, then logged as an outbound message
    and an activity row; a failed send raises MailDeliveryError, the
    session rolls back and the queue retries the task
  - Concurrent negotiations with one supplier are allowed

Called by: orchestrator.py (queued diplomat tasks)
Depends on: services/negotiation_strategy.py, services/negotiation_emails.py,
            services/reply_classifier.py, services/email_service.py
"""

import logging
from datetime import timedelta
from typing import Literal

from pydantic import BaseModel, Field

from ..config import settings
from ..database import session_scope
from ..errors import NotFoundError, TransientError
from ..models import (
    Negotiation,
    NegotiationMessage,
    Organization,
    Product,
    PurchaseOrder,
    Supplier,
    SupplierProduct,
)
from ..services.activity_service import log_activity, log_email_activity
from ..services.email_service import MailTransport
from ..services.negotiation_emails import (
    NegotiationContext,
    acceptance_email,
    draft_counter_email,
    draft_negotiation_email,
    expedite_email,
    quote_request_email,
)
from ..services.negotiation_strategy import (
    NegotiationStrategy,
    acceptance_terms,
    determine_strategy,
    evaluate_counter_offer,
    negotiation_round,
    target_price,
)
from ..services.reply_classifier import classify_reply
from ..utils import utc, utcnow
from .strategist import cheapest_in_stock_offer
from .types import AgentResult, AgentType, BaseAgent, DiplomatTaskType

log = logging.getLogger(__name__)

HISTORY_STATUSES = ("received", "shipped", "confirmed")
HISTORY_ORDERS = 12


class NegotiationProduct(BaseModel):
    product_id: int
    quantity: int = Field(gt=0)
    target_price: float | None = Field(default=None, gt=0)
    competitor_price: float | None = Field(default=None, gt=0)


class InitiatePayload(BaseModel):
    organization_id: int
    supplier_id: int
    products: list[NegotiationProduct] = Field(min_length=1)


class ProcessResponsePayload(BaseModel):
    negotiation_id: int
    response_content: str = Field(min_length=1)


class QuoteProduct(BaseModel):
    product_id: int
    quantity: int = Field(gt=0)


class QuotePayload(BaseModel):
    organization_id: int
    supplier_id: int
    products: list[QuoteProduct] = Field(min_length=1)


class BulkOrderPayload(BaseModel):
    organization_id: int
    products: list[QuoteProduct] = Field(min_length=1)


class ExpeditePayload(BaseModel):
    purchase_order_id: int
    reason: str
    urgency: Literal["high", "critical"] = "high"


class ExpirePayload(BaseModel):
    organization_id: int | None = None


class DiplomatAgent(BaseAgent):
    agent_type = AgentType.DIPLOMAT
    task_types = DiplomatTaskType

    def __init__(
        self,
        session_factory=None,
        *,
        mail: MailTransport | None = None,
        max_rounds: int | None = None,
        target_improvement: float | None = None,
        expiry_days: int | None = None,
    ):
        self.mail = mail or MailTransport()
        self.max_rounds = max_rounds or settings.max_negotiation_rounds
        self.target_improvement = target_improvement or settings.price_improvement_target
        self.expiry_days = expiry_days or settings.negotiation_expiry_days
        super().__init__(session_factory)

    def handlers(self):
        return {
            DiplomatTaskType.INITIATE_NEGOTIATION: (InitiatePayload, self.initiate_negotiation),
            DiplomatTaskType.PROCESS_RESPONSE: (ProcessResponsePayload, self.process_response),
            DiplomatTaskType.REQUEST_QUOTE: (QuotePayload, self.request_quote),
            DiplomatTaskType.NEGOTIATE_BULK_ORDER: (BulkOrderPayload, self.negotiate_bulk_order),
            DiplomatTaskType.EXPEDITE_ORDER: (ExpeditePayload, self.expedite_order),
            DiplomatTaskType.EXPIRE_NEGOTIATIONS: (ExpirePayload, self.expire_negotiations),
        }

    # ── Helpers ─────────────────────────────────────────────────────

    def _org_and_supplier(self, db, organization_id: int, supplier_id: int):
        org = db.get(Organization, organization_id)
        if org is None:
            raise NotFoundError(f"Organization {organization_id} not found")
        supplier = db.get(Supplier, supplier_id)
        if supplier is None or supplier.organization_id != org.id:
            raise NotFoundError(f"Supplier {supplier_id} not found")
        if not supplier.contact_email:
            raise NotFoundError(f"Supplier {supplier.name} has no contact email")
        return org, supplier

    def _historical_volume(self, db, organization_id: int, supplier_id: int) -> float:
        orders = (
            db.query(PurchaseOrder)
            .filter(
                PurchaseOrder.organization_id == organization_id,
                PurchaseOrder.supplier_id == supplier_id,
                PurchaseOrder.status.in_(HISTORY_STATUSES),
            )
            .order_by(PurchaseOrder.created_at.desc())
            .limit(HISTORY_ORDERS)
            .all()
        )
        return float(sum(o.total_amount or 0 for o in orders))

    def _competitor_price(self, db, offer: SupplierProduct) -> float | None:
        other = (
            db.query(SupplierProduct)
            .join(Supplier, SupplierProduct.supplier_id == Supplier.id)
            .filter(
                SupplierProduct.product_id == offer.product_id,
                SupplierProduct.supplier_id != offer.supplier_id,
                Supplier.is_active.is_(True),
            )
            .order_by(SupplierProduct.unit_price.asc())
            .first()
        )
        return other.unit_price if other else None

    def _context(self, negotiation: Negotiation) -> NegotiationContext:
        meta = negotiation.meta or {}
        return NegotiationContext(
            supplier_name=negotiation.supplier.name,
            supplier_email=negotiation.supplier.contact_email or "",
            organization_name=negotiation.organization.name,
            products=list((negotiation.initial_offer or {}).get("products", [])),
            historical_volume=float(meta.get("historical_volume") or 0),
        )

    async def _send(self, db, supplier, email, kind: str, negotiation: Negotiation | None = None) -> None:
        """Send, then log. Raises MailDeliveryError before anything is logged."""
        message_id = await self.mail.send(email.to, email.subject, email.body)
        if negotiation is not None:
            db.add(
                NegotiationMessage(
                    negotiation_id=negotiation.id,
                    direction="outbound",
                    channel="email",
                    subject=email.subject,
                    content=email.body,
                    meta={"to": email.to, "kind": kind, "message_id": message_id},
                    sent_at=utcnow(),
                )
            )
            db.flush()
        log_email_activity(
            db,
            kind,
            supplier=supplier,
            subject=email.subject,
            negotiation_id=negotiation.id if negotiation is not None else None,
        )

    def _close(self, db, negotiation: Negotiation, status: str, **fields) -> None:
        negotiation.status = status
        negotiation.completed_at = utcnow()
        for k, v in fields.items():
            setattr(negotiation, k, v)
        log_activity(
            db,
            "diplomat",
            f"negotiation_{status}",
            entity_type="negotiation",
            entity_id=negotiation.id,
            organization_id=negotiation.organization_id,
            details={"savings": fields.get("savings")},
        )
        log.info(f"Negotiation {negotiation.id} with {negotiation.supplier.name} → {status}")

    # ── Negotiation lifecycle ───────────────────────────────────────

    async def initiate_negotiation(self, payload: InitiatePayload) -> AgentResult:
        with session_scope(self.session_factory) as db:
            org, supplier = self._org_and_supplier(db, payload.organization_id, payload.supplier_id)
            offers = {sp.product_id: sp for sp in supplier.supplier_products}

            products = []
            for req in payload.products:
                offer = offers.get(req.product_id)
                if offer is None:
                    raise NotFoundError(f"Supplier {supplier.name} has no offer for product {req.product_id}")
                competitor = req.competitor_price
                if competitor is None:
                    competitor = self._competitor_price(db, offer)
                products.append(
                    {
                        "product_id": offer.product_id,
                        "sku": offer.supplier_sku,
                        "name": offer.product.name,
                        "quantity": req.quantity,
                        "current_price": offer.unit_price,
                        "target_price": req.target_price or target_price(offer.unit_price, self.target_improvement),
                        "competitor_price": competitor,
                    }
                )

            volume = self._historical_volume(db, org.id, supplier.id)
            strategy = determine_strategy(
                products,
                volume,
                target_improvement=self.target_improvement,
                max_rounds=self.max_rounds,
            )
            ctx = NegotiationContext(
                supplier_name=supplier.name,
                supplier_email=supplier.contact_email,
                organization_name=org.name,
                products=products,
                historical_volume=volume,
            )
            email = await draft_negotiation_email(ctx, strategy, round_no=1)

            negotiation = Negotiation(
                organization_id=org.id,
                supplier_id=supplier.id,
                negotiation_type="price",
                status="in_progress",
                initial_offer={
                    "products": products,
                    "target_savings": self.target_improvement,
                    "strategy": strategy.approach,
                },
                counter_offers=[],
                expires_at=utcnow() + timedelta(days=self.expiry_days),
                meta={
                    "strategy": strategy.to_dict(),
                    "max_rounds": self.max_rounds,
                    "target_improvement": self.target_improvement,
                    "historical_volume": volume,
                },
            )
            db.add(negotiation)
            db.flush()

            await self._send(db, supplier, email, "negotiation", negotiation)
            db.commit()

            log.info(
                f"Initiated negotiation {negotiation.id} with {supplier.name}: "
                f"{len(products)} product(s), strategy={strategy.approach}"
            )
            return AgentResult.ok(
                {
                    "negotiation_id": negotiation.id,
                    "supplier_id": supplier.id,
                    "strategy": strategy.approach,
                    "subject": email.subject,
                    "email_sent": True,
                }
            )

    async def process_response(self, payload: ProcessResponsePayload) -> AgentResult:
        with session_scope(self.session_factory) as db:
            negotiation = db.get(Negotiation, payload.negotiation_id)
            if negotiation is None:
                raise NotFoundError(f"Negotiation {payload.negotiation_id} not found")
            if negotiation.is_terminal:
                return AgentResult.fail(
                    f"Negotiation {negotiation.id} is already {negotiation.status}",
                    negotiation_id=negotiation.id,
                )

            db.add(
                NegotiationMessage(
                    negotiation_id=negotiation.id,
                    direction="inbound",
                    channel="email",
                    content=payload.response_content,
                    sent_at=utcnow(),
                )
            )
            db.flush()

            if negotiation.expires_at and utc(negotiation.expires_at) <= utcnow():
                self._close(db, negotiation, "expired")
                db.commit()
                return AgentResult.ok(
                    {"negotiation_id": negotiation.id, "status": "expired", "reason": "reply received after expiry"}
                )

            products = (negotiation.initial_offer or {}).get("products", [])
            meta = dict(negotiation.meta or {})
            max_rounds = int(meta.get("max_rounds") or self.max_rounds)
            target = float(meta.get("target_improvement") or self.target_improvement)
            strategy = NegotiationStrategy.from_dict(meta.get("strategy") or {})
            round_no = negotiation_round(negotiation.messages)

            analysis = await classify_reply(payload.response_content, negotiation.initial_offer or {})
            counter = analysis["counter_offer"]
            supplier = negotiation.supplier
            data = {"negotiation_id": negotiation.id, "round": round_no}

            if analysis["accepted"]:
                terms, savings = acceptance_terms(counter, products)
                self._close(db, negotiation, "accepted", final_terms=terms, savings=savings)
                data |= {"status": "accepted", "final_terms": terms, "savings": savings}

            elif analysis["rejected"]:
                self._close(db, negotiation, "rejected")
                data |= {
                    "status": "rejected",
                    "reason": analysis["reason"],
                    "suggested_action": "try_alternative_supplier",
                }

            elif counter is None:
                meta["needs_review"] = True
                meta["review_reason"] = "ambiguous_reply"
                negotiation.meta = meta
                log.warning(f"Negotiation {negotiation.id}: ambiguous reply, flagged for review")
                data |= {"status": "in_progress", "needs_review": True}

            else:
                acceptable, savings = evaluate_counter_offer(counter, products, target)
                negotiation.counter_offers = [*(negotiation.counter_offers or []), counter]

                if acceptable:
                    self._close(db, negotiation, "accepted", final_terms=counter, savings=savings)
                    await self._send(db, supplier, acceptance_email(self._context(negotiation), counter), "acceptance", negotiation)
                    data |= {"status": "accepted", "final_terms": counter, "savings": savings}
                elif round_no < max_rounds:
                    email = await draft_counter_email(self._context(negotiation), strategy, counter, round_no + 1)
                    await self._send(db, supplier, email, "counter", negotiation)
                    data |= {"status": "counter_sent", "round": round_no + 1, "offered_savings": savings}
                else:
                    self._close(db, negotiation, "expired")
                    data |= {
                        "status": "expired",
                        "offered_savings": savings,
                        "suggested_action": "try_alternative_supplier",
                    }

            db.commit()
            return AgentResult.ok(data)

    async def expire_negotiations(self, payload: ExpirePayload) -> AgentResult:
        with session_scope(self.session_factory) as db:
            q = db.query(Negotiation).filter(
                Negotiation.status == "in_progress",
                Negotiation.expires_at.isnot(None),
                Negotiation.expires_at <= utcnow(),
            )
            if payload.organization_id is not None:
                q = q.filter(Negotiation.organization_id == payload.organization_id)

            expired = []
            for negotiation in q.all():
                meta = dict(negotiation.meta or {})
                meta["expired_reason"] = "unreviewed_reply" if meta.get("needs_review") else "no_response"
                negotiation.meta = meta
                self._close(db, negotiation, "expired")
                expired.append(negotiation.id)
            db.commit()

        if expired:
            log.info(f"Expired {len(expired)} negotiation(s): {expired}")
        return AgentResult.ok({"expired": len(expired), "negotiation_ids": expired})

    # ── Other supplier emails ───────────────────────────────────────

    async def request_quote(self, payload: QuotePayload) -> AgentResult:
        with session_scope(self.session_factory) as db:
            org, supplier = self._org_and_supplier(db, payload.organization_id, payload.supplier_id)
            offers = {sp.product_id: sp for sp in supplier.supplier_products}

            lines = []
            for req in payload.products:
                product = db.get(Product, req.product_id)
                if product is None or product.organization_id != org.id:
                    raise NotFoundError(f"Product {req.product_id} not found")
                offer = offers.get(product.id)
                lines.append(
                    {
                        "sku": offer.supplier_sku if offer else product.sku,
                        "name": product.name,
                        "quantity": req.quantity,
                    }
                )

            email = quote_request_email(supplier.name, supplier.contact_email, org.name, lines)
            await self._send(db, supplier, email, "quote_request")
            db.commit()

        log.info(f"Quote request sent to {supplier.name} for {len(lines)} product(s)")
        return AgentResult.ok({"supplier_id": payload.supplier_id, "products": len(lines), "email_sent": True})

    async def negotiate_bulk_order(self, payload: BulkOrderPayload) -> AgentResult:
        groups: dict[int, list[NegotiationProduct]] = {}
        unsourced = []
        with session_scope(self.session_factory) as db:
            if db.get(Organization, payload.organization_id) is None:
                raise NotFoundError(f"Organization {payload.organization_id} not found")
            for req in payload.products:
                offer = cheapest_in_stock_offer(db, req.product_id)
                if offer is None or offer.supplier.organization_id != payload.organization_id:
                    unsourced.append(req.product_id)
                    continue
                groups.setdefault(offer.supplier_id, []).append(
                    NegotiationProduct(
                        product_id=req.product_id,
                        quantity=req.quantity,
                        target_price=target_price(offer.unit_price, self.target_improvement),
                    )
                )

        negotiations, failures, undelivered = [], [], []
        for supplier_id, products in groups.items():
            try:
                result = await self.initiate_negotiation(
                    InitiatePayload(
                        organization_id=payload.organization_id,
                        supplier_id=supplier_id,
                        products=products,
                    )
                )
            except NotFoundError as e:
                log.warning(f"Bulk negotiation with supplier {supplier_id} skipped: {e}")
                failures.append({"supplier_id": supplier_id, "error": str(e)})
                continue
            except TransientError as e:
                log.warning(f"Bulk negotiation with supplier {supplier_id} not sent: {e}")
                undelivered.append({"supplier_id": supplier_id, "error": str(e)})
                continue
            negotiations.append(result.data["negotiation_id"])

        if undelivered:
            return AgentResult.fail(
                f"Negotiation email not sent to {len(undelivered)} supplier(s)",
                retryable=True,
                negotiations=negotiations,
                undelivered=undelivered,
            )
        return AgentResult.ok(
            {
                "negotiations": negotiations,
                "suppliers_contacted": len(negotiations),
                "failed": failures,
                "unsourced": unsourced,
            }
        )

    async def expedite_order(self, payload: ExpeditePayload) -> AgentResult:
        with session_scope(self.session_factory) as db:
            order = db.get(PurchaseOrder, payload.purchase_order_id)
            if order is None:
                raise NotFoundError(f"Purchase order {payload.purchase_order_id} not found")
            supplier = order.supplier
            if not supplier.contact_email:
                raise NotFoundError(f"Supplier {supplier.name} has no contact email")

            items = [
                {"name": i.get("product_name") or i.get("name") or i.get("sku", "?"), "quantity": i.get("quantity", 0)}
                for i in (order.items or [])
            ]
            email = expedite_email(
                supplier.name,
                supplier.contact_email,
                order.organization.name,
                order.order_number,
                payload.reason,
                payload.urgency,
                items,
            )
            await self._send(db, supplier, email, "expedite")
            db.commit()
            order_number = order.order_number

        log.info(f"Expedite request sent for order {order_number}")
        return AgentResult.ok({"purchase_order_id": payload.purchase_order_id, "email_sent": True})
