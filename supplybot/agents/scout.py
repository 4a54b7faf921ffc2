"""Scout agent — supplier catalog scanning, price change detection, stock checks.

Business Rules:
  - Adapter per supplier: api_endpoint → portal_url → website → none
  - A price change writes PriceHistory (previous → new) before the
    SupplierProduct is updated; an unchanged price writes nothing
  - Scraped SKUs with no matching SupplierProduct are counted, not created
  - Full scans are sequential with scan_delay_seconds between suppliers;
    one failing supplier marks its ScrapingJob failed and the batch continues
  - Stock check: API first, then portal search, else last known state

Called by: orchestrator.py (queued scout tasks)
Depends on: connectors/*, services/portal_automation.py, services/forecasting.py
"""

import asyncio
import logging

from pydantic import BaseModel

from ..config import settings
from ..connectors import ApiCatalogAdapter, adapter_for
from ..database import session_scope
from ..errors import AdapterError, NotFoundError
from ..models import PriceHistory, Product, ScrapingJob, Supplier, SupplierProduct
from ..services.forecasting import calculate_price_change
from ..utils import utcnow
from .types import AgentResult, AgentType, BaseAgent, ScoutTaskType

log = logging.getLogger(__name__)


class ScanSupplierPayload(BaseModel):
    supplier_id: int


class ScanAllPayload(BaseModel):
    organization_id: int | None = None


class CheckStockPayload(BaseModel):
    supplier_id: int
    sku: str


class ComparePricesPayload(BaseModel):
    product_id: int


class ScoutAgent(BaseAgent):
    agent_type = AgentType.SCOUT
    task_types = ScoutTaskType

    def __init__(self, session_factory=None, *, portal=None, http_client=None, scan_delay: float | None = None, adapter_options: dict | None = None):
        self.portal = portal
        self.http_client = http_client
        self.scan_delay = settings.scan_delay_seconds if scan_delay is None else scan_delay
        self.adapter_options = adapter_options or {}
        super().__init__(session_factory)

    def handlers(self):
        return {
            ScoutTaskType.SCAN_SUPPLIER: (ScanSupplierPayload, self.scan_supplier),
            ScoutTaskType.SCAN_ALL_SUPPLIERS: (ScanAllPayload, self.scan_all_suppliers),
            ScoutTaskType.CHECK_STOCK: (CheckStockPayload, self.check_stock),
            ScoutTaskType.COMPARE_PRICES: (ComparePricesPayload, self.compare_prices),
        }

    async def initialize(self) -> None:
        if self.portal is not None:
            await self.portal.initialize()
        await super().initialize()

    async def shutdown(self) -> None:
        if self.portal is not None:
            await self.portal.shutdown()
        await super().shutdown()

    # ── Scanning ────────────────────────────────────────────────────

    def _adapter(self, supplier):
        return adapter_for(supplier, portal=self.portal, client=self.http_client, **self.adapter_options)

    def apply_records(self, db, supplier, records: list[dict], source: str) -> dict:
        """Persist scraped prices/stock onto existing SupplierProducts."""
        existing = {
            sp.supplier_sku: sp
            for sp in db.query(SupplierProduct).filter(SupplierProduct.supplier_id == supplier.id)
        }
        now = utcnow()
        changes, unmatched = [], 0

        for rec in records:
            sp = existing.get(rec["sku"])
            if sp is None:
                unmatched += 1
                continue

            old_price = sp.unit_price
            new_price = rec["price"]
            if old_price is None or round(old_price, 4) != round(new_price, 4):
                change = calculate_price_change(old_price or 0, new_price)
                db.add(
                    PriceHistory(
                        supplier_id=supplier.id,
                        product_sku=rec["sku"],
                        previous_price=old_price,
                        price=new_price,
                        change_pct=change,
                        currency=rec.get("currency") or "USD",
                        source=source,
                        recorded_at=now,
                    )
                )
                db.flush()
                sp.unit_price = new_price
                changes.append(
                    {"sku": rec["sku"], "old_price": old_price, "new_price": new_price, "change_pct": change}
                )
                log.info(f"Price change {supplier.name} {rec['sku']}: {old_price} → {new_price} ({change:+.1%})")

            sp.currency = rec.get("currency") or sp.currency
            sp.in_stock = rec.get("in_stock", sp.in_stock)
            if rec.get("stock_level") is not None:
                sp.stock_level = rec["stock_level"]
            sp.scraped_data = rec.get("raw_data") or {}
            sp.last_updated = now

        return {"items": len(records), "matched": len(records) - unmatched, "unmatched": unmatched, "price_changes": changes}

    def _fail_job(self, db, job, error) -> None:
        db.rollback()
        job.status = "failed"
        job.error = str(error)
        job.completed_at = utcnow()
        db.commit()

    async def _scan(self, db, supplier) -> dict:
        adapter = self._adapter(supplier)
        job = ScrapingJob(
            supplier_id=supplier.id,
            job_type="catalog",
            method=adapter.method if adapter else None,
            status="running",
        )
        db.add(job)
        db.commit()

        if adapter is None:
            job.status = "completed"
            job.results = {"items": 0, "reason": "no catalog source"}
            job.completed_at = utcnow()
            db.commit()
            log.info(f"Supplier {supplier.name} has no catalog source; nothing to scan")
            return {"supplier_id": supplier.id, "status": "completed", "job_id": job.id, **job.results}

        try:
            records = await adapter.fetch_catalog()
            summary = self.apply_records(db, supplier, records, adapter.method)
            supplier.last_scraped_at = utcnow()
            job.status = "completed"
            job.results = {k: v for k, v in summary.items() if k != "price_changes"} | {
                "price_changes": len(summary["price_changes"])
            }
            job.completed_at = utcnow()
            db.commit()
        except AdapterError as e:
            self._fail_job(db, job, e)
            log.error(f"Scan failed for {supplier.name}: {e}")
            return {"supplier_id": supplier.id, "status": "failed", "job_id": job.id, "error": str(e)}
        except Exception as e:
            self._fail_job(db, job, e)
            raise

        log.info(
            f"Scanned {supplier.name} via {adapter.method}: {summary['items']} items, "
            f"{len(summary['price_changes'])} price change(s)"
        )
        return {"supplier_id": supplier.id, "status": "completed", "job_id": job.id, **summary}

    async def scan_supplier(self, payload: ScanSupplierPayload) -> AgentResult:
        with session_scope(self.session_factory) as db:
            supplier = db.get(Supplier, payload.supplier_id)
            if supplier is None:
                raise NotFoundError(f"Supplier {payload.supplier_id} not found")
            summary = await self._scan(db, supplier)
        if summary["status"] == "failed":
            return AgentResult.fail(summary["error"], supplier_id=payload.supplier_id, job_id=summary["job_id"])
        return AgentResult.ok(summary)

    async def scan_all_suppliers(self, payload: ScanAllPayload) -> AgentResult:
        with session_scope(self.session_factory) as db:
            q = db.query(Supplier.id).filter(Supplier.is_active.is_(True))
            if payload.organization_id is not None:
                q = q.filter(Supplier.organization_id == payload.organization_id)
            supplier_ids = [row[0] for row in q.order_by(Supplier.id)]

        results = []
        for i, supplier_id in enumerate(supplier_ids):
            if i and self.scan_delay:
                await asyncio.sleep(self.scan_delay)
            with session_scope(self.session_factory) as db:
                supplier = db.get(Supplier, supplier_id)
                try:
                    results.append(await self._scan(db, supplier))
                except Exception as e:
                    log.exception(f"Unexpected scan error for supplier {supplier_id}: {e}")
                    results.append({"supplier_id": supplier_id, "status": "failed", "error": str(e)})

        failed = [r for r in results if r["status"] == "failed"]
        changes = sum(len(r.get("price_changes", [])) for r in results)
        log.info(f"Full scan: {len(results)} suppliers, {len(failed)} failed, {changes} price change(s)")
        return AgentResult.ok(
            {
                "suppliers": len(results),
                "succeeded": len(results) - len(failed),
                "failed": len(failed),
                "price_changes": changes,
                "results": results,
            }
        )

    # ── Stock & price lookups ───────────────────────────────────────

    async def check_stock(self, payload: CheckStockPayload) -> AgentResult:
        with session_scope(self.session_factory) as db:
            supplier = db.get(Supplier, payload.supplier_id)
            if supplier is None:
                raise NotFoundError(f"Supplier {payload.supplier_id} not found")
            sp = (
                db.query(SupplierProduct)
                .filter(
                    SupplierProduct.supplier_id == supplier.id,
                    SupplierProduct.supplier_sku == payload.sku,
                )
                .first()
            )

            live = None
            if supplier.api_endpoint:
                try:
                    adapter = ApiCatalogAdapter(supplier, client=self.http_client)
                    live = await adapter.check_stock(payload.sku) | {"source": "api"}
                except Exception as e:
                    log.debug(f"API stock check failed for {supplier.name}/{payload.sku}: {e}")
            if live is None and supplier.portal_url and self.portal is not None and self.portal.available:
                found = await self.portal.check_portal_stock(supplier, [payload.sku])
                if payload.sku in found:
                    live = found[payload.sku] | {"source": "portal"}

            if live is not None:
                if sp is not None:
                    sp.in_stock = live["in_stock"]
                    if live.get("stock_level") is not None:
                        sp.stock_level = live["stock_level"]
                    sp.last_updated = utcnow()
                    db.commit()
                return AgentResult.ok({"supplier_id": supplier.id, "sku": payload.sku, **live})

            return AgentResult.ok(
                {
                    "supplier_id": supplier.id,
                    "sku": payload.sku,
                    "in_stock": sp.in_stock if sp is not None else None,
                    "stock_level": sp.stock_level if sp is not None else None,
                    "source": "last_known",
                    "last_updated": sp.last_updated if sp is not None else None,
                }
            )

    async def compare_prices(self, payload: ComparePricesPayload) -> AgentResult:
        with session_scope(self.session_factory) as db:
            product = db.get(Product, payload.product_id)
            if product is None:
                raise NotFoundError(f"Product {payload.product_id} not found")
            offers = (
                db.query(SupplierProduct)
                .join(Supplier, SupplierProduct.supplier_id == Supplier.id)
                .filter(SupplierProduct.product_id == product.id, Supplier.is_active.is_(True))
                .order_by(SupplierProduct.unit_price.asc(), SupplierProduct.id.asc())
                .all()
            )
            if not offers:
                return AgentResult.fail(f"No supplier offers for product {product.sku}")

            ranked = [
                {
                    "supplier_id": sp.supplier_id,
                    "supplier_name": sp.supplier.name,
                    "price": sp.unit_price,
                    "currency": sp.currency,
                    "in_stock": sp.in_stock,
                    "lead_time": sp.lead_time,
                }
                for sp in offers
            ]
            average = sum(o["price"] for o in ranked) / len(ranked)
            return AgentResult.ok(
                {
                    "product_id": product.id,
                    "sku": product.sku,
                    "offers": ranked,
                    "cheapest": ranked[0],
                    "average_price": average,
                    "potential_savings": average - ranked[0]["price"],
                }
            )
