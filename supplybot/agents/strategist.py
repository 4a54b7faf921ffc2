"""Strategist agent — urgency analysis, stockout prediction, demand and reorder policy.

Business Rules:
  - Inventory analysis uses avg_daily_usage (1/day when unknown) against available stock
  - Stockout predictions use the last 90 movements; unresolved predictions
    for an item are replaced on every run, and only those within
    2 × stockout_threshold_days are kept
  - Suggested action: expedite when ≤ 3 days, else reorder
  - Reorder optimization writes suggested_* columns only, never the live policy
  - Reorder suggestions pair each urgent item with its cheapest in-stock
    offer from an active supplier, grouped per supplier

Called by: orchestrator.py (queued strategist tasks)
Depends on: services/forecasting.py
"""

import logging
import math
from datetime import timedelta

from pydantic import BaseModel, Field

from ..config import settings
from ..database import session_scope
from ..errors import NotFoundError
from ..models import (
    DemandForecast,
    InventoryItem,
    Organization,
    Product,
    StockMovement,
    StockoutPrediction,
    Supplier,
    SupplierProduct,
)
from ..services import forecasting as fc
from ..utils import utcnow
from .types import AgentResult, AgentType, BaseAgent, StrategistTaskType

log = logging.getLogger(__name__)

PREDICTION_WINDOW = 90
DEMAND_WINDOW = 365


class OrganizationPayload(BaseModel):
    organization_id: int


class DemandPayload(BaseModel):
    product_id: int
    weeks: int = Field(default=4, ge=1, le=52)


class OptimizePayload(BaseModel):
    organization_id: int
    ordering_cost: float | None = Field(default=None, gt=0)
    holding_cost_rate: float | None = Field(default=None, gt=0)
    item_cost: float | None = Field(default=None, gt=0)


def cheapest_in_stock_offer(db, product_id: int):
    return (
        db.query(SupplierProduct)
        .join(Supplier, SupplierProduct.supplier_id == Supplier.id)
        .filter(
            SupplierProduct.product_id == product_id,
            SupplierProduct.in_stock.is_(True),
            Supplier.is_active.is_(True),
        )
        .order_by(SupplierProduct.unit_price.asc(), SupplierProduct.id.asc())
        .first()
    )


class StrategistAgent(BaseAgent):
    agent_type = AgentType.STRATEGIST
    task_types = StrategistTaskType

    def __init__(self, session_factory=None, *, threshold_days: int | None = None):
        self.threshold_days = threshold_days or settings.stockout_threshold_days
        super().__init__(session_factory)

    def handlers(self):
        return {
            StrategistTaskType.ANALYZE_INVENTORY: (OrganizationPayload, self.analyze_inventory),
            StrategistTaskType.PREDICT_STOCKOUTS: (OrganizationPayload, self.predict_stockouts),
            StrategistTaskType.ANALYZE_DEMAND: (DemandPayload, self.analyze_demand),
            StrategistTaskType.OPTIMIZE_REORDER_POINTS: (OptimizePayload, self.optimize_reorder_points),
            StrategistTaskType.GENERATE_REORDER_SUGGESTIONS: (OrganizationPayload, self.generate_reorder_suggestions),
        }

    # ── Helpers ─────────────────────────────────────────────────────

    def _items(self, db, organization_id: int) -> list[InventoryItem]:
        if db.get(Organization, organization_id) is None:
            raise NotFoundError(f"Organization {organization_id} not found")
        return (
            db.query(InventoryItem)
            .filter(InventoryItem.organization_id == organization_id)
            .order_by(InventoryItem.id)
            .all()
        )

    def _recent_movements(self, db, item_id: int, limit: int, outbound_only: bool = False):
        q = db.query(StockMovement).filter(StockMovement.inventory_item_id == item_id)
        if outbound_only:
            q = q.filter(StockMovement.movement_type == "out")
        return q.order_by(StockMovement.created_at.desc(), StockMovement.id.desc()).limit(limit).all()

    def _analyze(self, items: list[InventoryItem]) -> list[dict]:
        now = utcnow()
        analyses = []
        for item in items:
            avg = item.avg_daily_usage or 1
            days = item.available_stock / avg
            urgency = fc.classify_urgency(days, item.current_stock, item.reorder_point, self.threshold_days)
            analyses.append(
                {
                    "inventory_item_id": item.id,
                    "product_id": item.product_id,
                    "sku": item.product.sku,
                    "name": item.product.name,
                    "current_stock": item.current_stock,
                    "available_stock": item.available_stock,
                    "reorder_point": item.reorder_point,
                    "reorder_quantity": item.reorder_quantity,
                    "avg_daily_usage": avg,
                    "days_of_stock": days,
                    "predicted_stockout_date": fc.projected_date(now, days),
                    "urgency": urgency,
                    "recommendation": fc.recommendation_for(
                        days, item.current_stock, item.reorder_point, self.threshold_days
                    ),
                }
            )
        analyses.sort(key=fc.urgency_sort_key)
        return analyses

    def _predict(self, db, items: list[InventoryItem]) -> list[dict]:
        horizon = self.threshold_days * 2
        predictions = []
        for item in items:
            movements = self._recent_movements(db, item.id, PREDICTION_WINDOW)
            consumption = fc.analyze_consumption(movements)
            forecast = fc.combine_predictions(
                item.available_stock, consumption, lead_buffer_days=settings.reorder_lead_buffer_days
            )

            db.query(StockoutPrediction).filter(
                StockoutPrediction.inventory_item_id == item.id,
                StockoutPrediction.is_resolved.is_(False),
            ).delete(synchronize_session=False)

            days = forecast.days_until_stockout
            if forecast.predicted_date is None or days > horizon:
                continue

            quantity = item.reorder_quantity or math.ceil(consumption.daily * 30)
            action = "expedite" if days <= fc.CRITICAL_DAYS else "reorder"
            db.add(
                StockoutPrediction(
                    inventory_item_id=item.id,
                    predicted_date=forecast.predicted_date,
                    days_until=days,
                    confidence=forecast.confidence,
                    suggested_action=action,
                    suggested_qty=quantity,
                )
            )
            predictions.append(
                {
                    "inventory_item_id": item.id,
                    "product_id": item.product_id,
                    "current_stock": item.current_stock,
                    "days_until_stockout": days,
                    "predicted_stockout_date": forecast.predicted_date,
                    "suggested_reorder_date": forecast.suggested_reorder_date,
                    "suggested_quantity": quantity,
                    "suggested_action": action,
                    "confidence": forecast.confidence,
                    "daily_usage": consumption.daily,
                    "trend": consumption.trend,
                    "factors": forecast.factors,
                }
            )
        predictions.sort(key=lambda p: p["days_until_stockout"])
        return predictions

    # ── Tasks ───────────────────────────────────────────────────────

    async def analyze_inventory(self, payload: OrganizationPayload) -> AgentResult:
        with session_scope(self.session_factory) as db:
            analyses = self._analyze(self._items(db, payload.organization_id))
        critical = sum(1 for a in analyses if a["urgency"] == "critical")
        warning = sum(1 for a in analyses if a["urgency"] == "warning")
        log.info(f"Inventory analysis org={payload.organization_id}: {len(analyses)} items, {critical} critical, {warning} warning")
        return AgentResult.ok(analyses, total=len(analyses), critical=critical, warning=warning)

    async def predict_stockouts(self, payload: OrganizationPayload) -> AgentResult:
        with session_scope(self.session_factory) as db:
            predictions = self._predict(db, self._items(db, payload.organization_id))
            db.commit()
        critical = sum(1 for p in predictions if p["days_until_stockout"] <= 7)
        log.info(f"Stockout predictions org={payload.organization_id}: {len(predictions)} within horizon, {critical} within a week")
        return AgentResult.ok(predictions, total=len(predictions), critical=critical)

    async def analyze_demand(self, payload: DemandPayload) -> AgentResult:
        with session_scope(self.session_factory) as db:
            product = db.get(Product, payload.product_id)
            if product is None:
                raise NotFoundError(f"Product {payload.product_id} not found")
            item = db.query(InventoryItem).filter(InventoryItem.product_id == product.id).first()
            if item is None:
                raise NotFoundError(f"Inventory item not found for product {product.sku}")

            movements = self._recent_movements(db, item.id, DEMAND_WINDOW, outbound_only=True)
            weekly = fc.group_by_week(movements)
            trend = fc.calculate_trend(weekly)
            seasonality = fc.calculate_seasonality(weekly)
            volatility = fc.calculate_volatility(weekly)
            forecast = fc.forecast_demand(weekly, trend, seasonality, payload.weeks)

            now = utcnow()
            factors = {"trend": trend, "seasonality": seasonality, "volatility": volatility}
            for i, demand in enumerate(forecast):
                db.add(
                    DemandForecast(
                        product_id=product.id,
                        forecast_date=now + timedelta(days=(i + 1) * 7),
                        predicted_demand=demand,
                        confidence=round(max(0.05, 0.85 - i * 0.05), 2),
                        method="time_series_decomposition",
                        factors=factors,
                    )
                )
            db.commit()

        return AgentResult.ok(
            {
                "product_id": payload.product_id,
                "weeks_observed": len(weekly),
                "trend": trend,
                "seasonality": seasonality,
                "volatility": volatility,
                "forecasted_demand": forecast,
            }
        )

    async def optimize_reorder_points(self, payload: OptimizePayload) -> AgentResult:
        ordering_cost = payload.ordering_cost or settings.ordering_cost
        holding_rate = payload.holding_cost_rate or settings.holding_cost_rate
        optimizations = []

        with session_scope(self.session_factory) as db:
            for item in self._items(db, payload.organization_id):
                movements = self._recent_movements(db, item.id, PREDICTION_WINDOW, outbound_only=True)
                daily = fc.calculate_daily_usage(movements)

                offers = [sp for sp in item.product.supplier_products if sp.supplier.is_active]
                primary_pool = [sp for sp in offers if sp.supplier.tier == 1] or offers
                primary = min(primary_pool, key=lambda sp: sp.lead_time or fc.DEFAULT_LEAD_TIME, default=None)
                lead_time = (primary.lead_time if primary else None) or fc.DEFAULT_LEAD_TIME

                volatility = fc.calculate_volatility([abs(m.quantity) for m in movements])
                reorder_point = fc.optimal_reorder_point(daily, lead_time, volatility)
                item_cost = payload.item_cost or (primary.unit_price if primary else None) or fc.DEFAULT_ITEM_COST
                eoq = fc.economic_order_quantity(daily * 365, ordering_cost, holding_rate, item_cost)

                if not (
                    fc.differs_from_policy(item.reorder_point, reorder_point)
                    or fc.differs_from_policy(item.reorder_quantity, eoq)
                ):
                    continue

                item.suggested_reorder_point = reorder_point
                item.suggested_reorder_quantity = eoq
                item.suggestion_updated_at = utcnow()
                optimizations.append(
                    {
                        "inventory_item_id": item.id,
                        "product_id": item.product_id,
                        "current_reorder_point": item.reorder_point,
                        "suggested_reorder_point": reorder_point,
                        "current_reorder_quantity": item.reorder_quantity,
                        "suggested_reorder_quantity": eoq,
                        "reason": f"Based on {daily:.1f} units/day demand and {lead_time} day lead time",
                    }
                )
            db.commit()

        log.info(f"Reorder optimization org={payload.organization_id}: {len(optimizations)} suggestion(s)")
        return AgentResult.ok(optimizations, total=len(optimizations))

    async def generate_reorder_suggestions(self, payload: OrganizationPayload) -> AgentResult:
        with session_scope(self.session_factory) as db:
            items = self._items(db, payload.organization_id)
            analyses = self._analyze(items)
            self._predict(db, items)
            by_id = {item.id: item for item in items}

            urgent = [a for a in analyses if a["urgency"] in ("critical", "warning")]
            groups: dict[int, dict] = {}
            unsourced = []
            for entry in urgent:
                offer = cheapest_in_stock_offer(db, entry["product_id"])
                if offer is None:
                    unsourced.append(entry["product_id"])
                    continue
                item = by_id[entry["inventory_item_id"]]
                quantity = (
                    item.reorder_quantity
                    or item.suggested_reorder_quantity
                    or max(1, math.ceil(entry["avg_daily_usage"] * 30))
                )
                group = groups.setdefault(
                    offer.supplier_id,
                    {
                        "supplier_id": offer.supplier_id,
                        "supplier_name": offer.supplier.name,
                        "items": [],
                        "total_value": 0.0,
                    },
                )
                total = quantity * offer.unit_price
                group["items"].append(
                    {
                        "product_id": entry["product_id"],
                        "sku": entry["sku"],
                        "name": entry["name"],
                        "supplier_sku": offer.supplier_sku,
                        "quantity": quantity,
                        "unit_price": offer.unit_price,
                        "total_price": total,
                        "urgency": entry["urgency"],
                    }
                )
                group["total_value"] += total
            db.commit()

        suggestions = list(groups.values())
        summary = {
            "total_suppliers": len(suggestions),
            "total_items": sum(len(s["items"]) for s in suggestions),
            "total_value": sum(s["total_value"] for s in suggestions),
            "critical_items": sum(1 for a in urgent if a["urgency"] == "critical"),
            "unsourced_items": len(unsourced),
        }
        log.info(f"Reorder suggestions org={payload.organization_id}: {summary}")
        return AgentResult.ok({"suggestions": suggestions, "summary": summary, "unsourced": unsourced})
