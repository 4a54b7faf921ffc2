"""Forecasting math — stockout projection, urgency, demand patterns, EOQ.

Pure functions over plain numbers and movement records; the strategist
agent does all database work and calls into here.

Business Rules:
  - Daily usage = Σ|outbound qty| / max(1, elapsed days)
  - Zero usage → stockout never (inf), never persisted as a prediction
  - Two projections (average 0.7, trend-adjusted 0.8) averaged with equal weight
  - Urgency: ≤3 days critical; ≤threshold days or at/below reorder point warning
  - Weeks start on Sunday
  - Dates are projected at most a year ahead; further out they are None
"""

import math
import statistics
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from ..utils import utc, utcnow

SIMPLE_CONFIDENCE = 0.7
TREND_CONFIDENCE = 0.8
CRITICAL_DAYS = 3
SERVICE_LEVEL_Z = 1.65  # ~95%
DEFAULT_LEAD_TIME = 7
DEFAULT_ITEM_COST = 10.0
POLICY_TOLERANCE = 0.1
MAX_PROJECTION_DAYS = 365

URGENCY_ORDER = {"critical": 0, "warning": 1, "ok": 2}


@dataclass
class Consumption:
    daily: float = 0.0
    weekly: float = 0.0
    trend: float = 0.0


@dataclass
class StockoutForecast:
    days_until_stockout: float
    predicted_date: datetime | None
    suggested_reorder_date: datetime | None
    confidence: float
    factors: list[str] = field(default_factory=list)


def _outbound(movements) -> list:
    """Outbound movements, newest first."""
    out = [m for m in movements if m.movement_type == "out"]
    out.sort(key=lambda m: utc(m.created_at), reverse=True)
    return out


def _span_days(newest_first: list) -> float:
    first = utc(newest_first[-1].created_at)
    last = utc(newest_first[0].created_at)
    return max(1.0, (last - first).total_seconds() / 86400)


def calculate_daily_usage(movements) -> float:
    out = _outbound(movements)
    if not out:
        return 0.0
    return sum(abs(m.quantity) for m in out) / _span_days(out)


def analyze_consumption(movements) -> Consumption:
    """Daily/weekly usage plus trend = (recent half − older half) / older half."""
    out = _outbound(movements)
    if not out:
        return Consumption()

    daily = sum(abs(m.quantity) for m in out) / _span_days(out)
    midpoint = len(out) // 2
    recent = sum(abs(m.quantity) for m in out[:midpoint])
    older = sum(abs(m.quantity) for m in out[midpoint:])
    trend = (recent - older) / older if older > 0 else 0.0
    return Consumption(daily=daily, weekly=daily * 7, trend=trend)


def predict_days_until_stockout(stock: float, daily_rate: float) -> float:
    if daily_rate <= 0:
        return math.inf
    return stock / daily_rate


def calculate_price_change(old_price: float, new_price: float) -> float:
    """Relative change, e.g. 100 → 120 is 0.2."""
    if not old_price:
        return 0.0
    return (new_price - old_price) / old_price


def projected_date(now: datetime, days: float) -> datetime | None:
    """now + days, or None when the stockout is further out than a year."""
    if math.isinf(days) or days > MAX_PROJECTION_DAYS:
        return None
    return now + timedelta(days=math.floor(max(days, 0)))


def combine_predictions(
    available_stock: float,
    consumption: Consumption,
    *,
    lead_buffer_days: int = 7,
    now: datetime | None = None,
) -> StockoutForecast:
    now = now or utcnow()
    simple = predict_days_until_stockout(available_stock, consumption.daily)
    trend_rate = consumption.daily * (1 + consumption.trend * 0.5)
    trended = predict_days_until_stockout(available_stock, trend_rate)

    avg = (simple + trended) / 2
    days = avg if math.isinf(avg) else float(math.floor(avg))
    reorder_date = projected_date(now, days - lead_buffer_days)

    return StockoutForecast(
        days_until_stockout=days,
        predicted_date=projected_date(now, days),
        suggested_reorder_date=reorder_date,
        confidence=(SIMPLE_CONFIDENCE + TREND_CONFIDENCE) / 2,
        factors=["historical_average", "trend_adjustment"],
    )


def classify_urgency(
    days_of_stock: float, current_stock: int, reorder_point: int, threshold_days: int
) -> str:
    if days_of_stock <= CRITICAL_DAYS:
        return "critical"
    if days_of_stock <= threshold_days or current_stock <= reorder_point:
        return "warning"
    return "ok"


def urgency_sort_key(entry: dict):
    return (URGENCY_ORDER[entry["urgency"]], entry["days_of_stock"])


def recommendation_for(
    days_of_stock: float, current_stock: int, reorder_point: int, threshold_days: int
) -> str:
    if days_of_stock <= CRITICAL_DAYS:
        return f"URGENT: Only {days_of_stock:.1f} days of stock remaining. Initiate emergency procurement."
    if days_of_stock <= threshold_days:
        return f"Reorder soon. {days_of_stock:.1f} days of stock remaining."
    if current_stock <= reorder_point:
        return "Stock at or below reorder point. Consider placing order."
    return f"Stock levels healthy. {days_of_stock:.1f} days of supply."


# ── Demand patterns ─────────────────────────────────────────────────


def week_start(dt: datetime) -> datetime:
    """Midnight of the Sunday on or before dt."""
    dt = utc(dt)
    days_since_sunday = (dt.weekday() + 1) % 7
    return (dt - timedelta(days=days_since_sunday)).replace(
        hour=0, minute=0, second=0, microsecond=0
    )


def group_by_week(movements) -> list[float]:
    """Weekly outbound totals in chronological order."""
    weekly: dict[datetime, float] = {}
    for m in movements:
        if m.movement_type != "out":
            continue
        key = week_start(m.created_at)
        weekly[key] = weekly.get(key, 0) + abs(m.quantity)
    return [weekly[k] for k in sorted(weekly)]


def calculate_trend(values: list[float]) -> str:
    if len(values) < 4:
        return "stable"
    midpoint = len(values) // 2
    first_avg = statistics.fmean(values[:midpoint])
    second_avg = statistics.fmean(values[midpoint:])
    if first_avg == 0:
        return "increasing" if second_avg > 0 else "stable"
    change = (second_avg - first_avg) / first_avg
    if change > 0.1:
        return "increasing"
    if change < -0.1:
        return "decreasing"
    return "stable"


def calculate_volatility(values: list[float]) -> float:
    if len(values) < 2:
        return 0.0
    return statistics.pstdev(values)


def calculate_seasonality(values: list[float]) -> float:
    """Coefficient of variation, capped at 1. Needs at least 8 weeks."""
    if len(values) < 8:
        return 0.0
    mean = statistics.fmean(values)
    if mean == 0:
        return 0.0
    return min(1.0, statistics.pstdev(values) / mean)


def forecast_demand(
    history: list[float], trend: str, seasonality: float, weeks: int = 4
) -> list[int]:
    recent = history[-4:]
    recent_avg = sum(recent) / len(recent) if recent else 0.0
    multiplier = {"increasing": 1.05, "decreasing": 0.95}.get(trend, 1.0)

    forecast = []
    for i in range(weeks):
        base = recent_avg * multiplier ** (i + 1)
        seasonal = 1 + seasonality * 0.2 * math.sin(i / 4 * math.pi)
        forecast.append(round(base * seasonal))
    return forecast


# ── Reorder policy ──────────────────────────────────────────────────


def optimal_reorder_point(daily_demand: float, lead_time: float, volatility: float) -> int:
    safety_stock = SERVICE_LEVEL_Z * volatility * math.sqrt(lead_time)
    return math.ceil(daily_demand * lead_time + safety_stock)


def economic_order_quantity(
    annual_demand: float,
    ordering_cost: float,
    holding_cost_rate: float,
    item_cost: float,
) -> int:
    if annual_demand <= 0 or holding_cost_rate <= 0 or item_cost <= 0:
        return 0
    return math.ceil(math.sqrt(2 * annual_demand * ordering_cost / (holding_cost_rate * item_cost)))


def differs_from_policy(current: int, suggested: int, tolerance: float = POLICY_TOLERANCE) -> bool:
    return abs(suggested - current) > current * tolerance
