"""Negotiation strategy and counter-offer evaluation — no I/O.

Business Rules:
  - Strategy is chosen once at initiation and stored on the negotiation:
      historical volume > $50,000 → volume_leverage (ask target + 2 pts, fallback escalate)
      any competitor price known  → competitive     (fallback walk_away)
      otherwise                   → collaborative   (fallback accept)
  - A counter is acceptable when savings / original total ≥ target × 0.5
  - Counter price per SKU: counter["products"][sku], then counter[sku],
    else the current price (no concession on that line)
  - Round = number of outbound messages in the log
"""

from dataclasses import asdict, dataclass, field

VOLUME_LEVERAGE_THRESHOLD = 50_000
VOLUME_EXTRA_DISCOUNT = 0.02
ACCEPTANCE_FACTOR = 0.5


@dataclass
class NegotiationStrategy:
    approach: str
    initial_discount: float
    max_rounds: int
    fallback_action: str
    talking_points: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "NegotiationStrategy":
        return cls(
            approach=data.get("approach", "collaborative"),
            initial_discount=float(data.get("initial_discount", 0.0)),
            max_rounds=int(data.get("max_rounds", 3)),
            fallback_action=data.get("fallback_action", "accept"),
            talking_points=list(data.get("talking_points") or []),
        )


def determine_strategy(
    products: list[dict],
    historical_volume: float,
    *,
    target_improvement: float,
    max_rounds: int,
) -> NegotiationStrategy:
    if historical_volume and historical_volume > VOLUME_LEVERAGE_THRESHOLD:
        return NegotiationStrategy(
            approach="volume_leverage",
            initial_discount=target_improvement + VOLUME_EXTRA_DISCOUNT,
            max_rounds=max_rounds,
            fallback_action="escalate",
            talking_points=[
                f"We've purchased over ${historical_volume:,.0f} from you in the past year",
                "Looking to increase our commitment with the right pricing",
                "Consolidating suppliers - your pricing will determine allocation",
            ],
        )

    if any(p.get("competitor_price") for p in products):
        return NegotiationStrategy(
            approach="competitive",
            initial_discount=target_improvement,
            max_rounds=max_rounds,
            fallback_action="walk_away",
            talking_points=[
                "We have received competitive quotes from alternative suppliers",
                "Prefer to maintain our relationship with you",
                "Need pricing to be competitive to justify the decision",
            ],
        )

    return NegotiationStrategy(
        approach="collaborative",
        initial_discount=target_improvement,
        max_rounds=max_rounds,
        fallback_action="accept",
        talking_points=[
            "Looking to build a long-term partnership",
            "Planning significant growth in the coming year",
            "Value reliability and quality of service",
        ],
    )


def counter_prices(counter_offer) -> dict[str, float]:
    """Flatten the shapes a classifier may return into {sku: price}.

    Accepts {"products": {sku: price}}, {"products": [{"sku", "price"}]}
    and a bare {sku: price} mapping.
    """
    if not isinstance(counter_offer, dict):
        return {}

    prices: dict[str, float] = {}
    nested = counter_offer.get("products")
    if isinstance(nested, dict):
        items = nested.items()
    elif isinstance(nested, list):
        items = [
            (p.get("sku"), p.get("price", p.get("unit_price")))
            for p in nested
            if isinstance(p, dict)
        ]
    else:
        items = []
    for sku, price in items:
        try:
            prices.setdefault(str(sku), float(price))
        except (TypeError, ValueError):
            continue

    for sku, price in counter_offer.items():
        if sku == "products" or isinstance(price, (dict, list, bool)):
            continue
        try:
            prices.setdefault(str(sku), float(price))
        except (TypeError, ValueError):
            continue
    return prices


def evaluate_counter_offer(
    counter_offer, original_products: list[dict], target_improvement: float
) -> tuple[bool, float]:
    """Return (acceptable, actual_savings)."""
    prices = counter_prices(counter_offer)
    total_original = 0.0
    total_counter = 0.0
    for product in original_products:
        current = float(product.get("current_price") or 0)
        qty = float(product.get("quantity") or 0)
        offered = prices.get(product.get("sku"), current)
        total_original += current * qty
        total_counter += offered * qty

    savings = total_original - total_counter
    pct = savings / total_original if total_original > 0 else 0.0
    return pct >= target_improvement * ACCEPTANCE_FACTOR, savings


def acceptance_terms(counter_offer, original_products: list[dict]) -> tuple[dict, float]:
    """Final terms and savings when the supplier accepts.

    Offered price per SKU is the counter price when given, else our target.
    """
    prices = counter_prices(counter_offer)
    terms = {}
    savings = 0.0
    for product in original_products:
        sku = product.get("sku")
        current = float(product.get("current_price") or 0)
        offered = prices.get(sku, float(product.get("target_price") or current))
        qty = float(product.get("quantity") or 0)
        terms[sku] = offered
        savings += (current - offered) * qty
    return {"products": terms}, savings


def negotiation_round(messages) -> int:
    return sum(1 for m in messages if m.direction == "outbound")


def target_price(current_price: float, target_improvement: float) -> float:
    return round(current_price * (1 - target_improvement), 4)
