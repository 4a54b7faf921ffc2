"""Reply classifier — turn a supplier's raw email reply into a decision.

Returns {"accepted", "rejected", "counter_offer", "reason"}. Anything the
model gets wrong (no key, HTTP error, non-JSON, wrong shape) degrades to
accepted=False, rejected=False: an ambiguous reply, never an exception.

Called by: agents/diplomat.py
Depends on: utils/claude_client.py
"""

import json

from loguru import logger

from ..utils.claude_client import claude_json, safe_json_parse

SYSTEM_PROMPT = (
    "You are analyzing procurement negotiation responses. Extract key information accurately."
)

AMBIGUOUS = {"accepted": False, "rejected": False, "counter_offer": None, "reason": None}


def build_prompt(content: str, initial_offer: dict) -> str:
    return (
        "Analyze this supplier response to our pricing negotiation:\n\n"
        f'"{content}"\n\n'
        f"Our original request:\n{json.dumps(initial_offer, indent=2, default=str)}\n\n"
        "Determine:\n"
        "1. Did they accept our terms?\n"
        "2. Did they reject outright?\n"
        "3. Did they make a counter-offer? If so, extract the specific unit price per SKU.\n"
        "4. What is their reasoning?\n\n"
        "Respond with JSON only:\n"
        "{\n"
        '  "accepted": boolean,\n'
        '  "rejected": boolean,\n'
        '  "counterOffer": {"products": {"<sku>": <unit price>}} or null,\n'
        '  "reason": "their reasoning"\n'
        "}"
    )


def normalize_classification(result) -> dict:
    if not isinstance(result, dict):
        return dict(AMBIGUOUS)
    counter = result.get("counterOffer", result.get("counter_offer"))
    if not isinstance(counter, dict) or not counter:
        counter = None
    return {
        "accepted": result.get("accepted") is True,
        "rejected": result.get("rejected") is True,
        "counter_offer": counter,
        "reason": result.get("reason") if isinstance(result.get("reason"), str) else None,
    }


def parse_classification(text: str) -> dict:
    """Parse raw model text; unparseable text is ambiguous."""
    return normalize_classification(safe_json_parse(text or ""))


async def classify_reply(content: str, initial_offer: dict) -> dict:
    result = await claude_json(
        build_prompt(content, initial_offer),
        system=SYSTEM_PROMPT,
        model_tier="fast",
        max_tokens=800,
    )
    classification = normalize_classification(result)
    if result is None:
        logger.warning("Reply classification unavailable; treating reply as ambiguous")
    return classification
