"""Negotiation emails — LLM-drafted asks/counters plus fixed templates.

Design rules:
  - Drafts come back as unstructured text; parse_email_text splits off a
    "Subject:" line and substitutes a default subject when there is none
  - Empty/failed LLM output falls back to a template body, never blocks a send
  - Acceptance, quote request and expedite emails are fixed templates

Called by: agents/diplomat.py
Depends on: utils/claude_client.py
"""

import json
import re
from dataclasses import dataclass, field

from loguru import logger

from ..utils.claude_client import claude_text
from .negotiation_strategy import NegotiationStrategy

NEGOTIATOR_PROMPT = (
    "You are a professional procurement specialist writing negotiation emails. "
    "Be persuasive but respectful. Always maintain professionalism."
)
COUNTER_PROMPT = (
    "You are a professional procurement specialist. Counter-negotiate firmly but fairly."
)

_SUBJECT_RE = re.compile(r"subject:", re.IGNORECASE)


@dataclass
class EmailMessage:
    to: str
    subject: str
    body: str


@dataclass
class NegotiationContext:
    supplier_name: str
    supplier_email: str
    organization_name: str
    products: list[dict] = field(default_factory=list)
    historical_volume: float = 0.0


def parse_email_text(text: str, default_subject: str) -> tuple[str, str]:
    """Split generated text into (subject, body).

    The first line containing "subject:" (any case) is the subject line and
    everything after it is the body. Without one the whole text is the body.
    """
    lines = (text or "").split("\n")
    for i, line in enumerate(lines):
        if "subject:" in line.lower():
            subject = _SUBJECT_RE.sub("", line, count=1).strip().strip("*").strip()
            return subject or default_subject, "\n".join(lines[i + 1 :]).strip()
    return default_subject, "\n".join(lines).strip()


def _money(v) -> str:
    return f"${float(v or 0):,.2f}"


def _product_lines(products: list[dict]) -> str:
    return "\n".join(
        f"- {p.get('name')} ({p.get('sku')}): Qty {p.get('quantity')}, "
        f"Current: {_money(p.get('current_price'))}/unit, Target: {_money(p.get('target_price'))}/unit"
        for p in products
    )


def build_negotiation_prompt(ctx: NegotiationContext, strategy: NegotiationStrategy, round_no: int) -> str:
    volume = f"${ctx.historical_volume:,.0f}" if ctx.historical_volume else "N/A"
    points = "\n".join(f"- {tp}" for tp in strategy.talking_points)
    return (
        f"Generate a professional procurement negotiation email for round {round_no}.\n\n"
        f"Context:\n"
        f"- Our company: {ctx.organization_name}\n"
        f"- Supplier: {ctx.supplier_name}\n"
        f"- Historical purchase volume: {volume}\n"
        f"- Negotiation strategy: {strategy.approach}\n\n"
        f"Products to negotiate:\n{_product_lines(ctx.products)}\n\n"
        f"Talking points to incorporate:\n{points}\n\n"
        "Requirements:\n"
        "1. Professional and respectful tone\n"
        "2. Emphasize value of long-term partnership\n"
        "3. Provide data-driven justification for pricing\n"
        f"4. Include specific ask for {strategy.initial_discount * 100:.0f}% improvement\n"
        "5. Set reasonable timeline for response\n\n"
        "Start with a line 'Subject: ...', then the email body."
    )


def build_counter_prompt(
    ctx: NegotiationContext, strategy: NegotiationStrategy, counter_offer, round_no: int
) -> str:
    targets = "\n".join(
        f"- {p.get('name')}: Target {_money(p.get('target_price'))}/unit" for p in ctx.products
    )
    return (
        f"Generate a professional counter-offer email for negotiation round {round_no}.\n\n"
        f"Context:\n"
        f"- Our company: {ctx.organization_name}\n"
        f"- Supplier: {ctx.supplier_name}\n"
        f"- Strategy: {strategy.approach}\n\n"
        f"Their counter-offer:\n{json.dumps(counter_offer, indent=2, default=str)}\n\n"
        f"Our original targets:\n{targets}\n\n"
        "Generate a response that:\n"
        "1. Acknowledges their counter-offer professionally\n"
        "2. Provides reasoning for why we need a better price\n"
        "3. Proposes a middle-ground if appropriate\n"
        "4. Maintains relationship focus\n\n"
        "Start with a line 'Subject: ...', then the email body."
    )


def _fallback_negotiation_body(ctx: NegotiationContext, strategy: NegotiationStrategy) -> str:
    points = "\n".join(f"- {tp}" for tp in strategy.talking_points)
    return (
        f"Dear {ctx.supplier_name} Team,\n\n"
        f"We would like to review pricing on the following items:\n\n"
        f"{_product_lines(ctx.products)}\n\n"
        f"{points}\n\n"
        f"We are looking for a {strategy.initial_discount * 100:.0f}% improvement on current pricing. "
        "We would appreciate your response within the next week.\n\n"
        f"Best regards,\n{ctx.organization_name} Procurement Team"
    )


def _fallback_counter_body(ctx: NegotiationContext) -> str:
    targets = "\n".join(
        f"- {p.get('name')}: {_money(p.get('target_price'))}/unit" for p in ctx.products
    )
    return (
        f"Dear {ctx.supplier_name} Team,\n\n"
        "Thank you for your counter-offer. Unfortunately it does not yet meet our pricing "
        f"requirements. Our targets remain:\n\n{targets}\n\n"
        "We value the relationship and hope we can find a middle ground.\n\n"
        f"Best regards,\n{ctx.organization_name} Procurement Team"
    )


async def draft_negotiation_email(
    ctx: NegotiationContext, strategy: NegotiationStrategy, round_no: int = 1
) -> EmailMessage:
    default_subject = f"Pricing Discussion - {ctx.organization_name}"
    text = await claude_text(
        build_negotiation_prompt(ctx, strategy, round_no),
        system=NEGOTIATOR_PROMPT,
        model_tier="smart",
        temperature=0.7,
    )
    subject, body = parse_email_text(text or "", default_subject)
    if not body:
        logger.warning(f"Negotiation draft empty for {ctx.supplier_name}; using template")
        body = _fallback_negotiation_body(ctx, strategy)
    return EmailMessage(to=ctx.supplier_email, subject=subject, body=body)


async def draft_counter_email(
    ctx: NegotiationContext, strategy: NegotiationStrategy, counter_offer, round_no: int
) -> EmailMessage:
    default_subject = f"Re: Pricing Discussion - {ctx.organization_name}"
    text = await claude_text(
        build_counter_prompt(ctx, strategy, counter_offer, round_no),
        system=COUNTER_PROMPT,
        model_tier="smart",
        temperature=0.7,
    )
    subject, body = parse_email_text(text or "", default_subject)
    if not body:
        logger.warning(f"Counter draft empty for {ctx.supplier_name}; using template")
        body = _fallback_counter_body(ctx)
    return EmailMessage(to=ctx.supplier_email, subject=subject, body=body)


# ── Fixed templates ─────────────────────────────────────────────────


def acceptance_email(ctx: NegotiationContext, terms) -> EmailMessage:
    body = (
        f"Dear {ctx.supplier_name} Team,\n\n"
        "Thank you for working with us to reach an agreement on pricing. "
        "We are pleased to accept the terms as discussed:\n\n"
        f"{json.dumps(terms, indent=2, default=str)}\n\n"
        "We look forward to placing our order and continuing our valued partnership.\n\n"
        f"Best regards,\n{ctx.organization_name} Procurement Team"
    )
    return EmailMessage(
        to=ctx.supplier_email,
        subject=f"Order Confirmation - {ctx.organization_name}",
        body=body,
    )


def quote_request_email(
    supplier_name: str, supplier_email: str, organization_name: str, products: list[dict]
) -> EmailMessage:
    product_list = "\n".join(
        f"- {p['name']} (SKU: {p['sku']}): {p['quantity']} units" for p in products
    )
    body = (
        f"Dear {supplier_name} Team,\n\n"
        f"We are writing to request a quote for the following items:\n\n{product_list}\n\n"
        "Please provide your best pricing including:\n"
        "1. Unit price for stated quantities\n"
        "2. Volume discount tiers if available\n"
        "3. Lead time for delivery\n"
        "4. Payment terms\n\n"
        "We aim to place the order within the next 7-10 business days.\n\n"
        "Thank you for your prompt attention to this request.\n\n"
        f"Best regards,\n{organization_name} Procurement Team"
    )
    return EmailMessage(
        to=supplier_email,
        subject=f"Quote Request from {organization_name}",
        body=body,
    )


def expedite_email(
    supplier_name: str,
    supplier_email: str,
    organization_name: str,
    order_number: str,
    reason: str,
    urgency: str,
    items: list[dict],
) -> EmailMessage:
    urgency_text = (
        "URGENT: This is a critical production need"
        if urgency == "critical"
        else "This is a high-priority request"
    )
    item_list = "\n".join(f"- {i['name']}: {i['quantity']} units" for i in items)
    body = (
        f"Dear {supplier_name} Team,\n\n"
        f"{urgency_text} - we need to request expedited delivery for our order #{order_number}.\n\n"
        f"Items needed urgently:\n{item_list}\n\n"
        f"Reason: {reason}\n\n"
        "We understand this may incur additional charges and are prepared to discuss options. "
        "Please contact us immediately to confirm what's possible.\n\n"
        "Thank you for your understanding and swift response.\n\n"
        f"Best regards,\n{organization_name} Procurement Team"
    )
    return EmailMessage(
        to=supplier_email,
        subject=f"[URGENT] Expedite Request - Order #{order_number}",
        body=body,
    )
