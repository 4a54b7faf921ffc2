"""Claude API client — negotiation drafting and reply classification.

Two model tiers, both configurable:
  - fast: reply classification (short JSON answers, temperature 0)
  - smart: negotiation and counter-offer emails

Nothing here raises. No API key, a non-200 status, a network error or an
empty answer all come back as None and the caller uses its own fallback
(template email, ambiguous classification).

Usage:
    from supplybot.utils.claude_client import claude_text, claude_json
    body = await claude_text(prompt, system=NEGOTIATOR_PROMPT, model_tier="smart")
"""

import json
import logging
import re

from ..config import settings

log = logging.getLogger("supplybot.claude")

API_URL = "https://api.anthropic.com/v1/messages"
API_VERSION = "2023-06-01"
PROMPT_CACHING_BETA = "prompt-caching-2024-07-31"

_FENCE_RE = re.compile(r"^```[a-zA-Z]*\s*|\s*```$")
_decoder = json.JSONDecoder()


def model_for(tier: str) -> str:
    if tier == "smart":
        return settings.llm_smart_model
    return settings.llm_fast_model


def _request(prompt: str, system: str, tier: str, max_tokens: int, temperature, cache_system: bool) -> tuple[dict, dict]:
    headers = {
        "x-api-key": settings.anthropic_api_key,
        "anthropic-version": API_VERSION,
        "content-type": "application/json",
    }
    body = {
        "model": model_for(tier),
        "max_tokens": max_tokens,
        "messages": [{"role": "user", "content": prompt}],
    }
    if system:
        block = {"type": "text", "text": system}
        if cache_system:
            # System prompts are static per task type
            block["cache_control"] = {"type": "ephemeral"}
            headers["anthropic-beta"] = PROMPT_CACHING_BETA
        body["system"] = [block]
    if temperature is not None:
        body["temperature"] = temperature
    return headers, body


async def claude_text(
    prompt: str,
    *,
    system: str = "",
    model_tier: str = "smart",
    max_tokens: int = 1500,
    temperature: float | None = None,
    cache_system: bool = True,
    timeout: int = 60,
) -> str | None:
    """Free-form completion. Text blocks are joined with newlines."""
    if not settings.anthropic_api_key:
        log.debug("No Anthropic API key configured; skipping model call")
        return None

    from ..http_client import http

    headers, body = _request(prompt, system, model_tier, max_tokens, temperature, cache_system)
    try:
        resp = await http.post(API_URL, headers=headers, json=body, timeout=timeout)
    except Exception as e:
        log.warning(f"Claude request failed: {e}")
        return None

    if resp.status_code != 200:
        log.warning(f"Claude API {resp.status_code}: {resp.text[:200]}")
        return None

    try:
        blocks = resp.json().get("content") or []
    except ValueError:
        log.warning("Claude API returned a non-JSON body")
        return None
    text = "\n".join(b["text"] for b in blocks if b.get("type") == "text" and b.get("text"))
    return text or None


async def claude_json(
    prompt: str,
    *,
    system: str = "",
    model_tier: str = "fast",
    max_tokens: int = 1024,
    timeout: int = 30,
) -> dict | list | None:
    """Deterministic completion whose answer should contain one JSON value."""
    text = await claude_text(
        prompt,
        system=system,
        model_tier=model_tier,
        max_tokens=max_tokens,
        temperature=0.0,
        timeout=timeout,
    )
    return safe_json_parse(text) if text else None


def safe_json_parse(text: str) -> dict | list | None:
    """First JSON object or array in text, tolerating code fences and prose around it."""
    if not text:
        return None

    cleaned = _FENCE_RE.sub("", text.strip())
    try:
        return json.loads(cleaned)
    except json.JSONDecodeError:
        pass

    for i, ch in enumerate(cleaned):
        if ch not in "{[":
            continue
        try:
            value, _ = _decoder.raw_decode(cleaned, i)
        except json.JSONDecodeError:
            continue
        return value

    log.debug(f"No JSON found in model reply: {text[:100]}...")
    return None
