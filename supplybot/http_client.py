"""Shared HTTP clients — connection pooling for all outbound requests.

Two module-level httpx.AsyncClient instances:
  - http: API calls (no redirects)
  - http_redirect: supplier website scraping (follow_redirects=True)

Per-request timeout overrides via http.get(url, timeout=15).

Usage:
    from supplybot.http_client import http, http_redirect
    resp = await http.get(supplier.api_endpoint)
"""

import httpx

from .config import settings

USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)

_LIMITS = httpx.Limits(
    max_connections=20,
    max_keepalive_connections=10,
    keepalive_expiry=30,
)

http = httpx.AsyncClient(
    timeout=settings.http_timeout_seconds,
    limits=_LIMITS,
    follow_redirects=False,
    headers={"Accept": "application/json"},
)

http_redirect = httpx.AsyncClient(
    timeout=settings.http_timeout_seconds,
    limits=_LIMITS,
    follow_redirects=True,
    headers={"User-Agent": USER_AGENT},
)


async def close_clients():
    """Shut down both shared clients. Called from worker shutdown."""
    try:
        await http.aclose()
    except RuntimeError:
        pass
    try:
        await http_redirect.aclose()
    except RuntimeError:
        pass
