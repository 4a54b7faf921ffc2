"""Public website adapter — fetch the catalog page and parse listings."""

import logging

import httpx

from .base import CatalogAdapter, extract_listings

log = logging.getLogger(__name__)


class WebsiteCatalogAdapter(CatalogAdapter):
    method = "website"

    def __init__(self, supplier, *, client: httpx.AsyncClient | None = None, **kwargs):
        super().__init__(supplier, **kwargs)
        self._client = client

    async def _do_fetch(self) -> list[dict]:
        client = self._client
        if client is None:
            from ..http_client import http_redirect

            client = http_redirect

        url = self.supplier.website
        if not url.startswith(("http://", "https://")):
            url = "https://" + url

        r = await client.get(url)
        r.raise_for_status()
        records = extract_listings(r.text, base_url=str(r.url))
        log.debug(f"Website catalog for {self.supplier.name}: {len(records)} listings")
        return records
