"""JSON catalog API adapter — suppliers that expose api_endpoint."""

import logging

import httpx

from ..utils import parse_price, safe_int
from .base import CatalogAdapter, normalize_record

log = logging.getLogger(__name__)


def _items(data) -> list:
    if isinstance(data, list):
        return data
    if isinstance(data, dict):
        for key in ("products", "items", "data", "results"):
            if isinstance(data.get(key), list):
                return data[key]
    return []


class ApiCatalogAdapter(CatalogAdapter):
    method = "api"

    def __init__(self, supplier, *, client: httpx.AsyncClient | None = None, **kwargs):
        super().__init__(supplier, **kwargs)
        self._client = client

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            from ..http_client import http

            return http
        return self._client

    async def _do_fetch(self) -> list[dict]:
        r = await self.client.get(self.supplier.api_endpoint)
        r.raise_for_status()

        records = []
        for item in _items(r.json()):
            if not isinstance(item, dict):
                continue
            sku = item.get("sku") or item.get("product_id")
            price = parse_price(item.get("price", item.get("unit_price")))
            if not sku or price is None:
                continue
            stock_level = safe_int(item.get("stock_quantity"))
            in_stock = item.get("in_stock")
            if in_stock is None:
                in_stock = (stock_level or 0) > 0
            records.append(
                normalize_record(
                    sku,
                    item.get("name") or item.get("product_name") or str(sku),
                    price,
                    currency=item.get("currency") or "USD",
                    in_stock=in_stock,
                    stock_level=stock_level,
                    url=item.get("url"),
                    raw_data=item,
                )
            )
        log.debug(f"API catalog for {self.supplier.name}: {len(records)} items")
        return records

    async def check_stock(self, sku: str) -> dict:
        """GET {api_endpoint}/stock/{sku} — raises on any transport or HTTP error."""
        url = f"{self.supplier.api_endpoint.rstrip('/')}/stock/{sku}"
        r = await self.client.get(url)
        r.raise_for_status()
        data = r.json()
        quantity = safe_int(data.get("quantity"))
        in_stock = data.get("in_stock")
        if in_stock is None:
            in_stock = (quantity or 0) > 0
        return {"in_stock": bool(in_stock), "stock_level": quantity}
