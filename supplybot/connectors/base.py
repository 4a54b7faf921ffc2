"""Catalog adapters — base retry loop and the shared HTML listing extractor.

Every adapter returns normalized catalog records:
    {sku, name, price, currency, in_stock, stock_level, url, raw_data}

Business Rules:
  - Fetch errors are retried with 2**attempt backoff, then raised as AdapterError
  - Listings without a parseable price are dropped, never stored as 0
  - Website/portal listings without a SKU get a deterministic AUTO-<hash> SKU
"""

import asyncio
import hashlib
import logging
import re
from abc import ABC, abstractmethod
from urllib.parse import urljoin

from bs4 import BeautifulSoup

from ..config import settings
from ..errors import AdapterError
from ..utils import parse_price, safe_int

log = logging.getLogger(__name__)

LISTING_SELECTOR = '[class*="product"], [data-product], .item, tr[data-id]'
NAME_SELECTOR = '[class*="name"], h2, h3, .title'
PRICE_SELECTOR = '[class*="price"]'
SKU_SELECTOR = '[class*="sku"]'
STOCK_SELECTOR = '[class*="stock"], [class*="availability"]'

OUT_OF_STOCK_MARKERS = ("out of stock", "unavailable", "sold out")
STOCK_QTY_RE = re.compile(r"(\d+)\s*(in stock|available|units)", re.IGNORECASE)


def normalize_record(
    sku,
    name,
    price: float,
    *,
    currency: str = "USD",
    in_stock: bool = True,
    stock_level: int | None = None,
    url: str | None = None,
    raw_data: dict | None = None,
) -> dict:
    return {
        "sku": str(sku).strip(),
        "name": (name or "").strip(),
        "price": float(price),
        "currency": currency or "USD",
        "in_stock": bool(in_stock),
        "stock_level": stock_level,
        "url": url,
        "raw_data": raw_data or {},
    }


def auto_sku(name: str) -> str:
    """Stable placeholder SKU for listings that show none."""
    digest = hashlib.sha1(name.strip().lower().encode("utf-8")).hexdigest()
    return f"AUTO-{digest[:10].upper()}"


def parse_stock_text(text: str) -> tuple[bool, int | None]:
    """Turn availability copy ("12 in stock", "Out of stock") into (in_stock, qty)."""
    lowered = (text or "").lower()
    in_stock = not any(marker in lowered for marker in OUT_OF_STOCK_MARKERS)
    m = STOCK_QTY_RE.search(text or "")
    return in_stock, safe_int(m.group(1)) if m else None


def _text(el) -> str:
    return el.get_text(" ", strip=True) if el is not None else ""


def _parse_row(row) -> dict | None:
    """Table layout: sku | name | price | availability."""
    cells = row.find_all("td")
    if len(cells) < 3:
        return None
    return {
        "sku": row.get("data-sku") or _text(cells[0]),
        "name": _text(cells[1]),
        "price_text": _text(row.select_one(PRICE_SELECTOR) or cells[2]),
        "stock_text": _text(cells[3]) if len(cells) > 3 else "",
    }


def _parse_card(el) -> dict:
    return {
        "sku": el.get("data-sku") or _text(el.select_one(SKU_SELECTOR)),
        "name": _text(el.select_one(NAME_SELECTOR)),
        "price_text": _text(el.select_one(PRICE_SELECTOR)),
        "stock_text": _text(el.select_one(STOCK_SELECTOR)),
    }


def extract_listings(html: str, *, base_url: str | None = None) -> list[dict]:
    """Pull product listings out of a catalog page using CSS-class heuristics.

    A container counts as a listing when it holds a price element and no
    nested candidate does (the innermost card wins). Duplicate SKUs keep
    the first occurrence.
    """
    soup = BeautifulSoup(html or "", "html.parser")
    records: list[dict] = []
    seen: set[str] = set()

    for el in soup.select(LISTING_SELECTOR):
        is_row = el.name == "tr"
        if not is_row:
            if el.select_one(PRICE_SELECTOR) is None:
                continue
            if any(inner.select_one(PRICE_SELECTOR) for inner in el.select(LISTING_SELECTOR)):
                continue

        fields = _parse_row(el) if is_row else _parse_card(el)
        if not fields or not fields["name"]:
            continue

        price = parse_price(fields["price_text"])
        if price is None:
            log.debug(f"Dropping listing with unparseable price: {fields['name'][:60]}")
            continue

        sku = fields["sku"] or auto_sku(fields["name"])
        if sku in seen:
            continue
        seen.add(sku)

        in_stock, stock_level = parse_stock_text(fields["stock_text"])
        link = el.find("a", href=True)
        url = urljoin(base_url, link["href"]) if link and base_url else (link["href"] if link else None)

        records.append(
            normalize_record(
                sku,
                fields["name"],
                price,
                in_stock=in_stock,
                stock_level=stock_level,
                url=url,
                raw_data={"price_text": fields["price_text"], "stock_text": fields["stock_text"]},
            )
        )

    return records


class CatalogAdapter(ABC):
    """Fetches one supplier's catalog. Subclasses implement _do_fetch."""

    method: str = ""

    def __init__(self, supplier, *, max_retries: int | None = None, backoff: float = 1.0):
        self.supplier = supplier
        self.max_retries = settings.adapter_max_retries if max_retries is None else max_retries
        self.backoff = backoff

    async def fetch_catalog(self) -> list[dict]:
        last_err = None
        for attempt in range(self.max_retries + 1):
            try:
                return await self._do_fetch()
            except Exception as e:
                last_err = e
                if attempt < self.max_retries:
                    await asyncio.sleep(self.backoff * 2**attempt)
                else:
                    log.warning(
                        f"{self.__class__.__name__} failed for {self.supplier.name}: {e}"
                    )
        raise AdapterError(f"{self.method} catalog fetch failed: {last_err}") from last_err

    @abstractmethod
    async def _do_fetch(self) -> list[dict]:
        pass
