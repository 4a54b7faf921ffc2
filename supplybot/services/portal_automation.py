"""Portal automation — Playwright sessions for supplier portals without an API.

Purpose:
  Log in to supplier portals, walk their catalog pages, look up stock
  for specific SKUs and place orders through the cart/checkout flow.

Business Rules:
  - One BrowserContext per supplier, kept for the life of the service so
    cookies/sessions survive between scans
  - A per-supplier asyncio.Lock serialises work on a context (single writer)
  - Catalog pagination stops when there is no "next" control or at
    portal_max_pages, with portal_page_delay_seconds between pages
  - Browser launch failure leaves the service in limited mode: portal
    scans raise AdapterError, stock checks return {}, orders fail cleanly
  - Every context is closed on shutdown

Called by: connectors/portal.py, agents/scout.py, orchestrator.py
Depends on: playwright, connectors/base.py (listing extraction)
"""

import asyncio
import logging
import re

from playwright.async_api import async_playwright

from ..config import settings
from ..connectors.base import extract_listings, parse_stock_text
from ..database import session_scope
from ..errors import AdapterError
from ..http_client import USER_AGENT
from .activity_service import log_activity

log = logging.getLogger(__name__)

# ── Generic portal selectors ────────────────────────────────────────

DEFAULT_SELECTORS = {
    "username": '#username, input[name="username"], input[type="email"], input[name*="user"]',
    "password": '#password, input[name="password"], input[type="password"]',
    "login_button": 'button[type="submit"], input[type="submit"], button:has-text("Login")',
    "search_input": '#search, input[name="search"], input[placeholder*="search" i]',
    "add_to_cart": '.add-to-cart, button:has-text("Add to Cart"), [data-action="add-to-cart"]',
    "quantity": 'input[name="quantity"], input[type="number"]',
    "checkout": '.checkout, button:has-text("Checkout"), a:has-text("Checkout")',
    "place_order": '.place-order, button:has-text("Place Order"), button:has-text("Submit Order")',
    "order_confirmation": ".order-number, .confirmation-number, [data-order-id]",
}
CATALOG_LINK = 'a[href*="catalog"], a[href*="products"], a:has-text("Products")'
NEXT_PAGE = '.pagination .next:not(.disabled), a:has-text("Next")'
LOGIN_ERROR = '[class*="error"], [class*="alert-danger"], .error-message'
STOCK_INFO = '[class*="stock"], [class*="availability"], [data-stock]'
ORDER_NUMBER_RE = re.compile(r"order[#\s:-]*([A-Z0-9-]+)", re.IGNORECASE)


class PortalAutomationService:
    def __init__(
        self,
        *,
        headless: bool | None = None,
        timeout_seconds: int | None = None,
        page_delay: float | None = None,
        max_pages: int | None = None,
        session_factory=None,
    ):
        self.headless = settings.browser_headless if headless is None else headless
        self.timeout_ms = (timeout_seconds or settings.browser_timeout_seconds) * 1000
        self.page_delay = settings.portal_page_delay_seconds if page_delay is None else page_delay
        self.max_pages = max_pages or settings.portal_max_pages
        self.session_factory = session_factory
        self._playwright = None
        self.browser = None
        self.contexts: dict[int, object] = {}
        self._locks: dict[int, asyncio.Lock] = {}

    # ── Lifecycle ───────────────────────────────────────────────────

    async def initialize(self) -> None:
        try:
            self._playwright = await async_playwright().start()
            self.browser = await self._playwright.chromium.launch(
                headless=self.headless,
                args=["--disable-blink-features=AutomationControlled"],
            )
            log.info("Portal automation browser launched")
        except Exception as e:
            log.warning(f"Portal browser unavailable, portal features disabled: {e}")
            self.browser = None

    async def shutdown(self) -> None:
        for supplier_id, context in list(self.contexts.items()):
            try:
                await context.close()
            except Exception as e:
                log.warning(f"Closing portal context for supplier {supplier_id} failed: {e}")
        self.contexts.clear()
        if self.browser is not None:
            await self.browser.close()
            self.browser = None
        if self._playwright is not None:
            await self._playwright.stop()
            self._playwright = None
        log.info("Portal automation shut down")

    async def health_check(self) -> dict:
        return {"browser": self.browser is not None, "sessions": len(self.contexts)}

    @property
    def available(self) -> bool:
        return self.browser is not None

    # ── Sessions ────────────────────────────────────────────────────

    def lock_for(self, supplier_id: int) -> asyncio.Lock:
        lock = self._locks.get(supplier_id)
        if lock is None:
            lock = self._locks[supplier_id] = asyncio.Lock()
        return lock

    async def _get_context(self, supplier_id: int):
        """Reuse the supplier's context. Caller must hold lock_for(supplier_id)."""
        context = self.contexts.get(supplier_id)
        if context is not None:
            return context
        if self.browser is None:
            raise AdapterError("Portal browser not initialized")
        context = await self.browser.new_context(
            user_agent=USER_AGENT,
            viewport={"width": 1920, "height": 1080},
            locale="en-US",
        )
        self.contexts[supplier_id] = context
        return context

    async def _login(self, page, supplier, selectors: dict) -> None:
        creds = supplier.portal_credentials or {}
        if not creds.get("username") or not creds.get("password"):
            return
        await page.fill(selectors["username"], creds["username"], timeout=self.timeout_ms)
        await page.fill(selectors["password"], creds["password"], timeout=self.timeout_ms)
        await page.click(selectors["login_button"], timeout=self.timeout_ms)
        await page.wait_for_load_state("networkidle")

        url = page.url.lower()
        if "login" in url or "signin" in url:
            err = await page.query_selector(LOGIN_ERROR)
            text = (await err.text_content() or "").strip() if err else ""
            raise AdapterError(f"Portal login failed for {supplier.name}: {text or 'still on login page'}")
        log.info(f"Logged into portal for {supplier.name}")

    async def login(self, supplier, selectors: dict | None = None):
        """Open a page in the supplier's context and authenticate. Caller closes the page."""
        context = await self._get_context(supplier.id)
        page = await context.new_page()
        try:
            await page.goto(supplier.portal_url, wait_until="networkidle", timeout=self.timeout_ms)
            await self._login(page, supplier, selectors or DEFAULT_SELECTORS)
        except Exception:
            await page.close()
            raise
        return page

    # ── Catalog ─────────────────────────────────────────────────────

    async def scrape_catalog(self, supplier) -> list[dict]:
        if not self.available:
            raise AdapterError("Portal browser not available")

        async with self.lock_for(supplier.id):
            page = await self.login(supplier)
            try:
                link = await page.query_selector(CATALOG_LINK)
                if link:
                    await link.click()
                    await page.wait_for_load_state("networkidle")

                records = extract_listings(await page.content(), base_url=page.url)
                pages = 1
                while pages < self.max_pages:
                    next_button = await page.query_selector(NEXT_PAGE)
                    if next_button is None:
                        break
                    await next_button.click()
                    await page.wait_for_load_state("networkidle")
                    await asyncio.sleep(self.page_delay)
                    records.extend(extract_listings(await page.content(), base_url=page.url))
                    pages += 1
            finally:
                await page.close()

        deduped = {}
        for rec in records:
            deduped.setdefault(rec["sku"], rec)
        log.info(f"Portal catalog for {supplier.name}: {len(deduped)} items over {pages} page(s)")
        return list(deduped.values())

    # ── Stock ───────────────────────────────────────────────────────

    async def _search(self, page, sku: str, selectors: dict):
        await page.fill(selectors["search_input"], sku, timeout=self.timeout_ms)
        await page.keyboard.press("Enter")
        await page.wait_for_load_state("networkidle")
        return await page.query_selector(f'[data-sku="{sku}"], [data-product-id="{sku}"]')

    async def check_portal_stock(self, supplier, skus: list[str]) -> dict[str, dict]:
        """Look up each SKU via portal search → {sku: {in_stock, stock_level}}."""
        results: dict[str, dict] = {}
        if not self.available or not supplier.portal_url or not supplier.portal_credentials:
            return results

        async with self.lock_for(supplier.id):
            try:
                page = await self.login(supplier)
            except Exception as e:
                log.error(f"Portal stock check login failed for {supplier.name}: {e}")
                return results
            try:
                for sku in skus:
                    found = await self._search(page, sku, DEFAULT_SELECTORS)
                    if not found:
                        results[sku] = {"in_stock": False, "stock_level": None}
                        continue
                    stock_el = await page.query_selector(STOCK_INFO)
                    if stock_el is None:
                        results[sku] = {"in_stock": True, "stock_level": None}
                        continue
                    in_stock, qty = parse_stock_text(await stock_el.text_content() or "")
                    results[sku] = {"in_stock": in_stock, "stock_level": qty}
            except Exception as e:
                log.error(f"Portal stock check failed for {supplier.name}: {e}")
            finally:
                await page.close()
        return results

    # ── Ordering ────────────────────────────────────────────────────

    async def _add_to_cart(self, page, items: list[dict]) -> tuple[list[str], list[str]]:
        added, failed = [], []
        for item in items:
            sku = item["sku"]
            try:
                if not await self._search(page, sku, DEFAULT_SELECTORS):
                    log.warning(f"Portal product not found: {sku}")
                    failed.append(sku)
                    continue
                qty_input = await page.query_selector(DEFAULT_SELECTORS["quantity"])
                if qty_input:
                    await qty_input.fill(str(item["quantity"]))
                await page.click(DEFAULT_SELECTORS["add_to_cart"], timeout=self.timeout_ms)
                await page.wait_for_load_state("networkidle")
                added.append(sku)
            except Exception as e:
                log.error(f"Failed to add {sku} to cart: {e}")
                failed.append(sku)
        return added, failed

    async def _checkout(self, page) -> str | None:
        await page.click(DEFAULT_SELECTORS["checkout"], timeout=self.timeout_ms)
        await page.wait_for_load_state("networkidle")
        await page.click(DEFAULT_SELECTORS["place_order"], timeout=self.timeout_ms)
        await page.wait_for_load_state("networkidle")

        confirmation = await page.query_selector(DEFAULT_SELECTORS["order_confirmation"])
        if confirmation:
            text = (await confirmation.text_content() or "").strip()
            if text:
                return text
        m = ORDER_NUMBER_RE.search(await page.content())
        return m.group(1) if m else None

    async def place_order(self, supplier, items: list[dict]) -> dict:
        """Cart + checkout on the supplier portal. items: [{"sku", "quantity"}]."""
        if not self.available:
            return {"success": False, "error": "Portal browser not available"}
        if not supplier.portal_url or not supplier.portal_credentials:
            return {"success": False, "error": "Supplier portal configuration not found"}

        async with self.lock_for(supplier.id):
            try:
                page = await self.login(supplier)
            except Exception as e:
                return {"success": False, "error": str(e)}
            try:
                added, failed = await self._add_to_cart(page, items)
                if not added:
                    return {"success": False, "error": "No items could be added to cart", "failed": failed}
                if failed:
                    log.warning(f"Portal order for {supplier.name}: could not add {failed}")
                order_number = await self._checkout(page)
                confirmation_url = page.url
            except Exception as e:
                log.error(f"Portal checkout failed for {supplier.name}: {e}")
                return {"success": False, "error": str(e)}
            finally:
                await page.close()

        if order_number:
            with session_scope(self.session_factory) as db:
                log_activity(
                    db,
                    "portal",
                    "portal_order_placed",
                    entity_type="supplier",
                    entity_id=supplier.id,
                    organization_id=supplier.organization_id,
                    details={
                        "order_number": order_number,
                        "items": items,
                        "confirmation_url": confirmation_url,
                    },
                )
                db.commit()
        log.info(f"Portal order placed with {supplier.name}: {order_number}")
        return {
            "success": True,
            "order_number": order_number,
            "confirmation_url": confirmation_url,
            "added": added,
            "failed": failed,
        }
