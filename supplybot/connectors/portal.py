"""Authenticated portal adapter — delegates browsing to PortalAutomationService."""

from .base import CatalogAdapter


class PortalCatalogAdapter(CatalogAdapter):
    method = "portal"

    def __init__(self, supplier, *, portal, **kwargs):
        super().__init__(supplier, **kwargs)
        self.portal = portal

    async def _do_fetch(self) -> list[dict]:
        return await self.portal.scrape_catalog(self.supplier)
