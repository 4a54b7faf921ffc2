"""Supplier catalog adapters.

Selection order: api_endpoint → portal_url → website → none.
"""

from .api import ApiCatalogAdapter
from .base import AdapterError, CatalogAdapter, extract_listings  # noqa: F401
from .portal import PortalCatalogAdapter
from .website import WebsiteCatalogAdapter


def adapter_for(supplier, *, portal=None, client=None, **kwargs) -> CatalogAdapter | None:
    """Pick the adapter for a supplier, or None when it has no catalog source."""
    if supplier.api_endpoint:
        return ApiCatalogAdapter(supplier, client=client, **kwargs)
    if supplier.portal_url:
        if portal is None:
            return None
        return PortalCatalogAdapter(supplier, portal=portal, **kwargs)
    if supplier.website:
        return WebsiteCatalogAdapter(supplier, client=client, **kwargs)
    return None
