"""Database models — re-exports all models.

Import from here:  from supplybot.models import Supplier, Negotiation, ...
Or from submodules: from supplybot.models.suppliers import Supplier
"""

from .base import Base  # noqa: F401

from .organizations import Organization  # noqa: F401

# Suppliers & catalog scanning
from .suppliers import PriceHistory, ScrapingJob, Supplier, SupplierProduct  # noqa: F401

# Inventory & forecasting
from .inventory import (  # noqa: F401
    DemandForecast,
    InventoryItem,
    Product,
    PurchaseOrder,
    StockMovement,
    StockoutPrediction,
)

# Negotiations
from .negotiations import (  # noqa: F401
    NEGOTIATION_STATUSES,
    TERMINAL_STATUSES,
    Negotiation,
    NegotiationMessage,
)

# Audit trail & task queue
from .activity import ActivityLog, AgentTaskRecord  # noqa: F401
