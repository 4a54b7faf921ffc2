"""Error taxonomy shared by the agents, adapters and the task queue.

NotFoundError     — a referenced organization/supplier/product/etc. is missing (no retry)
AdapterError      — a catalog adapter or portal session failed (scan marked failed)
TransientError    — worth another attempt from the queue (e.g. mail transport hiccup)
"""


class SupplyBotError(Exception):
    """Base class for all expected agent failures."""


class NotFoundError(SupplyBotError):
    pass


class AdapterError(SupplyBotError):
    pass


class TransientError(SupplyBotError):
    pass


class MailDeliveryError(TransientError):
    pass
