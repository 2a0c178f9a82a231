"""Fulfillment queue repositories package."""

from modules.fulfillment.repositories.django_repository import (
    FulfillmentQueueDjangoRepository,
)
from modules.fulfillment.repositories.interfaces import IFulfillmentQueue

__all__ = ["FulfillmentQueueDjangoRepository", "IFulfillmentQueue"]
