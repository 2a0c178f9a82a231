"""Shopify connection repositories package."""

from modules.shopify.repositories.django_repository import ConnectionDjangoRepository
from modules.shopify.repositories.interfaces import IConnectionRepository

__all__ = ["ConnectionDjangoRepository", "IConnectionRepository"]
