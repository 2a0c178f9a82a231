"""Delivery order domain exceptions."""

from __future__ import annotations


class OrderNotFound(Exception):
    """The requested order does not exist."""


class InvalidOrderStatus(Exception):
    """An invalid delivery status transition was attempted."""
