"""Booking intake service: CRM booking pipeline, token cache and availability."""

__version__ = "0.1.0"
