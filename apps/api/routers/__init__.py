"""Routers package."""

from . import (
    health,
    auth,
    billing,
    webhooks,
    generation,
)
