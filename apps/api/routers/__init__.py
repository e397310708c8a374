"""Routers package."""

from . import (
    health,
    tokens,
    billing,
    admin,
)
