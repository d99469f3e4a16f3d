"""Routers package."""

from . import (
    health,
    credentials,
    credits,
    jobs,
)
