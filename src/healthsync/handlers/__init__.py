"""Handlers invoked by the controller for every dequeued key."""

from .base import Handler  # noqa: F401
from .health_check import HealthCheckHandler  # noqa: F401

__all__ = ["Handler", "HealthCheckHandler"]
