"""Event source implementations used by the healthsync agent."""

from .kubernetes import KubernetesPodSource  # noqa: F401

__all__ = ["KubernetesPodSource"]
