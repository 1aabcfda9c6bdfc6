"""Database infrastructure for the costing kernel."""

from costing_kernel.db.base import Base, TrackedBase, UUIDString

__all__ = ["Base", "TrackedBase", "UUIDString"]
