"""Concurrency: single-flight leases for duplicate render requests."""

from tryon_render.concurrency.lease import InProcessLeaseRegistry, Lease

__all__ = ["InProcessLeaseRegistry", "Lease"]
