"""Ingestion layer.

This package contains adapters that turn pushed broker events and polled
ride snapshots into normalized :class:`ridesync.state.events.RideUpdate`
patches.
"""

__all__: list[str] = []
