"""State layer.

This package is the single source of truth for how pushed events, polled
snapshots and local commands are merged into the active ride session.
"""
