"""Ride resource API endpoint modules (internal)."""
