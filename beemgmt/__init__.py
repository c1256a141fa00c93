"""Capacity pools, capacity lists, target states, configuration and request dispatch for a file system management service."""

__version__ = "0.1.0"

__all__ = ["cap_pool", "capacity", "target_state", "config", "dispatch"]