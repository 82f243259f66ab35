"""Inbound connectors for Lark event delivery.

Connectors are transport-only adapters that:
- Receive callbacks from the Lark open platform
- Verify and decrypt the event envelope
- Route each event to the matching leave handler
"""

__all__ = ["lark_events"]
