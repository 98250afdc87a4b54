"""
Notification dispatch and preference synchronization.

This package decides who gets a notification and delivers it:
- Preference store and category resolver decide who is interested
- The delivery channel chain pushes, shows and records each notification
- The dispatch coordinator fans events out to audiences
- The realtime listener and the expiry sweep turn backend changes into dispatches
"""

from dispatch.engine import NotificationEngine, build_engine

__all__ = [
    "NotificationEngine",
    "build_engine",
]
