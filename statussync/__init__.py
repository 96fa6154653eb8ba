"""
statussync: real-time status page synchronization.

Keeps a consistent, continuously updated view of service health and
active incidents for an organization by combining a REST snapshot with
an unreliable WebSocket stream of push events.
"""

__version__ = "1.0.0"
