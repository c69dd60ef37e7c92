"""
chillfi-client: resilient client for a self-hosted music service.

Keeps working when the server goes away: reads fall back to a local
cache, writes are queued and replayed in order, and bulk uploads pause
on network loss and resume when the connection comes back.
"""

__version__ = "0.1.0"
