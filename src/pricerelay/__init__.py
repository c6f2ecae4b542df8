"""pricerelay — broadcast relay for live price updates.

Bridges a pub/sub channel and many WebSocket clients: every message on the
channel is fanned out to all connected clients, and anything a client sends
is published back onto the same channel.
"""

__version__ = "0.1.0"
