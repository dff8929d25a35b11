"""
DiceKV: In-Memory Key-Value Server

A Redis-style key-value server built with Python asyncio, speaking
RESP over raw TCP sockets.
"""

__version__ = "0.1.0"
