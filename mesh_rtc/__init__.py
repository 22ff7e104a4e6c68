"""Peer-to-peer media mesh over a room signaling relay."""

__version__ = "0.1.0"
