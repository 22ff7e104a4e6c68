"""Room-scoped signaling relay for mesh-rtc peers."""

from mesh_rtc.relay.rooms import RoomService
from mesh_rtc.relay.server import RelayServer, serve

__all__ = ["RoomService", "RelayServer", "serve"]
