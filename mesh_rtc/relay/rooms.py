"""In-memory room membership for the relay."""

from typing import Dict, List, Optional, Set


class RoomService:
    """Tracks which participants are in which room.

    Rooms are created on first join and deleted when their last member
    leaves. Membership order is preserved so snapshots list participants in
    the order they joined.
    """

    def __init__(self):
        self._rooms: Dict[str, Dict[str, None]] = {}
        self._user_names: Dict[str, str] = {}

    def join_room(self, room_id: str, user_id: str, user_name: Optional[str] = None) -> None:
        self._rooms.setdefault(room_id, {})[user_id] = None
        if user_name:
            self._user_names[user_id] = user_name

    def leave_room(self, room_id: str, user_id: str) -> bool:
        """Remove ``user_id`` from ``room_id``. Returns True if it was a member."""
        members = self._rooms.get(room_id)
        if members is None or user_id not in members:
            return False
        del members[user_id]
        if not members:
            del self._rooms[room_id]
        self._user_names.pop(user_id, None)
        return True

    def get_room_users(self, room_id: str) -> List[str]:
        return list(self._rooms.get(room_id, {}))

    def get_user_name(self, user_id: str) -> Optional[str]:
        return self._user_names.get(user_id)

    def is_user_in_room(self, room_id: str, user_id: Optional[str]) -> bool:
        return user_id is not None and user_id in self._rooms.get(room_id, {})

    def get_room_size(self, room_id: str) -> int:
        return len(self._rooms.get(room_id, {}))

    def rooms(self) -> Set[str]:
        return set(self._rooms)
