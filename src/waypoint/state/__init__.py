from waypoint.state.base import StateStore
from waypoint.state.json_files import JsonFileStateStore
from waypoint.state.memory import MemoryStateStore

__all__ = ["JsonFileStateStore", "MemoryStateStore", "StateStore"]
