from converge.state.store import JsonStateStore, MemoryStateStore, StateStore

__all__ = ["JsonStateStore", "MemoryStateStore", "StateStore"]
