from taxbot.storage.cycle_store import CycleStore

__all__ = ["CycleStore"]
