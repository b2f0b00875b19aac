from .display_store import DisplayStore, DisplayStoreError

__all__ = ["DisplayStore", "DisplayStoreError"]
