from .store import OrderStore, order_store

__all__ = ["OrderStore", "order_store"]
