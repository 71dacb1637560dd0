from .connection import async_session, close_db, init_db
from .models import User, VpnNode, Subscription, Payment

__all__ = [
    "async_session",
    "close_db",
    "init_db",
    "User",
    "VpnNode",
    "Subscription",
    "Payment",
]
