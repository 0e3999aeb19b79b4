from app.client.connection import ChatConnection, ConnectionState
from app.client.unread import UnreadReconciler

__all__ = ["ChatConnection", "ConnectionState", "UnreadReconciler"]
