from app.tasks.hotspot import (
    cleanup_security_logs,
    expire_mac_bindings,
    reconcile_pending_orders,
)

__all__ = [
    "cleanup_security_logs",
    "expire_mac_bindings",
    "reconcile_pending_orders",
]
