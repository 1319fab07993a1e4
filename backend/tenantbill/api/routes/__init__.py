from . import admin_billing, billing, health, plans

__all__ = [
    "admin_billing",
    "billing",
    "health",
    "plans",
]
