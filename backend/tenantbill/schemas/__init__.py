from tenantbill.schemas import billing, common

__all__ = [
    "billing",
    "common",
]
