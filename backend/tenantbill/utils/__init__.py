from tenantbill.utils.dates import add_months, days_remaining
from tenantbill.utils.money import compute_tax, round_half_up
from tenantbill.utils.security import create_access_token, decode_token

__all__ = [
    "add_months",
    "compute_tax",
    "create_access_token",
    "days_remaining",
    "decode_token",
    "round_half_up",
]
