"""Request/response tools for consumers (admin and agent surfaces).

Every tool returns a plain dict. Expected failures never raise; they come
back as ``{"success": False, "error": <customer-safe message>, "reason": <code>}``.
"""

from railgate.tools.deposits import create_deposit_tool, order_status_tool, recover_sweep_tool
from railgate.tools.payouts import attempt_payout_tool, cashout_limit_tool, payout_quote_tool
from railgate.tools.status import railgate_status_tool

__all__ = [
    "create_deposit_tool",
    "order_status_tool",
    "recover_sweep_tool",
    "attempt_payout_tool",
    "cashout_limit_tool",
    "payout_quote_tool",
    "railgate_status_tool",
]
