"""Approval queue.

The continuation worker lives in ``fiscal_flow.approvals.worker``.
"""

from fiscal_flow.approvals.queue import ApprovalQueue

__all__ = ["ApprovalQueue"]
