"""Capital accounts and plan approval."""

from .allocator import ApprovalToken, CapitalAllocator, SettlementOutcome

__all__ = ["ApprovalToken", "CapitalAllocator", "SettlementOutcome"]
