"""
Escrow Kernel

Persistence, domain types and audit trail for the milestone escrow engine:
- Per-account serialized ledger balances
- Append-only approvals and ledger transactions
- Full auditability via hash chain
- Exact decimal arithmetic with explicit rounding
"""

__version__ = "0.1.0"
