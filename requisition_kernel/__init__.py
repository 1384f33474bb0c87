"""
Requisition Kernel

Document-oriented backend for material requisitions in a small
manufacturing inventory:
- Fixed requisition lifecycle with store-first and manager-first issue
- Per-requisition stock reservations
- Optimistically versioned inventory ledger
- Outbox notifications
"""

__version__ = "0.1.0"
