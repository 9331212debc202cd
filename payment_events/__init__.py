"""
Payment event processing core.

Ingests payment-provider webhooks and turns them into durable order,
subscription, commission and loyalty-point state:
1. Signature verification before anything is trusted
2. A durable idempotency ledger in front of every side effect
3. Compare-and-set reconciliation of order/subscription state
4. Exactly-once commissions and points via unique constraints
5. Best-effort transactional email that never blocks acknowledgement
"""

__version__ = "1.0.0"
