"""Application modules.

This package contains the feature modules of the payment reconciliation service:
- payment_gateway: Order ledger, gateways, callback dispatch, expiry sweep
- scheduler: In-process periodic jobs
"""
