"""Payment Reconciliation Backend Application.

Reconciles payment orders with the outcomes reported by Telebirr and Stripe
and activates subscriptions exactly once per paid order.

Modules:
    - core: Configuration, database, Celery, logging setup
    - modules.payment_gateway: Orders, gateways, callbacks, expiry sweep
    - modules.scheduler: In-process periodic jobs
"""

__version__ = "0.1.0"
