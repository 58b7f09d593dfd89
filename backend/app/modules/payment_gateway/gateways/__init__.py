"""Payment gateway implementations.

Contains implementations for Telebirr and Stripe.
"""

from .stripe import StripeGateway
from .telebirr import TelebirrConfig, TelebirrGateway

__all__ = ["StripeGateway", "TelebirrConfig", "TelebirrGateway"]
