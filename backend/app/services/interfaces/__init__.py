"""
Service interfaces for dependency inversion.
Allows swapping implementations without changing business logic.
"""

from .payment_gateway import PaymentGateway, StkPushResponse, StkQueryResponse

__all__ = ['PaymentGateway', 'StkPushResponse', 'StkQueryResponse']
