"""
Infrastructure layer - external system integrations.
Keeps business logic clean from implementation details.
"""

from .mpesa import MpesaClient, get_payment_gateway, close_payment_gateway

__all__ = ['MpesaClient', 'get_payment_gateway', 'close_payment_gateway']
