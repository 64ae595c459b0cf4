"""
Payment gateway interface.
Lets the reconciliation handler run against M-Pesa in production and a fake in tests.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Optional


@dataclass
class StkPushResponse:
    checkout_request_id: str
    merchant_request_id: Optional[str] = None
    response_code: str = "0"
    response_description: str = ""
    customer_message: str = ""


@dataclass
class StkQueryResponse:
    """
    Outcome of a status query.

    result_code is None while the gateway is still processing the request.
    """

    checkout_request_id: str
    result_code: Optional[int] = None
    result_desc: str = ""
    receipt_number: Optional[str] = None
    raw: dict = field(default_factory=dict)

    @property
    def is_processing(self) -> bool:
        return self.result_code is None


class PaymentGateway(ABC):
    """
    Interface for mobile-money gateways.

    Implementations:
    - MpesaClient: Safaricom Daraja STK push
    """

    @property
    @abstractmethod
    def configured(self) -> bool:
        """False when credentials are missing; checkout then runs in demo mode."""

    @abstractmethod
    async def stk_push(
        self,
        phone_number: str,
        amount: int,
        account_reference: str,
        description: str,
    ) -> StkPushResponse:
        """
        Ask the payer's phone to authorize a payment.

        Raises:
            UpstreamError: the gateway refused the request or could not be reached
        """

    @abstractmethod
    async def query_stk_status(self, checkout_request_id: str) -> StkQueryResponse:
        """
        Ask the gateway for the outcome of an earlier STK push.

        Raises:
            UpstreamError: the gateway could not answer
        """
