"""
Ledger Service: event definitions

Published on the ``bank.*`` topics after the database commit.
"""

from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel

PAYMENT_SUCCESS = "bank.payment.success"
PAYMENT_FAILURE = "bank.payment.failure"
REFUND_SUCCESS = "bank.refund.success"


class PaymentSucceeded(BaseModel):
    transaction_id: str
    order_id: str
    customer_id: str
    amount: Decimal
    currency: str
    status: str = "SUCCESS"
    note: str
    timestamp: datetime


class PaymentFailed(BaseModel):
    order_id: str
    customer_id: str
    amount: Decimal
    status: str = "FAILED"
    note: str
    timestamp: datetime


class RefundSucceeded(BaseModel):
    refund_id: str
    original_transaction_id: str
    order_id: str
    amount: Decimal
    currency: str
    status: str = "SUCCESS"
    note: str
    timestamp: datetime
