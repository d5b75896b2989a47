"""Vocabulary shared between ordering and payments."""

from enum import Enum


class PaymentMethod(Enum):
    RAZORPAY = "razorpay"
    COD = "cod"


class PaymentStatus(Enum):
    PENDING = "PENDING"
    PAID = "PAID"
    FAILED = "FAILED"
    REFUNDED = "REFUNDED"
    COD_PENDING = "COD_PENDING"
