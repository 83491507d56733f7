from __future__ import annotations


class CreditError(ValueError):
    code = "CREDIT_ERROR"

    def __init__(self, message: str, **details: object):
        super().__init__(message)
        self.details = details


class InsufficientCreditsError(CreditError):
    code = "INSUFFICIENT_CREDITS"

    def __init__(self, *, required: int, available: int):
        super().__init__(
            f"Insufficient credits: {required} required, {available} available",
            required=required,
            available=available,
        )
        self.required = required
        self.available = available


class InvalidCreditAmountError(CreditError):
    code = "INVALID_INPUT"
