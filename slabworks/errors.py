"""Errors raised by the withdrawal ledger, invoicing and the loan calculators."""
from __future__ import annotations


class LedgerError(Exception):
    """Base error for every business rule violation."""


class InvalidQuantity(LedgerError):
    """Raised when a requested amount is missing, zero or negative."""


class InsufficientStock(LedgerError):
    """Raised when a withdrawal needs more whole sheets than are in stock."""

    def __init__(self, required: int, available: int) -> None:
        self.required = required
        self.available = available
        self.shortfall = required - available
        super().__init__(
            f"Insufficient stock: {required} sheet(s) required, {available} available "
            f"(short by {self.shortfall})."
        )


class MissingRequiredField(LedgerError):
    """Raised when a mandatory text field is blank."""

    def __init__(self, field: str) -> None:
        self.field = field
        super().__init__(f"The {field} field is required.")


class SplitMismatch(LedgerError):
    """Raised when principal plus interest does not add up to a loan payment."""

    def __init__(self, payment: float, principal: float, interest: float) -> None:
        self.payment = payment
        self.principal = principal
        self.interest = interest
        super().__init__(
            f"Principal ({principal:.2f}) plus interest ({interest:.2f}) must equal the payment ({payment:.2f})."
        )


class MaterialNotFound(LedgerError):
    """Raised when a withdrawal or remnant points at a material that does not exist."""

    def __init__(self, material_id: int) -> None:
        self.material_id = material_id
        super().__init__(f"Material {material_id} not found.")


class PersistenceError(LedgerError):
    """Raised when the database rejects part of a ledger operation."""


class WithdrawalNotFound(LedgerError):
    def __init__(self, withdrawal_id: int) -> None:
        self.withdrawal_id = withdrawal_id
        super().__init__(f"Withdrawal {withdrawal_id} not found.")


class RemnantInUse(LedgerError):
    """Raised when reversing a withdrawal whose offcut another withdrawal already drew on."""

    def __init__(self, withdrawal_id: int, consumers: list) -> None:
        self.withdrawal_id = withdrawal_id
        self.consumers = sorted(set(consumers))
        listed = ", ".join(str(consumer) for consumer in self.consumers)
        super().__init__(
            f"The offcut of withdrawal {withdrawal_id} was used by withdrawal(s) {listed}; reverse those first."
        )


class AlreadyInvoiced(LedgerError):
    """Raised when a withdrawal that already has an invoice is invoiced or reversed."""

    def __init__(self, withdrawal_id: int, invoice_id: int) -> None:
        self.withdrawal_id = withdrawal_id
        self.invoice_id = invoice_id
        super().__init__(f"Withdrawal {withdrawal_id} is already billed on invoice {invoice_id}.")


class Overpayment(LedgerError):
    """Raised when a payment exceeds what is still owed on an invoice."""

    def __init__(self, amount: float, outstanding: float) -> None:
        self.amount = amount
        self.outstanding = outstanding
        super().__init__(f"The payment ({amount:.2f}) exceeds the outstanding amount ({outstanding:.2f}).")
