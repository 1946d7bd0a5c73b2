"""Loan amortization and repayment bookkeeping."""
from __future__ import annotations

import logging
import math
from dataclasses import dataclass

from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session

from .db import atomic
from .errors import InvalidQuantity, MissingRequiredField, PersistenceError, SplitMismatch
from .models import Loan, LoanCreate, LoanPayment, LoanPaymentCreate

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PaymentSplit:
    principal_portion: float
    interest_portion: float


def monthly_rate(annual_rate_percent: float) -> float:
    return annual_rate_percent / 100 / 12


def compute_installment(principal: float, annual_rate_percent: float, months: int) -> float:
    """Fixed monthly installment that repays ``principal`` over ``months``."""
    if principal is None or not principal > 0 or not math.isfinite(principal):
        raise InvalidQuantity("The loan amount must be a finite number greater than zero.")
    if months is None or not months > 0:
        raise InvalidQuantity("The loan term must be at least one month.")
    if annual_rate_percent is None or not 0 <= annual_rate_percent < math.inf:
        raise InvalidQuantity("The interest rate must be zero or a finite positive number.")

    if annual_rate_percent == 0:
        return round(principal / months, 2)
    rate = monthly_rate(annual_rate_percent)
    growth = (1 + rate) ** months
    return round(principal * rate * growth / (growth - 1), 2)


def validate_split(payment: float, principal_portion: float, interest_portion: float) -> PaymentSplit:
    if round(principal_portion + interest_portion, 2) != round(payment, 2):
        raise SplitMismatch(payment, principal_portion, interest_portion)
    return PaymentSplit(principal_portion=principal_portion, interest_portion=interest_portion)


def split_payment(outstanding_balance: float, annual_rate_percent: float, payment_amount: float) -> PaymentSplit:
    """Split a repayment into the interest accrued this month and principal.

    Interest is charged on the outstanding balance first; whatever is left
    of the payment reduces the principal. Loans without interest put the
    whole payment on principal.
    """
    if payment_amount is None or not payment_amount > 0 or not math.isfinite(payment_amount):
        raise InvalidQuantity("The payment amount must be a finite number greater than zero.")
    if annual_rate_percent > 0:
        interest = round(outstanding_balance * monthly_rate(annual_rate_percent), 2)
        if payment_amount < interest:
            interest = payment_amount
    else:
        interest = 0.0
    # principal takes whatever is left so the two always add up at cents
    principal = round(payment_amount - interest, 2)
    return validate_split(payment_amount, principal, round(interest, 2))


def percent_paid(loan: Loan) -> float:
    if not loan.principal:
        return 0.0
    return round(loan.amount_paid / loan.principal * 100, 2)


def create_loan(session: Session, payload: LoanCreate) -> Loan:
    for field in ("concept", "creditor"):
        if not (getattr(payload, field) or "").strip():
            raise MissingRequiredField(field)
    installment = payload.monthly_installment
    if installment is None:
        installment = compute_installment(payload.principal, payload.annual_rate_percent, payload.term_months)
    loan = Loan.model_validate(
        payload,
        update={
            "monthly_installment": installment,
            "amount_paid": 0.0,
            "outstanding_balance": round(payload.principal, 2),
        },
    )
    try:
        with atomic(session):
            session.add(loan)
    except SQLAlchemyError as exc:
        raise PersistenceError(f"Could not save loan: {exc}") from exc
    session.refresh(loan)
    return loan


def record_loan_payment(session: Session, loan: Loan, payload: LoanPaymentCreate) -> LoanPayment:
    """Store a repayment and move the loan's paid and outstanding balances.

    Portions typed by the operator are accepted as long as they add up to
    the payment; otherwise the split is computed from the current balance.
    """
    if payload.principal_portion is None and payload.interest_portion is None:
        split = split_payment(loan.outstanding_balance, loan.annual_rate_percent, payload.amount)
    else:
        split = validate_split(
            payload.amount,
            payload.principal_portion or 0.0,
            payload.interest_portion or 0.0,
        )
    if split.principal_portion > round(loan.outstanding_balance, 2):
        raise InvalidQuantity(
            f"The principal portion ({split.principal_portion:.2f}) exceeds the outstanding balance "
            f"({loan.outstanding_balance:.2f})."
        )

    payment = LoanPayment(
        loan_id=loan.id,
        amount=payload.amount,
        principal_portion=split.principal_portion,
        interest_portion=split.interest_portion,
        paid_on=payload.paid_on,
        notes=payload.notes,
    )
    loan_id = loan.id
    try:
        with atomic(session):
            loan.amount_paid = round(loan.amount_paid + split.principal_portion, 2)
            loan.outstanding_balance = round(max(loan.outstanding_balance - split.principal_portion, 0.0), 2)
            session.add(loan)
            session.add(payment)
    except SQLAlchemyError as exc:
        raise PersistenceError(f"Could not record payment for loan {loan_id}: {exc}") from exc

    session.refresh(payment)
    logger.info(
        "Loan %s payment recorded: principal=%.2f interest=%.2f",
        loan_id,
        split.principal_portion,
        split.interest_portion,
    )
    return payment
