"""Invoices raised from withdrawals and the payments recorded against them."""
from __future__ import annotations

import logging
import math
from datetime import date
from typing import Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, select

from .db import atomic
from .errors import (
    AlreadyInvoiced,
    InvalidQuantity,
    MissingRequiredField,
    Overpayment,
    PersistenceError,
    WithdrawalNotFound,
)
from .models import (
    Invoice,
    InvoiceCreate,
    InvoiceFromWithdrawals,
    InvoicePayment,
    InvoicePaymentCreate,
    InvoiceStatus,
    Material,
    Withdrawal,
    WithdrawalKind,
)

logger = logging.getLogger(__name__)

UNKNOWN_CLIENT = "Client not defined"


def billable_amount(withdrawal: Withdrawal) -> float:
    """What the client owes for a withdrawal: the charged price, else the list price."""
    if withdrawal.charged_price_total is not None and withdrawal.charged_price_total > 0:
        return withdrawal.charged_price_total
    return withdrawal.sale_price_total or 0.0


def outstanding(invoice: Invoice) -> float:
    return round(max(invoice.total_amount - invoice.amount_paid, 0.0), 2)


def status_for(total_amount: float, amount_paid: float) -> InvoiceStatus:
    if amount_paid <= 0:
        return InvoiceStatus.PENDING
    if round(total_amount - amount_paid, 2) <= 0:
        return InvoiceStatus.PAID
    return InvoiceStatus.PARTIAL


def _positive_amount(value: Optional[float], label: str) -> float:
    if value is None or not value > 0 or not math.isfinite(value):
        raise InvalidQuantity(f"The {label} must be a finite number greater than zero.")
    return round(value, 2)


def _invoiced(session: Session, withdrawal_ids: List[int]) -> Dict[int, int]:
    if not withdrawal_ids:
        return {}
    rows = session.exec(
        select(Invoice.withdrawal_id, Invoice.id).where(Invoice.withdrawal_id.in_(withdrawal_ids))
    ).all()
    return {withdrawal_id: invoice_id for withdrawal_id, invoice_id in rows}


def uninvoiced_withdrawals(session: Session) -> List[Withdrawal]:
    """Withdrawals with something to bill and no invoice yet, newest first."""
    invoiced = select(Invoice.withdrawal_id).where(Invoice.withdrawal_id.is_not(None))
    statement = (
        select(Withdrawal)
        .where(Withdrawal.id.not_in(invoiced))
        .order_by(Withdrawal.withdrawn_at.desc())
    )
    return [w for w in session.exec(statement).all() if billable_amount(w) > 0]


def _material_line(session: Session, withdrawal: Withdrawal) -> Dict[str, object]:
    material = session.get(Material, withdrawal.material_id)
    if withdrawal.kind == WithdrawalKind.WHOLE_SHEETS:
        quantity, unit = float(withdrawal.sheets_consumed), "sheets"
    elif withdrawal.kind == WithdrawalKind.LINEAR_METERS:
        quantity, unit = round((withdrawal.length_m or 0) + (withdrawal.width_m or 0), 4), "m"
    else:
        quantity, unit = withdrawal.area_m2, "m2"
    return {
        "material_type": material.name if material else None,
        "material_quantity": quantity,
        "material_unit": unit,
    }


def create_invoice(session: Session, payload: InvoiceCreate) -> Invoice:
    """Store a manual invoice, optionally tied to one withdrawal."""
    client = (payload.client or "").strip()
    if not client:
        raise MissingRequiredField("client")
    total = _positive_amount(payload.total_amount, "invoice total")

    extra: Dict[str, object] = {}
    if payload.withdrawal_id is not None:
        withdrawal = session.get(Withdrawal, payload.withdrawal_id)
        if withdrawal is None:
            raise WithdrawalNotFound(payload.withdrawal_id)
        existing = _invoiced(session, [withdrawal.id])
        if existing:
            raise AlreadyInvoiced(withdrawal.id, existing[withdrawal.id])
        extra = _material_line(session, withdrawal)

    invoice = Invoice.model_validate(
        payload,
        update={
            "client": client,
            "total_amount": total,
            "amount_paid": 0.0,
            "status": InvoiceStatus.PENDING,
            **extra,
        },
    )
    try:
        with atomic(session):
            session.add(invoice)
    except SQLAlchemyError as exc:
        raise PersistenceError(f"Could not save invoice for {client}: {exc}") from exc
    session.refresh(invoice)
    return invoice


def invoice_withdrawals(session: Session, request: InvoiceFromWithdrawals) -> List[Invoice]:
    """Raise one pending invoice per withdrawal, all or none.

    A base invoice number is used as is for a single withdrawal and
    suffixed ``-1``, ``-2`` ... in selection order for a batch.
    """
    ids = list(dict.fromkeys(request.withdrawal_ids))
    if not ids:
        raise InvalidQuantity("Select at least one withdrawal to invoice.")

    issued_on = request.issued_on or date.today()
    base_number = (request.invoice_number or "").strip() or None
    invoices: List[Invoice] = []
    try:
        with atomic(session):
            already = _invoiced(session, ids)
            for withdrawal_id in ids:
                if withdrawal_id in already:
                    raise AlreadyInvoiced(withdrawal_id, already[withdrawal_id])

            for position, withdrawal_id in enumerate(ids, start=1):
                withdrawal = session.get(Withdrawal, withdrawal_id)
                if withdrawal is None:
                    raise WithdrawalNotFound(withdrawal_id)
                amount = request.amount_overrides.get(withdrawal_id, billable_amount(withdrawal))
                number = None
                if base_number:
                    number = base_number if len(ids) == 1 else f"{base_number}-{position}"
                invoice = Invoice(
                    withdrawal_id=withdrawal.id,
                    invoice_number=number,
                    client=(withdrawal.client or "").strip() or UNKNOWN_CLIENT,
                    project=withdrawal.project,
                    total_amount=_positive_amount(amount, f"amount billed for withdrawal {withdrawal_id}"),
                    amount_paid=0.0,
                    status=InvoiceStatus.PENDING,
                    issued_on=issued_on,
                    notes=f"Invoiced from the withdrawal of {withdrawal.withdrawn_at:%Y-%m-%d}",
                    **_material_line(session, withdrawal),
                )
                session.add(invoice)
                invoices.append(invoice)
    except SQLAlchemyError as exc:
        raise PersistenceError(f"Could not invoice withdrawals {ids}: {exc}") from exc

    for invoice in invoices:
        session.refresh(invoice)
    logger.info("Invoiced %s withdrawal(s): %s", len(invoices), ids)
    return invoices


def record_invoice_payment(session: Session, invoice: Invoice, payload: InvoicePaymentCreate) -> InvoicePayment:
    amount = _positive_amount(payload.amount, "payment amount")
    owed = outstanding(invoice)
    if amount > owed:
        raise Overpayment(amount, owed)

    invoice_id = invoice.id
    payment = InvoicePayment.model_validate(payload, update={"invoice_id": invoice_id, "amount": amount})
    try:
        with atomic(session):
            invoice.amount_paid = round(invoice.amount_paid + amount, 2)
            invoice.status = status_for(invoice.total_amount, invoice.amount_paid)
            session.add(invoice)
            session.add(payment)
    except SQLAlchemyError as exc:
        raise PersistenceError(f"Could not record payment for invoice {invoice_id}: {exc}") from exc

    session.refresh(payment)
    logger.info("Invoice %s payment of %.2f recorded (%s)", invoice_id, amount, payment.method.value)
    return payment
