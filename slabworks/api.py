"""FastAPI application exposing the SlabWorks back office."""
from __future__ import annotations

from datetime import date, datetime
from typing import List, Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlmodel import Session, select

from .alerts import stock_alerts
from .config import SHEET_GEOMETRY
from .costing import create_expense, create_production_order
from .db import get_session, init_db
from .errors import (
    AlreadyInvoiced,
    InsufficientStock,
    LedgerError,
    MaterialNotFound,
    PersistenceError,
    RemnantInUse,
    WithdrawalNotFound,
)
from .exchange import get_exchange_client
from .invoicing import (
    create_invoice,
    invoice_withdrawals,
    outstanding,
    record_invoice_payment,
    uninvoiced_withdrawals,
)
from .loans import compute_installment, create_loan, percent_paid, record_loan_payment, split_payment
from .models import (
    Expense,
    ExpenseCreate,
    ExpenseRead,
    InstallmentRequest,
    Invoice,
    InvoiceCreate,
    InvoiceFromWithdrawals,
    InvoicePayment,
    InvoicePaymentCreate,
    InvoicePaymentRead,
    InvoiceRead,
    InvoiceStatus,
    Loan,
    LoanCreate,
    LoanPayment,
    LoanPaymentCreate,
    LoanPaymentRead,
    LoanRead,
    Material,
    MaterialCreate,
    MaterialMovement,
    MaterialMovementCreate,
    MaterialMovementRead,
    MaterialRead,
    MaterialUpdate,
    PaymentSplitRead,
    ProductionOrder,
    ProductionOrderCreate,
    ProductionOrderRead,
    Remnant,
    RemnantCreate,
    RemnantRead,
    RemnantUpdate,
    StockAlert,
    Withdrawal,
    WithdrawalCreate,
    WithdrawalPreview,
    WithdrawalQuote,
    WithdrawalRead,
)
from .withdrawals import (
    available_remnants,
    compute_withdrawal,
    quantity_from_request,
    record_withdrawal,
    reverse_withdrawal,
    total_remnant_area,
)

app = FastAPI(title="SlabWorks", version="1.0.0")
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.on_event("startup")
def on_startup() -> None:
    init_db()


@app.exception_handler(LedgerError)
def ledger_error_handler(request: Request, exc: LedgerError) -> JSONResponse:
    if isinstance(exc, (MaterialNotFound, WithdrawalNotFound)):
        status_code = status.HTTP_404_NOT_FOUND
    elif isinstance(exc, (InsufficientStock, AlreadyInvoiced, RemnantInUse)):
        status_code = status.HTTP_409_CONFLICT
    elif isinstance(exc, PersistenceError):
        status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    else:
        status_code = status.HTTP_400_BAD_REQUEST
    content = {"detail": str(exc), "error": type(exc).__name__}
    if isinstance(exc, InsufficientStock):
        content.update(required=exc.required, available=exc.available, shortfall=exc.shortfall)
    return JSONResponse(status_code=status_code, content=content)


# Material endpoints
@app.post("/materials", response_model=MaterialRead, status_code=status.HTTP_201_CREATED)
def create_material(payload: MaterialCreate, session: Session = Depends(get_session)):
    material = Material.model_validate(payload)
    session.add(material)
    session.commit()
    session.refresh(material)
    return material


@app.get("/materials", response_model=List[MaterialRead])
def list_materials(session: Session = Depends(get_session)):
    materials = session.exec(select(Material).order_by(Material.name)).all()
    return materials


@app.get("/materials/{material_id}", response_model=MaterialRead)
def get_material(material_id: int, session: Session = Depends(get_session)):
    return _get_material_or_404(session, material_id)


@app.put("/materials/{material_id}", response_model=MaterialRead)
def update_material(material_id: int, payload: MaterialUpdate, session: Session = Depends(get_session)):
    material = _get_material_or_404(session, material_id)
    update_data = payload.model_dump(exclude_unset=True)
    for key, value in update_data.items():
        setattr(material, key, value)
    session.add(material)
    session.commit()
    session.refresh(material)
    return material


@app.delete("/materials/{material_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_material(material_id: int, session: Session = Depends(get_session)):
    material = _get_material_or_404(session, material_id)
    in_use = session.exec(select(Withdrawal.id).where(Withdrawal.material_id == material_id)).first()
    in_use = in_use or session.exec(select(Remnant.id).where(Remnant.material_id == material_id)).first()
    if in_use:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Material has withdrawals or remnants and cannot be deleted",
        )
    for movement in session.exec(select(MaterialMovement).where(MaterialMovement.material_id == material_id)).all():
        session.delete(movement)
    session.delete(material)
    session.commit()
    return None


# Manual stock movement endpoints
@app.post(
    "/materials/{material_id}/movements",
    response_model=MaterialMovementRead,
    status_code=status.HTTP_201_CREATED,
)
def create_material_movement(
    material_id: int,
    payload: MaterialMovementCreate,
    session: Session = Depends(get_session),
):
    material = _get_material_or_404(session, material_id)
    if payload.change_sheets == 0:
        raise HTTPException(status_code=400, detail="Movement must change the stock")

    new_qty = material.sheet_stock + payload.change_sheets
    if new_qty < 0:
        raise HTTPException(status_code=400, detail="Stock level cannot be negative")

    movement = MaterialMovement.model_validate(payload, update={"material_id": material_id})
    material.sheet_stock = new_qty
    session.add(movement)
    session.add(material)
    session.commit()
    session.refresh(movement)
    return movement


@app.get("/materials/{material_id}/movements", response_model=List[MaterialMovementRead])
def list_material_movements(material_id: int, session: Session = Depends(get_session)):
    _get_material_or_404(session, material_id)
    statement = (
        select(MaterialMovement)
        .where(MaterialMovement.material_id == material_id)
        .order_by(MaterialMovement.created_at.desc())
    )
    return session.exec(statement).all()


# Withdrawal endpoints
@app.post("/withdrawals/preview", response_model=WithdrawalPreview)
def preview_withdrawal(payload: WithdrawalQuote, session: Session = Depends(get_session)):
    material = _get_material_or_404(session, payload.material_id)
    pool = available_remnants(session, material.id)
    computation = compute_withdrawal(
        material,
        payload.kind,
        quantity_from_request(payload),
        use_remnants=payload.use_remnants,
        remnants=pool,
        geometry=SHEET_GEOMETRY,
    )
    return WithdrawalPreview(
        kind=computation.kind,
        sheets_needed=computation.sheets_needed,
        area_m2=computation.area_m2,
        used_from_remnants_m2=computation.used_from_remnants_m2,
        remnant_generated_m2=computation.remnant_generated_m2 if computation.creates_remnant else 0.0,
        cost=computation.cost,
        price=computation.price,
        profit=computation.profit,
        chargeable_linear_meters=computation.chargeable_linear_meters,
        available_sheets=material.sheet_stock,
        available_remnant_m2=total_remnant_area(pool, material.id),
        sheet_area_m2=SHEET_GEOMETRY.area_per_sheet,
        sheet_linear_meters=SHEET_GEOMETRY.linear_meters_per_sheet,
    )


@app.post("/withdrawals", response_model=WithdrawalRead, status_code=status.HTTP_201_CREATED)
def create_withdrawal(payload: WithdrawalCreate, session: Session = Depends(get_session)):
    return record_withdrawal(session, payload, geometry=SHEET_GEOMETRY)


@app.get("/withdrawals", response_model=List[WithdrawalRead])
def list_withdrawals(
    material_id: Optional[int] = None,
    project: Optional[str] = None,
    year: Optional[int] = None,
    month: Optional[int] = None,
    session: Session = Depends(get_session),
):
    statement = select(Withdrawal)
    if material_id is not None:
        statement = statement.where(Withdrawal.material_id == material_id)
    if project:
        statement = statement.where(Withdrawal.project.ilike(f"%{project}%"))
    if year is not None:
        if month is not None:
            if not 1 <= month <= 12:
                raise HTTPException(status_code=400, detail="Month must be between 1 and 12")
            start = datetime(year, month, 1)
            end = datetime(year + 1, 1, 1) if month == 12 else datetime(year, month + 1, 1)
        else:
            start, end = datetime(year, 1, 1), datetime(year + 1, 1, 1)
        statement = statement.where(Withdrawal.withdrawn_at >= start, Withdrawal.withdrawn_at < end)
    statement = statement.order_by(Withdrawal.withdrawn_at.desc())
    return session.exec(statement).all()


@app.get("/withdrawals/uninvoiced", response_model=List[WithdrawalRead])
def list_uninvoiced_withdrawals(session: Session = Depends(get_session)):
    return uninvoiced_withdrawals(session)


@app.get("/withdrawals/{withdrawal_id}", response_model=WithdrawalRead)
def get_withdrawal(withdrawal_id: int, session: Session = Depends(get_session)):
    return _get_withdrawal_or_404(session, withdrawal_id)


@app.delete("/withdrawals/{withdrawal_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_withdrawal(withdrawal_id: int, session: Session = Depends(get_session)):
    withdrawal = _get_withdrawal_or_404(session, withdrawal_id)
    reverse_withdrawal(session, withdrawal)
    return None


# Remnant endpoints
@app.get("/remnants", response_model=List[RemnantRead])
def list_remnants(
    material_id: Optional[int] = None,
    include_used: bool = False,
    session: Session = Depends(get_session),
):
    statement = select(Remnant)
    if material_id is not None:
        statement = statement.where(Remnant.material_id == material_id)
    if not include_used:
        statement = statement.where(Remnant.used == False)  # noqa: E712
    statement = statement.order_by(Remnant.area_m2.desc())
    return session.exec(statement).all()


@app.post("/remnants", response_model=RemnantRead, status_code=status.HTTP_201_CREATED)
def create_remnant(payload: RemnantCreate, session: Session = Depends(get_session)):
    _get_material_or_404(session, payload.material_id)
    remnant = Remnant.model_validate(payload)
    session.add(remnant)
    session.commit()
    session.refresh(remnant)
    return remnant


@app.put("/remnants/{remnant_id}", response_model=RemnantRead)
def update_remnant(remnant_id: int, payload: RemnantUpdate, session: Session = Depends(get_session)):
    remnant = session.get(Remnant, remnant_id)
    if not remnant:
        raise HTTPException(status_code=404, detail="Remnant not found")
    if remnant.used:
        raise HTTPException(status_code=409, detail="Used remnants are part of a withdrawal and cannot be edited")
    update_data = payload.model_dump(exclude_unset=True)
    for key, value in update_data.items():
        setattr(remnant, key, value)
    session.add(remnant)
    session.commit()
    session.refresh(remnant)
    return remnant


# Loan endpoints
@app.post("/loans/installment")
def calculate_installment(payload: InstallmentRequest) -> dict[str, float]:
    installment = compute_installment(payload.principal, payload.annual_rate_percent, payload.term_months)
    return {"monthly_installment": installment}


@app.post("/loans", response_model=LoanRead, status_code=status.HTTP_201_CREATED)
def create_loan_endpoint(payload: LoanCreate, session: Session = Depends(get_session)):
    return _loan_read(create_loan(session, payload))


@app.get("/loans", response_model=List[LoanRead])
def list_loans(session: Session = Depends(get_session)):
    loans = session.exec(select(Loan).order_by(Loan.created_at.desc())).all()
    return [_loan_read(loan) for loan in loans]


@app.get("/loans/{loan_id}", response_model=LoanRead)
def get_loan(loan_id: int, session: Session = Depends(get_session)):
    return _loan_read(_get_loan_or_404(session, loan_id))


@app.get("/loans/{loan_id}/payments/split", response_model=PaymentSplitRead)
def suggest_payment_split(loan_id: int, amount: float, session: Session = Depends(get_session)):
    loan = _get_loan_or_404(session, loan_id)
    split = split_payment(loan.outstanding_balance, loan.annual_rate_percent, amount)
    return PaymentSplitRead(principal_portion=split.principal_portion, interest_portion=split.interest_portion)


@app.post("/loans/{loan_id}/payments", response_model=LoanPaymentRead, status_code=status.HTTP_201_CREATED)
def create_loan_payment(loan_id: int, payload: LoanPaymentCreate, session: Session = Depends(get_session)):
    loan = _get_loan_or_404(session, loan_id)
    return record_loan_payment(session, loan, payload)


@app.get("/loans/{loan_id}/payments", response_model=List[LoanPaymentRead])
def list_loan_payments(loan_id: int, session: Session = Depends(get_session)):
    _get_loan_or_404(session, loan_id)
    statement = select(LoanPayment).where(LoanPayment.loan_id == loan_id).order_by(LoanPayment.paid_on.desc())
    return session.exec(statement).all()


# Invoice endpoints
@app.post("/invoices", response_model=InvoiceRead, status_code=status.HTTP_201_CREATED)
def create_invoice_endpoint(payload: InvoiceCreate, session: Session = Depends(get_session)):
    return _invoice_read(create_invoice(session, payload))


@app.post("/invoices/from-withdrawals", response_model=List[InvoiceRead], status_code=status.HTTP_201_CREATED)
def invoice_withdrawals_endpoint(payload: InvoiceFromWithdrawals, session: Session = Depends(get_session)):
    return [_invoice_read(invoice) for invoice in invoice_withdrawals(session, payload)]


@app.get("/invoices", response_model=List[InvoiceRead])
def list_invoices(
    invoice_status: Optional[InvoiceStatus] = Query(default=None, alias="status"),
    client: Optional[str] = None,
    session: Session = Depends(get_session),
):
    statement = select(Invoice)
    if invoice_status is not None:
        statement = statement.where(Invoice.status == invoice_status)
    if client:
        statement = statement.where(Invoice.client.ilike(f"%{client}%"))
    invoices = session.exec(statement.order_by(Invoice.issued_on.desc(), Invoice.id.desc())).all()
    return [_invoice_read(invoice) for invoice in invoices]


@app.get("/invoices/{invoice_id}", response_model=InvoiceRead)
def get_invoice(invoice_id: int, session: Session = Depends(get_session)):
    return _invoice_read(_get_invoice_or_404(session, invoice_id))


@app.post("/invoices/{invoice_id}/payments", response_model=InvoicePaymentRead, status_code=status.HTTP_201_CREATED)
def create_invoice_payment(invoice_id: int, payload: InvoicePaymentCreate, session: Session = Depends(get_session)):
    invoice = _get_invoice_or_404(session, invoice_id)
    return record_invoice_payment(session, invoice, payload)


@app.get("/invoices/{invoice_id}/payments", response_model=List[InvoicePaymentRead])
def list_invoice_payments(invoice_id: int, session: Session = Depends(get_session)):
    _get_invoice_or_404(session, invoice_id)
    statement = (
        select(InvoicePayment)
        .where(InvoicePayment.invoice_id == invoice_id)
        .order_by(InvoicePayment.paid_on.desc())
    )
    return session.exec(statement).all()


# Expense and production costing endpoints
@app.post("/expenses", response_model=ExpenseRead, status_code=status.HTTP_201_CREATED)
def create_expense_endpoint(payload: ExpenseCreate, session: Session = Depends(get_session)):
    return create_expense(session, payload)


@app.get("/expenses", response_model=List[ExpenseRead])
def list_expenses(
    year: Optional[int] = None,
    month: Optional[int] = None,
    session: Session = Depends(get_session),
):
    statement = select(Expense)
    if year is not None:
        statement = statement.where(Expense.year == year)
    if month is not None:
        statement = statement.where(Expense.month == month)
    return session.exec(statement.order_by(Expense.spent_on.desc())).all()


@app.post("/production-orders", response_model=ProductionOrderRead, status_code=status.HTTP_201_CREATED)
def create_production_order_endpoint(payload: ProductionOrderCreate, session: Session = Depends(get_session)):
    return create_production_order(session, payload)


@app.get("/production-orders", response_model=List[ProductionOrderRead])
def list_production_orders(session: Session = Depends(get_session)):
    statement = select(ProductionOrder).order_by(ProductionOrder.produced_on.desc())
    return session.exec(statement).all()


@app.get("/exchange-rate")
def exchange_rate(on: Optional[date] = None) -> dict:
    rate = get_exchange_client().get_usd_to_crc(on)
    return {"base": "USD", "quote": "CRC", "rate": rate, "date": on.isoformat() if on else None}


@app.get("/alerts", response_model=List[StockAlert])
def list_stock_alerts(session: Session = Depends(get_session)):
    return stock_alerts(session)


@app.get("/health", tags=["system"])
def healthcheck() -> dict[str, str]:
    return {"status": "ok", "timestamp": datetime.utcnow().isoformat()}


def _get_material_or_404(session: Session, material_id: int) -> Material:
    material = session.get(Material, material_id)
    if not material:
        raise HTTPException(status_code=404, detail="Material not found")
    return material


def _get_withdrawal_or_404(session: Session, withdrawal_id: int) -> Withdrawal:
    withdrawal = session.get(Withdrawal, withdrawal_id)
    if not withdrawal:
        raise HTTPException(status_code=404, detail="Withdrawal not found")
    return withdrawal


def _get_loan_or_404(session: Session, loan_id: int) -> Loan:
    loan = session.get(Loan, loan_id)
    if not loan:
        raise HTTPException(status_code=404, detail="Loan not found")
    return loan


def _loan_read(loan: Loan) -> LoanRead:
    return LoanRead.model_validate(loan, update={"percent_paid": percent_paid(loan)})


def _get_invoice_or_404(session: Session, invoice_id: int) -> Invoice:
    invoice = session.get(Invoice, invoice_id)
    if not invoice:
        raise HTTPException(status_code=404, detail="Invoice not found")
    return invoice


def _invoice_read(invoice: Invoice) -> InvoiceRead:
    return InvoiceRead.model_validate(invoice, update={"amount_outstanding": outstanding(invoice)})
