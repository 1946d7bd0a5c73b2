"""SQLModel models for the SlabWorks domain."""
from datetime import date, datetime
from enum import Enum
from typing import Dict, List, Optional

from sqlmodel import Field, Relationship, SQLModel


class WithdrawalKind(str, Enum):
    """How a withdrawal request is measured."""

    WHOLE_SHEETS = "whole_sheets"
    LINEAR_METERS = "linear_meters"
    SQUARE_METERS = "square_meters"


class MaterialBase(SQLModel):
    name: str
    category: Optional[str] = Field(default=None, description="Granite, quartz, marble, sintered, etc.")
    supplier: Optional[str] = None
    location: Optional[str] = Field(default=None, description="Rack or yard position")
    sheet_stock: int = Field(default=0, ge=0, description="Whole sheets currently in inventory")
    cost_per_sheet: float = Field(default=0, ge=0)
    sale_price_per_sheet: float = Field(default=0, ge=0)
    price_per_linear_meter: float = Field(default=0, ge=0)
    price_per_square_meter: float = Field(default=0, ge=0)
    notes: Optional[str] = None


class Material(MaterialBase, table=True):
    __tablename__ = "materials"

    id: Optional[int] = Field(default=None, primary_key=True)
    created_at: datetime = Field(default_factory=datetime.utcnow)

    withdrawals: List["Withdrawal"] = Relationship(back_populates="material")
    remnants: List["Remnant"] = Relationship(back_populates="material")
    movements: List["MaterialMovement"] = Relationship(back_populates="material")


class MaterialCreate(MaterialBase):
    pass


class MaterialUpdate(SQLModel):
    name: Optional[str] = None
    category: Optional[str] = None
    supplier: Optional[str] = None
    location: Optional[str] = None
    cost_per_sheet: Optional[float] = Field(default=None, ge=0)
    sale_price_per_sheet: Optional[float] = Field(default=None, ge=0)
    price_per_linear_meter: Optional[float] = Field(default=None, ge=0)
    price_per_square_meter: Optional[float] = Field(default=None, ge=0)
    notes: Optional[str] = None


class MaterialRead(MaterialBase):
    id: int


class MaterialMovementBase(SQLModel):
    movement_type: str = Field(description="incoming, outgoing, or adjustment")
    change_sheets: int = Field(description="Positive for inbound, negative for outbound")
    unit_cost: Optional[float] = Field(default=None, ge=0)
    reason: Optional[str] = None
    reference: Optional[str] = Field(default=None, description="Invoice, project or supplier reference")
    user: Optional[str] = None


class MaterialMovement(MaterialMovementBase, table=True):
    __tablename__ = "material_movements"

    id: Optional[int] = Field(default=None, primary_key=True)
    material_id: int = Field(foreign_key="materials.id")
    created_at: datetime = Field(default_factory=datetime.utcnow)

    material: Optional[Material] = Relationship(back_populates="movements")


class MaterialMovementCreate(MaterialMovementBase):
    pass


class MaterialMovementRead(MaterialMovementBase):
    id: int
    material_id: int
    created_at: datetime


class Withdrawal(SQLModel, table=True):
    __tablename__ = "withdrawals"

    id: Optional[int] = Field(default=None, primary_key=True)
    material_id: int = Field(foreign_key="materials.id", index=True)
    kind: WithdrawalKind
    requested_sheets: Optional[int] = None
    length_m: Optional[float] = None
    width_m: Optional[float] = None
    requested_area_m2: Optional[float] = None
    sheets_consumed: int = 0
    area_m2: float = Field(default=0, description="Area that drove sheet and remnant consumption")
    used_from_remnants_m2: float = 0
    cost_total: float = 0
    sale_price_total: float = 0
    charged_price_total: float = 0
    profit: float = 0
    used_remnants: bool = False
    project: str
    client: Optional[str] = None
    user: str
    description: Optional[str] = None
    withdrawn_at: datetime = Field(default_factory=datetime.utcnow)
    remnant_generated_id: Optional[int] = Field(default=None, description="Offcut created by this withdrawal")
    created_at: datetime = Field(default_factory=datetime.utcnow)

    material: Optional[Material] = Relationship(back_populates="withdrawals")


class WithdrawalQuote(SQLModel):
    material_id: int
    kind: WithdrawalKind
    requested_sheets: Optional[int] = None
    length_m: Optional[float] = None
    width_m: Optional[float] = None
    requested_area_m2: Optional[float] = None
    use_remnants: bool = False


class WithdrawalCreate(WithdrawalQuote):
    project: str
    user: str
    client: Optional[str] = None
    description: Optional[str] = None
    charged_price_total: Optional[float] = Field(default=None, ge=0, description="Overrides the computed price")
    withdrawn_at: Optional[datetime] = None


class WithdrawalRead(SQLModel):
    id: int
    material_id: int
    kind: WithdrawalKind
    requested_sheets: Optional[int]
    length_m: Optional[float]
    width_m: Optional[float]
    requested_area_m2: Optional[float]
    sheets_consumed: int
    area_m2: float
    used_from_remnants_m2: float
    cost_total: float
    sale_price_total: float
    charged_price_total: float
    profit: float
    used_remnants: bool
    project: str
    client: Optional[str]
    user: str
    description: Optional[str]
    withdrawn_at: datetime
    remnant_generated_id: Optional[int]


class WithdrawalPreview(SQLModel):
    kind: WithdrawalKind
    sheets_needed: int
    area_m2: float
    used_from_remnants_m2: float
    remnant_generated_m2: float
    cost: float
    price: float
    profit: float
    chargeable_linear_meters: Optional[float] = None
    available_sheets: int
    available_remnant_m2: float
    sheet_area_m2: float
    sheet_linear_meters: float


class RemnantBase(SQLModel):
    area_m2: float = Field(gt=0, description="Reusable leftover area")
    usable: bool = Field(default=True, description="False marks the piece as scrap")
    origin_project: Optional[str] = None
    notes: Optional[str] = None


class Remnant(RemnantBase, table=True):
    __tablename__ = "remnants"

    id: Optional[int] = Field(default=None, primary_key=True)
    material_id: int = Field(foreign_key="materials.id", index=True)
    used: bool = False
    origin_withdrawal_id: Optional[int] = Field(default=None, foreign_key="withdrawals.id")
    consumed_by_withdrawal_id: Optional[int] = Field(default=None, foreign_key="withdrawals.id")
    split_from_remnant_id: Optional[int] = Field(
        default=None, foreign_key="remnants.id", description="Remnant this consumed piece was cut from"
    )
    used_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)

    material: Optional[Material] = Relationship(back_populates="remnants")


class RemnantCreate(RemnantBase):
    material_id: int


class RemnantUpdate(SQLModel):
    area_m2: Optional[float] = Field(default=None, gt=0)
    usable: Optional[bool] = None
    origin_project: Optional[str] = None
    notes: Optional[str] = None


class RemnantRead(RemnantBase):
    id: int
    material_id: int
    used: bool
    origin_withdrawal_id: Optional[int]
    consumed_by_withdrawal_id: Optional[int]
    split_from_remnant_id: Optional[int] = None
    used_at: Optional[datetime]
    created_at: datetime


class LoanBase(SQLModel):
    concept: str
    creditor: str
    principal: float = Field(gt=0)
    currency: str = Field(default="USD", description="USD or CRC")
    annual_rate_percent: float = Field(default=0, ge=0)
    term_months: int = Field(gt=0)
    start_date: Optional[date] = None
    notes: Optional[str] = None


class Loan(LoanBase, table=True):
    __tablename__ = "loans"

    id: Optional[int] = Field(default=None, primary_key=True)
    monthly_installment: float = 0
    amount_paid: float = 0
    outstanding_balance: float = 0
    created_at: datetime = Field(default_factory=datetime.utcnow)

    payments: List["LoanPayment"] = Relationship(back_populates="loan")


class LoanCreate(LoanBase):
    monthly_installment: Optional[float] = Field(default=None, ge=0, description="Computed when omitted")


class LoanRead(LoanBase):
    id: int
    monthly_installment: float
    amount_paid: float
    outstanding_balance: float
    percent_paid: float = 0


class InstallmentRequest(SQLModel):
    principal: float
    annual_rate_percent: float = 0
    term_months: int


class PaymentSplitRead(SQLModel):
    principal_portion: float
    interest_portion: float


class LoanPaymentBase(SQLModel):
    amount: float = Field(gt=0)
    paid_on: date = Field(default_factory=date.today)
    notes: Optional[str] = None


class LoanPayment(LoanPaymentBase, table=True):
    __tablename__ = "loan_payments"

    id: Optional[int] = Field(default=None, primary_key=True)
    loan_id: int = Field(foreign_key="loans.id", index=True)
    principal_portion: float = 0
    interest_portion: float = 0
    created_at: datetime = Field(default_factory=datetime.utcnow)

    loan: Optional[Loan] = Relationship(back_populates="payments")


class LoanPaymentCreate(LoanPaymentBase):
    principal_portion: Optional[float] = Field(default=None, ge=0, description="Split is computed when omitted")
    interest_portion: Optional[float] = Field(default=None, ge=0)


class LoanPaymentRead(LoanPaymentBase):
    id: int
    loan_id: int
    principal_portion: float
    interest_portion: float


class ExpenseBase(SQLModel):
    concept: str
    category: Optional[str] = None
    amount: float = Field(ge=0)
    is_fixed: bool = Field(default=False, description="Rent, payroll and other recurring monthly costs")
    spent_on: date
    notes: Optional[str] = None


class Expense(ExpenseBase, table=True):
    __tablename__ = "expenses"

    id: Optional[int] = Field(default=None, primary_key=True)
    month: int = Field(index=True)
    year: int = Field(index=True)
    created_at: datetime = Field(default_factory=datetime.utcnow)


class ExpenseCreate(ExpenseBase):
    pass


class ExpenseRead(ExpenseBase):
    id: int
    month: int
    year: int


class ProductionOrderBase(SQLModel):
    envelope_code: str = Field(description="Shop envelope number that travels with the job")
    client: str
    material_type: Optional[str] = None
    linear_meters: float = Field(gt=0)
    produced_on: date
    material_cost: float = Field(default=0, ge=0)
    labor_cost: float = Field(default=0, ge=0)
    status: str = Field(default="pending", description="pending, in_progress, or done")
    notes: Optional[str] = None


class ProductionOrder(ProductionOrderBase, table=True):
    __tablename__ = "production_orders"

    id: Optional[int] = Field(default=None, primary_key=True)
    month: int = Field(index=True)
    year: int = Field(index=True)
    fixed_cost_assigned: float = 0
    total_cost: float = 0
    created_at: datetime = Field(default_factory=datetime.utcnow)


class ProductionOrderCreate(ProductionOrderBase):
    assign_fixed_cost: bool = True


class ProductionOrderRead(ProductionOrderBase):
    id: int
    month: int
    year: int
    fixed_cost_assigned: float
    total_cost: float


class StockAlert(SQLModel):
    kind: str = Field(description="material or remnant")
    material_id: int
    material_name: str
    current_quantity: float
    message: str


class InvoiceStatus(str, Enum):
    PENDING = "pending"
    PARTIAL = "partial"
    PAID = "paid"


class PaymentMethod(str, Enum):
    CASH = "cash"
    TRANSFER = "transfer"
    CHECK = "check"
    CARD = "card"


class InvoiceBase(SQLModel):
    invoice_number: Optional[str] = Field(default=None, description="Printed invoice number, free form")
    client: str
    project: Optional[str] = None
    total_amount: float = Field(gt=0)
    issued_on: date = Field(default_factory=date.today)
    notes: Optional[str] = None


class Invoice(InvoiceBase, table=True):
    __tablename__ = "invoices"

    id: Optional[int] = Field(default=None, primary_key=True)
    withdrawal_id: Optional[int] = Field(default=None, foreign_key="withdrawals.id", unique=True)
    amount_paid: float = 0
    status: InvoiceStatus = InvoiceStatus.PENDING
    material_type: Optional[str] = None
    material_quantity: Optional[float] = None
    material_unit: Optional[str] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)

    payments: List["InvoicePayment"] = Relationship(back_populates="invoice")


class InvoiceCreate(InvoiceBase):
    withdrawal_id: Optional[int] = None


class InvoiceRead(InvoiceBase):
    id: int
    withdrawal_id: Optional[int]
    amount_paid: float
    amount_outstanding: float = 0
    status: InvoiceStatus
    material_type: Optional[str]
    material_quantity: Optional[float]
    material_unit: Optional[str]


class InvoiceFromWithdrawals(SQLModel):
    withdrawal_ids: List[int]
    invoice_number: Optional[str] = Field(default=None, description="Base number; suffixed -1, -2 ... for batches")
    amount_overrides: Dict[int, float] = Field(default_factory=dict, description="Billed amount per withdrawal id")
    issued_on: Optional[date] = None


class InvoicePaymentBase(SQLModel):
    amount: float = Field(gt=0)
    method: PaymentMethod = PaymentMethod.CASH
    reference: Optional[str] = None
    paid_on: date = Field(default_factory=date.today)
    notes: Optional[str] = None


class InvoicePayment(InvoicePaymentBase, table=True):
    __tablename__ = "invoice_payments"

    id: Optional[int] = Field(default=None, primary_key=True)
    invoice_id: int = Field(foreign_key="invoices.id", index=True)
    created_at: datetime = Field(default_factory=datetime.utcnow)

    invoice: Optional[Invoice] = Relationship(back_populates="payments")


class InvoicePaymentCreate(InvoicePaymentBase):
    pass


class InvoicePaymentRead(InvoicePaymentBase):
    id: int
    invoice_id: int
