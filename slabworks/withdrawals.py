"""Withdrawal and remnant ledger.

A withdrawal consumes raw sheet stock for a project. Whole-sheet withdrawals
take sheets off the rack untouched; dimensioned (linear meter) and area
(square meter) withdrawals cut sheets, may first draw on reusable offcuts
("remnants") and leave the unused part of the last sheet behind as a new
remnant. Reversing a withdrawal puts every one of those side effects back.
"""
from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, select

from .config import MIN_REMNANT_AREA_M2, SHEET_GEOMETRY, SheetGeometry
from .db import atomic
from .errors import (
    AlreadyInvoiced,
    InsufficientStock,
    InvalidQuantity,
    MaterialNotFound,
    MissingRequiredField,
    PersistenceError,
    RemnantInUse,
)
from .models import Invoice, Material, Remnant, Withdrawal, WithdrawalCreate, WithdrawalKind, WithdrawalQuote

logger = logging.getLogger(__name__)

UNIFIED_REMNANT_NOTES = "general unified remnants"
UNIFIED_REMNANT_PROJECT = "General"
REMAINDER_NOTES = "remainder of original"

_EPSILON = 1e-9


@dataclass(frozen=True)
class QuantityInputs:
    """Raw amounts typed by the operator; which ones matter depends on the kind."""

    sheets: Optional[int] = None
    length_m: Optional[float] = None
    width_m: Optional[float] = None
    area_m2: Optional[float] = None


@dataclass(frozen=True)
class WithdrawalComputation:
    kind: WithdrawalKind
    quantity: QuantityInputs
    remnants_requested: bool
    sheets_needed: int
    area_m2: float
    used_from_remnants_m2: float
    remnant_generated_m2: float
    cost: float
    price: float
    chargeable_linear_meters: Optional[float] = None

    @property
    def profit(self) -> float:
        return round(self.price - self.cost, 2)

    @property
    def uses_remnants(self) -> bool:
        return self.used_from_remnants_m2 > 0

    @property
    def creates_remnant(self) -> bool:
        return self.remnant_generated_m2 > MIN_REMNANT_AREA_M2


@dataclass(frozen=True)
class WithdrawalMetadata:
    project: str
    user: str
    client: Optional[str] = None
    description: Optional[str] = None
    charged_price_total: Optional[float] = None
    withdrawn_at: Optional[datetime] = None


def _positive(value: Optional[float], label: str) -> float:
    if value is None or isinstance(value, bool) or not value > 0 or not math.isfinite(value):
        raise InvalidQuantity(f"The {label} must be a finite number greater than zero.")
    return float(value)


def _required(value: Optional[str], field: str) -> str:
    if value is None or not value.strip():
        raise MissingRequiredField(field)
    return value.strip()


def _sheets_for_area(area: float, geometry: SheetGeometry) -> int:
    if area <= _EPSILON:
        return 0
    return math.ceil(area / geometry.area_per_sheet - _EPSILON)


def reusable_remnants(remnants: Iterable[Remnant], material_id: Optional[int]) -> List[Remnant]:
    """Usable, unused remnants of one material, largest first."""
    pool = [
        remnant
        for remnant in remnants
        if remnant.material_id == material_id and remnant.usable and not remnant.used and remnant.area_m2 > 0
    ]
    pool.sort(key=lambda remnant: remnant.area_m2, reverse=True)
    return pool


def total_remnant_area(remnants: Iterable[Remnant], material_id: Optional[int]) -> float:
    return round(sum(remnant.area_m2 for remnant in reusable_remnants(remnants, material_id)), 4)


def compute_withdrawal(
    material: Material,
    kind: WithdrawalKind,
    quantity: QuantityInputs,
    use_remnants: bool = False,
    remnants: Iterable[Remnant] = (),
    geometry: SheetGeometry = SHEET_GEOMETRY,
) -> WithdrawalComputation:
    """Work out sheets, cost, price and offcuts for a withdrawal request.

    Pure: nothing is read from or written to the database. ``remnants`` is the
    pool the caller already loaded for the material; only usable, unused
    pieces of this material are counted.
    """
    kind = WithdrawalKind(kind)
    chargeable_linear_meters = None

    if kind is WithdrawalKind.WHOLE_SHEETS:
        sheets = quantity.sheets
        whole = sheets is not None and not isinstance(sheets, bool) and math.isfinite(sheets)
        if not whole or sheets < 1 or int(sheets) != sheets:
            raise InvalidQuantity("The number of sheets must be a whole number of at least 1.")
        sheets = int(sheets)
        computation = WithdrawalComputation(
            kind=kind,
            quantity=quantity,
            remnants_requested=False,
            sheets_needed=sheets,
            area_m2=round(sheets * geometry.area_per_sheet, 4),
            used_from_remnants_m2=0.0,
            remnant_generated_m2=0.0,
            cost=round(sheets * material.cost_per_sheet, 2),
            price=round(sheets * material.sale_price_per_sheet, 2),
        )
    else:
        if kind is WithdrawalKind.LINEAR_METERS:
            length = _positive(quantity.length_m, "length")
            width = _positive(quantity.width_m, "width")
            area = round(length * width, 4)
            # billed on length + width, consumed by area
            chargeable_linear_meters = round(length + width, 4)
            price = chargeable_linear_meters * material.price_per_linear_meter
        else:
            area = round(_positive(quantity.area_m2, "area"), 4)
            price = area * material.price_per_square_meter

        used_from_remnants = 0.0
        if use_remnants:
            used_from_remnants = min(area, total_remnant_area(remnants, material.id))
        remaining = round(area - used_from_remnants, 4)
        sheets = _sheets_for_area(remaining, geometry)
        generated = max(sheets * geometry.area_per_sheet - max(remaining, 0.0), 0.0) if sheets else 0.0

        computation = WithdrawalComputation(
            kind=kind,
            quantity=quantity,
            remnants_requested=use_remnants,
            sheets_needed=sheets,
            area_m2=area,
            used_from_remnants_m2=round(used_from_remnants, 4),
            remnant_generated_m2=round(generated, 4),
            cost=round(sheets * material.cost_per_sheet, 2),
            price=round(price, 2),
            chargeable_linear_meters=chargeable_linear_meters,
        )

    if computation.sheets_needed > material.sheet_stock:
        raise InsufficientStock(required=computation.sheets_needed, available=material.sheet_stock)
    return computation


def _lock_material(session: Session, material_id: int) -> Material:
    statement = (
        select(Material)
        .where(Material.id == material_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    return session.exec(statement).one()


def available_remnants(session: Session, material_id: int) -> List[Remnant]:
    statement = select(Remnant).where(
        Remnant.material_id == material_id,
        Remnant.used == False,  # noqa: E712
        Remnant.usable == True,  # noqa: E712
    )
    return reusable_remnants(session.exec(statement).all(), material_id)


def _consume_remnants(
    session: Session,
    pool: List[Remnant],
    area_needed: float,
    withdrawal: Withdrawal,
    now: datetime,
) -> None:
    remaining = area_needed
    for remnant in pool:
        if remaining <= _EPSILON:
            break
        if remnant.area_m2 <= remaining + _EPSILON:
            remnant.used = True
            remnant.used_at = now
            remnant.consumed_by_withdrawal_id = withdrawal.id
            remnant.notes = f"Used in withdrawal: {withdrawal.project}"
            remaining = round(remaining - remnant.area_m2, 4)
        else:
            # the piece that was cut off is kept as a used record so a reversal can restore it
            session.add(
                Remnant(
                    material_id=remnant.material_id,
                    area_m2=round(remaining, 4),
                    usable=True,
                    used=True,
                    used_at=now,
                    consumed_by_withdrawal_id=withdrawal.id,
                    split_from_remnant_id=remnant.id,
                    origin_project=remnant.origin_project,
                    notes=f"Used partially ({remaining:.2f} m2) in: {withdrawal.project}",
                )
            )
            remnant.area_m2 = round(remnant.area_m2 - remaining, 4)
            if remnant.notes != UNIFIED_REMNANT_NOTES:
                remnant.notes = REMAINDER_NOTES
            remaining = 0.0
        session.add(remnant)


def commit_withdrawal(
    session: Session,
    material: Material,
    computation: WithdrawalComputation,
    metadata: WithdrawalMetadata,
    geometry: SheetGeometry = SHEET_GEOMETRY,
) -> Withdrawal:
    """Persist a withdrawal together with its stock and remnant side effects.

    The material row is locked and every figure is recomputed against the
    stock and remnant pool as they are inside the transaction, so totals
    from a stale preview are never written. Either all side effects are
    committed or none are.
    """
    project = _required(metadata.project, "project")
    user = _required(metadata.user, "user")
    charged_total = metadata.charged_price_total
    if charged_total is not None and (charged_total < 0 or not math.isfinite(charged_total)):
        raise InvalidQuantity("The charged price must be a finite amount of zero or more.")

    material_id = material.id
    try:
        with atomic(session):
            locked = _lock_material(session, material_id)
            pool = available_remnants(session, locked.id)
            fresh = compute_withdrawal(
                locked,
                computation.kind,
                computation.quantity,
                use_remnants=computation.remnants_requested,
                remnants=pool,
                geometry=geometry,
            )
            if fresh != computation:
                logger.warning(
                    "Withdrawal for material %s was recomputed at commit time (%s sheets -> %s sheets)",
                    locked.id,
                    computation.sheets_needed,
                    fresh.sheets_needed,
                )

            charged = fresh.price if metadata.charged_price_total is None else metadata.charged_price_total
            now = datetime.utcnow()
            withdrawal = Withdrawal(
                material_id=locked.id,
                kind=fresh.kind,
                requested_sheets=fresh.quantity.sheets,
                length_m=fresh.quantity.length_m,
                width_m=fresh.quantity.width_m,
                requested_area_m2=fresh.quantity.area_m2,
                sheets_consumed=fresh.sheets_needed,
                area_m2=fresh.area_m2,
                used_from_remnants_m2=fresh.used_from_remnants_m2,
                cost_total=fresh.cost,
                sale_price_total=fresh.price,
                charged_price_total=round(charged, 2),
                profit=round(charged - fresh.cost, 2),
                used_remnants=fresh.uses_remnants,
                project=project,
                client=(metadata.client or "").strip() or None,
                user=user,
                description=metadata.description or None,
                withdrawn_at=metadata.withdrawn_at or now,
            )
            session.add(withdrawal)
            session.flush()

            locked.sheet_stock -= fresh.sheets_needed
            session.add(locked)

            if fresh.uses_remnants:
                _consume_remnants(session, pool, fresh.used_from_remnants_m2, withdrawal, now)

            if fresh.creates_remnant:
                offcut = Remnant(
                    material_id=locked.id,
                    area_m2=fresh.remnant_generated_m2,
                    usable=True,
                    used=False,
                    origin_withdrawal_id=withdrawal.id,
                    origin_project=project,
                )
                session.add(offcut)
                session.flush()
                withdrawal.remnant_generated_id = offcut.id
                session.add(withdrawal)
    except SQLAlchemyError as exc:
        raise PersistenceError(f"Could not record the withdrawal for material {material_id}: {exc}") from exc

    session.refresh(withdrawal)
    logger.info(
        "Withdrawal %s committed: material=%s sheets=%s remnants_used=%.2f offcut=%.2f",
        withdrawal.id,
        withdrawal.material_id,
        withdrawal.sheets_consumed,
        withdrawal.used_from_remnants_m2,
        fresh.remnant_generated_m2 if fresh.creates_remnant else 0.0,
    )
    return withdrawal


def _merge_into_unified_bucket(session: Session, material_id: int, area: float) -> Remnant:
    bucket = session.exec(
        select(Remnant).where(
            Remnant.material_id == material_id,
            Remnant.used == False,  # noqa: E712
            Remnant.usable == True,  # noqa: E712
            Remnant.notes == UNIFIED_REMNANT_NOTES,
        )
    ).first()
    if bucket is None:
        bucket = Remnant(
            material_id=material_id,
            area_m2=round(area, 4),
            usable=True,
            used=False,
            origin_project=UNIFIED_REMNANT_PROJECT,
            notes=UNIFIED_REMNANT_NOTES,
        )
    else:
        bucket.area_m2 = round(bucket.area_m2 + area, 4)
    session.add(bucket)
    session.flush()
    return bucket


def _ensure_reversible(session: Session, withdrawal_id: int, byproducts: List[Remnant]) -> None:
    invoice_id = session.exec(select(Invoice.id).where(Invoice.withdrawal_id == withdrawal_id)).first()
    if invoice_id is not None:
        raise AlreadyInvoiced(withdrawal_id, invoice_id)

    consumers = [
        remnant.consumed_by_withdrawal_id
        for remnant in byproducts
        if remnant.used and remnant.consumed_by_withdrawal_id not in (None, withdrawal_id)
    ]
    offcut_ids = [remnant.id for remnant in byproducts]
    if offcut_ids:
        # pieces cut from the offcut by later withdrawals
        consumers.extend(
            session.exec(
                select(Remnant.consumed_by_withdrawal_id).where(
                    Remnant.split_from_remnant_id.in_(offcut_ids),
                    Remnant.consumed_by_withdrawal_id != withdrawal_id,
                )
            ).all()
        )
    consumers = [consumer for consumer in consumers if consumer is not None]
    if consumers:
        raise RemnantInUse(withdrawal_id, consumers)


def reverse_withdrawal(session: Session, withdrawal: Withdrawal) -> None:
    """Undo a committed withdrawal and delete it.

    Sheets go back to stock, the offcut the withdrawal produced is removed
    and every remnant area it consumed is returned to the material's
    general unified remnant bucket. Invoiced withdrawals, and withdrawals
    whose offcut was since drawn on by another withdrawal, are refused.
    """
    withdrawal_id = withdrawal.id
    material_id = withdrawal.material_id
    sheets_consumed = withdrawal.sheets_consumed
    try:
        with atomic(session):
            material = _lock_material(session, material_id)
            byproducts = session.exec(select(Remnant).where(Remnant.origin_withdrawal_id == withdrawal_id)).all()
            _ensure_reversible(session, withdrawal_id, byproducts)

            material.sheet_stock += sheets_consumed
            session.add(material)
            for remnant in byproducts:
                session.delete(remnant)

            restored = 0.0
            if withdrawal.used_remnants:
                consumed = session.exec(
                    select(Remnant).where(
                        Remnant.consumed_by_withdrawal_id == withdrawal_id,
                        Remnant.used == True,  # noqa: E712
                    )
                ).all()
                for remnant in consumed:
                    _merge_into_unified_bucket(session, material.id, remnant.area_m2)
                    restored += remnant.area_m2
                    session.delete(remnant)

            session.flush()
            session.delete(withdrawal)
    except SQLAlchemyError as exc:
        raise PersistenceError(f"Could not reverse withdrawal {withdrawal_id}: {exc}") from exc

    logger.info(
        "Withdrawal %s reversed: material=%s sheets_restored=%s offcuts_removed=%s remnant_area_restored=%.2f",
        withdrawal_id,
        material_id,
        sheets_consumed,
        len(byproducts),
        restored,
    )


def quantity_from_request(payload: WithdrawalQuote) -> QuantityInputs:
    return QuantityInputs(
        sheets=payload.requested_sheets,
        length_m=payload.length_m,
        width_m=payload.width_m,
        area_m2=payload.requested_area_m2,
    )


def record_withdrawal(
    session: Session,
    payload: WithdrawalCreate,
    geometry: SheetGeometry = SHEET_GEOMETRY,
) -> Withdrawal:
    """Validate, compute and commit a withdrawal request in one go."""
    metadata = WithdrawalMetadata(
        project=_required(payload.project, "project"),
        user=_required(payload.user, "user"),
        client=payload.client,
        description=payload.description,
        charged_price_total=payload.charged_price_total,
        withdrawn_at=payload.withdrawn_at,
    )
    material = session.get(Material, payload.material_id)
    if material is None:
        raise MaterialNotFound(payload.material_id)
    computation = compute_withdrawal(
        material,
        payload.kind,
        quantity_from_request(payload),
        use_remnants=payload.use_remnants,
        remnants=available_remnants(session, material.id),
        geometry=geometry,
    )
    return commit_withdrawal(session, material, computation, metadata, geometry=geometry)
