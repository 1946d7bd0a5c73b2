"""Production order costing with fixed monthly overhead spread per linear meter."""
from __future__ import annotations

import logging

from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, select

from .db import atomic
from .errors import InvalidQuantity, MissingRequiredField, PersistenceError
from .models import Expense, ExpenseCreate, ProductionOrder, ProductionOrderCreate

logger = logging.getLogger(__name__)


def prorate_fixed_cost(fixed_expenses_total: float, month_linear_meters: float, order_linear_meters: float) -> float:
    """Share of the month's fixed expenses carried by one order.

    ``month_linear_meters`` is what was already produced in the month; the
    order's own meters are added to it before dividing.
    """
    if order_linear_meters is None or not order_linear_meters > 0:
        raise InvalidQuantity("The linear meters of the order must be greater than zero.")
    if fixed_expenses_total < 0 or month_linear_meters < 0:
        raise InvalidQuantity("Fixed expenses and produced meters cannot be negative.")
    total_meters = month_linear_meters + order_linear_meters
    per_meter = fixed_expenses_total / total_meters
    return round(per_meter * order_linear_meters, 2)


def fixed_expenses_for_month(session: Session, month: int, year: int) -> float:
    statement = select(func.coalesce(func.sum(Expense.amount), 0)).where(
        Expense.is_fixed == True,  # noqa: E712
        Expense.month == month,
        Expense.year == year,
    )
    return float(session.exec(statement).one())


def linear_meters_for_month(session: Session, month: int, year: int) -> float:
    statement = select(func.coalesce(func.sum(ProductionOrder.linear_meters), 0)).where(
        ProductionOrder.month == month,
        ProductionOrder.year == year,
    )
    return float(session.exec(statement).one())


def create_expense(session: Session, payload: ExpenseCreate) -> Expense:
    if not payload.concept.strip():
        raise MissingRequiredField("concept")
    expense = Expense.model_validate(
        payload, update={"month": payload.spent_on.month, "year": payload.spent_on.year}
    )
    try:
        with atomic(session):
            session.add(expense)
    except SQLAlchemyError as exc:
        raise PersistenceError(f"Could not save expense: {exc}") from exc
    session.refresh(expense)
    return expense


def create_production_order(session: Session, payload: ProductionOrderCreate) -> ProductionOrder:
    if not payload.envelope_code.strip():
        raise MissingRequiredField("envelope_code")
    if not payload.client.strip():
        raise MissingRequiredField("client")
    if not payload.linear_meters > 0:
        raise InvalidQuantity("The linear meters of the order must be greater than zero.")

    month, year = payload.produced_on.month, payload.produced_on.year
    fixed_cost = 0.0
    if payload.assign_fixed_cost:
        fixed_cost = prorate_fixed_cost(
            fixed_expenses_for_month(session, month, year),
            linear_meters_for_month(session, month, year),
            payload.linear_meters,
        )
    order = ProductionOrder.model_validate(
        payload,
        update={
            "month": month,
            "year": year,
            "fixed_cost_assigned": fixed_cost,
            "total_cost": round(payload.material_cost + payload.labor_cost + fixed_cost, 2),
        },
    )
    try:
        with atomic(session):
            session.add(order)
    except SQLAlchemyError as exc:
        raise PersistenceError(f"Could not save production order {payload.envelope_code}: {exc}") from exc
    session.refresh(order)
    logger.info("Production order %s costed: fixed=%.2f total=%.2f", order.envelope_code, fixed_cost, order.total_cost)
    return order
