"""Out-of-stock alerts for slabs and their offcuts."""
from __future__ import annotations

from typing import Dict, List

from sqlmodel import Session, select

from .models import Material, Remnant, StockAlert


def stock_alerts(session: Session) -> List[StockAlert]:
    materials = session.exec(select(Material).order_by(Material.name)).all()
    remnant_area: Dict[int, float] = {}
    for remnant in session.exec(
        select(Remnant).where(Remnant.used == False, Remnant.usable == True)  # noqa: E712
    ).all():
        remnant_area[remnant.material_id] = remnant_area.get(remnant.material_id, 0.0) + remnant.area_m2

    alerts: List[StockAlert] = []
    for material in materials:
        if material.sheet_stock == 0:
            alerts.append(
                StockAlert(
                    kind="material",
                    material_id=material.id,
                    material_name=material.name,
                    current_quantity=0,
                    message=f'Out of stock: sheet "{material.name}" - quantity: 0',
                )
            )
        if remnant_area.get(material.id, 0.0) <= 0:
            alerts.append(
                StockAlert(
                    kind="remnant",
                    material_id=material.id,
                    material_name=material.name,
                    current_quantity=0,
                    message=f'Out of stock: remnant "{material.name}" - quantity: 0',
                )
            )
    return alerts
