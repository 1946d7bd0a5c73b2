"""Runtime configuration for the SlabWorks back office."""
from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Optional

DEFAULT_SHEET_LENGTH_M = 3.22
DEFAULT_SHEET_WIDTH_M = 1.59

# Remnants at or below this area are float noise, not reusable stock.
MIN_REMNANT_AREA_M2 = 0.01


def _env_float(name: str) -> Optional[float]:
    raw = os.environ.get(name)
    if not raw:
        return None
    try:
        value = float(raw.replace(",", "."))
    except ValueError as exc:
        raise RuntimeError(f"{name} must be a number, got {raw!r}.") from exc
    if value <= 0:
        raise RuntimeError(f"{name} must be greater than zero.")
    return value


@dataclass(frozen=True)
class SheetGeometry:
    """Fixed dimensions shared by every whole slab in stock."""

    length_m: float = DEFAULT_SHEET_LENGTH_M
    width_m: float = DEFAULT_SHEET_WIDTH_M
    area_override_m2: Optional[float] = None

    @property
    def area_per_sheet(self) -> float:
        if self.area_override_m2 is not None:
            return self.area_override_m2
        return round(self.length_m * self.width_m, 2)

    @property
    def linear_meters_per_sheet(self) -> float:
        # a sheet is billed as two cuts along its length
        return round(self.length_m * 2, 2)


def load_sheet_geometry() -> SheetGeometry:
    return SheetGeometry(
        length_m=_env_float("SLABWORKS_SHEET_LENGTH_M") or DEFAULT_SHEET_LENGTH_M,
        width_m=_env_float("SLABWORKS_SHEET_WIDTH_M") or DEFAULT_SHEET_WIDTH_M,
        area_override_m2=_env_float("SLABWORKS_SHEET_AREA_M2"),
    )


SHEET_GEOMETRY = load_sheet_geometry()
