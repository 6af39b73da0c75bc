"""
Dosage unit normalization.

All ingredient dosages are carried in milligrams. Gram and microgram amounts
are converted; IU cannot be expressed as mass without knowing the substance,
so it passes through with a 'IU' unit tag.
"""

from typing import NamedTuple, Optional, Union

from .errors import UnitConversionError

MG = 'mg'
IU = 'IU'

# multiply by factor to get milligrams
MG_FACTORS = {
    'mg': 1.0,
    'g': 1000.0,
    'mcg': 0.001,
    'µg': 0.001,
    'μg': 0.001,
    'ug': 0.001,
}

PASSTHROUGH_UNITS = {'iu': IU, 'ie': IU}


class Dosage(NamedTuple):
    amount: float
    unit: str  # 'mg' or 'IU'


def parse_number(text: Union[str, float, int, None]) -> Optional[float]:
    """'2,5' -> 2.5; None/garbage -> None."""
    if text is None:
        return None
    if isinstance(text, (int, float)):
        return float(text)
    try:
        return float(str(text).strip().replace(' ', '').replace('\u00a0', '').replace(',', '.'))
    except ValueError:
        return None


def normalize_unit(unit: Optional[str]) -> str:
    unit = (unit or MG).strip()
    return unit if unit == IU else unit.lower()


def to_mg(amount: float, unit: Optional[str] = MG) -> Dosage:
    """
    Convert an amount to milligrams.

    Idempotent: to_mg(*to_mg(x, u)) == to_mg(x, u). IU amounts are returned
    unchanged with unit 'IU'.
    """
    key = normalize_unit(unit)
    if key == IU or key in PASSTHROUGH_UNITS:
        return Dosage(float(amount), IU)
    factor = MG_FACTORS.get(key)
    if factor is None:
        raise UnitConversionError(f"Cannot convert unit {unit!r} to mg")
    return Dosage(round(float(amount) * factor, 6), MG)


def from_mg(amount_mg: float, unit: str) -> float:
    """Inverse of to_mg for mass units."""
    key = normalize_unit(unit)
    if key == IU or key in PASSTHROUGH_UNITS:
        return float(amount_mg)
    factor = MG_FACTORS.get(key)
    if factor is None:
        raise UnitConversionError(f"Cannot convert mg to unit {unit!r}")
    return round(float(amount_mg) / factor, 9)


def is_convertible(unit: Optional[str]) -> bool:
    key = normalize_unit(unit)
    return key == IU or key in PASSTHROUGH_UNITS or key in MG_FACTORS
