# units.py
import math
import re
from enum import Enum
from typing import Optional, Union

from pydantic import BaseModel, Field, ValidationError

from constants import WEIGHT_LIMITS

class Etco2Unit(Enum):
    MMHG = "mmhg"
    KPA = "kpa"

KPA_PER_MMHG = 0.133322
ETCO2_THRESHOLD_MMHG = 10   # Below this, CPR quality is inadequate

def mmhg_to_kpa(mmhg: float) -> float:
    return mmhg * KPA_PER_MMHG

def kpa_to_mmhg(kpa: float) -> float:
    return kpa / KPA_PER_MMHG

def to_canonical_etco2(value: float, unit: Etco2Unit) -> float:
    """All ETCO2 values are stored in mmHg."""
    return kpa_to_mmhg(value) if unit == Etco2Unit.KPA else value

def etco2_unit_label(unit: Etco2Unit) -> str:
    return "kPa" if unit == Etco2Unit.KPA else "mmHg"

def format_etco2(canonical_mmhg: float, unit: Etco2Unit = Etco2Unit.MMHG) -> str:
    if unit == Etco2Unit.KPA:
        return f"{mmhg_to_kpa(canonical_mmhg):.1f}"
    return str(int(round(canonical_mmhg)))

def parse_etco2(raw: str, unit: Etco2Unit) -> Optional[float]:
    """
    Parses bedside input to canonical mmHg.
    mmHg must be a positive integer; kPa is rounded to one decimal.
    """
    try:
        value = float(raw)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(value) or value <= 0:
        return None
    if unit == Etco2Unit.MMHG and not value.is_integer():
        return None
    if unit == Etco2Unit.KPA:
        value = round(value, 1)
    return to_canonical_etco2(value, unit)

def is_etco2_adequate(canonical_mmhg: float) -> bool:
    return canonical_mmhg >= ETCO2_THRESHOLD_MMHG

# --- WEIGHT ---

class WeightInput(BaseModel):
    weight_kg: float = Field(..., ge=WEIGHT_LIMITS.MIN_KG, le=WEIGHT_LIMITS.MAX_KG, allow_inf_nan=False)

def parse_weight(raw: str) -> float:
    """
    Parses a typed weight. Raises ValueError with a readable message.
    Scientific notation is rejected ("1e2" is never a weight a rescuer meant).
    """
    if re.search(r"[eE]", raw):
        raise ValueError("Scientific notation is not allowed")
    try:
        value = float(raw)
    except ValueError:
        raise ValueError("Weight must be a number")
    if not math.isfinite(value):
        raise ValueError("Weight must be a valid finite number")
    return validate_weight(value)

def validate_weight(value: float) -> float:
    try:
        return WeightInput(weight_kg=value).weight_kg
    except ValidationError as e:
        raise ValueError(
            f"Weight must be between {WEIGHT_LIMITS.MIN_KG} and {WEIGHT_LIMITS.MAX_KG} kg"
        ) from e

def weight_from_input(value: Union[str, float]) -> float:
    """Typed text goes through the strict parser, numbers through the range check."""
    if isinstance(value, str):
        return parse_weight(value)
    return validate_weight(value)

def weight_for_dosing(weight: Optional[float]) -> Optional[float]:
    """Out-of-range weights are treated as unknown rather than dosed."""
    if weight is None:
        return None
    try:
        return validate_weight(weight)
    except ValueError:
        return None
