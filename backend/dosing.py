"""
ResusFlow: Dosing Calculator
============================
Pure functions. Pediatric doses scale with weight and are clamped to adult caps;
adult doses are literature-fixed. Nothing here raises: an unusable weight gives
`DoseResult(value=None, display=<per-kg formula>)` and the caller shows the
formula instead of a number.

Dose ordinals are 0-indexed (0 = first dose / first shock).
"""

import logging
from typing import Optional, Tuple

from constants import (
    ACLS_DOSING,
    PALS_DOSING,
    WEIGHT_LIMITS,
    CardioversionRhythm,
    PathwayMode,
)
from models import DoseResult

logger = logging.getLogger("resusflow.dosing")

def _usable(weight_kg: Optional[float], drug: str) -> bool:
    if weight_kg is None:
        logger.warning(f"{drug} dose calculation: weight is missing")
        return False
    if weight_kg <= 0:
        logger.error(f"{drug} dose calculation: invalid weight {weight_kg}")
        return False
    if weight_kg > WEIGHT_LIMITS.UNUSUAL_PEDIATRIC_KG:
        logger.warning(f"{drug} dose calculation: unusually high pediatric weight {weight_kg} kg")
    return True

def _round_j(energy: float) -> int:
    # Half-up, so 2 J/kg x 12.25 kg reads 25 J on every platform
    return int(energy + 0.5)

# --- 1. PEDIATRIC (PALS) CARDIAC ARREST ---

def calculate_epinephrine_dose(weight_kg: Optional[float], dose_number: int = 0) -> DoseResult:
    """0.01 mg/kg IV/IO, max 1 mg. Same dose every time."""
    if not _usable(weight_kg, "Epinephrine"):
        return DoseResult(value=None, display="0.01 mg/kg", unit="mg/kg")

    dose = min(weight_kg * PALS_DOSING.EPINEPHRINE_MG_PER_KG, PALS_DOSING.EPINEPHRINE_MAX_MG)
    logger.info(f"Epinephrine dose calculated: {weight_kg} kg -> {dose:.2f} mg")
    return DoseResult(value=round(dose, 4), display=f"{dose:.2f} mg", unit="mg")

def calculate_amiodarone_dose(weight_kg: Optional[float], dose_number: int = 0) -> DoseResult:
    """5 mg/kg IV/IO. First dose max 300 mg, later doses max 150 mg."""
    if not _usable(weight_kg, "Amiodarone"):
        return DoseResult(value=None, display="5 mg/kg", unit="mg/kg")

    cap = PALS_DOSING.AMIODARONE_FIRST_MAX_MG if dose_number == 0 else PALS_DOSING.AMIODARONE_SUBSEQUENT_MAX_MG
    dose = min(weight_kg * PALS_DOSING.AMIODARONE_MG_PER_KG, cap)
    return DoseResult(value=dose, display=f"{round(dose)} mg", unit="mg")

def calculate_lidocaine_dose(weight_kg: Optional[float], dose_number: int = 0) -> DoseResult:
    """1 mg/kg IV/IO, uncapped."""
    if not _usable(weight_kg, "Lidocaine"):
        return DoseResult(value=None, display="1 mg/kg", unit="mg/kg")

    dose = weight_kg * PALS_DOSING.LIDOCAINE_MG_PER_KG
    return DoseResult(value=dose, display=f"{round(dose)} mg", unit="mg")

def calculate_shock_energy_range(weight_kg: float) -> Tuple[int, int]:
    """Third and later shocks: 4-10 J/kg, both bounds capped at the adult maximum."""
    low = min(weight_kg * PALS_DOSING.SECOND_SHOCK_J_PER_KG, PALS_DOSING.MAX_SHOCK_J)
    high = min(weight_kg * PALS_DOSING.MAX_SHOCK_J_PER_KG, PALS_DOSING.MAX_SHOCK_J)
    return _round_j(low), _round_j(high)

def calculate_shock_energy(weight_kg: Optional[float], shock_number: int = 0) -> DoseResult:
    """
    First shock 2 J/kg, second 4 J/kg, then a 4-10 J/kg range
    (value is the lower bound). Capped at 360 J.
    """
    if weight_kg is None or weight_kg <= 0:
        formula = "2 J/kg" if shock_number == 0 else "4 J/kg" if shock_number == 1 else "4-10 J/kg"
        return DoseResult(value=None, display=formula, unit="J/kg")

    if shock_number >= 2:
        low, high = calculate_shock_energy_range(weight_kg)
        return DoseResult(value=low, display=f"{low}-{high}J", unit="J")

    per_kg = PALS_DOSING.FIRST_SHOCK_J_PER_KG if shock_number == 0 else PALS_DOSING.SECOND_SHOCK_J_PER_KG
    energy = _round_j(min(weight_kg * per_kg, PALS_DOSING.MAX_SHOCK_J))
    return DoseResult(value=energy, display=f"{energy}J", unit="J")

# --- 2. ADULT (ACLS) FIXED DOSING ---

def adult_epinephrine_dose(dose_number: int = 0) -> DoseResult:
    """1 mg IV/IO every 3-5 minutes."""
    return DoseResult(value=ACLS_DOSING.EPINEPHRINE_MG, display="1 mg", unit="mg")

def adult_amiodarone_dose(dose_number: int = 0) -> DoseResult:
    dose = ACLS_DOSING.AMIODARONE_FIRST_MG if dose_number == 0 else ACLS_DOSING.AMIODARONE_SECOND_MG
    return DoseResult(value=dose, display=f"{dose:g} mg", unit="mg")

def adult_lidocaine_dose(dose_number: int = 0) -> DoseResult:
    """1-1.5 mg/kg first (~100 mg), then 0.5-0.75 mg/kg (~50 mg)."""
    dose = ACLS_DOSING.LIDOCAINE_FIRST_MG if dose_number == 0 else ACLS_DOSING.LIDOCAINE_MAINTENANCE_MG
    return DoseResult(value=dose, display=f"{dose:g} mg", unit="mg")

def adult_shock_energy(shock_number: int = 0, defibrillator_energy: int = ACLS_DOSING.DEFAULT_SHOCK_J) -> DoseResult:
    """The device setting chosen in configuration, never above 360 J."""
    energy = min(defibrillator_energy, ACLS_DOSING.MAX_SHOCK_J)
    return DoseResult(value=energy, display=f"{energy}J", unit="J")

# --- 3. PATHWAY DISPATCH (what the state machine calls) ---

def epinephrine_dose(mode: PathwayMode, weight_kg: Optional[float], dose_number: int) -> DoseResult:
    if mode == PathwayMode.PEDIATRIC:
        return calculate_epinephrine_dose(weight_kg, dose_number)
    return adult_epinephrine_dose(dose_number)

def amiodarone_dose(mode: PathwayMode, weight_kg: Optional[float], dose_number: int) -> DoseResult:
    if mode == PathwayMode.PEDIATRIC:
        return calculate_amiodarone_dose(weight_kg, dose_number)
    return adult_amiodarone_dose(dose_number)

def lidocaine_dose(mode: PathwayMode, weight_kg: Optional[float], dose_number: int) -> DoseResult:
    if mode == PathwayMode.PEDIATRIC:
        return calculate_lidocaine_dose(weight_kg, dose_number)
    return adult_lidocaine_dose(dose_number)

def shock_energy(mode: PathwayMode, weight_kg: Optional[float], shock_number: int,
                 defibrillator_energy: int = ACLS_DOSING.DEFAULT_SHOCK_J) -> DoseResult:
    if mode == PathwayMode.PEDIATRIC:
        return calculate_shock_energy(weight_kg, shock_number)
    return adult_shock_energy(shock_number, defibrillator_energy)

# --- 4. BRADYCARDIA / TACHYCARDIA WITH PULSE ---

def peds_brady_epinephrine(weight_kg: Optional[float]) -> DoseResult:
    """0.01 mg/kg IV/IO (0.1 mg/mL), max 1 mg."""
    if not weight_kg:
        return DoseResult(value=None, display="0.01 mg/kg (max 1 mg)", unit="mg")
    dose = min(0.01 * weight_kg, 1.0)
    return DoseResult(value=round(dose, 4), display=f"{dose:.2f} mg", unit="mg")

def peds_brady_atropine(weight_kg: Optional[float]) -> DoseResult:
    """0.02 mg/kg, min 0.1 mg, max 0.5 mg. Vagal tone / primary AV block only."""
    if not weight_kg:
        return DoseResult(value=None, display="0.02 mg/kg (min 0.1 mg, max 0.5 mg)", unit="mg")
    dose = max(0.1, min(0.02 * weight_kg, 0.5))
    return DoseResult(value=round(dose, 4), display=f"{dose:.2f} mg", unit="mg")

def peds_tachy_adenosine(weight_kg: Optional[float], dose_number: int = 1) -> DoseResult:
    """Dose 1: 0.1 mg/kg (max 6 mg). Dose 2: 0.2 mg/kg (max 12 mg). Rapid push + flush."""
    per_kg, cap = (0.1, 6.0) if dose_number == 1 else (0.2, 12.0)
    if not weight_kg:
        return DoseResult(value=None, display=f"{per_kg:g} mg/kg (max {cap:g} mg)", unit="mg")
    dose = min(per_kg * weight_kg, cap)
    return DoseResult(value=round(dose, 4), display=f"{dose:.1f} mg", unit="mg")

def peds_tachy_cardioversion(weight_kg: Optional[float], attempt: int = 1) -> DoseResult:
    """Synchronized: 0.5-1 J/kg, then 2 J/kg."""
    if not weight_kg:
        return DoseResult(value=None, display="0.5-1 J/kg" if attempt == 1 else "2 J/kg", unit="J")
    energy = weight_kg if attempt == 1 else 2 * weight_kg
    return DoseResult(value=energy, display=f"{_round_j(energy)} J", unit="J")

def adult_brady_atropine(dose_number: int = 1) -> DoseResult:
    """1 mg IV every 3-5 min, max 3 mg total."""
    if dose_number > 3:
        return DoseResult(value=0, display="Maximum dose reached (3 mg total)", unit="mg")
    return DoseResult(value=1, display="1 mg", unit="mg")

def adult_brady_dopamine() -> DoseResult:
    return DoseResult(value=None, display="5-20 mcg/kg/min", unit="mcg/kg/min")

def adult_brady_epinephrine_infusion() -> DoseResult:
    return DoseResult(value=None, display="2-10 mcg/min", unit="mcg/min")

def adult_tachy_adenosine(dose_number: int = 1) -> DoseResult:
    dose = 6 if dose_number == 1 else 12
    return DoseResult(value=dose, display=f"{dose} mg", unit="mg")

CARDIOVERSION_ENERGY_J = {
    CardioversionRhythm.AFIB: 200,
    CardioversionRhythm.AFLUTTER: 200,
    CardioversionRhythm.NARROW: 100,
    CardioversionRhythm.MONOMORPHIC_VT: 100,
}

def adult_tachy_cardioversion(rhythm: Optional[CardioversionRhythm] = None) -> DoseResult:
    """Rhythm-specific synchronized energy. Polymorphic VT gets defibrillation instead."""
    if rhythm is None:
        return DoseResult(value=200, display="200 J (or device-recommended)", unit="J")
    if rhythm == CardioversionRhythm.POLYMORPHIC_VT:
        return DoseResult(value=None, display="Defibrillation (NOT synchronized)", unit="J")
    energy = CARDIOVERSION_ENERGY_J[rhythm]
    return DoseResult(value=energy, display=f"{energy} J", unit="J")

def adult_tachy_procainamide() -> DoseResult:
    """Loading 20-50 mg/min until suppression, hypotension, QRS +50% or 17 mg/kg."""
    return DoseResult(value=None, display="20-50 mg/min (max 17 mg/kg)", unit="mg/min")

def adult_tachy_amiodarone() -> DoseResult:
    return DoseResult(value=150, display="150 mg over 10 min", unit="mg")

def adult_tachy_diltiazem() -> DoseResult:
    return DoseResult(value=None, display="0.25 mg/kg IV over 2 min", unit="mg/kg")

def adult_tachy_verapamil() -> DoseResult:
    return DoseResult(value=None, display="2.5-5 mg IV over 2 min", unit="mg")

def adult_tachy_metoprolol() -> DoseResult:
    return DoseResult(value=None, display="2.5-5 mg IV over 2 min (up to 3 doses)", unit="mg")

def adult_tachy_esmolol() -> DoseResult:
    return DoseResult(value=500, display="500 mcg/kg over 1 min", unit="mcg/kg")
