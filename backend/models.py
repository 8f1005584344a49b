"""
ResusFlow: Data Dictionary
==========================
The whole state space of a resuscitation episode: the cardiac-arrest Session,
the Brady/Tachy Session, their audit records, and the derived view objects
(timers, banner, eligibility flags).

NO PROTOCOL LOGIC lives here. Every aggregate is a frozen dataclass; actions
produce a new instance with `dataclasses.replace`, so a reference captured at
any moment is a stable snapshot.
"""

import uuid
from dataclasses import dataclass, field, fields, replace
from typing import Dict, Optional, Tuple, Union

from constants import (
    AirwayStatus,
    ArrestPhase,
    BannerPriority,
    Branch,
    BradyTachyInterventionType,
    BradyTachyOutcome,
    BradyTachyPhase,
    CardioversionRhythm,
    CPRRatio,
    InterventionType,
    Outcome,
    PathwayMode,
    QRSWidth,
    Regularity,
    Rhythm,
    SessionOrigin,
    SinusVsSVT,
    Stability,
)

class ProtocolError(ValueError):
    """Raised when an action cannot be applied to the current session."""
    pass

class IneligibleActionError(ProtocolError):
    """Raised in strict mode when an action's eligibility flag is False."""
    pass

ParamValue = Union[int, float, str]

def new_id() -> str:
    return uuid.uuid4().hex

def merge_checklist(current, updates: Dict[str, object]):
    """Partial update of a checklist dataclass. Unknown items are rejected."""
    known = {f.name for f in fields(current)}
    unknown = set(updates) - known
    if unknown:
        raise ProtocolError(f"Unknown checklist item(s): {', '.join(sorted(unknown))}")
    return replace(current, **updates)

def checked_items(checklist) -> Tuple[str, ...]:
    return tuple(f.name for f in fields(checklist) if getattr(checklist, f.name) is True)

# --- 1. AUDIT RECORDS ---

@dataclass(frozen=True)
class Intervention:
    """One line of the arrest timeline. Never mutated or deleted."""
    id: str
    timestamp: int                  # ms epoch
    type: InterventionType
    details: str = ""               # Plain-English fallback for the translation key
    value: Optional[Union[int, float, str]] = None
    translation_key: Optional[str] = None
    translation_params: Dict[str, ParamValue] = field(default_factory=dict)

@dataclass(frozen=True)
class VitalReading:
    timestamp: int
    metric: str                     # Only "etco2" is produced by the engine
    value: float

# --- 2. CLINICAL CHECKLISTS ---

@dataclass(frozen=True)
class ReversibleCauses:
    """The H's and T's."""
    hypovolemia: bool = False
    hypoxia: bool = False
    hydrogen_ion: bool = False
    hypo_hyperkalemia: bool = False
    hypothermia: bool = False
    tension_pneumothorax: bool = False
    tamponade: bool = False
    toxins: bool = False
    thrombosis_pulmonary: bool = False
    thrombosis_coronary: bool = False

@dataclass(frozen=True)
class PregnancyCauses:
    """A-H causes of obstetric cardiac arrest."""
    anesthetic_complications: bool = False
    bleeding: bool = False
    cardiovascular: bool = False
    drugs: bool = False
    embolic: bool = False
    fever: bool = False
    general_causes: bool = False
    hypertension: bool = False

@dataclass(frozen=True)
class PregnancyInterventions:
    left_uterine_displacement: bool = False
    early_airway: bool = False
    iv_above_diaphragm: bool = False
    stop_magnesium_give_calcium: bool = False
    detach_fetal_monitors: bool = False
    massive_transfusion: bool = False

@dataclass(frozen=True)
class SpecialCircumstances:
    anaphylaxis: bool = False
    asthma: bool = False
    hyperthermia: bool = False
    opioid_overdose: bool = False
    drowning: bool = False
    electrocution: bool = False
    lvad_failure: bool = False

@dataclass(frozen=True)
class AnaphylaxisChecklist:
    identify_trigger: bool = False
    iv_fluids: bool = False
    epinephrine: bool = False
    glucagon_if_beta_blocked: bool = False
    consider_ecpr: bool = False

@dataclass(frozen=True)
class AsthmaChecklist:
    evaluate_tension_pneumo: bool = False
    low_tidal_volume_vent: bool = False
    active_exhalation: bool = False
    bronchodilators: bool = False
    consider_ecls: bool = False

@dataclass(frozen=True)
class HyperthermiaChecklist:
    measure_core_temp: bool = False
    ice_water_immersion: bool = False
    tepid_water_cooling: bool = False
    monitor_temp_during_cooling: bool = False
    stop_cooling_at_38_6: bool = False

@dataclass(frozen=True)
class OpioidOverdoseChecklist:
    ventilation_first: bool = False
    naloxone_administered: bool = False
    repeat_naloxone_if_needed: bool = False
    observe_for_recurrence: bool = False

@dataclass(frozen=True)
class DrowningChecklist:
    early_ventilation: bool = False
    supplemental_oxygen: bool = False
    standard_cpr: bool = False
    consider_spinal_precautions: bool = False

@dataclass(frozen=True)
class ElectrocutionChecklist:
    ensure_scene_safety: bool = False
    rapid_defibrillation: bool = False
    standard_resuscitation: bool = False
    prolonged_cpr_consideration: bool = False

@dataclass(frozen=True)
class LVADFailureChecklist:
    start_compressions_immediately: bool = False
    auscultate_for_hum: bool = False
    check_controller: bool = False
    check_driveline: bool = False
    check_power_source: bool = False
    measure_bp_doppler: bool = False

# Special circumstance -> field on ArrestSession holding its sub-checklist
SPECIAL_CIRCUMSTANCE_CHECKLISTS = {
    'anaphylaxis': 'anaphylaxis_checklist',
    'asthma': 'asthma_checklist',
    'hyperthermia': 'hyperthermia_checklist',
    'opioid_overdose': 'opioid_overdose_checklist',
    'drowning': 'drowning_checklist',
    'electrocution': 'electrocution_checklist',
    'lvad_failure': 'lvad_failure_checklist',
}

@dataclass(frozen=True)
class PostROSCChecklist:
    airway_secured: bool = False
    ventilation_optimized: bool = False
    twelve_lead_ecg: bool = False
    labs_ordered: bool = False
    ct_head_ordered: bool = False
    echo_ordered: bool = False
    temperature_management: bool = False
    hemodynamics_optimized: bool = False
    neurological_assessment: bool = False
    following_commands: Optional[bool] = None
    eeg_ordered: bool = False
    st_elevation: Optional[bool] = None
    cardiogenic_shock: Optional[bool] = None

@dataclass(frozen=True)
class PostROSCVitals:
    spo2: Optional[float] = None         # Target 90-98 %
    paco2: Optional[float] = None        # Target 35-45 mmHg
    map: Optional[float] = None          # Target >= 65 mmHg
    temperature: Optional[float] = None  # Target 32-37.5 C
    glucose: Optional[float] = None      # Target 70-180 mg/dL

# --- 3. THE CARDIAC-ARREST SESSION (Aggregate Root) ---

@dataclass(frozen=True)
class ArrestSession:
    id: str
    start_time: int
    end_time: Optional[int] = None

    # Clinical state
    current_rhythm: Optional[Rhythm] = None
    initial_rhythm: Optional[Rhythm] = None     # Immutable once set (reporting)
    phase: ArrestPhase = ArrestPhase.PATHWAY_SELECTION
    outcome: Optional[Outcome] = None

    # Counters (never decrease)
    shock_count: int = 0
    current_energy: float = 0
    epinephrine_count: int = 0
    amiodarone_count: int = 0
    lidocaine_count: int = 0

    # Timing anchors (ms epoch)
    cpr_cycle_start_time: Optional[int] = None
    last_epinephrine_time: Optional[int] = None
    last_amiodarone_time: Optional[int] = None
    rosc_time: Optional[int] = None
    bradytachy_start_time: Optional[int] = None  # Set only by a brady/tachy handoff

    # Patient context
    pathway_mode: PathwayMode = PathwayMode.ADULT
    patient_weight: Optional[float] = None
    cpr_ratio: CPRRatio = CPRRatio.FIFTEEN_TWO
    airway_status: AirwayStatus = AirwayStatus.BAG_MASK
    origin: SessionOrigin = SessionOrigin.CARDIAC_ARREST

    # Audit
    interventions: Tuple[Intervention, ...] = ()
    vital_readings: Tuple[VitalReading, ...] = ()

    # Checklists
    reversible_causes: ReversibleCauses = field(default_factory=ReversibleCauses)
    post_rosc_checklist: PostROSCChecklist = field(default_factory=PostROSCChecklist)
    post_rosc_vitals: PostROSCVitals = field(default_factory=PostROSCVitals)

    # Obstetric arrest (adult)
    pregnancy_active: bool = False
    pregnancy_start_time: Optional[int] = None
    pregnancy_causes: PregnancyCauses = field(default_factory=PregnancyCauses)
    pregnancy_interventions: PregnancyInterventions = field(default_factory=PregnancyInterventions)
    emergency_delivery_dismissed: bool = False

    # Special circumstances
    special_circumstances: SpecialCircumstances = field(default_factory=SpecialCircumstances)
    anaphylaxis_checklist: AnaphylaxisChecklist = field(default_factory=AnaphylaxisChecklist)
    asthma_checklist: AsthmaChecklist = field(default_factory=AsthmaChecklist)
    hyperthermia_checklist: HyperthermiaChecklist = field(default_factory=HyperthermiaChecklist)
    opioid_overdose_checklist: OpioidOverdoseChecklist = field(default_factory=OpioidOverdoseChecklist)
    drowning_checklist: DrowningChecklist = field(default_factory=DrowningChecklist)
    electrocution_checklist: ElectrocutionChecklist = field(default_factory=ElectrocutionChecklist)
    lvad_failure_checklist: LVADFailureChecklist = field(default_factory=LVADFailureChecklist)

    @property
    def is_terminal(self) -> bool:
        return self.phase in (ArrestPhase.ROSC, ArrestPhase.DECEASED)

def create_arrest_session(now: int) -> ArrestSession:
    return ArrestSession(id=new_id(), start_time=now)

# --- 4. DERIVED VIEW STATE ---

@dataclass(frozen=True)
class TimerState:
    """
    Recomputed from session timestamps on every tick. Never a source of truth.
    `last_tick` only exists so that active CPR time can be accumulated.
    """
    cycle_remaining: int
    medication_interval_remaining: int
    total_elapsed: int = 0
    total_active_time: int = 0
    pre_alert_due: bool = False
    check_due: bool = False
    last_tick: Optional[int] = None

@dataclass(frozen=True)
class Banner:
    message_key: str
    priority: BannerPriority
    submessage_key: Optional[str] = None
    params: Dict[str, ParamValue] = field(default_factory=dict)

@dataclass(frozen=True)
class EligibilityFlags:
    """Button-enablement flags for the UI. Also the strict-mode guards."""
    can_give_epinephrine: bool = False
    can_give_amiodarone: bool = False
    can_give_lidocaine: bool = False
    epinephrine_due: bool = False
    antiarrhythmic_due: bool = False
    rhythm_check_due: bool = False

@dataclass(frozen=True)
class DoseResult:
    """
    `value` is None when the dose cannot be computed (no weight);
    `display` then carries the per-kg formula.
    """
    value: Optional[float]
    display: str
    unit: str

# --- 5. BRADYCARDIA / TACHYCARDIA SESSION ---

@dataclass(frozen=True)
class SinusTachyCriteria:
    p_waves_present: bool = False
    variable_rr: bool = False
    appropriate_rate: bool = False

@dataclass(frozen=True)
class SVTCriteria:
    p_waves_abnormal: bool = False
    fixed_rr: bool = False
    inappropriate_rate: bool = False
    abrupt_rate_change: bool = False

@dataclass(frozen=True)
class DecisionContext:
    patient_group: PathwayMode = PathwayMode.ADULT
    weight_kg: Optional[float] = None
    branch: Optional[Branch] = None
    stability: Optional[Stability] = None
    qrs_width: Optional[QRSWidth] = None
    rhythm_regularity: Optional[Regularity] = None
    monomorphic: Optional[bool] = None
    sinus_vs_svt: Optional[SinusVsSVT] = None
    cardioversion_rhythm: Optional[CardioversionRhythm] = None
    sinus_tachy_criteria: Optional[SinusTachyCriteria] = None
    svt_criteria: Optional[SVTCriteria] = None

@dataclass(frozen=True)
class BradyTachyIntervention:
    id: str
    timestamp: int
    type: BradyTachyInterventionType
    details: str = ""
    value: Optional[Union[int, float, str]] = None
    dose_step: Optional[int] = None
    calculated_dose: Optional[str] = None
    decision_context: Optional[DecisionContext] = None   # Snapshot at the time of the action
    translation_key: Optional[str] = None
    translation_params: Dict[str, ParamValue] = field(default_factory=dict)

@dataclass(frozen=True)
class BradyTachySession:
    id: str
    start_time: int
    end_time: Optional[int] = None
    phase: BradyTachyPhase = BradyTachyPhase.PATIENT_SELECTION
    decision_context: DecisionContext = field(default_factory=DecisionContext)
    interventions: Tuple[BradyTachyIntervention, ...] = ()
    outcome: Optional[BradyTachyOutcome] = None
    switched_to_arrest_time: Optional[int] = None

def create_bradytachy_session(now: int) -> BradyTachySession:
    return BradyTachySession(id=new_id(), start_time=now)
