from enum import Enum
from dataclasses import dataclass
VERSION = "1.0.0"

class Rhythm(Enum):
    SHOCKABLE = "vf_pvt"      # VF / pulseless VT
    ASYSTOLE = "asystole"
    PEA = "pea"

class ArrestPhase(Enum):
    PATHWAY_SELECTION = "pathway_selection"
    CPR_PENDING_RHYTHM = "cpr_pending_rhythm"
    SHOCKABLE = "shockable_pathway"
    NON_SHOCKABLE = "non_shockable_pathway"
    RHYTHM_CHECK = "rhythm_check"
    ROSC = "post_rosc"          # Terminal for the timed algorithm, post-care continues
    DECEASED = "code_ended"

class Outcome(Enum):
    ROSC = "rosc"
    DECEASED = "deceased"

class PathwayMode(Enum):
    ADULT = "adult"
    PEDIATRIC = "pediatric"

class CPRRatio(Enum):
    FIFTEEN_TWO = "15:2"   # 2-rescuer pediatric
    THIRTY_TWO = "30:2"

class AirwayStatus(Enum):
    BAG_MASK = "ambu"
    SUPRAGLOTTIC = "sga"
    TUBE = "ett"

class SessionOrigin(Enum):
    """Where the episode began. Drives the history `session_type` tag."""
    CARDIAC_ARREST = "cardiac-arrest"
    BRADYTACHY = "bradytachy"
    BRADYTACHY_ARREST = "bradytachy-arrest"

class BannerPriority(Enum):
    CRITICAL = "critical"
    WARNING = "warning"
    INFO = "info"
    SUCCESS = "success"

class InterventionType(Enum):
    # Arrest algorithm
    SHOCK = "shock"
    EPINEPHRINE = "epinephrine"
    AMIODARONE = "amiodarone"
    LIDOCAINE = "lidocaine"
    RHYTHM_CHANGE = "rhythm_change"
    AIRWAY = "airway"
    ETCO2 = "etco2"
    ROSC = "rosc"
    HS_TS_CHECK = "hs_ts_check"
    NOTE = "note"
    CPR_START = "cpr_start"
    # Imported from a brady/tachy handoff
    ATROPINE = "atropine"
    ADENOSINE = "adenosine"
    CARDIOVERSION = "cardioversion"
    DOPAMINE = "dopamine"
    EPI_INFUSION = "epi_infusion"
    BETA_BLOCKER = "beta_blocker"
    CALCIUM_BLOCKER = "calcium_blocker"
    PROCAINAMIDE = "procainamide"
    VAGAL_MANEUVER = "vagal_maneuver"
    DILTIAZEM = "diltiazem"
    VERAPAMIL = "verapamil"
    METOPROLOL = "metoprolol"
    ESMOLOL = "esmolol"
    ASSESSMENT = "assessment"
    DECISION = "decision"
    SWITCH_TO_ARREST = "switch_to_arrest"

# --- BRADYCARDIA / TACHYCARDIA (with pulse) ---

class BradyTachyPhase(Enum):
    PATIENT_SELECTION = "patient_selection"
    BRANCH_SELECTION = "branch_selection"
    BRADY_ASSESSMENT = "bradycardia_assessment"
    BRADY_TREATMENT = "bradycardia_treatment"
    TACHY_ASSESSMENT = "tachycardia_assessment"
    TACHY_SINUS_EVALUATION = "tachycardia_sinus_evaluation"          # Pediatric only
    TACHY_COMPROMISE_ASSESSMENT = "tachycardia_compromise_assessment"  # Pediatric only
    TACHY_TREATMENT = "tachycardia_treatment"
    SESSION_ENDED = "session_ended"

class Branch(Enum):
    BRADYCARDIA = "bradycardia"
    TACHYCARDIA = "tachycardia"

class Stability(Enum):
    STABLE = "stable"
    UNSTABLE = "unstable"

class QRSWidth(Enum):
    NARROW = "narrow"
    WIDE = "wide"

class Regularity(Enum):
    REGULAR = "regular"
    IRREGULAR = "irregular"

class SinusVsSVT(Enum):
    PROBABLE_SINUS = "probable_sinus"
    PROBABLE_SVT = "probable_svt"

class CardioversionRhythm(Enum):
    AFIB = "afib"
    AFLUTTER = "aflutter"
    NARROW = "narrow"
    MONOMORPHIC_VT = "monomorphic_vt"
    POLYMORPHIC_VT = "polymorphic_vt"

class BradyTachyOutcome(Enum):
    RESOLVED = "resolved"
    SWITCHED_TO_ARREST = "switched_to_arrest"
    TRANSFERRED = "transferred"

class BradyTachyInterventionType(Enum):
    ATROPINE = "atropine"
    ADENOSINE = "adenosine"
    CARDIOVERSION = "cardioversion"
    DOPAMINE = "dopamine"
    EPI_INFUSION = "epi_infusion"
    BETA_BLOCKER = "beta_blocker"
    CALCIUM_BLOCKER = "calcium_blocker"
    PROCAINAMIDE = "procainamide"
    AMIODARONE = "amiodarone"
    VAGAL_MANEUVER = "vagal_maneuver"
    DILTIAZEM = "diltiazem"
    VERAPAMIL = "verapamil"
    METOPROLOL = "metoprolol"
    ESMOLOL = "esmolol"
    SWITCH_TO_ARREST = "switch_to_arrest"
    NOTE = "note"
    ASSESSMENT = "assessment"
    DECISION = "decision"

# --- TIMING & DOSING CONSTANTS ---

class TIMING:
    SECOND_MS = 1000
    MINUTE_MS = 60 * 1000
    RHYTHM_CHECK_INTERVAL_MS = 2 * 60 * 1000
    MEDICATION_INTERVAL_MS = 4 * 60 * 1000     # Epinephrine, both ACLS and PALS
    PRE_ALERT_LEAD_MS = 15 * 1000              # "Charge the defibrillator"
    EMERGENCY_DELIVERY_MS = 5 * 60 * 1000      # Obstetric arrest
    TICK_INTERVAL_S = 0.1
    HISTORY_DEBOUNCE_S = 2.0
    SNAPSHOT_CLEAR_DELAY_S = 0.1
    SNAPSHOT_INTERVAL_MS = 5 * 1000            # Resumable snapshot while CPR runs

class PALS_DOSING:
    """Weight-based pediatric doses (per kg) and their caps."""
    EPINEPHRINE_MG_PER_KG = 0.01
    EPINEPHRINE_MAX_MG = 1.0
    AMIODARONE_MG_PER_KG = 5.0
    AMIODARONE_FIRST_MAX_MG = 300.0
    AMIODARONE_SUBSEQUENT_MAX_MG = 150.0
    LIDOCAINE_MG_PER_KG = 1.0
    FIRST_SHOCK_J_PER_KG = 2.0
    SECOND_SHOCK_J_PER_KG = 4.0
    MAX_SHOCK_J_PER_KG = 10.0
    MAX_SHOCK_J = 360.0

class ACLS_DOSING:
    """Fixed adult doses."""
    EPINEPHRINE_MG = 1.0
    AMIODARONE_FIRST_MG = 300.0
    AMIODARONE_SECOND_MG = 150.0
    LIDOCAINE_FIRST_MG = 100.0
    LIDOCAINE_MAINTENANCE_MG = 50.0
    DEFAULT_SHOCK_J = 200
    MAX_SHOCK_J = 360
    ENERGY_CHOICES_J = (120, 150, 200, 360)   # Biphasic device settings

class WEIGHT_LIMITS:
    MIN_KG = 0.5
    MAX_KG = 150.0
    UNUSUAL_PEDIATRIC_KG = 100.0

AMIODARONE_MAX_DOSES = 2
ANTIARRHYTHMIC_SHOCK_THRESHOLD = 3   # Opens after the third shock
SHOCKABLE_EPI_SHOCK_THRESHOLD = 2    # First epi after the second shock

@dataclass(frozen=True)
class ProtocolConfig:
    """
    Immutable per-session constants. All times in milliseconds, energies in joules.
    `strict` turns the eligibility flags into guards on the action handlers.
    """
    rhythm_check_interval_ms: int = TIMING.RHYTHM_CHECK_INTERVAL_MS
    medication_interval_ms: int = TIMING.MEDICATION_INTERVAL_MS
    pre_alert_lead_ms: int = TIMING.PRE_ALERT_LEAD_MS
    emergency_delivery_ms: int = TIMING.EMERGENCY_DELIVERY_MS
    max_energy_j: float = PALS_DOSING.MAX_SHOCK_J
    defibrillator_energy_j: int = ACLS_DOSING.DEFAULT_SHOCK_J
    tick_interval_s: float = TIMING.TICK_INTERVAL_S
    history_debounce_s: float = TIMING.HISTORY_DEBOUNCE_S
    snapshot_interval_ms: int = TIMING.SNAPSHOT_INTERVAL_MS
    strict: bool = False

    def __post_init__(self):
        for name in ('rhythm_check_interval_ms', 'medication_interval_ms', 'pre_alert_lead_ms',
                     'snapshot_interval_ms'):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be positive")
        if self.pre_alert_lead_ms >= self.rhythm_check_interval_ms:
            raise ValueError("Pre-alert lead must be shorter than the rhythm-check interval")
        if self.defibrillator_energy_j not in ACLS_DOSING.ENERGY_CHOICES_J:
            raise ValueError(
                f"Defibrillator energy must be one of {ACLS_DOSING.ENERGY_CHOICES_J}, "
                f"got {self.defibrillator_energy_j}"
            )
        if self.tick_interval_s <= 0:
            raise ValueError("tick_interval_s must be positive")

DEFAULT_CONFIG = ProtocolConfig()

# --- STORAGE KEYS ---

class STORAGE_KEYS:
    ACTIVE_SESSION = "acls-active-session"
    BRADYTACHY_SESSION = "acls-bradytachy-active-session"
    HISTORY_PREFIX = "acls-history:"
    HISTORY_INDEX = "acls-history-index"
    ENCRYPTION_KEY = "session-encryption-key"

SNAPSHOT_SCHEMA_VERSION = 1
DEFAULT_DATA_DIR = "~/.resusflow"
