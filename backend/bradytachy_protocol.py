"""
ResusFlow: Bradycardia / Tachycardia (with pulse) Protocol
==========================================================
Secondary decision tree. No timers: each decision or treatment appends an
entry that carries a snapshot of the decision context at that moment.

The only way out into the arrest algorithm is `transfer_to_arrest`, which
freezes this session and hands its log to the primary machine once.
"""

import logging
from dataclasses import replace
from typing import Callable, Dict, List, Optional, Union

from constants import (
    Branch,
    BradyTachyInterventionType,
    BradyTachyOutcome,
    BradyTachyPhase,
    CardioversionRhythm,
    PathwayMode,
    QRSWidth,
    Regularity,
    SinusVsSVT,
    Stability,
)
from models import (
    BradyTachyIntervention,
    BradyTachySession,
    DoseResult,
    ProtocolError,
    SinusTachyCriteria,
    SVTCriteria,
    create_bradytachy_session,
    new_id,
)
from timer_engine import wall_clock_ms
import dosing
import units

logger = logging.getLogger("resusflow.bradytachy")

P = BradyTachyPhase
_ENDABLE = {P.SESSION_ENDED}

LEGAL_TRANSITIONS = {
    P.PATIENT_SELECTION: {P.BRANCH_SELECTION} | _ENDABLE,
    P.BRANCH_SELECTION: {P.PATIENT_SELECTION, P.BRADY_ASSESSMENT, P.TACHY_ASSESSMENT} | _ENDABLE,
    P.BRADY_ASSESSMENT: {P.BRANCH_SELECTION, P.BRADY_TREATMENT} | _ENDABLE,
    P.BRADY_TREATMENT: {P.BRADY_ASSESSMENT} | _ENDABLE,
    P.TACHY_ASSESSMENT: {P.BRANCH_SELECTION, P.TACHY_SINUS_EVALUATION, P.TACHY_TREATMENT} | _ENDABLE,
    P.TACHY_SINUS_EVALUATION: {P.TACHY_ASSESSMENT, P.TACHY_COMPROMISE_ASSESSMENT, P.TACHY_TREATMENT} | _ENDABLE,
    P.TACHY_COMPROMISE_ASSESSMENT: {P.TACHY_SINUS_EVALUATION, P.TACHY_TREATMENT} | _ENDABLE,
    P.TACHY_TREATMENT: {P.TACHY_ASSESSMENT} | _ENDABLE,
    P.SESSION_ENDED: set(),
}

PEDIATRIC_ONLY = {P.TACHY_SINUS_EVALUATION, P.TACHY_COMPROMISE_ASSESSMENT}

CARDIOVERSION_RHYTHM_KEYS = {
    CardioversionRhythm.AFIB: "bradyTachy.rhythmAtrialFib",
    CardioversionRhythm.AFLUTTER: "bradyTachy.rhythmAtrialFlutter",
    CardioversionRhythm.NARROW: "bradyTachy.rhythmNarrowComplex",
    CardioversionRhythm.MONOMORPHIC_VT: "bradyTachy.rhythmMonomorphicVT",
    CardioversionRhythm.POLYMORPHIC_VT: "bradyTachy.rhythmPolymorphicVT",
}

T = BradyTachyInterventionType

class BradyTachyProtocol:

    def __init__(self, clock: Optional[Callable[[], int]] = None,
                 initial_mode: Optional[PathwayMode] = None,
                 initial_weight: Optional[float] = None,
                 session: Optional[BradyTachySession] = None):
        self._clock = clock or wall_clock_ms
        self._listeners: List[Callable[[], None]] = []
        self.session = session or self._fresh(initial_mode, initial_weight)

    def _fresh(self, mode: Optional[PathwayMode], weight: Optional[float]) -> BradyTachySession:
        s = create_bradytachy_session(self._clock())
        if mode is None:
            return s
        # Launched from an arrest screen that already knows the patient
        mode = PathwayMode(mode)
        weight = units.weight_for_dosing(weight) if mode == PathwayMode.PEDIATRIC else None
        return replace(s, phase=P.BRANCH_SELECTION,
                       decision_context=replace(s.decision_context, patient_group=mode, weight_kg=weight))

    # --- plumbing ---

    def subscribe(self, listener: Callable[[], None]):
        self._listeners.append(listener)

    def _commit(self, session: BradyTachySession):
        self.session = session
        for listener in self._listeners:
            listener()

    def now(self) -> int:
        return self._clock()

    @property
    def is_ended(self) -> bool:
        return self.session.phase == P.SESSION_ENDED

    def _log(self, session: BradyTachySession, type: BradyTachyInterventionType, details: str,
             value=None, dose_step: Optional[int] = None, calculated_dose: Optional[str] = None,
             key: Optional[str] = None, params: Optional[Dict] = None) -> BradyTachySession:
        entry = BradyTachyIntervention(
            id=new_id(),
            timestamp=self._clock(),
            type=type,
            details=details,
            value=value,
            dose_step=dose_step,
            calculated_dose=calculated_dose,
            decision_context=session.decision_context,
            translation_key=key,
            translation_params=dict(params or {}),
        )
        return replace(session, interventions=session.interventions + (entry,))

    def _moved(self, session: BradyTachySession, target: BradyTachyPhase) -> BradyTachySession:
        source = session.phase
        if source == target:
            return session
        if target not in LEGAL_TRANSITIONS[source]:
            logger.warning(f"Ignoring illegal brady/tachy transition {source.value} -> {target.value}")
            return session
        if target in PEDIATRIC_ONLY and session.decision_context.patient_group != PathwayMode.PEDIATRIC:
            logger.warning(f"{target.value} is a pediatric-only phase, staying in {source.value}")
            return session
        logger.info(f"Brady/tachy phase {source.value} -> {target.value}")
        return replace(session, phase=target)

    def _context(self, **changes) -> BradyTachySession:
        s = self.session
        return replace(s, decision_context=replace(s.decision_context, **changes))

    def _dose_count(self, type: BradyTachyInterventionType) -> int:
        return sum(1 for e in self.session.interventions if e.type == type)

    @property
    def _pediatric(self) -> bool:
        return self.session.decision_context.patient_group == PathwayMode.PEDIATRIC

    # --- assessment & decisions ---

    def set_patient_group(self, group: PathwayMode):
        s = self._context(patient_group=PathwayMode(group))
        if s.phase == P.PATIENT_SELECTION:
            s = self._moved(s, P.BRANCH_SELECTION)
        self._commit(s)

    def set_patient_weight(self, weight: Optional[Union[str, float]]):
        if weight is not None:
            weight = units.weight_from_input(weight)
        s = self._context(weight_kg=weight)
        if weight:
            s = self._log(s, T.NOTE, f"Weight set: {weight} kg",
                          key="interventions.weightSet", params={'weight': weight})
        self._commit(s)

    def set_branch(self, branch: Branch):
        branch = Branch(branch)
        target = P.BRADY_ASSESSMENT if branch == Branch.BRADYCARDIA else P.TACHY_ASSESSMENT
        s = self._moved(self._context(branch=branch), target)
        key = ("bradyTachy.branchSelectedBradycardia" if branch == Branch.BRADYCARDIA
               else "bradyTachy.branchSelectedTachycardia")
        self._commit(self._log(s, T.DECISION, f"Branch selected: {branch.value}", key=key))

    def set_stability(self, stability: Stability):
        stability = Stability(stability)
        branch = self.session.decision_context.branch
        if branch is None:
            raise ProtocolError("Select bradycardia or tachycardia before assessing stability")
        target = P.BRADY_TREATMENT if branch == Branch.BRADYCARDIA else P.TACHY_TREATMENT
        s = self._moved(self._context(stability=stability), target)
        key = "bradyTachy.stabilityUnstable" if stability == Stability.UNSTABLE else "bradyTachy.stabilityStable"
        self._commit(self._log(s, T.ASSESSMENT, f"Patient {stability.value}", key=key))

    def set_qrs_width(self, width: QRSWidth):
        width = QRSWidth(width)
        key = "bradyTachy.qrsWide" if width == QRSWidth.WIDE else "bradyTachy.qrsNarrow"
        s = self._context(qrs_width=width)
        self._commit(self._log(s, T.ASSESSMENT, f"QRS {width.value}", value=width.value, key=key))

    def set_rhythm_regularity(self, regularity: Regularity):
        regularity = Regularity(regularity)
        key = "bradyTachy.rhythmRegular" if regularity == Regularity.REGULAR else "bradyTachy.rhythmIrregular"
        s = self._context(rhythm_regularity=regularity)
        self._commit(self._log(s, T.ASSESSMENT, f"Rhythm {regularity.value}", value=regularity.value, key=key))

    def set_monomorphic(self, monomorphic: bool):
        key = "bradyTachy.monomorphicYes" if monomorphic else "bradyTachy.monomorphicNo"
        s = self._context(monomorphic=bool(monomorphic))
        self._commit(self._log(s, T.ASSESSMENT, f"Monomorphic: {bool(monomorphic)}", key=key))

    def set_sinus_vs_svt(self, choice: SinusVsSVT,
                         criteria: Optional[Union[SinusTachyCriteria, SVTCriteria, Dict[str, bool]]] = None):
        """Probable sinus only records the choice; probable SVT moves to treatment."""
        choice = SinusVsSVT(choice)
        changes = {'sinus_vs_svt': choice}
        if choice == SinusVsSVT.PROBABLE_SINUS:
            if criteria is not None:
                changes['sinus_tachy_criteria'] = (criteria if isinstance(criteria, SinusTachyCriteria)
                                                   else SinusTachyCriteria(**criteria))
            key = "bradyTachy.pedsSinusTachyIdentified"
        else:
            if criteria is not None:
                changes['svt_criteria'] = (criteria if isinstance(criteria, SVTCriteria)
                                           else SVTCriteria(**criteria))
            key = "bradyTachy.pedsSVTIdentified"
        s = self._context(**changes)
        if choice == SinusVsSVT.PROBABLE_SVT:
            s = self._moved(s, P.TACHY_TREATMENT)
        self._commit(self._log(s, T.DECISION, f"Pediatric tachycardia: {choice.value}",
                               value=choice.value, key=key))

    def select_pediatric_sinus_tachycardia(self):
        s = self._context(sinus_vs_svt=SinusVsSVT.PROBABLE_SINUS)
        self._commit(self._log(s, T.DECISION, "Probable sinus tachycardia: treat the cause",
                               key="bradyTachy.pedsSinusTachyIdentified"))

    def advance_to_compromise_assessment(self):
        s = self._moved(self.session, P.TACHY_COMPROMISE_ASSESSMENT)
        self._commit(self._log(s, T.DECISION, "Concerning rhythm, assessing cardiopulmonary compromise",
                               key="bradyTachy.concerningRhythmProceedingToCompromise"))

    def set_cardioversion_rhythm_type(self, rhythm: CardioversionRhythm):
        rhythm = CardioversionRhythm(rhythm)
        s = self._context(cardioversion_rhythm=rhythm)
        self._commit(self._log(s, T.DECISION, f"Rhythm type selected: {rhythm.value}", value=rhythm.value,
                               key="bradyTachy.rhythmTypeSelected",
                               params={'rhythm': CARDIOVERSION_RHYTHM_KEYS[rhythm]}))

    # --- treatments ---

    def _treat(self, type: BradyTachyInterventionType, key: str, dose: Optional[DoseResult],
               override: Optional[str] = None, dose_step: Optional[int] = None):
        display = override if override is not None else (dose.display if dose is not None else None)
        details = f"{type.value.replace('_', ' ').capitalize()}" + (f" {display}" if display else "")
        s = self._log(self.session, type, details, value=display, dose_step=dose_step,
                      calculated_dose=display, key=key)
        self._commit(s)

    def give_atropine(self, dose: Optional[str] = None, dose_number: Optional[int] = None):
        n = dose_number or self._dose_count(T.ATROPINE) + 1
        w = self.session.decision_context.weight_kg
        calc = dosing.peds_brady_atropine(w) if self._pediatric else dosing.adult_brady_atropine(n)
        self._treat(T.ATROPINE, "bradyTachy.atropineGiven", calc, dose, n)

    def give_adenosine(self, dose: Optional[str] = None, dose_number: Optional[int] = None):
        n = dose_number or min(self._dose_count(T.ADENOSINE) + 1, 2)
        if n not in (1, 2):
            raise ProtocolError(f"Adenosine dose number must be 1 or 2, got {n}")
        w = self.session.decision_context.weight_kg
        calc = dosing.peds_tachy_adenosine(w, n) if self._pediatric else dosing.adult_tachy_adenosine(n)
        key = "bradyTachy.adenosineDose1Given" if n == 1 else "bradyTachy.adenosineDose2Given"
        self._treat(T.ADENOSINE, key, calc, dose, n)

    def give_cardioversion(self, energy: Optional[str] = None):
        attempt = self._dose_count(T.CARDIOVERSION) + 1
        ctx = self.session.decision_context
        calc = (dosing.peds_tachy_cardioversion(ctx.weight_kg, attempt) if self._pediatric
                else dosing.adult_tachy_cardioversion(ctx.cardioversion_rhythm))
        self._treat(T.CARDIOVERSION, "bradyTachy.cardioversionGiven", calc, energy, attempt)

    def give_dopamine(self, dose: Optional[str] = None):
        self._treat(T.DOPAMINE, "bradyTachy.dopamineGiven", dosing.adult_brady_dopamine(), dose)

    def give_epinephrine_infusion(self, dose: Optional[str] = None):
        calc = (dosing.peds_brady_epinephrine(self.session.decision_context.weight_kg) if self._pediatric
                else dosing.adult_brady_epinephrine_infusion())
        self._treat(T.EPI_INFUSION, "bradyTachy.epiInfusionGiven", calc, dose)

    def give_beta_blocker(self):
        self._treat(T.BETA_BLOCKER, "bradyTachy.betaBlockerGiven", None)

    def give_calcium_blocker(self):
        self._treat(T.CALCIUM_BLOCKER, "bradyTachy.calciumBlockerGiven", None)

    def give_procainamide(self, dose: Optional[str] = None):
        self._treat(T.PROCAINAMIDE, "bradyTachy.procainamideGiven", dosing.adult_tachy_procainamide(), dose)

    def give_amiodarone(self, dose: Optional[str] = None):
        calc = (dosing.calculate_amiodarone_dose(self.session.decision_context.weight_kg, 0) if self._pediatric
                else dosing.adult_tachy_amiodarone())
        self._treat(T.AMIODARONE, "bradyTachy.amiodaroneBTGiven", calc, dose)

    def perform_vagal_maneuver(self):
        self._treat(T.VAGAL_MANEUVER, "bradyTachy.vagalManeuverGiven", None)

    def give_diltiazem(self, dose: Optional[str] = None):
        self._treat(T.DILTIAZEM, "bradyTachy.diltiazemGiven", dosing.adult_tachy_diltiazem(), dose)

    def give_verapamil(self, dose: Optional[str] = None):
        self._treat(T.VERAPAMIL, "bradyTachy.verapamilGiven", dosing.adult_tachy_verapamil(), dose)

    def give_metoprolol(self, dose: Optional[str] = None):
        self._treat(T.METOPROLOL, "bradyTachy.metoprololGiven", dosing.adult_tachy_metoprolol(), dose)

    def give_esmolol(self, dose: Optional[str] = None):
        self._treat(T.ESMOLOL, "bradyTachy.esmololGiven", dosing.adult_tachy_esmolol(), dose)

    def add_note(self, note: str):
        if not note or not note.strip():
            raise ProtocolError("Note text is empty")
        self._commit(self._log(self.session, T.NOTE, note.strip(),
                               key="interventions.noteAdded", params={'note': note.strip()}))

    # --- lifecycle ---

    def set_phase(self, phase: BradyTachyPhase):
        self._commit(self._moved(self.session, BradyTachyPhase(phase)))

    def switch_to_arrest(self) -> BradyTachySession:
        """
        Freezes the session for handoff. No history record is written here:
        the merged arrest session is saved when the arrest ends.
        """
        if self.is_ended:
            raise ProtocolError("Brady/tachy session has already ended")
        now = self._clock()
        s = replace(self.session, outcome=BradyTachyOutcome.SWITCHED_TO_ARREST,
                    switched_to_arrest_time=now, end_time=now, phase=P.SESSION_ENDED)
        s = self._log(s, T.SWITCH_TO_ARREST, "Switched to cardiac arrest",
                      key="bradyTachy.switchedToArrest")
        logger.info(f"Brady/tachy session {s.id} switched to cardiac arrest")
        self._commit(s)
        return s

    def end_session(self, outcome: BradyTachyOutcome):
        outcome = BradyTachyOutcome(outcome)
        if outcome == BradyTachyOutcome.SWITCHED_TO_ARREST:
            raise ProtocolError("Use switch_to_arrest to hand off to the arrest algorithm")
        if self.is_ended:
            raise ProtocolError("Brady/tachy session has already ended")
        key = "bradyTachy.outcomeResolved" if outcome == BradyTachyOutcome.RESOLVED else "bradyTachy.outcomeTransferred"
        s = replace(self.session, outcome=outcome, end_time=self._clock(), phase=P.SESSION_ENDED)
        s = self._log(s, T.NOTE, f"Session ended: {outcome.value}",
                      key="bradyTachy.sessionEnded", params={'outcome': key})
        logger.info(f"Brady/tachy session {s.id} ended ({outcome.value})")
        self._commit(s)

    def reset(self, initial_mode: Optional[PathwayMode] = None, initial_weight: Optional[float] = None):
        self._commit(self._fresh(initial_mode, initial_weight))

def transfer_to_arrest(bradytachy: BradyTachyProtocol, arrest, start_cpr: bool = True):
    """
    Handoff: freeze the brady/tachy session, open a fresh arrest session with the
    same patient, and import the finalized log anchored at the brady/tachy start.
    `arrest` is a CardiacArrestProtocol.
    """
    final = bradytachy.switch_to_arrest()
    ctx = final.decision_context

    arrest.reset()
    arrest.set_pathway_mode(ctx.patient_group)
    if ctx.weight_kg is not None:
        arrest.set_patient_weight(ctx.weight_kg)
    arrest.import_interventions(final.interventions, final.start_time)
    if start_cpr:
        arrest.start_cpr()
    return arrest.session
