"""
ResusFlow: Cardiac Arrest Protocol Engine
=========================================
The primary state machine. Every action:

1. advances the timer to `now` under the phase that was in force,
2. builds a new frozen session (counters, log, anchors, phase),
3. re-ticks under the new phase and notifies listeners (auto-save).

Default mode trusts the caller: counters and the log always update, while the
phase only moves along LEGAL_TRANSITIONS (an illegal edge is logged and
skipped). With `ProtocolConfig.strict` the same checks raise
IneligibleActionError instead.
"""

import logging
from dataclasses import replace
from typing import Callable, Dict, Iterable, List, Optional, Union

from constants import (
    DEFAULT_CONFIG,
    AirwayStatus,
    ArrestPhase,
    CPRRatio,
    InterventionType,
    Outcome,
    PathwayMode,
    ProtocolConfig,
    Rhythm,
    SessionOrigin,
)
from models import (
    SPECIAL_CIRCUMSTANCE_CHECKLISTS,
    ArrestSession,
    Banner,
    BradyTachyIntervention,
    EligibilityFlags,
    ProtocolError,
    TimerState,
    VitalReading,
    create_arrest_session,
    merge_checklist,
)
from safety import SafetySupervisor
from timer_engine import TimerEngine, wall_clock_ms
import dosing
import intervention_log
import units

logger = logging.getLogger("resusflow.arrest")

LEGAL_TRANSITIONS = {
    ArrestPhase.PATHWAY_SELECTION: {ArrestPhase.CPR_PENDING_RHYTHM},
    ArrestPhase.CPR_PENDING_RHYTHM: {ArrestPhase.SHOCKABLE, ArrestPhase.NON_SHOCKABLE,
                                     ArrestPhase.ROSC, ArrestPhase.DECEASED},
    ArrestPhase.SHOCKABLE: {ArrestPhase.RHYTHM_CHECK, ArrestPhase.ROSC, ArrestPhase.DECEASED},
    ArrestPhase.NON_SHOCKABLE: {ArrestPhase.RHYTHM_CHECK, ArrestPhase.ROSC, ArrestPhase.DECEASED},
    ArrestPhase.RHYTHM_CHECK: {ArrestPhase.SHOCKABLE, ArrestPhase.NON_SHOCKABLE,
                               ArrestPhase.ROSC, ArrestPhase.DECEASED},
    ArrestPhase.ROSC: set(),
    ArrestPhase.DECEASED: set(),
}

RHYTHM_NAMES = {
    Rhythm.SHOCKABLE: "VF/pVT",
    Rhythm.ASYSTOLE: "Asystole",
    Rhythm.PEA: "PEA",
}

AIRWAY_KEYS = {
    AirwayStatus.BAG_MASK: "interventions.airwayAmbu",
    AirwayStatus.SUPRAGLOTTIC: "interventions.airwaySga",
    AirwayStatus.TUBE: "interventions.airwayEtt",
}

SPECIAL_CIRCUMSTANCE_KEYS = {
    'anaphylaxis': "interventions.anaphylaxisActivated",
    'asthma': "interventions.asthmaActivated",
    'hyperthermia': "interventions.hyperthermiaActivated",
    'opioid_overdose': "interventions.opioidOverdoseActivated",
    'drowning': "interventions.drowningActivated",
    'electrocution': "interventions.electrocutionActivated",
    'lvad_failure': "interventions.lvadFailureActivated",
}

PREGNANCY_ACTIVATED_KEY = "interventions.pregnancyActivated"

def is_legal(source: ArrestPhase, target: ArrestPhase) -> bool:
    return target in LEGAL_TRANSITIONS[source]

def _dose_param(dose):
    return dose.value if dose.value is not None else dose.display

def parse_rhythm(value) -> Optional[Rhythm]:
    """Accepts enum values and free-text legacy labels ("VF/pVT", "Asystole")."""
    if isinstance(value, Rhythm):
        return value
    if not isinstance(value, str):
        return None
    try:
        return Rhythm(value)
    except ValueError:
        pass
    normalized = value.lower()
    if 'vf' in normalized or 'pvt' in normalized:
        return Rhythm.SHOCKABLE
    if 'pea' in normalized:
        return Rhythm.PEA
    if 'asyst' in normalized:
        return Rhythm.ASYSTOLE
    return None

def infer_initial_rhythm(session: ArrestSession) -> Optional[Rhythm]:
    """
    Backfill for sessions saved before `initial_rhythm` existed: first rhythm
    identification in the log, then any shock, then the current rhythm.
    """
    if session.initial_rhythm is not None:
        return session.initial_rhythm

    identified = intervention_log.first_of(session.interventions, InterventionType.RHYTHM_CHANGE)
    if identified is not None:
        inferred = parse_rhythm(identified.value) or parse_rhythm(identified.translation_params.get('rhythm'))
        if inferred is not None:
            return inferred

    if session.shock_count > 0 or any(e.type == InterventionType.SHOCK for e in session.interventions):
        return Rhythm.SHOCKABLE

    return parse_rhythm(session.current_rhythm)

class CardiacArrestProtocol:

    def __init__(self, config: ProtocolConfig = DEFAULT_CONFIG,
                 clock: Optional[Callable[[], int]] = None,
                 session: Optional[ArrestSession] = None):
        self.config = config
        self._clock = clock or wall_clock_ms
        now = self._clock()
        self.session = session or create_arrest_session(now)
        self.timer = TimerEngine.initial(config, now)
        self._listeners: List[Callable[[], None]] = []
        self._tick_listeners: List[Callable[[], None]] = []

    # --- plumbing ---

    def subscribe(self, listener: Callable[[], None]):
        self._listeners.append(listener)

    def subscribe_tick(self, listener: Callable[[], None]):
        """Called after every timer recomputation, including scheduler ticks with no action."""
        self._tick_listeners.append(listener)

    def _notify(self):
        for listener in self._listeners:
            listener()

    def now(self) -> int:
        return self._clock()

    def _advance(self) -> int:
        now = self._clock()
        self.tick(now)
        return now

    def tick(self, now: Optional[int] = None) -> TimerState:
        now = self._clock() if now is None else now
        self.timer = TimerEngine.tick(self.session, now, self.timer, self.config)
        for listener in self._tick_listeners:
            listener()
        return self.timer

    def _commit(self, session: ArrestSession, now: int):
        self.session = session
        self.tick(now)
        self._notify()

    def _log(self, session: ArrestSession, now: int, type: InterventionType, details: str,
             value=None, key: Optional[str] = None, params: Optional[Dict] = None) -> ArrestSession:
        entry = intervention_log.make_intervention(now, type, details, value, key, params)
        s = replace(session, interventions=intervention_log.append(session.interventions, entry))
        # Acting on the patient while the delivery banner shows counts as acknowledging it
        if key != PREGNANCY_ACTIVATED_KEY and SafetySupervisor.emergency_delivery_due(s, self.config, now):
            logger.info("Emergency delivery banner acknowledged by intervention")
            s = replace(s, emergency_delivery_dismissed=True)
        return s

    def _can_move(self, target: ArrestPhase, action: str) -> bool:
        source = self.session.phase
        if is_legal(source, target):
            return True
        if self.config.strict:
            SafetySupervisor.require(False, action, self.session)
        logger.warning(f"Ignoring illegal transition {source.value} -> {target.value} ({action})")
        return False

    def _guard(self, allowed: bool, action: str):
        if self.config.strict:
            SafetySupervisor.require(allowed, action, self.session)
        elif not allowed:
            logger.warning(f"'{action}' applied outside its eligibility window (phase={self.session.phase.value})")

    def _enter(self, session: ArrestSession, target: ArrestPhase) -> ArrestSession:
        logger.info(f"Arrest phase {session.phase.value} -> {target.value}")
        return replace(session, phase=target)

    # --- derived view ---

    def eligibility(self, now: Optional[int] = None) -> EligibilityFlags:
        now = self._clock() if now is None else now
        return SafetySupervisor.check_eligibility(self.session, self.timer, self.config, now)

    def banner(self, now: Optional[int] = None) -> Banner:
        now = self._clock() if now is None else now
        return SafetySupervisor.derive_banner(self.session, self.timer, self.config, now)

    def next_shock_energy(self, shock_number: Optional[int] = None):
        s = self.session
        n = s.shock_count if shock_number is None else shock_number
        return dosing.shock_energy(s.pathway_mode, s.patient_weight, n, self.config.defibrillator_energy_j)

    # --- algorithm actions ---

    def start_cpr(self):
        now = self._advance()
        s = self.session
        if self._can_move(ArrestPhase.CPR_PENDING_RHYTHM, 'start_cpr'):
            s = replace(self._enter(s, ArrestPhase.CPR_PENDING_RHYTHM), start_time=now)
        s = self._log(s, now, InterventionType.CPR_START, "CPR initiated",
                      key="interventions.cprInitiated")
        self._commit(s, now)

    def select_rhythm(self, rhythm: Rhythm):
        """Rhythm identified during CPR. VF/pVT delivers the first shock in the same step."""
        rhythm = Rhythm(rhythm)
        now = self._advance()
        shockable = rhythm == Rhythm.SHOCKABLE
        target = ArrestPhase.SHOCKABLE if shockable else ArrestPhase.NON_SHOCKABLE
        s = self.session
        name = RHYTHM_NAMES[rhythm]

        if self._can_move(target, 'select_rhythm'):
            s = replace(
                self._enter(s, target),
                current_rhythm=rhythm,
                initial_rhythm=s.initial_rhythm or rhythm,
                cpr_cycle_start_time=now,
            )
        s = self._log(s, now, InterventionType.RHYTHM_CHANGE, f"Rhythm identified: {name}",
                      value=rhythm.value, key="interventions.rhythmIdentified", params={'rhythm': name})

        if shockable:
            s = self._deliver_shock(s, now, None)
        self._commit(s, now)

    def _deliver_shock(self, s: ArrestSession, now: int, energy: Optional[float]) -> ArrestSession:
        number = s.shock_count + 1
        if energy is None:
            dose = dosing.shock_energy(s.pathway_mode, s.patient_weight, s.shock_count,
                                       self.config.defibrillator_energy_j)
            energy = _dose_param(dose)
        elif isinstance(energy, (int, float)) and not (0 < energy <= self.config.max_energy_j):
            raise ProtocolError(f"Shock energy must be between 0 and {self.config.max_energy_j} J, got {energy}")
        next_dose = dosing.shock_energy(s.pathway_mode, s.patient_weight, number,
                                        self.config.defibrillator_energy_j)
        s = replace(s, shock_count=number, current_energy=next_dose.value or 0)
        return self._log(s, now, InterventionType.SHOCK, f"Shock #{number} delivered ({energy})",
                         value=energy, key="interventions.shockDelivered",
                         params={'number': number, 'energy': energy})

    def start_rhythm_check(self):
        now = self._advance()
        s = self.session
        if self._can_move(ArrestPhase.RHYTHM_CHECK, 'start_rhythm_check'):
            s = self._enter(s, ArrestPhase.RHYTHM_CHECK)
        s = self._log(s, now, InterventionType.NOTE, "Rhythm check: CPR paused",
                      key="interventions.rhythmCheckPaused")
        self._commit(s, now)

    def complete_check_with_shock(self, energy: Optional[float] = None):
        now = self._advance()
        s = self.session
        if self._can_move(ArrestPhase.SHOCKABLE, 'complete_check_with_shock'):
            s = replace(self._enter(s, ArrestPhase.SHOCKABLE),
                        current_rhythm=Rhythm.SHOCKABLE, cpr_cycle_start_time=now)
        s = self._deliver_shock(s, now, energy)
        self._commit(s, now)

    def complete_check_no_shock(self, rhythm: Rhythm):
        rhythm = Rhythm(rhythm)
        if rhythm == Rhythm.SHOCKABLE:
            raise ProtocolError("A shockable rhythm must be resolved with a shock")
        now = self._advance()
        s = self.session
        name = RHYTHM_NAMES[rhythm]
        if self._can_move(ArrestPhase.NON_SHOCKABLE, 'complete_check_no_shock'):
            s = replace(self._enter(s, ArrestPhase.NON_SHOCKABLE),
                        current_rhythm=rhythm, cpr_cycle_start_time=now)
        s = self._log(s, now, InterventionType.RHYTHM_CHANGE, f"No shock, resume CPR ({name})",
                      value=rhythm.value, key="interventions.noShockResume", params={'rhythm': name})
        self._commit(s, now)

    def complete_check_resume_cpr(self):
        """Same rhythm, no shock: restart the cycle on the current pathway."""
        now = self._advance()
        s = self.session
        target = ArrestPhase.SHOCKABLE if s.current_rhythm == Rhythm.SHOCKABLE else ArrestPhase.NON_SHOCKABLE
        if self._can_move(target, 'complete_check_resume_cpr'):
            s = replace(self._enter(s, target), cpr_cycle_start_time=now)
        s = self._log(s, now, InterventionType.CPR_START, "CPR resumed, same rhythm",
                      key="interventions.cprResumedSame")
        self._commit(s, now)

    def give_epinephrine(self):
        now = self._advance()
        s = self.session
        self._guard(SafetySupervisor.can_give_epinephrine(s), 'give_epinephrine')
        dose = dosing.epinephrine_dose(s.pathway_mode, s.patient_weight, s.epinephrine_count)
        s = replace(s, epinephrine_count=s.epinephrine_count + 1, last_epinephrine_time=now)
        s = self._log(s, now, InterventionType.EPINEPHRINE, f"Epinephrine {dose.display}",
                      value=dose.display, key="interventions.epinephrineGiven", params={'dose': dose.display})
        self._commit(s, now)

    def give_amiodarone(self):
        now = self._advance()
        s = self.session
        self._guard(SafetySupervisor.can_give_amiodarone(s), 'give_amiodarone')
        dose = dosing.amiodarone_dose(s.pathway_mode, s.patient_weight, s.amiodarone_count)
        s = replace(s, amiodarone_count=s.amiodarone_count + 1, last_amiodarone_time=now)
        s = self._log(s, now, InterventionType.AMIODARONE, f"Amiodarone {dose.display}",
                      value=dose.display, key="interventions.amiodaroneGiven", params={'dose': dose.display})
        self._commit(s, now)

    def give_lidocaine(self):
        now = self._advance()
        s = self.session
        self._guard(SafetySupervisor.can_give_lidocaine(s), 'give_lidocaine')
        dose = dosing.lidocaine_dose(s.pathway_mode, s.patient_weight, s.lidocaine_count)
        s = replace(s, lidocaine_count=s.lidocaine_count + 1)
        s = self._log(s, now, InterventionType.LIDOCAINE, f"Lidocaine {dose.display}",
                      value=dose.display, key="interventions.lidocaineGiven", params={'dose': dose.display})
        self._commit(s, now)

    def achieve_rosc(self):
        if self.session.is_terminal:
            return
        now = self._advance()
        if not self._can_move(ArrestPhase.ROSC, 'achieve_rosc'):
            return
        s = replace(self._enter(self.session, ArrestPhase.ROSC),
                    outcome=Outcome.ROSC, rosc_time=now, end_time=now)
        s = self._log(s, now, InterventionType.ROSC, "ROSC achieved", key="interventions.roscAchieved")
        self._commit(s, now)

    def terminate(self):
        if self.session.is_terminal:
            return
        now = self._advance()
        if not self._can_move(ArrestPhase.DECEASED, 'terminate'):
            return
        s = replace(self._enter(self.session, ArrestPhase.DECEASED),
                    outcome=Outcome.DECEASED, end_time=now)
        s = self._log(s, now, InterventionType.NOTE, "Code terminated", key="interventions.codeTerminated")
        self._commit(s, now)

    def end_code(self, outcome: Outcome):
        """Closes the code with an explicit outcome and a closing note."""
        outcome = Outcome(outcome)
        if outcome == Outcome.ROSC:
            self.achieve_rosc()
        else:
            self.terminate()
        if self.session.outcome != outcome:
            current = self.session.outcome.value if self.session.outcome else "none"
            logger.warning(f"Code not ended as {outcome.value}: session outcome is {current}")
            return
        now = self._advance()
        s = self._log(self.session, now, InterventionType.NOTE, f"Code ended: {outcome.value}",
                      key="interventions.codeEnded", params={'outcome': outcome.value})
        self._commit(s, now)

    # --- patient context & documentation ---

    def set_airway(self, status: AirwayStatus):
        status = AirwayStatus(status)
        now = self._advance()
        s = replace(self.session, airway_status=status)
        s = self._log(s, now, InterventionType.AIRWAY, f"Airway: {status.value}", key=AIRWAY_KEYS[status])
        self._commit(s, now)

    def record_etco2(self, value: Union[str, float], unit: units.Etco2Unit = units.Etco2Unit.MMHG):
        """Accepts a number or the text typed at the bedside (parsed strictly)."""
        unit = units.Etco2Unit(unit)
        if isinstance(value, str):
            canonical = units.parse_etco2(value, unit)
            if canonical is None:
                raise ProtocolError(f"Unreadable ETCO2 value: {value!r}")
        elif value is None or not value > 0:
            raise ProtocolError(f"ETCO2 must be a positive number, got {value}")
        else:
            canonical = units.to_canonical_etco2(value, unit)
        now = self._advance()
        display = units.format_etco2(canonical)
        label = units.etco2_unit_label(units.Etco2Unit.MMHG)
        quality = "good" if units.is_etco2_adequate(canonical) else "low"
        s = replace(self.session, vital_readings=self.session.vital_readings + (
            VitalReading(timestamp=now, metric='etco2', value=canonical),))
        s = self._log(s, now, InterventionType.ETCO2, f"ETCO2 {display} {label} ({quality})", value=canonical,
                      key="interventions.etco2Recorded",
                      params={'value': display, 'unit': label, 'quality': quality})
        self._commit(s, now)

    def update_reversible_causes(self, updates: Dict[str, bool]):
        now = self._advance()
        s = replace(self.session, reversible_causes=merge_checklist(self.session.reversible_causes, updates))
        newly_checked = [k for k, v in updates.items() if v]
        if newly_checked:
            items = ", ".join(newly_checked)
            s = self._log(s, now, InterventionType.HS_TS_CHECK, f"H's & T's checked: {items}",
                          key="interventions.hsTsChecked", params={'items': items})
        self._commit(s, now)

    def set_patient_weight(self, weight: Optional[Union[str, float]]):
        if weight is not None:
            weight = units.weight_from_input(weight)
        now = self._advance()
        s = replace(self.session, patient_weight=weight)
        if weight:
            s = self._log(s, now, InterventionType.NOTE, f"Weight set: {weight} kg",
                          key="interventions.weightSet", params={'weight': weight})
        self._commit(s, now)

    def set_cpr_ratio(self, ratio: CPRRatio):
        self._commit(replace(self.session, cpr_ratio=CPRRatio(ratio)), self.now())

    def set_pathway_mode(self, mode: PathwayMode):
        mode = PathwayMode(mode)
        ratio = CPRRatio.THIRTY_TWO if mode == PathwayMode.ADULT else CPRRatio.FIFTEEN_TWO
        self._commit(replace(self.session, pathway_mode=mode, cpr_ratio=ratio), self.now())

    def toggle_pregnancy(self, active: bool):
        now = self._advance()
        s = replace(self.session, pregnancy_active=active,
                    pregnancy_start_time=now if active else None,
                    emergency_delivery_dismissed=False)
        if active:
            s = self._log(s, now, InterventionType.NOTE, "Pregnancy protocol activated",
                          key=PREGNANCY_ACTIVATED_KEY)
        self._commit(s, now)

    def update_pregnancy_causes(self, updates: Dict[str, bool]):
        s = replace(self.session, pregnancy_causes=merge_checklist(self.session.pregnancy_causes, updates))
        self._commit(s, self.now())

    def update_pregnancy_interventions(self, updates: Dict[str, bool]):
        s = replace(self.session,
                    pregnancy_interventions=merge_checklist(self.session.pregnancy_interventions, updates))
        self._commit(s, self.now())

    def dismiss_emergency_delivery(self):
        self._commit(replace(self.session, emergency_delivery_dismissed=True), self.now())

    def toggle_special_circumstance(self, key: str, active: bool):
        if key not in SPECIAL_CIRCUMSTANCE_KEYS:
            raise ProtocolError(f"Unknown special circumstance: {key}")
        now = self._advance()
        s = replace(self.session, special_circumstances=merge_checklist(
            self.session.special_circumstances, {key: active}))
        if active:
            s = self._log(s, now, InterventionType.NOTE, f"Special circumstance activated: {key}",
                          key=SPECIAL_CIRCUMSTANCE_KEYS[key])
        self._commit(s, now)

    def update_special_checklist(self, circumstance: str, updates: Dict[str, bool]):
        field_name = SPECIAL_CIRCUMSTANCE_CHECKLISTS.get(circumstance)
        if field_name is None:
            raise ProtocolError(f"Unknown special circumstance: {circumstance}")
        merged = merge_checklist(getattr(self.session, field_name), updates)
        self._commit(replace(self.session, **{field_name: merged}), self.now())

    def update_anaphylaxis_checklist(self, updates):
        self.update_special_checklist('anaphylaxis', updates)

    def update_asthma_checklist(self, updates):
        self.update_special_checklist('asthma', updates)

    def update_hyperthermia_checklist(self, updates):
        self.update_special_checklist('hyperthermia', updates)

    def update_opioid_overdose_checklist(self, updates):
        self.update_special_checklist('opioid_overdose', updates)

    def update_drowning_checklist(self, updates):
        self.update_special_checklist('drowning', updates)

    def update_electrocution_checklist(self, updates):
        self.update_special_checklist('electrocution', updates)

    def update_lvad_failure_checklist(self, updates):
        self.update_special_checklist('lvad_failure', updates)

    def update_post_rosc_checklist(self, updates: Dict[str, Optional[bool]]):
        s = replace(self.session, post_rosc_checklist=merge_checklist(self.session.post_rosc_checklist, updates))
        self._commit(s, self.now())

    def update_post_rosc_vitals(self, updates: Dict[str, Optional[float]]):
        s = replace(self.session, post_rosc_vitals=merge_checklist(self.session.post_rosc_vitals, updates))
        self._commit(s, self.now())

    def add_note(self, note: str):
        if not note or not note.strip():
            raise ProtocolError("Note text is empty")
        now = self._advance()
        s = self._log(self.session, now, InterventionType.NOTE, note.strip(),
                      key="interventions.noteAdded", params={'note': note.strip()})
        self._commit(s, now)

    # --- session lifecycle ---

    def import_interventions(self, entries: Iterable[BradyTachyIntervention], anchor: int):
        """
        One-shot merge of a finalized brady/tachy log. Imported entries precede
        the arrest's own; `anchor` (the brady/tachy start time) is kept as-is.
        """
        imported = intervention_log.import_entries(entries)
        s = replace(self.session,
                    interventions=imported + self.session.interventions,
                    bradytachy_start_time=anchor,
                    origin=SessionOrigin.BRADYTACHY_ARREST)
        logger.info(f"Imported {len(imported)} brady/tachy interventions (anchor={anchor})")
        self._commit(s, self.now())

    def reset(self):
        now = self.now()
        self.session = create_arrest_session(now)
        self.timer = TimerEngine.initial(self.config, now)
        logger.info(f"New arrest session {self.session.id}")
        self._notify()

    def resume(self, session: ArrestSession, timer: TimerState):
        """Loads an already time-shifted session (see persistence.reconcile_resumed_session)."""
        now = self.now()
        self.session = replace(session, initial_rhythm=infer_initial_rhythm(session))
        self.timer = replace(timer, last_tick=now)
        self.tick(now)
        logger.info(f"Resumed arrest session {session.id} in phase {session.phase.value}")
        self._notify()

