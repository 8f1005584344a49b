import logging
import random
import unittest
from dataclasses import replace

from constants import (
    AirwayStatus,
    ArrestPhase,
    BradyTachyInterventionType,
    InterventionType,
    Outcome,
    PathwayMode,
    ProtocolConfig,
    Rhythm,
    SessionOrigin,
)
from models import (
    BradyTachyIntervention,
    IneligibleActionError,
    Intervention,
    ProtocolError,
    create_arrest_session,
)
from arrest_protocol import CardiacArrestProtocol, infer_initial_rhythm, is_legal, parse_rhythm
from timer_engine import TimerEngine
from units import Etco2Unit, kpa_to_mmhg

T0 = 1_700_000_000_000

class FakeClock:
    """Manually advanced ms clock."""

    def __init__(self, start: int = T0):
        self.ms = start

    def __call__(self) -> int:
        return self.ms

    def advance(self, seconds: float):
        self.ms += int(seconds * 1000)

def entries_of(session, type):
    return [e for e in session.interventions if e.type == type]

class TestCardiacArrestProtocol(unittest.TestCase):
    """
    Walks the arrest algorithm the way a code leader drives it at the bedside:
    start CPR, identify the rhythm, 2-minute cycles, drugs, outcome.
    """

    def setUp(self):
        self.clock = FakeClock()
        self.machine = CardiacArrestProtocol(clock=self.clock)

    def run_to_shockable(self):
        self.machine.start_cpr()
        self.clock.advance(10)
        self.machine.select_rhythm(Rhythm.SHOCKABLE)

    def shock_cycle(self):
        self.clock.advance(120)
        self.machine.start_rhythm_check()
        self.clock.advance(5)
        self.machine.complete_check_with_shock()

    # --- ALGORITHM FLOW ---

    def test_01_start_cpr(self):
        print("\nTEST 1: Start CPR anchors the session clock")
        self.clock.advance(3)
        self.machine.start_cpr()
        s = self.machine.session
        self.assertEqual(s.phase, ArrestPhase.CPR_PENDING_RHYTHM)
        self.assertEqual(s.start_time, T0 + 3000)
        self.assertEqual(len(entries_of(s, InterventionType.CPR_START)), 1)
        self.assertEqual(self.machine.banner().message_key, "banner.cprInProgress")

    def test_02_shockable_selection_delivers_first_shock(self):
        print("\nTEST 2: VF/pVT -> first shock in the same step")
        self.run_to_shockable()
        s = self.machine.session
        self.assertEqual(s.phase, ArrestPhase.SHOCKABLE)
        self.assertEqual(s.shock_count, 1)
        self.assertEqual(s.initial_rhythm, Rhythm.SHOCKABLE)
        self.assertEqual(s.cpr_cycle_start_time, T0 + 10_000)
        shocks = entries_of(s, InterventionType.SHOCK)
        self.assertEqual(len(shocks), 1)
        self.assertEqual(shocks[0].value, 200)
        self.assertEqual(shocks[0].translation_key, "interventions.shockDelivered")
        self.assertEqual(shocks[0].translation_params, {'number': 1, 'energy': 200})

    def test_03_epinephrine_opens_after_second_shock(self):
        self.run_to_shockable()
        self.assertFalse(self.machine.eligibility().can_give_epinephrine)
        self.shock_cycle()
        flags = self.machine.eligibility()
        self.assertTrue(flags.can_give_epinephrine)
        self.assertTrue(flags.epinephrine_due)
        self.assertEqual(self.machine.banner().message_key, "banner.giveEpi")

    def test_04_antiarrhythmics_after_third_shock(self):
        print("\nTEST 4: Three check-with-shock cycles -> 4 shocks, antiarrhythmics open")
        self.run_to_shockable()
        for _ in range(3):
            self.shock_cycle()
        s = self.machine.session
        self.assertEqual(s.shock_count, 4)
        self.assertEqual(len(entries_of(s, InterventionType.SHOCK)), 4)
        flags = self.machine.eligibility()
        self.assertTrue(flags.can_give_amiodarone)
        self.assertTrue(flags.can_give_lidocaine)
        self.assertTrue(flags.antiarrhythmic_due)

    def test_05_amiodarone_and_lidocaine_are_exclusive(self):
        self.run_to_shockable()
        for _ in range(2):
            self.shock_cycle()
        self.machine.give_amiodarone()
        flags = self.machine.eligibility()
        self.assertFalse(flags.can_give_lidocaine, "Lidocaine closes once amiodarone is chosen")
        self.assertTrue(flags.can_give_amiodarone)
        self.assertEqual(entries_of(self.machine.session, InterventionType.AMIODARONE)[0].value, "300 mg")

        self.machine.give_amiodarone()
        self.assertFalse(self.machine.eligibility().can_give_amiodarone, "Two doses maximum")
        self.assertEqual(entries_of(self.machine.session, InterventionType.AMIODARONE)[1].value, "150 mg")

    def test_06_non_shockable_epinephrine_immediately(self):
        self.machine.start_cpr()
        self.machine.select_rhythm(Rhythm.ASYSTOLE)
        banner = self.machine.banner()
        self.assertEqual(banner.message_key, "banner.giveEpiNow")
        self.assertEqual(banner.submessage_key, "banner.asystoleEpi")
        self.assertTrue(self.machine.eligibility().can_give_epinephrine)

        self.machine.give_epinephrine()
        self.assertEqual(self.machine.session.last_epinephrine_time, T0)
        self.assertFalse(self.machine.eligibility().epinephrine_due)
        self.assertEqual(self.machine.banner().message_key, "banner.continueHQCPR")

        self.clock.advance(240)
        self.assertTrue(self.machine.eligibility().epinephrine_due)

    def test_07_pre_charge_banner(self):
        self.run_to_shockable()
        self.clock.advance(110)
        self.machine.tick()
        banner = self.machine.banner()
        self.assertEqual(banner.message_key, "banner.preCharge")
        self.assertEqual(banner.params, {'seconds': 10})

        self.clock.advance(10)
        self.machine.tick()
        self.assertEqual(self.machine.banner().message_key, "banner.rhythmCheckNow")
        self.assertTrue(self.machine.eligibility().rhythm_check_due)

    def test_08_rhythm_check_banner_and_resume(self):
        self.run_to_shockable()
        self.machine.start_rhythm_check()
        self.assertEqual(self.machine.session.phase, ArrestPhase.RHYTHM_CHECK)
        self.assertEqual(self.machine.banner().message_key, "banner.rhythmCheckVfPvt")

        self.clock.advance(5)
        self.machine.complete_check_no_shock(Rhythm.PEA)
        s = self.machine.session
        self.assertEqual(s.phase, ArrestPhase.NON_SHOCKABLE)
        self.assertEqual(s.current_rhythm, Rhythm.PEA)
        self.assertEqual(s.initial_rhythm, Rhythm.SHOCKABLE, "Initial rhythm never changes")

        self.machine.start_rhythm_check()
        self.machine.complete_check_resume_cpr()
        self.assertEqual(self.machine.session.phase, ArrestPhase.NON_SHOCKABLE)

    def test_09_no_shock_rejects_shockable_rhythm(self):
        self.run_to_shockable()
        self.machine.start_rhythm_check()
        with self.assertRaises(ProtocolError):
            self.machine.complete_check_no_shock(Rhythm.SHOCKABLE)

    # --- GUARDS & TERMINAL STATES ---

    def test_10_illegal_transition_keeps_phase(self):
        print("\nTEST 10: Illegal edge is logged and skipped")
        with self.assertLogs("resusflow.arrest", level="WARNING"):
            self.machine.start_rhythm_check()
        self.assertEqual(self.machine.session.phase, ArrestPhase.PATHWAY_SELECTION)

    def test_11_strict_mode_raises(self):
        machine = CardiacArrestProtocol(config=ProtocolConfig(strict=True), clock=self.clock)
        machine.start_cpr()
        with self.assertRaises(IneligibleActionError):
            machine.give_epinephrine()
        self.assertEqual(machine.session.epinephrine_count, 0)
        with self.assertRaises(IneligibleActionError):
            machine.start_cpr()

    def test_12_rosc_is_terminal_and_idempotent(self):
        self.run_to_shockable()
        self.clock.advance(60)
        self.machine.achieve_rosc()
        self.machine.achieve_rosc()
        self.machine.terminate()
        s = self.machine.session
        self.assertEqual(s.phase, ArrestPhase.ROSC)
        self.assertEqual(s.outcome, Outcome.ROSC)
        self.assertEqual(s.rosc_time, T0 + 70_000)
        self.assertEqual(len(entries_of(s, InterventionType.ROSC)), 1)
        self.assertEqual(self.machine.banner().message_key, "banner.roscAchieved")

        self.clock.advance(600)
        self.assertEqual(self.machine.tick().total_elapsed, 70_000, "Totals freeze at ROSC")

    def test_13_end_code_adds_closing_note(self):
        self.run_to_shockable()
        self.machine.end_code(Outcome.DECEASED)
        s = self.machine.session
        self.assertEqual(s.phase, ArrestPhase.DECEASED)
        self.assertEqual(s.interventions[-1].translation_key, "interventions.codeEnded")

    # --- PATIENT CONTEXT ---

    def test_14_pediatric_weight_based_energy(self):
        self.machine.set_pathway_mode(PathwayMode.PEDIATRIC)
        self.machine.set_patient_weight(20)
        self.run_to_shockable()
        self.assertEqual(entries_of(self.machine.session, InterventionType.SHOCK)[0].value, 40)
        self.assertEqual(self.machine.next_shock_energy().value, 80)
        self.assertEqual(self.machine.session.current_energy, 80)

        self.machine.set_pathway_mode(PathwayMode.ADULT)
        self.assertEqual(self.machine.session.cpr_ratio.value, "30:2")

    def test_15_invalid_weight_rejected(self):
        with self.assertRaises(ValueError):
            self.machine.set_patient_weight(400)
        self.assertIsNone(self.machine.session.patient_weight)

    def test_16_etco2_stored_in_mmhg(self):
        self.machine.record_etco2(4.0, Etco2Unit.KPA)
        reading = self.machine.session.vital_readings[0]
        self.assertAlmostEqual(reading.value, kpa_to_mmhg(4.0))
        with self.assertRaises(ProtocolError):
            self.machine.record_etco2(0)

    def test_17_emergency_delivery_banner(self):
        print("\nTEST 17: Obstetric arrest -> delivery banner at 5 minutes")
        self.machine.start_cpr()
        self.machine.select_rhythm(Rhythm.PEA)
        self.machine.toggle_pregnancy(True)
        self.clock.advance(301)
        self.assertEqual(self.machine.banner().message_key, "banner.emergencyDelivery")
        self.machine.dismiss_emergency_delivery()
        self.assertNotEqual(self.machine.banner().message_key, "banner.emergencyDelivery")

    def test_18_checklists(self):
        self.machine.update_reversible_causes({'hypoxia': True})
        self.assertTrue(self.machine.session.reversible_causes.hypoxia)
        self.assertEqual(len(entries_of(self.machine.session, InterventionType.HS_TS_CHECK)), 1)

        self.machine.toggle_special_circumstance('asthma', True)
        self.machine.update_asthma_checklist({'bronchodilators': True})
        self.assertTrue(self.machine.session.special_circumstances.asthma)
        self.assertTrue(self.machine.session.asthma_checklist.bronchodilators)

        with self.assertRaises(ProtocolError):
            self.machine.update_asthma_checklist({'not_an_item': True})
        with self.assertRaises(ProtocolError):
            self.machine.toggle_special_circumstance('gunshot', True)

    def test_19_notes_and_listeners(self):
        calls = []
        self.machine.subscribe(lambda: calls.append(self.machine.session.phase))
        self.machine.add_note("  IO access right tibia ")
        self.assertEqual(self.machine.session.interventions[-1].details, "IO access right tibia")
        self.assertEqual(len(calls), 1)
        with self.assertRaises(ProtocolError):
            self.machine.add_note("   ")

    # --- HANDOFF & RESUME ---

    def test_20_import_keeps_anchor(self):
        anchor = T0 - 600_000
        imported = [
            BradyTachyIntervention(id="a", timestamp=anchor + 1000, type=BradyTachyInterventionType.ATROPINE,
                                   details="Atropine 1 mg"),
            BradyTachyIntervention(id="b", timestamp=anchor + 2000, type=BradyTachyInterventionType.SWITCH_TO_ARREST),
        ]
        self.machine.import_interventions(imported, anchor)
        s = self.machine.session
        self.assertEqual(s.bradytachy_start_time, anchor)
        self.assertEqual(s.origin, SessionOrigin.BRADYTACHY_ARREST)
        self.assertEqual([e.type for e in s.interventions[:2]],
                         [InterventionType.ATROPINE, InterventionType.SWITCH_TO_ARREST])
        self.assertNotEqual(s.interventions[0].id, "a")

    def test_21_resume_backfills_initial_rhythm(self):
        legacy = replace(
            create_arrest_session(T0),
            phase=ArrestPhase.SHOCKABLE,
            current_rhythm=Rhythm.PEA,
            shock_count=1,
            cpr_cycle_start_time=T0,
            interventions=(Intervention(id="x", timestamp=T0, type=InterventionType.SHOCK),),
        )
        self.clock.advance(30)
        self.machine.resume(legacy, TimerEngine.initial(self.machine.config, T0))
        self.assertEqual(self.machine.session.initial_rhythm, Rhythm.SHOCKABLE)
        self.assertEqual(self.machine.timer.cycle_remaining, 90_000)

    def test_22_rhythm_parsing(self):
        self.assertEqual(parse_rhythm("VF/pVT"), Rhythm.SHOCKABLE)
        self.assertEqual(parse_rhythm("Asystole"), Rhythm.ASYSTOLE)
        self.assertEqual(parse_rhythm("pea"), Rhythm.PEA)
        self.assertIsNone(parse_rhythm("sinus"))
        logged = replace(create_arrest_session(T0), interventions=(
            Intervention(id="r", timestamp=T0, type=InterventionType.RHYTHM_CHANGE,
                         translation_params={'rhythm': "PEA"}),))
        self.assertEqual(infer_initial_rhythm(logged), Rhythm.PEA)

    def test_23_reset_starts_fresh(self):
        self.run_to_shockable()
        old_id = self.machine.session.id
        self.machine.reset()
        self.assertNotEqual(self.machine.session.id, old_id)
        self.assertEqual(self.machine.session.phase, ArrestPhase.PATHWAY_SELECTION)
        self.assertEqual(self.machine.session.shock_count, 0)

    # --- OUTCOME & ACKNOWLEDGEMENT EDGES ---

    def test_24_intervention_acknowledges_delivery_banner(self):
        print("\nTEST 24: Drug given while the delivery banner shows -> banner cleared")
        self.machine.start_cpr()
        self.machine.select_rhythm(Rhythm.PEA)
        self.machine.toggle_pregnancy(True)
        self.clock.advance(60)
        self.machine.add_note("Left uterine displacement")
        self.assertFalse(self.machine.session.emergency_delivery_dismissed, "Banner not shown yet")

        self.clock.advance(241)
        self.assertEqual(self.machine.banner().message_key, "banner.emergencyDelivery")
        self.machine.give_epinephrine()
        self.assertTrue(self.machine.session.emergency_delivery_dismissed)
        self.assertNotEqual(self.machine.banner().message_key, "banner.emergencyDelivery")

    def test_25_late_pregnancy_activation_still_shows_banner(self):
        self.machine.start_cpr()
        self.machine.select_rhythm(Rhythm.ASYSTOLE)
        self.clock.advance(400)
        self.machine.toggle_pregnancy(True)
        self.assertEqual(self.machine.banner().message_key, "banner.emergencyDelivery")

    def test_26_end_code_cannot_contradict_outcome(self):
        self.machine.start_cpr()
        self.machine.select_rhythm(Rhythm.PEA)
        self.machine.achieve_rosc()
        before = self.machine.session.interventions
        with self.assertLogs("resusflow.arrest", level="WARNING"):
            self.machine.end_code(Outcome.DECEASED)
        s = self.machine.session
        self.assertEqual(s.phase, ArrestPhase.ROSC)
        self.assertEqual(s.outcome, Outcome.ROSC)
        self.assertEqual(s.interventions, before, "No closing note for an outcome that did not happen")

        self.machine.end_code(Outcome.ROSC)
        self.assertEqual(self.machine.session.interventions[-1].translation_params, {'outcome': 'rosc'})

    def test_27_typed_bedside_input(self):
        self.machine.record_etco2("8", Etco2Unit.MMHG)
        entry = self.machine.session.interventions[-1]
        self.assertEqual(entry.value, 8.0)
        self.assertEqual(entry.translation_params['quality'], "low")
        self.machine.record_etco2("2.5", Etco2Unit.KPA)
        self.assertEqual(self.machine.session.interventions[-1].translation_params['quality'], "good")
        with self.assertRaises(ProtocolError):
            self.machine.record_etco2("12.5", Etco2Unit.MMHG)

        self.machine.set_patient_weight("18.5")
        self.assertEqual(self.machine.session.patient_weight, 18.5)
        with self.assertRaises(ValueError):
            self.machine.set_patient_weight("1e2")
        self.assertEqual(self.machine.session.patient_weight, 18.5)

class TestArrestActionSequences(unittest.TestCase):
    """Arbitrary bedside button sequences never corrupt the session."""

    STEPS = [
        lambda m, r: m.start_cpr(),
        lambda m, r: m.select_rhythm(r.choice(list(Rhythm))),
        lambda m, r: m.start_rhythm_check(),
        lambda m, r: m.complete_check_with_shock(),
        lambda m, r: m.complete_check_no_shock(r.choice([Rhythm.ASYSTOLE, Rhythm.PEA])),
        lambda m, r: m.complete_check_resume_cpr(),
        lambda m, r: m.give_epinephrine(),
        lambda m, r: m.give_amiodarone(),
        lambda m, r: m.give_lidocaine(),
        lambda m, r: m.set_airway(r.choice(list(AirwayStatus))),
        lambda m, r: m.record_etco2(r.randint(5, 45)),
        lambda m, r: m.add_note("Sequence step"),
        lambda m, r: m.achieve_rosc(),
        lambda m, r: m.terminate(),
        lambda m, r: m.end_code(r.choice(list(Outcome))),
    ]

    @staticmethod
    def counters(session):
        return (session.shock_count, session.epinephrine_count, session.amiodarone_count,
                session.lidocaine_count, len(session.interventions))

    def test_01_random_sequences_respect_edges_and_counters(self):
        logging.disable(logging.WARNING)
        self.addCleanup(logging.disable, logging.NOTSET)
        for seed in range(25):
            with self.subTest(seed=seed):
                rng = random.Random(seed)
                clock = FakeClock()
                machine = CardiacArrestProtocol(clock=clock)
                for _ in range(60):
                    prev_phase, prev_counts = machine.session.phase, self.counters(machine.session)
                    clock.advance(rng.uniform(0, 30))
                    rng.choice(self.STEPS)(machine, rng)
                    phase, counts = machine.session.phase, self.counters(machine.session)
                    self.assertTrue(phase == prev_phase or is_legal(prev_phase, phase),
                                    f"{prev_phase.value} -> {phase.value}")
                    for before, after in zip(prev_counts, counts):
                        self.assertGreaterEqual(after, before)

if __name__ == '__main__':
    unittest.main()
