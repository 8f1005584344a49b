import unittest
from unittest import mock

from constants import (
    STORAGE_KEYS,
    ArrestPhase,
    Branch,
    BradyTachyOutcome,
    PathwayMode,
    ProtocolConfig,
    Rhythm,
    SessionOrigin,
    Stability,
)
from arrest_protocol import CardiacArrestProtocol
from bradytachy_protocol import BradyTachyProtocol, transfer_to_arrest
from persistence import (
    ArrestSessionPersistence,
    BradyTachyPersistence,
    HistoryStore,
    ResumableSnapshot,
    build_arrest_history,
    reconcile_resumed_session,
)
from secure_store import StorageError, memory_store
from timer_engine import TimerEngine

T0 = 1_700_000_000_000

class FakeClock:

    def __init__(self, start: int = T0):
        self.ms = start

    def __call__(self) -> int:
        return self.ms

    def advance(self, seconds: float):
        self.ms += int(seconds * 1000)

class TestArrestPersistence(unittest.IsolatedAsyncioTestCase):
    """Auto-save, resume and history archiving of the arrest session."""

    def setUp(self):
        self.clock = FakeClock()
        self.config = ProtocolConfig(history_debounce_s=0.05)
        self.store = memory_store()
        self.history = HistoryStore(self.store)
        self.machine = CardiacArrestProtocol(config=self.config, clock=self.clock)
        self.persistence = ArrestSessionPersistence(self.machine, self.store, self.history, self.config)

    async def asyncTearDown(self):
        await self.persistence.aclose()

    def run_to_shockable(self):
        self.machine.start_cpr()
        self.clock.advance(10)
        self.machine.select_rhythm(Rhythm.SHOCKABLE)

    # --- RESUMABLE SNAPSHOT ---

    async def test_01_active_session_is_snapshotted(self):
        self.run_to_shockable()
        await self.persistence.flush()
        snapshot = await self.persistence.load_resumable()
        self.assertIsNotNone(snapshot)
        self.assertEqual(snapshot.session.id, self.machine.session.id)
        self.assertEqual(snapshot.session.shock_count, 1)
        self.assertEqual(snapshot.session.interventions, self.machine.session.interventions)

    async def test_02_resume_after_90_seconds_keeps_countdown(self):
        print("\nTEST 2: Closed mid-cycle, reopened 90 s later -> countdown unchanged")
        self.run_to_shockable()
        self.clock.advance(30)
        self.machine.add_note("Saved mid-cycle")
        await self.persistence.flush()
        saved_remaining = self.machine.timer.cycle_remaining
        self.assertEqual(saved_remaining, 90_000)

        self.clock.advance(90)
        reopened = CardiacArrestProtocol(config=self.config, clock=self.clock)
        reopened_persistence = ArrestSessionPersistence(reopened, self.store, self.history, self.config)
        self.assertTrue(await reopened_persistence.resume())
        self.assertEqual(reopened.session.id, self.machine.session.id)
        self.assertAlmostEqual(reopened.timer.cycle_remaining, saved_remaining,
                               delta=self.config.tick_interval_s * 1000)
        self.assertEqual(reopened.session.phase, ArrestPhase.SHOCKABLE)
        await reopened_persistence.aclose()

    async def test_09_snapshot_follows_uninterrupted_cpr(self):
        print("\nTEST 9: 100 s of CPR with no button presses, crash, reopen 90 s later")
        self.run_to_shockable()
        await self.persistence.flush()
        for step in range(1, 1001):
            self.clock.advance(0.1)
            self.machine.tick()
            if step % 50 == 0:
                await self.persistence.flush()
        await self.persistence.flush()
        remaining_at_crash = self.machine.timer.cycle_remaining
        self.assertEqual(remaining_at_crash, 20_000)

        self.clock.advance(90)
        reopened = CardiacArrestProtocol(config=self.config, clock=self.clock)
        reopened_persistence = ArrestSessionPersistence(reopened, self.store, self.history, self.config)
        self.assertTrue(await reopened_persistence.resume())
        self.assertAlmostEqual(reopened.timer.cycle_remaining, remaining_at_crash,
                               delta=self.config.snapshot_interval_ms)
        await reopened_persistence.aclose()

    async def test_10_tick_snapshots_are_throttled(self):
        self.run_to_shockable()
        await self.persistence.flush()
        with mock.patch.object(self.persistence, 'save_snapshot', wraps=self.persistence.save_snapshot) as save:
            for _ in range(100):
                self.clock.advance(0.1)
                self.machine.tick()
            await self.persistence.flush()
        self.assertEqual(save.await_count, 2, "One snapshot per 5 s of CPR")

    async def test_03_unusable_snapshots_read_as_missing(self):
        self.assertIsNone(await self.persistence.load_resumable())

        await self.store.set(STORAGE_KEYS.ACTIVE_SESSION, "{not json")
        self.assertIsNone(await self.persistence.load_resumable())

        self.run_to_shockable()
        await self.persistence.flush()
        good = await self.persistence.load_resumable()
        await self.store.set(STORAGE_KEYS.ACTIVE_SESSION, good.model_copy(update={'version': 99}).model_dump_json())
        self.assertIsNone(await self.persistence.load_resumable())
        self.assertFalse(await self.persistence.resume())

    # --- HISTORY ---

    async def test_04_deceased_written_once(self):
        print("\nTEST 4: Code ended -> exactly one history record")
        self.run_to_shockable()
        with mock.patch.object(self.history, 'save', wraps=self.history.save) as save:
            self.machine.terminate()
            self.machine.add_note("Family informed")
            await self.persistence.flush()
            self.assertEqual(save.await_count, 1)

        records = await self.history.list()
        self.assertEqual(len(records), 1)
        self.assertEqual(records[0].outcome, "deceased")
        self.assertIsNone(await self.persistence.load_resumable(), "Snapshot cleared at the end")

    async def test_05_rosc_history_debounced_with_post_care(self):
        self.run_to_shockable()
        self.machine.achieve_rosc()
        self.machine.update_post_rosc_checklist({'twelve_lead_ecg': True})
        self.machine.update_post_rosc_vitals({'spo2': 95})
        await self.persistence.flush()

        summaries = await self.history.list()
        self.assertEqual(len(summaries), 1)
        record = await self.history.get(summaries[0].id)
        self.assertEqual(record.outcome, "rosc")
        self.assertTrue(record.post_rosc_checklist.twelve_lead_ecg)
        self.assertEqual(record.post_rosc_vitals.spo2, 95)
        self.assertEqual(record.shock_count, 1)

    async def test_06_new_session_cancels_pending_write(self):
        self.run_to_shockable()
        self.machine.achieve_rosc()
        self.machine.reset()
        await self.persistence.flush()
        self.assertEqual(await self.history.list(), [])

    async def test_07_export_while_active(self):
        self.run_to_shockable()
        self.clock.advance(60)
        record = await self.persistence.export()
        self.assertIsNone(record.outcome)
        self.assertEqual(record.duration, 70_000)
        self.assertEqual(record.session_type, SessionOrigin.CARDIAC_ARREST)
        self.assertIsNone(record.post_rosc_checklist)
        self.assertIsNotNone(await self.history.get(record.id))

    async def test_08_storage_failure_is_logged_not_raised(self):
        broken = mock.AsyncMock()
        broken.set.side_effect = StorageError("disk full")
        persistence = ArrestSessionPersistence(self.machine, broken, self.history, self.config)
        with self.assertLogs("resusflow.persistence", level="ERROR"):
            self.run_to_shockable()
            await persistence.flush()
        self.assertEqual(self.machine.session.shock_count, 1)

class TestHistoryStore(unittest.IsolatedAsyncioTestCase):

    def setUp(self):
        self.clock = FakeClock()
        self.history = HistoryStore(memory_store())

    def record(self, saved_at):
        machine = CardiacArrestProtocol(clock=self.clock)
        machine.start_cpr()
        return build_arrest_history(machine.session, machine.timer, saved_at)

    async def test_01_list_newest_first(self):
        older, newer = self.record(T0), self.record(T0 + 5000)
        await self.history.save(older)
        await self.history.save(newer)
        await self.history.save(older)
        ids = [s.id for s in await self.history.list()]
        self.assertEqual(ids, [newer.id, older.id])

    async def test_02_delete_and_clear(self):
        first, second = self.record(T0), self.record(T0 + 1)
        await self.history.save(first)
        await self.history.save(second)
        await self.history.delete(first.id)
        self.assertIsNone(await self.history.get(first.id))
        self.assertEqual([s.id for s in await self.history.list()], [second.id])
        await self.history.clear()
        self.assertEqual(await self.history.list(), [])

    async def test_03_corrupt_record_reads_as_missing(self):
        await self.history._store.set(STORAGE_KEYS.HISTORY_PREFIX + "bad", "[]")
        self.assertIsNone(await self.history.get("bad"))

class TestBradyTachyPersistence(unittest.IsolatedAsyncioTestCase):

    def setUp(self):
        self.clock = FakeClock()
        self.store = memory_store()
        self.history = HistoryStore(self.store)
        self.machine = BradyTachyProtocol(clock=self.clock, initial_mode=PathwayMode.ADULT)
        self.persistence = BradyTachyPersistence(self.machine, self.store, self.history, clear_delay_s=0)

    async def test_01_resolved_session_archived(self):
        self.machine.set_branch(Branch.BRADYCARDIA)
        await self.persistence.flush()
        self.assertIsNotNone(await self.persistence.load_resumable())

        self.clock.advance(120)
        self.machine.end_session(BradyTachyOutcome.RESOLVED)
        await self.persistence.flush()
        records = await self.history.list()
        self.assertEqual(len(records), 1)
        self.assertEqual(records[0].session_type, SessionOrigin.BRADYTACHY)
        self.assertEqual(records[0].duration, 120_000)
        self.assertIsNone(await self.persistence.load_resumable())

    async def test_02_switch_to_arrest_writes_no_history(self):
        print("\nTEST 2: Handoff -> no brady/tachy record, one combined arrest record")
        arrest = CardiacArrestProtocol(clock=self.clock)
        config = ProtocolConfig(history_debounce_s=0.01)
        arrest_persistence = ArrestSessionPersistence(arrest, self.store, self.history, config)

        self.machine.set_branch(Branch.BRADYCARDIA)
        self.machine.set_stability(Stability.UNSTABLE)
        self.clock.advance(30)
        transfer_to_arrest(self.machine, arrest)
        await self.persistence.flush()
        self.assertEqual(await self.history.list(), [])
        self.assertIsNone(await self.persistence.load_resumable())

        arrest.select_rhythm(Rhythm.ASYSTOLE)
        arrest.terminate()
        await arrest_persistence.flush()
        records = await self.history.list()
        self.assertEqual(len(records), 1)
        self.assertEqual(records[0].session_type, SessionOrigin.BRADYTACHY_ARREST)
        record = await self.history.get(records[0].id)
        self.assertEqual(record.bradytachy_start_time, T0)
        self.assertEqual(record.interventions[0].type, "decision")

    async def test_03_resume_brady_session(self):
        self.machine.set_branch(Branch.TACHYCARDIA)
        await self.persistence.flush()
        fresh = BradyTachyProtocol(clock=self.clock)
        self.assertTrue(await BradyTachyPersistence(fresh, self.store, self.history).resume())
        self.assertEqual(fresh.session.id, self.machine.session.id)
        self.assertEqual(fresh.session.decision_context.branch, Branch.TACHYCARDIA)

class TestReconcile(unittest.TestCase):

    def test_01_anchors_shift_by_time_away(self):
        machine = CardiacArrestProtocol(clock=FakeClock())
        machine.start_cpr()
        machine.select_rhythm(Rhythm.PEA)
        machine.give_epinephrine()
        snapshot = ResumableSnapshot(saved_at=T0, session=machine.session, timer=machine.timer)
        session, timer = reconcile_resumed_session(snapshot, T0 + 90_000)
        self.assertEqual(session.cpr_cycle_start_time, T0 + 90_000)
        self.assertEqual(session.last_epinephrine_time, T0 + 90_000)
        self.assertEqual(timer.last_tick, T0 + 90_000)
        self.assertEqual(TimerEngine.tick(session, T0 + 90_000, timer, machine.config).cycle_remaining,
                         machine.config.rhythm_check_interval_ms)

        # Clock moved backwards: nothing shifts
        session, _ = reconcile_resumed_session(snapshot, T0 - 5000)
        self.assertEqual(session.cpr_cycle_start_time, T0)

if __name__ == '__main__':
    unittest.main()
