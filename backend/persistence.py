"""
ResusFlow: Session Persistence
==============================
Two things are stored through the encrypted store:

1. A resumable snapshot of the in-progress session, overwritten on every change.
2. History records of finished sessions (one key per record plus an index).

Records are pydantic models; sessions are the frozen dataclasses from models.py,
validated on the way back in. Anything that fails validation is "no data".
Storage failures are logged and swallowed: the in-memory session stays the
source of truth.
"""

import asyncio
import logging
from dataclasses import asdict, replace
from typing import Dict, Iterable, List, Optional, Set, Tuple, Union

from pydantic import BaseModel, Field, TypeAdapter, ValidationError

from constants import (
    SNAPSHOT_SCHEMA_VERSION,
    STORAGE_KEYS,
    TIMING,
    AirwayStatus,
    ArrestPhase,
    BradyTachyOutcome,
    BradyTachyPhase,
    Outcome,
    PathwayMode,
    ProtocolConfig,
    SessionOrigin,
)
from models import (
    SPECIAL_CIRCUMSTANCE_CHECKLISTS,
    ArrestSession,
    BradyTachySession,
    PostROSCChecklist,
    PostROSCVitals,
    PregnancyCauses,
    PregnancyInterventions,
    ReversibleCauses,
    SpecialCircumstances,
    TimerState,
    checked_items,
)
from arrest_protocol import infer_initial_rhythm
from secure_store import StorageError
from timer_engine import TICKING_PHASES, TimerEngine

logger = logging.getLogger("resusflow.persistence")

NOT_RESUMABLE = (ArrestPhase.PATHWAY_SELECTION, ArrestPhase.ROSC, ArrestPhase.DECEASED)

# --- 1. STORED RECORDS ---

class ResumableSnapshot(BaseModel):
    version: int = SNAPSHOT_SCHEMA_VERSION
    saved_at: int
    session: ArrestSession
    timer: TimerState

class BradyTachySnapshot(BaseModel):
    version: int = SNAPSHOT_SCHEMA_VERSION
    saved_at: int
    session: BradyTachySession

class HistoryIntervention(BaseModel):
    timestamp: int
    type: str
    details: str = ""
    value: Optional[Union[int, float, str]] = None
    translation_key: Optional[str] = None
    translation_params: Dict[str, Union[int, float, str]] = Field(default_factory=dict)

class Etco2Reading(BaseModel):
    timestamp: int
    value: float

class HistorySummary(BaseModel):
    id: str
    saved_at: int
    start_time: int
    outcome: Optional[str] = None
    session_type: SessionOrigin
    pathway_mode: PathwayMode
    duration: int = 0

class HistoryRecord(HistorySummary):
    end_time: Optional[int] = None
    rosc_time: Optional[int] = None
    total_active_time: int = 0
    cpr_fraction: float = 0.0
    shock_count: int = 0
    epinephrine_count: int = 0
    amiodarone_count: int = 0
    lidocaine_count: int = 0
    patient_weight: Optional[float] = None
    interventions: List[HistoryIntervention] = Field(default_factory=list)
    etco2_readings: List[Etco2Reading] = Field(default_factory=list)
    reversible_causes: ReversibleCauses = Field(default_factory=ReversibleCauses)
    post_rosc_checklist: Optional[PostROSCChecklist] = None
    post_rosc_vitals: Optional[PostROSCVitals] = None
    airway_status: AirwayStatus = AirwayStatus.BAG_MASK
    pregnancy_active: bool = False
    pregnancy_causes: Optional[PregnancyCauses] = None
    pregnancy_interventions: Optional[PregnancyInterventions] = None
    special_circumstances: Optional[SpecialCircumstances] = None
    special_checklists: Dict[str, Dict[str, Optional[bool]]] = Field(default_factory=dict)
    bradytachy_start_time: Optional[int] = None

    def summary(self) -> HistorySummary:
        return HistorySummary(**{k: getattr(self, k) for k in HistorySummary.model_fields})

_INDEX = TypeAdapter(List[HistorySummary])

# --- 2. RECORD BUILDERS ---

def _history_entries(interventions) -> List[HistoryIntervention]:
    return [
        HistoryIntervention(
            timestamp=i.timestamp,
            type=i.type.value,
            details=i.details,
            value=i.value,
            translation_key=i.translation_key,
            translation_params=i.translation_params,
        )
        for i in interventions
    ]

def build_arrest_history(session: ArrestSession, timer: TimerState, now: int) -> HistoryRecord:
    post_care = session.phase == ArrestPhase.ROSC or session.outcome == Outcome.ROSC
    special = {
        name: asdict(getattr(session, field))
        for name, field in SPECIAL_CIRCUMSTANCE_CHECKLISTS.items()
        if getattr(session.special_circumstances, name)
    }
    return HistoryRecord(
        id=session.id,
        saved_at=now,
        start_time=session.start_time,
        end_time=session.end_time,
        rosc_time=session.rosc_time,
        outcome=session.outcome.value if session.outcome else None,
        duration=timer.total_elapsed,
        total_active_time=timer.total_active_time,
        cpr_fraction=TimerEngine.cpr_fraction(timer),
        shock_count=session.shock_count,
        epinephrine_count=session.epinephrine_count,
        amiodarone_count=session.amiodarone_count,
        lidocaine_count=session.lidocaine_count,
        # Any handoff anchor marks the combined episode, whatever the origin field says
        session_type=(SessionOrigin.BRADYTACHY_ARREST if session.bradytachy_start_time is not None
                      else session.origin),
        pathway_mode=session.pathway_mode,
        patient_weight=session.patient_weight,
        interventions=_history_entries(session.interventions),
        etco2_readings=[Etco2Reading(timestamp=v.timestamp, value=v.value)
                        for v in session.vital_readings if v.metric == 'etco2'],
        reversible_causes=session.reversible_causes,
        post_rosc_checklist=session.post_rosc_checklist if post_care else None,
        post_rosc_vitals=session.post_rosc_vitals if post_care else None,
        airway_status=session.airway_status,
        pregnancy_active=session.pregnancy_active,
        pregnancy_causes=session.pregnancy_causes if session.pregnancy_active else None,
        pregnancy_interventions=session.pregnancy_interventions if session.pregnancy_active else None,
        special_circumstances=session.special_circumstances if checked_items(session.special_circumstances) else None,
        special_checklists=special,
        bradytachy_start_time=session.bradytachy_start_time,
    )

def build_bradytachy_history(session: BradyTachySession, now: int) -> HistoryRecord:
    ctx = session.decision_context
    switched = session.outcome == BradyTachyOutcome.SWITCHED_TO_ARREST
    return HistoryRecord(
        id=session.id,
        saved_at=now,
        start_time=session.start_time,
        end_time=session.end_time,
        outcome=session.outcome.value if session.outcome and not switched else None,
        duration=(session.end_time - session.start_time) if session.end_time else 0,
        session_type=SessionOrigin.BRADYTACHY_ARREST if switched else SessionOrigin.BRADYTACHY,
        pathway_mode=ctx.patient_group,
        patient_weight=ctx.weight_kg,
        interventions=_history_entries(session.interventions),
        bradytachy_start_time=session.start_time,
    )

# --- 3. RESUME ---

def is_resumable(session: ArrestSession) -> bool:
    return session.phase not in NOT_RESUMABLE

def reconcile_resumed_session(snapshot: ResumableSnapshot, now: int) -> Tuple[ArrestSession, TimerState]:
    """
    Shifts the cycle and medication anchors forward by the time the app was
    away, so countdowns continue from where they were when saved.
    """
    away = max(0, now - snapshot.saved_at)
    s = snapshot.session
    shifted = replace(
        s,
        cpr_cycle_start_time=s.cpr_cycle_start_time + away if s.cpr_cycle_start_time is not None else None,
        last_epinephrine_time=s.last_epinephrine_time + away if s.last_epinephrine_time is not None else None,
        initial_rhythm=infer_initial_rhythm(s),
    )
    timer = replace(snapshot.timer, last_tick=now)
    logger.info(f"Reconciled session {s.id}: away for {away} ms")
    return shifted, timer

# --- 4. HISTORY STORE ---

class HistoryStore:

    def __init__(self, store):
        self._store = store
        self._lock = asyncio.Lock()

    async def _read_index(self) -> List[HistorySummary]:
        raw = await self._store.get(STORAGE_KEYS.HISTORY_INDEX)
        if raw is None:
            return []
        try:
            return _INDEX.validate_json(raw)
        except ValidationError:
            logger.warning("History index is unreadable, starting a new one", exc_info=True)
            return []

    async def _write_index(self, index: List[HistorySummary]):
        await self._store.set(STORAGE_KEYS.HISTORY_INDEX, _INDEX.dump_json(index).decode('utf-8'))

    async def save(self, record: HistoryRecord):
        async with self._lock:
            await self._store.set(STORAGE_KEYS.HISTORY_PREFIX + record.id, record.model_dump_json())
            index = [s for s in await self._read_index() if s.id != record.id]
            index.append(record.summary())
            await self._write_index(index)
        logger.info(f"History saved: {record.id} ({record.session_type.value}, outcome={record.outcome})")

    async def list(self) -> List[HistorySummary]:
        """Most recent first."""
        index = await self._read_index()
        return sorted(index, key=lambda s: s.saved_at, reverse=True)

    async def get(self, record_id: str) -> Optional[HistoryRecord]:
        raw = await self._store.get(STORAGE_KEYS.HISTORY_PREFIX + record_id)
        if raw is None:
            return None
        try:
            return HistoryRecord.model_validate_json(raw)
        except ValidationError:
            logger.warning(f"History record {record_id} is unreadable", exc_info=True)
            return None

    async def delete_many(self, record_ids: Iterable[str]):
        ids = set(record_ids)
        async with self._lock:
            for record_id in ids:
                await self._store.delete(STORAGE_KEYS.HISTORY_PREFIX + record_id)
            index = [s for s in await self._read_index() if s.id not in ids]
            await self._write_index(index)

    async def delete(self, record_id: str):
        await self.delete_many([record_id])

    async def clear(self):
        await self.delete_many([s.id for s in await self._read_index()])

# --- 5. AUTO-SAVE OBSERVERS ---

class _Observer:
    """Shared task bookkeeping. Callbacks are sync; the work runs on the loop."""

    def __init__(self):
        self._tasks: Set[asyncio.Task] = set()
        self._snapshot_lock = asyncio.Lock()

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _guarded(self, what: str, coro):
        try:
            await coro
        except StorageError:
            logger.error(f"Storage failure during {what}", exc_info=True)

    async def flush(self):
        """Waits for all in-flight writes, including a pending debounced one."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

class ArrestSessionPersistence(_Observer):
    """
    Keeps the resumable snapshot current while the arrest is active (on every
    action, and every `snapshot_interval_ms` of uninterrupted CPR so a crash
    mid-cycle restores the real countdown), and archives the session when it
    ends:

    - ROSC: debounced, re-armed on every post-care edit
    - DECEASED: once, immediately
    - back to pathway selection (new session): pending write cancelled
    """

    def __init__(self, machine, store, history: HistoryStore, config: ProtocolConfig):
        super().__init__()
        self.machine = machine
        self._store = store
        self.history = history
        self._debounce_s = config.history_debounce_s
        self._snapshot_interval_ms = config.snapshot_interval_ms
        self._last_snapshot_at: Optional[int] = None
        self._pending: Optional[asyncio.Task] = None
        self._has_saved = False
        machine.subscribe(self.on_change)
        machine.subscribe_tick(self.on_tick)

    def _cancel_pending(self):
        if self._pending is not None and not self._pending.done():
            self._pending.cancel()
            logger.debug("Pending history write cancelled")
        self._pending = None

    def on_change(self):
        session = self.machine.session
        phase = session.phase

        if phase == ArrestPhase.PATHWAY_SELECTION:
            self._cancel_pending()
            if self._has_saved:
                logger.info("New session started, resetting auto-save flag")
            self._has_saved = False
            return

        if phase == ArrestPhase.ROSC:
            self._cancel_pending()
            self._pending = self._spawn(self._debounced_history())
            self._spawn(self._guarded("snapshot clear", self.clear_snapshot()))
            return

        if phase == ArrestPhase.DECEASED:
            if not self._has_saved:
                self._has_saved = True
                self._cancel_pending()
                self._spawn(self._guarded("history write", self._write_history()))
                self._spawn(self._guarded("snapshot clear", self.clear_snapshot()))
            return

        self._queue_snapshot()

    def on_tick(self):
        if self.machine.session.phase not in TICKING_PHASES:
            return
        now = self.machine.now()
        if self._last_snapshot_at is not None and now - self._last_snapshot_at < self._snapshot_interval_ms:
            return
        self._queue_snapshot()

    def _queue_snapshot(self):
        self._last_snapshot_at = self.machine.now()
        self._spawn(self._guarded("snapshot save", self.save_snapshot()))

    async def _debounced_history(self):
        await asyncio.sleep(self._debounce_s)
        await self._guarded("history write", self._write_history())

    async def _write_history(self) -> HistoryRecord:
        # Read at write time: the latest post-care edits are included
        now = self.machine.now()
        self.machine.tick(now)
        record = build_arrest_history(self.machine.session, self.machine.timer, now)
        await self.history.save(record)
        return record

    async def export(self) -> HistoryRecord:
        """Manual save of the current session to history."""
        return await self._write_history()

    async def save_snapshot(self):
        async with self._snapshot_lock:
            session = self.machine.session
            if not is_resumable(session):
                return
            snapshot = ResumableSnapshot(saved_at=self.machine.now(), session=session, timer=self.machine.timer)
            await self._store.set(STORAGE_KEYS.ACTIVE_SESSION, snapshot.model_dump_json())

    async def clear_snapshot(self):
        async with self._snapshot_lock:
            await self._store.delete(STORAGE_KEYS.ACTIVE_SESSION)

    async def load_resumable(self) -> Optional[ResumableSnapshot]:
        try:
            raw = await self._store.get(STORAGE_KEYS.ACTIVE_SESSION)
        except StorageError:
            logger.error("Could not read the resumable session", exc_info=True)
            return None
        if raw is None:
            return None
        try:
            snapshot = ResumableSnapshot.model_validate_json(raw)
        except ValidationError:
            logger.warning("Resumable session is malformed, ignoring it", exc_info=True)
            return None
        if snapshot.version != SNAPSHOT_SCHEMA_VERSION or not is_resumable(snapshot.session):
            return None
        return snapshot

    async def resume(self) -> bool:
        snapshot = await self.load_resumable()
        if snapshot is None:
            return False
        session, timer = reconcile_resumed_session(snapshot, self.machine.now())
        self.machine.resume(session, timer)
        return True

    async def aclose(self):
        self._cancel_pending()
        await self.flush()

class BradyTachyPersistence(_Observer):
    """
    Snapshot on every change. Ending the session (resolved / transferred)
    writes history first, then clears the snapshot after a short delay.
    A handoff to the arrest algorithm writes no history here.
    """

    def __init__(self, machine, store, history: HistoryStore,
                 clear_delay_s: float = TIMING.SNAPSHOT_CLEAR_DELAY_S):
        super().__init__()
        self.machine = machine
        self._store = store
        self.history = history
        self._clear_delay_s = clear_delay_s
        self._archived: Set[str] = set()
        machine.subscribe(self.on_change)

    def on_change(self):
        session = self.machine.session
        if session.phase == BradyTachyPhase.SESSION_ENDED:
            if session.outcome == BradyTachyOutcome.SWITCHED_TO_ARREST:
                self._spawn(self._guarded("snapshot clear", self.clear_snapshot()))
            elif session.id not in self._archived:
                self._archived.add(session.id)
                self._spawn(self._end_session(session))
            return
        if session.interventions:
            self._spawn(self._guarded("snapshot save", self.save_snapshot()))

    async def _end_session(self, session: BradyTachySession):
        now = self.machine.now()
        await self._guarded("history write", self.history.save(build_bradytachy_history(session, now)))
        await asyncio.sleep(self._clear_delay_s)
        await self._guarded("snapshot clear", self.clear_snapshot())

    async def save_snapshot(self):
        async with self._snapshot_lock:
            session = self.machine.session
            if session.phase == BradyTachyPhase.SESSION_ENDED:
                return
            snapshot = BradyTachySnapshot(saved_at=self.machine.now(), session=session)
            await self._store.set(STORAGE_KEYS.BRADYTACHY_SESSION, snapshot.model_dump_json())

    async def clear_snapshot(self):
        async with self._snapshot_lock:
            await self._store.delete(STORAGE_KEYS.BRADYTACHY_SESSION)

    async def load_resumable(self) -> Optional[BradyTachySnapshot]:
        try:
            raw = await self._store.get(STORAGE_KEYS.BRADYTACHY_SESSION)
        except StorageError:
            logger.error("Could not read the brady/tachy session", exc_info=True)
            return None
        if raw is None:
            return None
        try:
            snapshot = BradyTachySnapshot.model_validate_json(raw)
        except ValidationError:
            logger.warning("Brady/tachy snapshot is malformed, ignoring it", exc_info=True)
            return None
        if snapshot.session.phase == BradyTachyPhase.SESSION_ENDED:
            return None
        return snapshot

    async def resume(self) -> bool:
        snapshot = await self.load_resumable()
        if snapshot is None:
            return False
        self.machine.session = snapshot.session
        logger.info(f"Resumed brady/tachy session {snapshot.session.id}")
        return True

    async def aclose(self):
        await self.flush()
