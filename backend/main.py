# main.py

import logging
import os
from contextlib import asynccontextmanager
from typing import Any, Callable, Dict, List, Optional

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field

from constants import DEFAULT_CONFIG, DEFAULT_DATA_DIR, VERSION, PathwayMode, ProtocolConfig
from models import (
    ArrestSession,
    Banner,
    BradyTachySession,
    DoseResult,
    EligibilityFlags,
    IneligibleActionError,
    ProtocolError,
    TimerState,
)
from arrest_protocol import CardiacArrestProtocol
from bradytachy_protocol import BradyTachyProtocol, transfer_to_arrest
from persistence import (
    ArrestSessionPersistence,
    BradyTachyPersistence,
    HistoryRecord,
    HistoryStore,
    HistorySummary,
)
from secure_store import open_store
import intervention_log
from timer_engine import TICKING_PHASES, TickScheduler

# --- 1. CONFIGURATION & LOGGING ---
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("resusflow-api")

# Actions callable through POST /<machine>/actions. Anything else is rejected.
ARREST_ACTIONS = frozenset({
    'start_cpr', 'select_rhythm', 'start_rhythm_check',
    'complete_check_with_shock', 'complete_check_no_shock', 'complete_check_resume_cpr',
    'give_epinephrine', 'give_amiodarone', 'give_lidocaine',
    'set_airway', 'record_etco2', 'update_reversible_causes',
    'achieve_rosc', 'terminate', 'end_code', 'reset',
    'set_patient_weight', 'set_cpr_ratio', 'set_pathway_mode',
    'toggle_pregnancy', 'update_pregnancy_causes', 'update_pregnancy_interventions',
    'dismiss_emergency_delivery', 'toggle_special_circumstance', 'update_special_checklist',
    'update_anaphylaxis_checklist', 'update_asthma_checklist', 'update_hyperthermia_checklist',
    'update_opioid_overdose_checklist', 'update_drowning_checklist',
    'update_electrocution_checklist', 'update_lvad_failure_checklist',
    'update_post_rosc_checklist', 'update_post_rosc_vitals', 'add_note',
})

BRADYTACHY_ACTIONS = frozenset({
    'set_patient_group', 'set_patient_weight', 'set_branch', 'set_stability',
    'set_qrs_width', 'set_rhythm_regularity', 'set_monomorphic', 'set_sinus_vs_svt',
    'select_pediatric_sinus_tachycardia', 'advance_to_compromise_assessment',
    'set_cardioversion_rhythm_type',
    'give_atropine', 'give_adenosine', 'give_cardioversion', 'give_dopamine',
    'give_epinephrine_infusion', 'give_beta_blocker', 'give_calcium_blocker',
    'give_procainamide', 'give_amiodarone', 'perform_vagal_maneuver',
    'give_diltiazem', 'give_verapamil', 'give_metoprolol', 'give_esmolol',
    'end_session', 'reset', 'set_phase', 'add_note',
})

# --- 2. REQUEST / RESPONSE SCHEMA ---

class ActionRequest(BaseModel):
    action: str = Field(..., min_length=1, description="Action name, e.g. 'give_epinephrine'")
    args: Dict[str, Any] = Field(default_factory=dict, description="Keyword arguments for the action")

    model_config = {
        "json_schema_extra": {
            "example": {"action": "select_rhythm", "args": {"rhythm": "vf_pvt"}}
        }
    }

class BradyTachyStartRequest(BaseModel):
    initial_mode: Optional[PathwayMode] = None
    initial_weight: Optional[float] = Field(None, gt=0, le=150.0)

class ArrestView(BaseModel):
    session: ArrestSession
    timer: TimerState
    banner: Banner
    eligibility: EligibilityFlags
    next_shock: DoseResult

class BradyTachyView(BaseModel):
    session: BradyTachySession

class TimelineRow(BaseModel):
    offset_ms: int
    offset: str
    type: str
    details: str
    translation_key: Optional[str] = None
    translation_params: Dict[str, Any] = Field(default_factory=dict)

class TimelineView(BaseModel):
    """Arrest timeline relative to arrest start; imported brady/tachy entries are negative."""
    rows: List[TimelineRow]
    counts: Dict[str, int]

class ResumeInfo(BaseModel):
    available: bool
    session_id: Optional[str] = None
    phase: Optional[str] = None
    saved_at: Optional[int] = None

# --- 3. CONTROLLER (one device, one active session) ---

class ResusController:

    def __init__(self, store, config: ProtocolConfig = DEFAULT_CONFIG,
                 clock: Optional[Callable[[], int]] = None):
        self.config = config
        self.arrest = CardiacArrestProtocol(config=config, clock=clock)
        self.bradytachy = BradyTachyProtocol(clock=clock)
        self.history = HistoryStore(store)
        self.arrest_persistence = ArrestSessionPersistence(self.arrest, store, self.history, config)
        self.bradytachy_persistence = BradyTachyPersistence(self.bradytachy, store, self.history)
        self.scheduler = TickScheduler(self.arrest.tick, config.tick_interval_s)
        self.arrest.subscribe(self._sync_scheduler)

    def _sync_scheduler(self):
        if self.arrest.session.phase in TICKING_PHASES:
            self.scheduler.start()
        else:
            self.scheduler.stop()

    def arrest_view(self) -> ArrestView:
        now = self.arrest.now()
        self.arrest.tick(now)
        return ArrestView(
            session=self.arrest.session,
            timer=self.arrest.timer,
            banner=self.arrest.banner(now),
            eligibility=self.arrest.eligibility(now),
            next_shock=self.arrest.next_shock_energy(),
        )

    def timeline_view(self) -> TimelineView:
        session = self.arrest.session
        rows = [
            TimelineRow(
                offset_ms=offset,
                offset=intervention_log.format_offset(offset),
                type=entry.type.value,
                details=entry.details,
                translation_key=entry.translation_key,
                translation_params=entry.translation_params,
            )
            for offset, entry in intervention_log.timeline(session.interventions, session.start_time)
        ]
        counts = {t.value: n for t, n in intervention_log.count_by_type(session.interventions).items()}
        return TimelineView(rows=rows, counts=counts)

    def bradytachy_view(self) -> BradyTachyView:
        return BradyTachyView(session=self.bradytachy.session)

    @staticmethod
    def dispatch(machine, allowed: frozenset, request: ActionRequest):
        if request.action not in allowed:
            raise ProtocolError(f"Unknown action: {request.action}")
        try:
            getattr(machine, request.action)(**request.args)
        except TypeError as e:
            raise ProtocolError(f"Bad arguments for '{request.action}': {e}") from e

    async def aclose(self):
        self.scheduler.stop()
        await self.arrest_persistence.aclose()
        await self.bradytachy_persistence.aclose()

def _http_errors(fn, *args):
    """Maps engine errors to HTTP codes, the same way for every endpoint."""
    try:
        return fn(*args)
    except HTTPException:
        raise
    except IneligibleActionError as e:
        logger.warning(f"Ineligible action: {str(e)}")
        raise HTTPException(status_code=409, detail=str(e))
    except ValueError as e:
        logger.warning(f"Protocol Validation Error: {str(e)}")
        raise HTTPException(status_code=422, detail=f"Protocol Validation Error: {str(e)}")
    except Exception as e:
        logger.error(f"Internal Engine Failure: {str(e)}", exc_info=True)
        raise HTTPException(status_code=500, detail="Internal Protocol Engine Error")

# --- 4. APP FACTORY ---

def create_app(store=None, config: ProtocolConfig = DEFAULT_CONFIG,
               clock: Optional[Callable[[], int]] = None) -> FastAPI:
    if store is None:
        data_dir = os.environ.get("RESUSFLOW_DATA_DIR", DEFAULT_DATA_DIR)
        logger.info(f"Using session store at {data_dir}")
        store = open_store(data_dir)

    controller = ResusController(store, config=config, clock=clock)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        await controller.aclose()

    app = FastAPI(
        title="ResusFlow API",
        version=VERSION,
        description="Local cardiac-arrest and brady/tachy protocol engine. \n\n"
                    "**WARNING**: Decision Support Tool Only. Runs on the rescuer's device, loopback only.",
        lifespan=lifespan,
    )
    app.state.controller = controller

    app.add_middleware(
        CORSMiddleware,
        allow_origin_regex=r"https?://(localhost|127\.0\.0\.1)(:\d+)?",
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/health")
    def health_check():
        return {"status": "active", "version": VERSION, "module": "resusflow-protocol-engine"}

    # --- Cardiac arrest ---

    @app.get("/arrest", response_model=ArrestView)
    async def get_arrest():
        return _http_errors(controller.arrest_view)

    @app.get("/arrest/timeline", response_model=TimelineView)
    async def get_arrest_timeline():
        return _http_errors(controller.timeline_view)

    @app.post("/arrest/actions", response_model=ArrestView)
    async def arrest_action(request: ActionRequest):
        logger.info(f"Arrest action: {request.action}")
        if request.action == 'export':
            return await _export(controller)
        _http_errors(controller.dispatch, controller.arrest, ARREST_ACTIONS, request)
        return _http_errors(controller.arrest_view)

    # --- Bradycardia / tachycardia ---

    @app.get("/bradytachy", response_model=BradyTachyView)
    async def get_bradytachy():
        return controller.bradytachy_view()

    @app.post("/bradytachy/start", response_model=BradyTachyView)
    async def start_bradytachy(request: BradyTachyStartRequest):
        _http_errors(controller.bradytachy.reset, request.initial_mode, request.initial_weight)
        return controller.bradytachy_view()

    @app.post("/bradytachy/actions", response_model=BradyTachyView)
    async def bradytachy_action(request: ActionRequest):
        logger.info(f"Brady/tachy action: {request.action}")
        _http_errors(controller.dispatch, controller.bradytachy, BRADYTACHY_ACTIONS, request)
        return controller.bradytachy_view()

    @app.post("/bradytachy/handoff", response_model=ArrestView)
    async def bradytachy_handoff():
        """Patient lost pulses: freeze the brady/tachy session and start the arrest algorithm."""
        _http_errors(transfer_to_arrest, controller.bradytachy, controller.arrest)
        return _http_errors(controller.arrest_view)

    # --- Resume ---

    @app.get("/resume", response_model=ResumeInfo)
    async def resume_info():
        snapshot = await controller.arrest_persistence.load_resumable()
        if snapshot is None:
            return ResumeInfo(available=False)
        return ResumeInfo(available=True, session_id=snapshot.session.id,
                          phase=snapshot.session.phase.value, saved_at=snapshot.saved_at)

    @app.post("/resume", response_model=ArrestView)
    async def resume_session():
        if not await controller.arrest_persistence.resume():
            raise HTTPException(status_code=404, detail="No session to resume")
        controller._sync_scheduler()
        return _http_errors(controller.arrest_view)

    @app.delete("/resume")
    async def discard_resumable():
        await controller.arrest_persistence.clear_snapshot()
        return {"discarded": True}

    # --- History ---

    @app.get("/history", response_model=List[HistorySummary])
    async def list_history():
        return await controller.history.list()

    @app.get("/history/{record_id}", response_model=HistoryRecord)
    async def get_history(record_id: str):
        record = await controller.history.get(record_id)
        if record is None:
            raise HTTPException(status_code=404, detail=f"No history record {record_id}")
        return record

    @app.delete("/history/{record_id}")
    async def delete_history(record_id: str):
        await controller.history.delete(record_id)
        return {"deleted": record_id}

    return app

async def _export(controller: ResusController) -> ArrestView:
    try:
        record = await controller.arrest_persistence.export()
    except OSError as e:
        logger.error(f"Export failed: {str(e)}", exc_info=True)
        raise HTTPException(status_code=500, detail="Could not save session to history")
    logger.info(f"Session {record.id} exported to history")
    return controller.arrest_view()

app = create_app()
