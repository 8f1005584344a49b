# safety.py
from constants import (
    AMIODARONE_MAX_DOSES,
    ANTIARRHYTHMIC_SHOCK_THRESHOLD,
    SHOCKABLE_EPI_SHOCK_THRESHOLD,
    ArrestPhase,
    BannerPriority,
    ProtocolConfig,
    Rhythm,
)
from models import ArrestSession, Banner, EligibilityFlags, IneligibleActionError, TimerState

def _seconds(ms: int) -> int:
    # Ceiling, so the display never reads 0 while time remains
    return -(-ms // 1000)

class SafetySupervisor:
    """
    Eligibility and banner rules for the arrest algorithm.
    Pure functions of (session, timer, config, now): the UI reads them as
    button flags, strict mode uses the same functions as guards.
    """

    @staticmethod
    def is_cpr_active(session: ArrestSession) -> bool:
        return session.phase in (ArrestPhase.SHOCKABLE, ArrestPhase.NON_SHOCKABLE)

    @staticmethod
    def can_give_epinephrine(session: ArrestSession) -> bool:
        if session.phase == ArrestPhase.SHOCKABLE:
            # VF/pVT: first dose after the second shock
            return session.shock_count >= SHOCKABLE_EPI_SHOCK_THRESHOLD
        return session.phase == ArrestPhase.NON_SHOCKABLE

    @staticmethod
    def _antiarrhythmic_window(session: ArrestSession) -> bool:
        return (session.phase == ArrestPhase.SHOCKABLE
                and session.shock_count >= ANTIARRHYTHMIC_SHOCK_THRESHOLD)

    @staticmethod
    def can_give_amiodarone(session: ArrestSession) -> bool:
        # Amiodarone and lidocaine are alternatives: once one is chosen the other closes
        return (SafetySupervisor._antiarrhythmic_window(session)
                and session.amiodarone_count < AMIODARONE_MAX_DOSES
                and session.lidocaine_count == 0)

    @staticmethod
    def can_give_lidocaine(session: ArrestSession) -> bool:
        return (SafetySupervisor._antiarrhythmic_window(session)
                and session.amiodarone_count == 0)

    @staticmethod
    def antiarrhythmic_due(session: ArrestSession) -> bool:
        return (SafetySupervisor._antiarrhythmic_window(session)
                and session.amiodarone_count == 0
                and session.lidocaine_count == 0)

    @staticmethod
    def epinephrine_due(session: ArrestSession, now: int, config: ProtocolConfig) -> bool:
        if not SafetySupervisor.is_cpr_active(session):
            return False
        if session.last_epinephrine_time is not None:
            return (now - session.last_epinephrine_time) >= config.medication_interval_ms
        return SafetySupervisor.can_give_epinephrine(session)

    @staticmethod
    def rhythm_check_due(session: ArrestSession, timer: TimerState) -> bool:
        return SafetySupervisor.is_cpr_active(session) and timer.check_due

    @staticmethod
    def check_eligibility(session: ArrestSession, timer: TimerState,
                          config: ProtocolConfig, now: int) -> EligibilityFlags:
        return EligibilityFlags(
            can_give_epinephrine=SafetySupervisor.can_give_epinephrine(session),
            can_give_amiodarone=SafetySupervisor.can_give_amiodarone(session),
            can_give_lidocaine=SafetySupervisor.can_give_lidocaine(session),
            epinephrine_due=SafetySupervisor.epinephrine_due(session, now, config),
            antiarrhythmic_due=SafetySupervisor.antiarrhythmic_due(session),
            rhythm_check_due=SafetySupervisor.rhythm_check_due(session, timer),
        )

    @staticmethod
    def require(allowed: bool, action: str, session: ArrestSession):
        if not allowed:
            raise IneligibleActionError(
                f"'{action}' is not allowed in phase {session.phase.value} "
                f"(shocks={session.shock_count}, epi={session.epinephrine_count}, "
                f"amio={session.amiodarone_count}, lido={session.lidocaine_count})"
            )

    @staticmethod
    def emergency_delivery_due(session: ArrestSession, config: ProtocolConfig, now: int) -> bool:
        """Obstetric arrest: resuscitative delivery is indicated at 5 minutes."""
        return (session.pregnancy_active
                and not session.emergency_delivery_dismissed
                and not session.is_terminal
                and (now - session.start_time) >= config.emergency_delivery_ms)

    @staticmethod
    def derive_banner(session: ArrestSession, timer: TimerState,
                      config: ProtocolConfig, now: int) -> Banner:
        phase = session.phase
        seconds = _seconds(timer.cycle_remaining)

        if SafetySupervisor.emergency_delivery_due(session, config, now):
            return Banner("banner.emergencyDelivery", BannerPriority.CRITICAL, "banner.emergencyDeliverySub")

        if phase == ArrestPhase.PATHWAY_SELECTION:
            return Banner("banner.startCPR", BannerPriority.CRITICAL, "banner.startCPRSub")

        if phase == ArrestPhase.CPR_PENDING_RHYTHM:
            return Banner("banner.cprInProgress", BannerPriority.WARNING, "banner.analyzeRhythmWhenReady")

        if phase == ArrestPhase.ROSC:
            return Banner("banner.roscAchieved", BannerPriority.SUCCESS, "banner.beginPostCare")

        if phase == ArrestPhase.RHYTHM_CHECK:
            if session.current_rhythm == Rhythm.SHOCKABLE:
                return Banner("banner.rhythmCheckVfPvt", BannerPriority.CRITICAL, "banner.rhythmCheckVfPvtSub")
            return Banner("banner.rhythmCheckGeneric", BannerPriority.WARNING, "banner.rhythmCheckGenericSub")

        if timer.check_due and SafetySupervisor.is_cpr_active(session):
            return Banner("banner.rhythmCheckNow", BannerPriority.CRITICAL, "banner.rhythmCheckNowSub")

        if timer.pre_alert_due and SafetySupervisor.is_cpr_active(session):
            return Banner("banner.preCharge", BannerPriority.WARNING, "banner.preChargeSub",
                          {"seconds": seconds})

        if phase == ArrestPhase.SHOCKABLE:
            if SafetySupervisor.epinephrine_due(session, now, config):
                return Banner("banner.giveEpi", BannerPriority.CRITICAL, "banner.giveEpiRepeat")
            if SafetySupervisor.antiarrhythmic_due(session):
                return Banner("banner.giveAmio300", BannerPriority.CRITICAL, "banner.giveAmio300Sub")
            return Banner("banner.continueHQCPR", BannerPriority.INFO, "banner.rhythmCheckIn",
                          {"seconds": seconds})

        if phase == ArrestPhase.NON_SHOCKABLE:
            if session.epinephrine_count == 0:
                sub = "banner.asystoleEpi" if session.current_rhythm == Rhythm.ASYSTOLE else "banner.peaEpi"
                return Banner("banner.giveEpiNow", BannerPriority.CRITICAL, sub)
            if SafetySupervisor.epinephrine_due(session, now, config):
                return Banner("banner.giveEpi", BannerPriority.CRITICAL, "banner.giveEpiRepeat")
            return Banner("banner.continueHQCPR", BannerPriority.INFO, "banner.considerHsTs",
                          {"seconds": seconds})

        return Banner("banner.aclsInProgress", BannerPriority.INFO)
