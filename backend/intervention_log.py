# intervention_log.py
"""
Append-only timeline helpers. Entries are never edited or removed; every
function returns a new tuple.
"""

import logging
from collections import Counter
from typing import Dict, Iterable, List, Optional, Tuple

from constants import InterventionType
from models import BradyTachyIntervention, Intervention, ParamValue, new_id

logger = logging.getLogger("resusflow.log")

def make_intervention(timestamp: int, type: InterventionType, details: str = "",
                      value=None, translation_key: Optional[str] = None,
                      translation_params: Optional[Dict[str, ParamValue]] = None) -> Intervention:
    return Intervention(
        id=new_id(),
        timestamp=timestamp,
        type=type,
        details=details,
        value=value,
        translation_key=translation_key,
        translation_params=dict(translation_params or {}),
    )

def append(log: Tuple[Intervention, ...], *entries: Intervention) -> Tuple[Intervention, ...]:
    return log + tuple(entries)

def _arrest_type_for(entry: BradyTachyIntervention) -> InterventionType:
    try:
        return InterventionType(entry.type.value)
    except ValueError:
        logger.warning(f"Unmapped brady/tachy intervention type '{entry.type.value}', logging as note")
        return InterventionType.NOTE

def import_entries(entries: Iterable[BradyTachyIntervention]) -> Tuple[Intervention, ...]:
    """
    Converts a finalized brady/tachy log into arrest timeline entries.
    Timestamps and translation data are kept; each entry gets a fresh id.
    """
    return tuple(
        Intervention(
            id=new_id(),
            timestamp=e.timestamp,
            type=_arrest_type_for(e),
            details=e.details,
            value=e.value,
            translation_key=e.translation_key,
            translation_params=dict(e.translation_params),
        )
        for e in entries
    )

def count_by_type(log: Iterable[Intervention]) -> Dict[InterventionType, int]:
    return dict(Counter(e.type for e in log))

def first_of(log: Iterable[Intervention], *types: InterventionType) -> Optional[Intervention]:
    ordered = sorted(log, key=lambda e: e.timestamp)
    return next((e for e in ordered if e.type in types), None)

def timeline(log: Iterable[Intervention], anchor: int) -> List[Tuple[int, Intervention]]:
    """
    (offset_ms, entry) pairs in chronological order. Entries logged before the
    anchor (imported brady/tachy history) get negative offsets.
    """
    return [(e.timestamp - anchor, e) for e in sorted(log, key=lambda e: e.timestamp)]

def format_offset(offset_ms: int) -> str:
    sign = "-" if offset_ms < 0 else ""
    total_s = abs(offset_ms) // 1000
    return f"{sign}{total_s // 60:02d}:{total_s % 60:02d}"
