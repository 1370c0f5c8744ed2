# records.py
# =============================================================================
# Personal records — derived from the full workout history on every query.
# One record per exercise key: heaviest weight, most reps at that weight, and
# the date that lift was last achieved. Pure functions, no I/O.
# =============================================================================

from __future__ import annotations

from datetime import datetime
from typing import Dict, Iterable, List, Optional

from pydantic import BaseModel, ConfigDict, Field


# -----------------------------------------------------------------------------
# Types
# -----------------------------------------------------------------------------
class WorkoutSet(BaseModel):
    model_config = ConfigDict(frozen=True)

    reps: int
    weight: float


class LoggedExercise(BaseModel):
    exercise_name: str
    variation: Optional[str] = None
    sets: List[WorkoutSet] = Field(default_factory=list)
    notes: Optional[str] = None

    @property
    def key(self) -> str:
        return exercise_key(self.exercise_name, self.variation)


class WorkoutSession(BaseModel):
    date: datetime
    workout_day: Optional[str] = None
    logged_exercises: List[LoggedExercise] = Field(default_factory=list)
    notes: Optional[str] = None


class RepsAtWeight(BaseModel):
    reps: int
    weight: float


class PersonalRecord(BaseModel):
    exercise_key: str
    highest_weight: float
    max_reps_at_weight: Optional[RepsAtWeight] = None
    date: datetime


# -----------------------------------------------------------------------------
# Aggregation
# -----------------------------------------------------------------------------
def exercise_key(name: str, variation: Optional[str] = None) -> str:
    """``"Bench Press (Incline)"`` when a variation is set, otherwise the bare name."""
    variation = (variation or "").strip()
    return f"{name} ({variation})" if variation else name


def _apply_set(
    record: Optional[PersonalRecord], key: str, s: WorkoutSet, when: datetime
) -> Optional[PersonalRecord]:
    """Return the updated record for one set, or None when the set changes nothing."""
    if record is None or s.weight > record.highest_weight:
        # A heavier lift always wins, even from an older session.
        return PersonalRecord(
            exercise_key=key,
            highest_weight=s.weight,
            max_reps_at_weight=RepsAtWeight(reps=s.reps, weight=s.weight),
            date=when,
        )
    if s.weight < record.highest_weight:
        return None

    best = record.max_reps_at_weight
    if best is None or s.reps > best.reps:
        return record.model_copy(update={
            "max_reps_at_weight": RepsAtWeight(reps=s.reps, weight=s.weight),
            "date": max(when, record.date),
        })
    if s.reps == best.reps and when > record.date:
        return record.model_copy(update={"date": when})
    return None


def calculate_personal_records(sessions: Iterable[WorkoutSession]) -> List[PersonalRecord]:
    """Fold a workout history into one PersonalRecord per exercise key.

    Sessions may come in any order. Sets with ``weight <= 0`` are not lifts and
    are skipped. The result is sorted by ``date``, most recent first; records
    sharing a date keep the order in which their keys were first seen.

    Reps and weights are expected to be validated non-negative numbers; this
    function does not check them.
    """
    records: Dict[str, PersonalRecord] = {}
    for session in sessions:
        for exercise in session.logged_exercises:
            key = exercise.key
            for s in exercise.sets:
                if s.weight <= 0:
                    continue
                updated = _apply_set(records.get(key), key, s, session.date)
                if updated is not None:
                    records[key] = updated
    return sorted(records.values(), key=lambda r: r.date, reverse=True)
