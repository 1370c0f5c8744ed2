# app.py
# =============================================================================
# Lauvit API — Workout sessions, gym plans & body composition
# (FastAPI + SQLAlchemy 2.x async, Pydantic v2)
# Sessions are stored one row per working set; personal records are never
# stored, they are recomputed from the full history on every query.
# v1.2.0 — plan day templates, body composition history, dashboard
# =============================================================================

from __future__ import annotations

import csv
import io
import os
import logging
import time
import traceback
from collections import Counter, defaultdict
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from pathlib import Path as OSPath
from typing import AsyncGenerator, Dict, List, Optional

from fastapi import Body, FastAPI, HTTPException, Query, Request, Response
from fastapi import Path as FPath
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from sqlalchemy import (
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    asc,
    desc,
    func,
    select,
    text,
    update,
)
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from body_composition import analyze, bmi_category
from records import (
    LoggedExercise,
    PersonalRecord,
    WorkoutSession,
    WorkoutSet,
    calculate_personal_records,
    exercise_key,
)

# -----------------------------------------------------------------------------
# Logging
# -----------------------------------------------------------------------------
logging.basicConfig(level=logging.INFO, format="%(levelname)s %(message)s")
log = logging.getLogger("lauvit-api")

# -----------------------------------------------------------------------------
# DB connection
# Priority:
#   1) Cloud SQL (PostgreSQL) if CLOUD_SQL_CONNECTION_NAME is set
#   2) env LAUVIT_DB (absolute path to lauvit.db)
#   3) ./data/lauvit.db
#   4) ./lauvit.db  (fallback)
# -----------------------------------------------------------------------------
_cloud_sql = os.getenv("CLOUD_SQL_CONNECTION_NAME")
_db_user = os.getenv("DB_USER", "postgres")
_db_pass = os.getenv("DB_PASSWORD", "")
_db_name = os.getenv("DB_NAME", "lauvit")

if _cloud_sql:
    _socket_path = f"/cloudsql/{_cloud_sql}"
    DB_PATH = f"postgresql+asyncpg://{_db_user}:{_db_pass}@/{_db_name}?host={_socket_path}"
    engine = create_async_engine(
        DB_PATH, echo=False, pool_pre_ping=True,
        pool_size=20, max_overflow=30, pool_timeout=30,
    )
    log.info(f"Using Cloud SQL (async): {_cloud_sql}")
else:
    env_db = os.getenv("LAUVIT_DB")
    candidates = [
        env_db,
        str((OSPath(__file__).parent / "data" / "lauvit.db").resolve()),
        str((OSPath(__file__).parent / "lauvit.db").resolve()),
    ]
    DB_PATH = next((p for p in candidates if p and OSPath(p).exists()), candidates[-1])
    engine = create_async_engine(f"sqlite+aiosqlite:///{DB_PATH}", echo=False)
    log.info(f"Using SQLite (async): {DB_PATH}")

async_session = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

# -----------------------------------------------------------------------------
# SQLAlchemy models
# -----------------------------------------------------------------------------
class Base(DeclarativeBase):
    pass


class WorkoutLog(Base):
    """One logged training session."""
    __tablename__ = "workout_log"
    __table_args__ = {"extend_existing": True}

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    date: Mapped[datetime] = mapped_column(DateTime, nullable=False, index=True)  # naive UTC
    workout_day: Mapped[Optional[str]] = mapped_column(String, nullable=True)  # plan day name
    utc_offset_minutes: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)  # as logged
    notes: Mapped[Optional[str]] = mapped_column(String, nullable=True)

    sets: Mapped[List[LoggedSet]] = relationship(
        back_populates="log", cascade="all, delete-orphan", lazy="selectin"
    )


class LoggedSet(Base):
    """One working set. Exercise fields are repeated on every set of the exercise."""
    __tablename__ = "logged_set"
    __table_args__ = {"extend_existing": True}

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    log_id: Mapped[int] = mapped_column(
        ForeignKey("workout_log.id", ondelete="CASCADE"), nullable=False, index=True
    )
    exercise_index: Mapped[int] = mapped_column(Integer, nullable=False)  # position in session
    exercise_name: Mapped[str] = mapped_column(String, nullable=False)
    variation: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    exercise_notes: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    set_number: Mapped[int] = mapped_column(Integer, nullable=False)
    reps: Mapped[int] = mapped_column(Integer, nullable=False)
    weight: Mapped[float] = mapped_column(Float, nullable=False)  # kg

    log: Mapped[WorkoutLog] = relationship(back_populates="sets")


class GymPlan(Base):
    __tablename__ = "gym_plan"
    __table_args__ = {"extend_existing": True}

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String, nullable=False)
    description: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)

    days: Mapped[List[PlanDay]] = relationship(
        back_populates="plan", cascade="all, delete-orphan", lazy="selectin",
        order_by="PlanDay.position",
    )


class PlanDay(Base):
    __tablename__ = "plan_day"
    __table_args__ = {"extend_existing": True}

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    plan_id: Mapped[int] = mapped_column(
        ForeignKey("gym_plan.id", ondelete="CASCADE"), nullable=False, index=True
    )
    position: Mapped[int] = mapped_column(Integer, nullable=False)
    name: Mapped[str] = mapped_column(String, nullable=False)  # "Day 1", "Push Day"

    plan: Mapped[GymPlan] = relationship(back_populates="days")
    exercises: Mapped[List[PlanExercise]] = relationship(
        back_populates="day", cascade="all, delete-orphan", lazy="selectin",
        order_by="PlanExercise.position",
    )


class PlanExercise(Base):
    __tablename__ = "plan_exercise"
    __table_args__ = {"extend_existing": True}

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    day_id: Mapped[int] = mapped_column(
        ForeignKey("plan_day.id", ondelete="CASCADE"), nullable=False, index=True
    )
    position: Mapped[int] = mapped_column(Integer, nullable=False)
    name: Mapped[str] = mapped_column(String, nullable=False)
    variation: Mapped[str] = mapped_column(String, nullable=False)
    sets: Mapped[int] = mapped_column(Integer, nullable=False)
    reps: Mapped[str] = mapped_column(String, nullable=False)  # "8-12", "AMRAP"

    day: Mapped[PlanDay] = relationship(back_populates="exercises")


class BodyCompositionEntry(Base):
    __tablename__ = "body_composition"
    __table_args__ = {"extend_existing": True}

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    date: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    weight_kg: Mapped[float] = mapped_column(Float, nullable=False)
    height_cm: Mapped[float] = mapped_column(Float, nullable=False)
    bmi: Mapped[float] = mapped_column(Float, nullable=False)
    muscle_mass_kg: Mapped[float] = mapped_column(Float, nullable=False)
    muscle_mass_estimated: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    notes: Mapped[Optional[str]] = mapped_column(String, nullable=True)


# -----------------------------------------------------------------------------
# Startup: create tables & run migrations
# -----------------------------------------------------------------------------
_COLUMN_MIGRATIONS = [
    ("logged_set", "exercise_notes", "ALTER TABLE logged_set ADD COLUMN exercise_notes VARCHAR"),
    ("gym_plan", "description", "ALTER TABLE gym_plan ADD COLUMN description VARCHAR"),
    ("workout_log", "utc_offset_minutes", "ALTER TABLE workout_log ADD COLUMN utc_offset_minutes INTEGER"),
    ("body_composition", "muscle_mass_estimated",
     "ALTER TABLE body_composition ADD COLUMN muscle_mass_estimated BOOLEAN DEFAULT FALSE"),
]


async def _init_db():
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    # Each column uses its own transaction so a failed SELECT doesn't abort
    # the ALTER TABLE in PostgreSQL (PG aborts entire txn on any error).
    for table, col_name, col_sql in _COLUMN_MIGRATIONS:
        try:
            async with engine.begin() as conn:
                await conn.execute(text(f"SELECT {col_name} FROM {table} LIMIT 1"))
        except Exception:
            try:
                async with engine.begin() as conn:
                    await conn.execute(text(col_sql))
                    log.info(f"Added {col_name} column to {table} table")
            except Exception as e:
                log.warning(f"Migration for {col_name} ({table}): {e}")


# -----------------------------------------------------------------------------
# Pydantic schemas
# -----------------------------------------------------------------------------
_VALID_VARIATIONS = {
    "Cable", "Cable Unilateral", "Machine", "Machine Unilateral", "Dumbbell", "Barbell",
}


def _naive_utc(v: datetime) -> datetime:
    if v.tzinfo is not None:
        v = v.astimezone(timezone.utc).replace(tzinfo=None)
    return v


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _clean_optional(v: Optional[str]) -> Optional[str]:
    if v is None:
        return None
    return v.strip() or None


def _require_text(v: str, field: str) -> str:
    v = v.strip()
    if not v:
        raise ValueError(f"{field} cannot be empty")
    return v


class HealthOut(BaseModel):
    ok: bool = True
    db_connected: bool = True
    db_type: str
    timestamp: str


class GenericResponse(BaseModel):
    message: str


class DBInfoOut(BaseModel):
    db_type: str
    session_rows: int
    set_rows: int
    plan_rows: int
    body_composition_rows: int


class ExerciseCountOut(BaseModel):
    exercise: str
    count: int


# --- Sessions ----------------------------------------------------------------
class SetIn(BaseModel):
    reps: int = Field(..., ge=0)
    weight: float = Field(..., ge=0, allow_inf_nan=False)  # kg, 0 = bodyweight / placeholder


class LoggedExerciseIn(BaseModel):
    exercise_name: str
    variation: Optional[str] = None
    sets: List[SetIn] = Field(..., min_length=1)
    notes: Optional[str] = None

    @field_validator("exercise_name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        return _require_text(v, "exercise name")

    @field_validator("variation", "notes")
    @classmethod
    def clean_optional(cls, v: Optional[str]) -> Optional[str]:
        return _clean_optional(v)


class SessionIn(BaseModel):
    """One workout session. Every set is validated here, before it can reach the PR math."""
    date: datetime
    workout_day: Optional[str] = None
    logged_exercises: List[LoggedExerciseIn] = Field(..., min_length=1)
    notes: Optional[str] = None
    # Offset of the lifter's clock when the session was logged. Taken from an
    # aware `date`; naive dates are UTC and may carry it explicitly.
    utc_offset_minutes: Optional[int] = Field(None, ge=-840, le=840)

    @model_validator(mode="after")
    def normalize_date(self) -> "SessionIn":
        offset = self.date.utcoffset()
        if offset is not None:
            self.utc_offset_minutes = int(offset.total_seconds() // 60)
            self.date = _naive_utc(self.date)
        return self

    @field_validator("workout_day", "notes")
    @classmethod
    def clean_optional(cls, v: Optional[str]) -> Optional[str]:
        return _clean_optional(v)


class SessionOut(WorkoutSession):
    id: int
    utc_offset_minutes: Optional[int] = None


class BulkSessionIn(BaseModel):
    sessions: List[SessionIn]


class BulkSessionOut(BaseModel):
    saved: int
    ids: List[int]


# --- Analytics ---------------------------------------------------------------
class PRsOut(BaseModel):
    records: List[PersonalRecord] = Field(default_factory=list)


class WorkoutDaysOut(BaseModel):
    days: List[str] = Field(default_factory=list)  # YYYY-MM-DD
    total_workouts: int = 0


class DashboardOut(BaseModel):
    total_workouts: int
    active_plan: Optional[str] = None
    personal_records: List[PersonalRecord] = Field(default_factory=list)
    workout_days: List[str] = Field(default_factory=list)


class CsvExportOut(BaseModel):
    filename: str
    rows: int
    csv: str


# --- Plans -------------------------------------------------------------------
class PlanExerciseIn(BaseModel):
    name: str
    variation: str = "Cable"
    sets: int = Field(3, ge=1)
    reps: str = "8-12"

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        return _require_text(v, "exercise name")

    @field_validator("variation")
    @classmethod
    def validate_variation(cls, v: str) -> str:
        if v not in _VALID_VARIATIONS:
            raise ValueError(f"variation must be one of {sorted(_VALID_VARIATIONS)}")
        return v

    @field_validator("reps")
    @classmethod
    def validate_reps(cls, v: str) -> str:
        return _require_text(v, "reps")


class PlanDayIn(BaseModel):
    name: str
    exercises: List[PlanExerciseIn] = Field(..., min_length=1)

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        return _require_text(v, "day name")


class PlanIn(BaseModel):
    name: str
    description: Optional[str] = None
    is_active: bool = False
    days: List[PlanDayIn] = Field(..., min_length=1)

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        return _require_text(v, "plan name")

    @field_validator("description")
    @classmethod
    def clean_description(cls, v: Optional[str]) -> Optional[str]:
        return _clean_optional(v)


class PlanExerciseOut(BaseModel):
    id: int
    name: str
    variation: str
    sets: int
    reps: str
    model_config = ConfigDict(from_attributes=True)


class PlanDayOut(BaseModel):
    id: int
    name: str
    exercises: List[PlanExerciseOut] = Field(default_factory=list)
    model_config = ConfigDict(from_attributes=True)


class PlanOut(BaseModel):
    id: int
    name: str
    description: Optional[str] = None
    is_active: bool
    days: List[PlanDayOut] = Field(default_factory=list)
    created_at: datetime
    updated_at: datetime
    model_config = ConfigDict(from_attributes=True)


class PlanDaysOut(BaseModel):
    plan_id: int
    plan_name: str
    days: List[str] = Field(default_factory=list)


class SessionTemplateOut(BaseModel):
    plan_id: int
    workout_day: str
    logged_exercises: List[LoggedExercise] = Field(default_factory=list)


# --- Body composition --------------------------------------------------------
class BodyCompositionIn(BaseModel):
    weight_kg: float = Field(..., gt=0, allow_inf_nan=False)
    height_cm: float = Field(..., gt=0, allow_inf_nan=False)
    muscle_mass_kg: Optional[float] = Field(None, gt=0, allow_inf_nan=False)
    date: Optional[datetime] = None
    notes: Optional[str] = None

    @field_validator("date")
    @classmethod
    def normalize_date(cls, v: Optional[datetime]) -> Optional[datetime]:
        return _naive_utc(v) if v is not None else None

    @field_validator("notes")
    @classmethod
    def clean_notes(cls, v: Optional[str]) -> Optional[str]:
        return _clean_optional(v)


class BodyCompositionOut(BaseModel):
    id: int
    date: datetime
    weight_kg: float
    height_cm: float
    bmi: float
    category: str
    muscle_mass_kg: float
    muscle_mass_estimated: bool
    notes: Optional[str] = None


# -----------------------------------------------------------------------------
# App
# -----------------------------------------------------------------------------
@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator:
    await _init_db()
    yield
    await engine.dispose()


app = FastAPI(
    title="Lauvit API",
    description="Workout log, gym plans, personal records and body composition.",
    version="1.2.0",
    lifespan=lifespan,
)


# -----------------------------------------------------------------------------
# Global exception handler — log full traceback so server logs show the cause
# -----------------------------------------------------------------------------
@app.exception_handler(Exception)
async def _global_exception_handler(request: Request, exc: Exception):
    tb = traceback.format_exc()
    log.error(f"Unhandled error on {request.method} {request.url.path}: {exc}\n{tb}")
    return JSONResponse(
        status_code=500,
        content={"detail": f"Internal server error: {type(exc).__name__}: {exc}"},
    )


# -----------------------------------------------------------------------------
# Rate limiting middleware (simple in-memory, per-IP)
# -----------------------------------------------------------------------------
_rate_limit_store: Dict[str, List[float]] = defaultdict(list)
RATE_LIMIT_REQUESTS = int(os.getenv("RATE_LIMIT_REQUESTS", "300"))
RATE_LIMIT_WINDOW = int(os.getenv("RATE_LIMIT_WINDOW", "60"))  # seconds


@app.middleware("http")
async def rate_limit_middleware(request: Request, call_next):
    client_ip = request.client.host if request.client else "unknown"
    now = time.time()
    window_start = now - RATE_LIMIT_WINDOW
    _rate_limit_store[client_ip] = [
        t for t in _rate_limit_store[client_ip] if t > window_start
    ]
    if len(_rate_limit_store[client_ip]) >= RATE_LIMIT_REQUESTS:
        return Response(
            content='{"detail":"Rate limit exceeded. Try again later."}',
            status_code=429,
            media_type="application/json",
        )
    _rate_limit_store[client_ip].append(now)
    # Prune stale IPs to prevent memory leak
    if len(_rate_limit_store) > 1000:
        stale = [ip for ip, ts in _rate_limit_store.items()
                 if not ts or ts[-1] < window_start]
        for ip in stale:
            del _rate_limit_store[ip]
    response = await call_next(request)
    response.headers["X-RateLimit-Limit"] = str(RATE_LIMIT_REQUESTS)
    response.headers["X-RateLimit-Remaining"] = str(
        RATE_LIMIT_REQUESTS - len(_rate_limit_store[client_ip])
    )
    return response


# -----------------------------------------------------------------------------
# Helpers
# -----------------------------------------------------------------------------
def _set_rows(body: SessionIn) -> List[LoggedSet]:
    rows: List[LoggedSet] = []
    for ex_index, ex in enumerate(body.logged_exercises):
        for set_number, st in enumerate(ex.sets, start=1):
            rows.append(LoggedSet(
                exercise_index=ex_index, exercise_name=ex.exercise_name,
                variation=ex.variation, exercise_notes=ex.notes,
                set_number=set_number, reps=st.reps, weight=st.weight,
            ))
    return rows


def _log_to_out(w: WorkoutLog) -> SessionOut:
    exercises: Dict[int, LoggedExercise] = {}
    for r in sorted(w.sets, key=lambda r: (r.exercise_index, r.set_number)):
        ex = exercises.get(r.exercise_index)
        if ex is None:
            ex = exercises[r.exercise_index] = LoggedExercise(
                exercise_name=r.exercise_name, variation=r.variation, notes=r.exercise_notes,
            )
        ex.sets.append(WorkoutSet(reps=r.reps, weight=r.weight))
    return SessionOut(
        id=w.id, date=w.date, workout_day=w.workout_day, notes=w.notes,
        utc_offset_minutes=w.utc_offset_minutes, logged_exercises=list(exercises.values()),
    )


def _body_to_out(b: BodyCompositionEntry) -> BodyCompositionOut:
    return BodyCompositionOut(
        id=b.id, date=b.date, weight_kg=b.weight_kg, height_cm=b.height_cm,
        bmi=b.bmi, category=bmi_category(b.bmi), muscle_mass_kg=b.muscle_mass_kg,
        muscle_mass_estimated=bool(b.muscle_mass_estimated), notes=b.notes,
    )


def _build_days(days: List[PlanDayIn]) -> List[PlanDay]:
    return [
        PlanDay(
            position=d_idx, name=d.name,
            exercises=[
                PlanExercise(position=e_idx, name=e.name, variation=e.variation,
                             sets=e.sets, reps=e.reps)
                for e_idx, e in enumerate(d.exercises)
            ],
        )
        for d_idx, d in enumerate(days)
    ]


def _matches_exercise(session: WorkoutSession, term: str) -> bool:
    term = term.strip().lower()
    return any(term in ex.key.lower() for ex in session.logged_exercises)


def _local_day(d: datetime, utc_offset_minutes: Optional[int] = None) -> str:
    """Calendar day the lifter saw; stored dates are naive UTC."""
    return (d + timedelta(minutes=utc_offset_minutes or 0)).strftime("%Y-%m-%d")


def _db_type() -> str:
    """Return a safe description of the DB type (no credentials)."""
    if _cloud_sql:
        return f"Cloud SQL PostgreSQL ({_cloud_sql})"
    return "SQLite"


async def _all_sessions(s: AsyncSession) -> List[SessionOut]:
    result = await s.execute(select(WorkoutLog).order_by(asc(WorkoutLog.date), asc(WorkoutLog.id)))
    return [_log_to_out(w) for w in result.scalars().all()]


async def _active_plan(s: AsyncSession) -> Optional[GymPlan]:
    result = await s.execute(
        select(GymPlan).where(GymPlan.is_active.is_(True)).order_by(desc(GymPlan.updated_at)).limit(1)
    )
    return result.scalar()


async def _deactivate_plans(s: AsyncSession, keep_id: Optional[int] = None) -> None:
    stmt = update(GymPlan).values(is_active=False)
    if keep_id is not None:
        stmt = stmt.where(GymPlan.id != keep_id)
    await s.execute(stmt)


# -----------------------------------------------------------------------------
# Duplicate detection helper
# -----------------------------------------------------------------------------
async def _check_duplicates(session: AsyncSession, body: SessionIn) -> List[int]:
    """Return IDs of sessions logged at exactly the same timestamp."""
    result = await session.execute(select(WorkoutLog.id).where(WorkoutLog.date == body.date))
    return [row[0] for row in result.all()]


# -----------------------------------------------------------------------------
# Health / Root
# -----------------------------------------------------------------------------
@app.get("/health", response_model=HealthOut)
async def health() -> HealthOut:
    db_connected = False
    try:
        async with async_session() as s:
            await s.execute(text("SELECT 1"))
            db_connected = True
    except Exception as e:
        log.error(f"Health check DB query failed: {e}")
    return HealthOut(
        ok=db_connected,
        db_connected=db_connected,
        db_type=_db_type(),
        timestamp=datetime.now(timezone.utc).isoformat(),
    )


@app.get("/", response_model=GenericResponse)
async def root() -> GenericResponse:
    return GenericResponse(message="Lauvit API v1 is running")


# -----------------------------------------------------------------------------
# Debug
# -----------------------------------------------------------------------------
@app.get("/debug/dbinfo", response_model=DBInfoOut)
async def dbinfo() -> DBInfoOut:
    async with async_session() as s:
        counts = {}
        for model in (WorkoutLog, LoggedSet, GymPlan, BodyCompositionEntry):
            result = await s.execute(select(func.count()).select_from(model))
            counts[model] = int(result.scalar_one())
    return DBInfoOut(
        db_type=_db_type(),
        session_rows=counts[WorkoutLog],
        set_rows=counts[LoggedSet],
        plan_rows=counts[GymPlan],
        body_composition_rows=counts[BodyCompositionEntry],
    )


@app.get("/debug/exercises", response_model=List[ExerciseCountOut])
async def debug_exercises(limit: int = Query(50, ge=1, le=500)) -> List[ExerciseCountOut]:
    async with async_session() as s:
        result = await s.execute(
            select(LoggedSet.exercise_name, LoggedSet.variation, func.count())
            .group_by(LoggedSet.exercise_name, LoggedSet.variation)
        )
        rows = result.all()
    counts: Counter = Counter()
    for name, variation, c in rows:
        counts[exercise_key(name, variation)] += int(c)
    return [ExerciseCountOut(exercise=k, count=c) for k, c in counts.most_common(limit)]


# -----------------------------------------------------------------------------
# Sessions — single (with duplicate detection)
# -----------------------------------------------------------------------------
@app.post("/sessions", response_model=SessionOut)
async def add_session(
    body: SessionIn,
    force: bool = Query(False, description="Skip duplicate check"),
) -> SessionOut:
    async with async_session() as s:
        if not force:
            dups = await _check_duplicates(s, body)
            if dups:
                raise HTTPException(
                    409,
                    detail=f"Possible duplicate. Existing IDs: {dups}. Use force=true to save anyway.",
                )
        obj = WorkoutLog(
            date=body.date, utc_offset_minutes=body.utc_offset_minutes,
            workout_day=body.workout_day, notes=body.notes,
            sets=_set_rows(body),
        )
        s.add(obj)
        await s.commit()
        return _log_to_out(obj)


# -----------------------------------------------------------------------------
# Sessions — bulk (history import)
# -----------------------------------------------------------------------------
@app.post("/sessions/bulk", response_model=BulkSessionOut)
async def add_sessions_bulk(
    body: BulkSessionIn,
    force: bool = Query(False, description="Skip duplicate check"),
) -> BulkSessionOut:
    if not body.sessions:
        raise HTTPException(400, "Empty session list")
    ids: List[int] = []
    async with async_session() as s:
        if not force:
            all_dups: List[int] = []
            for item in body.sessions:
                all_dups.extend(await _check_duplicates(s, item))
            if all_dups:
                raise HTTPException(
                    409,
                    detail=f"Possible duplicates found. Existing IDs: {all_dups}. Use force=true to save anyway.",
                )
        for item in body.sessions:
            obj = WorkoutLog(
                date=item.date, utc_offset_minutes=item.utc_offset_minutes,
                workout_day=item.workout_day, notes=item.notes,
                sets=_set_rows(item),
            )
            s.add(obj)
            await s.flush()
            ids.append(obj.id)
        await s.commit()
    return BulkSessionOut(saved=len(ids), ids=ids)


@app.get("/sessions", response_model=List[SessionOut])
async def query_sessions(
    start: Optional[datetime] = Query(None, description="inclusive lower bound"),
    end: Optional[datetime] = Query(None, description="inclusive upper bound"),
    exercise: Optional[str] = Query(None, description="exercise name or part of it"),
    workout_day: Optional[str] = None,
) -> List[SessionOut]:
    """Workout history, newest first."""
    stmt = select(WorkoutLog)
    if start:
        stmt = stmt.where(WorkoutLog.date >= _naive_utc(start))
    if end:
        stmt = stmt.where(WorkoutLog.date <= _naive_utc(end))
    if workout_day:
        stmt = stmt.where(func.lower(WorkoutLog.workout_day) == workout_day.strip().lower())
    stmt = stmt.order_by(desc(WorkoutLog.date), desc(WorkoutLog.id))
    async with async_session() as s:
        result = await s.execute(stmt)
        sessions = [_log_to_out(w) for w in result.scalars().all()]
    if exercise and exercise.strip():
        sessions = [x for x in sessions if _matches_exercise(x, exercise)]
    return sessions


@app.get("/sessions/{session_id}", response_model=SessionOut)
async def get_session(session_id: int = FPath(..., ge=1)) -> SessionOut:
    async with async_session() as s:
        w = await s.get(WorkoutLog, session_id)
        if not w:
            raise HTTPException(404, "Session not found")
        return _log_to_out(w)


@app.put("/sessions/{session_id}", response_model=SessionOut)
async def edit_session(
    session_id: int = FPath(..., ge=1), body: SessionIn = Body(...)
) -> SessionOut:
    async with async_session() as s:
        w = await s.get(WorkoutLog, session_id)
        if not w:
            raise HTTPException(404, "Session not found")
        w.date = body.date
        w.utc_offset_minutes = body.utc_offset_minutes
        w.workout_day = body.workout_day
        w.notes = body.notes
        w.sets = _set_rows(body)
        await s.commit()
        return _log_to_out(w)


@app.delete("/sessions/{session_id}", response_model=GenericResponse)
async def delete_session(session_id: int = FPath(..., ge=1)) -> GenericResponse:
    async with async_session() as s:
        w = await s.get(WorkoutLog, session_id)
        if not w:
            raise HTTPException(404, "Session not found")
        await s.delete(w)
        await s.commit()
    return GenericResponse(message="Session deleted")


# -----------------------------------------------------------------------------
# Analytics
# -----------------------------------------------------------------------------
@app.get("/analytics/prs", response_model=PRsOut)
async def analytics_prs(exercise: Optional[str] = None) -> PRsOut:
    async with async_session() as s:
        sessions = await _all_sessions(s)
    records = calculate_personal_records(sessions)
    if exercise and exercise.strip():
        term = exercise.strip().lower()
        records = [r for r in records if term in r.exercise_key.lower()]
    return PRsOut(records=records)


@app.get("/analytics/workout_days", response_model=WorkoutDaysOut)
async def analytics_workout_days(
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
) -> WorkoutDaysOut:
    stmt = select(WorkoutLog.date, WorkoutLog.utc_offset_minutes)
    if start:
        stmt = stmt.where(WorkoutLog.date >= _naive_utc(start))
    if end:
        stmt = stmt.where(WorkoutLog.date <= _naive_utc(end))
    async with async_session() as s:
        result = await s.execute(stmt)
        rows = result.all()
    return WorkoutDaysOut(
        days=sorted({_local_day(d, off) for d, off in rows}),
        total_workouts=len(rows),
    )


@app.get("/dashboard", response_model=DashboardOut)
async def dashboard() -> DashboardOut:
    async with async_session() as s:
        sessions = await _all_sessions(s)
        plan = await _active_plan(s)
    return DashboardOut(
        total_workouts=len(sessions),
        active_plan=plan.name if plan else None,
        personal_records=calculate_personal_records(sessions),
        workout_days=sorted({_local_day(x.date, x.utc_offset_minutes) for x in sessions}),
    )


# -----------------------------------------------------------------------------
# Gym plans
# IMPORTANT: define /plans/active* BEFORE any dynamic /plans/{plan_id}
# -----------------------------------------------------------------------------
@app.post("/plans", response_model=PlanOut)
async def create_plan(body: PlanIn) -> PlanOut:
    now = _utcnow()
    async with async_session() as s:
        if body.is_active:
            await _deactivate_plans(s)
        plan = GymPlan(
            name=body.name, description=body.description, is_active=body.is_active,
            created_at=now, updated_at=now, days=_build_days(body.days),
        )
        s.add(plan)
        await s.commit()
        return PlanOut.model_validate(plan)


@app.get("/plans", response_model=List[PlanOut])
async def list_plans() -> List[PlanOut]:
    async with async_session() as s:
        result = await s.execute(select(GymPlan).order_by(asc(GymPlan.created_at), asc(GymPlan.id)))
        return [PlanOut.model_validate(p) for p in result.scalars().all()]


@app.get("/plans/active", response_model=PlanOut)
async def get_active_plan() -> PlanOut:
    async with async_session() as s:
        plan = await _active_plan(s)
        if not plan:
            raise HTTPException(404, "No active plan")
        return PlanOut.model_validate(plan)


@app.get("/plans/active/days", response_model=PlanDaysOut)
async def active_plan_days() -> PlanDaysOut:
    async with async_session() as s:
        plan = await _active_plan(s)
        if not plan:
            raise HTTPException(404, "No active plan")
        names = list(dict.fromkeys(d.name.strip() for d in plan.days if d.name and d.name.strip()))
        return PlanDaysOut(plan_id=plan.id, plan_name=plan.name, days=names)


@app.get("/plans/active/template", response_model=SessionTemplateOut)
async def active_plan_template(day: str = Query(..., min_length=1)) -> SessionTemplateOut:
    """Prefill a session for one day of the active plan: placeholder sets, targets in notes."""
    async with async_session() as s:
        plan = await _active_plan(s)
        if not plan:
            raise HTTPException(404, "No active plan")
        plan_day = next((d for d in plan.days if d.name == day.strip()), None)
        if plan_day is None:
            raise HTTPException(404, f"Day '{day}' not found in active plan")
        exercises = [
            LoggedExercise(
                exercise_name=e.name,
                variation=e.variation,
                sets=[WorkoutSet(reps=0, weight=0) for _ in range(e.sets or 1)],
                notes=f"Target: {e.sets} sets of {e.reps} reps. Variation: {e.variation}.",
            )
            for e in plan_day.exercises
        ]
        return SessionTemplateOut(plan_id=plan.id, workout_day=plan_day.name, logged_exercises=exercises)


@app.get("/plans/{plan_id}", response_model=PlanOut)
async def get_plan(plan_id: int = FPath(..., ge=1)) -> PlanOut:
    async with async_session() as s:
        plan = await s.get(GymPlan, plan_id)
        if not plan:
            raise HTTPException(404, "Plan not found")
        return PlanOut.model_validate(plan)


@app.put("/plans/{plan_id}", response_model=PlanOut)
async def edit_plan(plan_id: int = FPath(..., ge=1), body: PlanIn = Body(...)) -> PlanOut:
    async with async_session() as s:
        plan = await s.get(GymPlan, plan_id)
        if not plan:
            raise HTTPException(404, "Plan not found")
        if body.is_active:
            await _deactivate_plans(s, keep_id=plan.id)
        plan.name = body.name
        plan.description = body.description
        plan.is_active = body.is_active
        plan.updated_at = _utcnow()
        plan.days = _build_days(body.days)
        await s.commit()
        return PlanOut.model_validate(plan)


@app.post("/plans/{plan_id}/activate", response_model=PlanOut)
async def activate_plan(plan_id: int = FPath(..., ge=1)) -> PlanOut:
    async with async_session() as s:
        plan = await s.get(GymPlan, plan_id)
        if not plan:
            raise HTTPException(404, "Plan not found")
        await _deactivate_plans(s, keep_id=plan.id)
        plan.is_active = True
        plan.updated_at = _utcnow()
        await s.commit()
        return PlanOut.model_validate(plan)


@app.delete("/plans/{plan_id}", response_model=GenericResponse)
async def delete_plan(plan_id: int = FPath(..., ge=1)) -> GenericResponse:
    async with async_session() as s:
        plan = await s.get(GymPlan, plan_id)
        if not plan:
            raise HTTPException(404, "Plan not found")
        await s.delete(plan)
        await s.commit()
    return GenericResponse(message="Plan deleted")


# -----------------------------------------------------------------------------
# Body composition
# -----------------------------------------------------------------------------
@app.post("/body_composition", response_model=BodyCompositionOut)
async def add_body_composition(body: BodyCompositionIn) -> BodyCompositionOut:
    result = analyze(body.weight_kg, body.height_cm, body.muscle_mass_kg)
    obj = BodyCompositionEntry(
        date=body.date or _utcnow(),
        weight_kg=body.weight_kg,
        height_cm=body.height_cm,
        bmi=result.bmi,
        muscle_mass_kg=result.muscle_mass_kg,
        muscle_mass_estimated=result.muscle_mass_estimated,
        notes=body.notes,
    )
    async with async_session() as s:
        s.add(obj)
        await s.commit()
    return _body_to_out(obj)


@app.get("/body_composition", response_model=List[BodyCompositionOut])
async def list_body_composition() -> List[BodyCompositionOut]:
    async with async_session() as s:
        result = await s.execute(
            select(BodyCompositionEntry).order_by(desc(BodyCompositionEntry.date), desc(BodyCompositionEntry.id))
        )
        return [_body_to_out(b) for b in result.scalars().all()]


@app.delete("/body_composition/{entry_id}", response_model=GenericResponse)
async def delete_body_composition(entry_id: int = FPath(..., ge=1)) -> GenericResponse:
    async with async_session() as s:
        b = await s.get(BodyCompositionEntry, entry_id)
        if not b:
            raise HTTPException(404, "Entry not found")
        await s.delete(b)
        await s.commit()
    return GenericResponse(message="Entry deleted")


# -----------------------------------------------------------------------------
# Export CSV
# -----------------------------------------------------------------------------
@app.get("/export/csv", response_model=CsvExportOut)
async def export_csv() -> CsvExportOut:
    async with async_session() as s:
        result = await s.execute(
            select(LoggedSet, WorkoutLog)
            .join(WorkoutLog, LoggedSet.log_id == WorkoutLog.id)
            .order_by(asc(WorkoutLog.date), asc(WorkoutLog.id),
                      asc(LoggedSet.exercise_index), asc(LoggedSet.set_number))
        )
        rows = result.all()

    buf = io.StringIO()
    writer = csv.writer(buf)
    writer.writerow([
        "session_id", "date", "workout_day", "exercise", "variation",
        "set_number", "reps", "weight", "notes",
    ])
    for st, w in rows:
        writer.writerow([
            w.id, w.date.isoformat(), (w.workout_day or ""), st.exercise_name,
            (st.variation or ""), st.set_number, st.reps, st.weight,
            (st.exercise_notes or ""),
        ])

    return CsvExportOut(filename="workout_history.csv", rows=len(rows), csv=buf.getvalue())


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("app:app", host="0.0.0.0", port=int(os.getenv("PORT", "8080")))
