# app.py
# =============================================================================
# Exercise Tracker API — users, exercises & logs (FastAPI + SQLAlchemy 2.x
# async, Pydantic v2). One user record per username; exercises are appended
# to a user and read back as a sorted, optionally limited/filtered log.
# =============================================================================

from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path as OSPath
from typing import Any, AsyncGenerator, Dict, List, Optional

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from sqlalchemy.engine import make_url

from exercise_log import (
    LogOut,
    assemble_log,
    coerce_duration,
    coerce_int,
    normalize_date,
    to_date_string,
)
from store import StoreUnavailable, User, UsernameTaken, UserNotFound, UserStore

# -----------------------------------------------------------------------------
# Logging
# -----------------------------------------------------------------------------
logging.basicConfig(level=logging.INFO, format="%(levelname)s %(message)s")
log = logging.getLogger("exercise-tracker")

# -----------------------------------------------------------------------------
# DB connection
# Priority:
#   1) DATABASE_URL (any async SQLAlchemy URL)
#   2) Cloud SQL (PostgreSQL) if CLOUD_SQL_CONNECTION_NAME is set
#   3) env TRACKER_DB (absolute path to a SQLite file)
#   4) ./data/exercise_tracker.db
#   5) ./exercise_tracker.db  (fallback)
# -----------------------------------------------------------------------------
_database_url = os.getenv("DATABASE_URL")
_cloud_sql = os.getenv("CLOUD_SQL_CONNECTION_NAME")  # e.g. project:region:instance
_db_user = os.getenv("DB_USER", "postgres")
_db_pass = os.getenv("DB_PASSWORD", "")
_db_name = os.getenv("DB_NAME", "exercise_tracker")

if _database_url:
    DB_URL = _database_url
    DB_TYPE = f"{make_url(DB_URL).get_backend_name()} (DATABASE_URL)"
elif _cloud_sql:
    _socket_path = f"/cloudsql/{_cloud_sql}"
    DB_URL = f"postgresql+asyncpg://{_db_user}:{_db_pass}@/{_db_name}?host={_socket_path}"
    DB_TYPE = f"Cloud SQL PostgreSQL ({_cloud_sql})"
else:
    env_db = os.getenv("TRACKER_DB")
    candidates = [
        env_db,
        str((OSPath(__file__).parent / "data" / "exercise_tracker.db").resolve()),
        str((OSPath(__file__).parent / "exercise_tracker.db").resolve()),
    ]
    DB_PATH = next((p for p in candidates if p and OSPath(p).exists()), candidates[-1])
    DB_URL = f"sqlite+aiosqlite:///{DB_PATH}"
    DB_TYPE = "SQLite"

# Guards the bulk delete route. A fixed string, not a credential.
DELETE_CODE = os.getenv("DELETE_CODE", "501D500D58E49BF24CFAEAF412CFF6")
CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]
HOST = os.getenv("HOST", "0.0.0.0")
PORT = int(os.getenv("PORT", "3000"))

# -----------------------------------------------------------------------------
# Pydantic schemas
# -----------------------------------------------------------------------------
class HealthOut(BaseModel):
    ok: bool = True
    db_connected: bool = True
    db_type: str
    timestamp: str


class GenericResponse(BaseModel):
    message: str


class UserIn(BaseModel):
    username: str

    @field_validator("username")
    @classmethod
    def validate_username(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("username cannot be empty")
        return v


class ExerciseIn(BaseModel):
    """Exercise fields as submitted. Nothing here is ever rejected."""
    description: Optional[str] = None
    duration: Optional[float] = None
    date: str = Field(default="", validate_default=True)

    @field_validator("description", mode="before")
    @classmethod
    def stringify_description(cls, v: Any) -> Optional[str]:
        if v is None or isinstance(v, str):
            return v
        return str(v)

    @field_validator("duration", mode="before")
    @classmethod
    def coerce_numeric_duration(cls, v: Any) -> Optional[float]:
        return coerce_duration(v)

    @field_validator("date", mode="before")
    @classmethod
    def default_date(cls, v: Any) -> str:
        return normalize_date(v)


class UserCreatedOut(BaseModel):
    username: str
    id: str = Field(alias="_id")
    model_config = ConfigDict(populate_by_name=True)


class ExerciseDocOut(BaseModel):
    id: str = Field(alias="_id")
    description: Optional[str] = None
    duration: Optional[float] = None
    date: str
    model_config = ConfigDict(populate_by_name=True)


class UserOut(BaseModel):
    id: str = Field(alias="_id")
    username: str
    count: int
    exercises: List[ExerciseDocOut] = Field(default_factory=list)
    model_config = ConfigDict(populate_by_name=True)


class ExerciseOut(BaseModel):
    id: str = Field(alias="_id")
    username: str
    date: str
    duration: Optional[int] = None
    description: Optional[str] = None
    model_config = ConfigDict(populate_by_name=True)


# -----------------------------------------------------------------------------
# Helpers
# -----------------------------------------------------------------------------
def get_store(request: Request) -> UserStore:
    return request.app.state.store


async def _read_payload(request: Request, model: type[BaseModel]) -> Any:
    """Validate a form-encoded or JSON body against ``model``."""
    content_type = request.headers.get("content-type", "")
    if content_type.startswith("application/json"):
        try:
            data = await request.json()
        except ValueError:
            raise HTTPException(400, "Malformed JSON body")
        if not isinstance(data, dict):
            raise HTTPException(400, "JSON body must be an object")
    else:
        form = await request.form()
        data = {k: v for k, v in form.items() if isinstance(v, str)}
    try:
        return model.model_validate(data)
    except ValidationError as e:
        raise RequestValidationError(e.errors(include_url=False, include_context=False))


def _user_to_out(u: User) -> UserOut:
    return UserOut(
        id=u.id,
        username=u.username,
        count=u.count,
        exercises=[
            ExerciseDocOut(id=str(e.id), description=e.description, duration=e.duration, date=e.date)
            for e in u.exercises
        ],
    )


# -----------------------------------------------------------------------------
# Routes
# -----------------------------------------------------------------------------
router = APIRouter()


@router.get("/health", response_model=HealthOut)
async def health(request: Request, store: UserStore = Depends(get_store)) -> HealthOut:
    db_connected = await store.ping()
    if not db_connected:
        log.error("Health check DB query failed")
    return HealthOut(
        ok=db_connected,
        db_connected=db_connected,
        db_type=request.app.state.db_type,
        timestamp=datetime.now(timezone.utc).isoformat(),
    )


@router.get("/", response_model=GenericResponse)
async def root() -> GenericResponse:
    return GenericResponse(message="Exercise Tracker API is running")


@router.get("/api/users", response_model=List[UserOut])
async def list_users(store: UserStore = Depends(get_store)) -> List[UserOut]:
    users = await store.find_all_users()
    return [_user_to_out(u) for u in users]


@router.post("/api/users", response_model=UserCreatedOut)
async def create_user(request: Request, store: UserStore = Depends(get_store)) -> UserCreatedOut:
    body: UserIn = await _read_payload(request, UserIn)
    try:
        user = await store.create_user(body.username)
    except UsernameTaken:
        raise HTTPException(409, "Username already taken")
    return UserCreatedOut(username=user.username, id=user.id)


# IMPORTANT: define /api/users/clearTheDecks/... BEFORE /api/users/{user_id}/...
@router.get("/api/users/clearTheDecks/{delete_code}")
async def clear_the_decks(
    delete_code: str,
    request: Request,
    store: UserStore = Depends(get_store),
) -> Dict[str, Optional[str]]:
    if delete_code != request.app.state.delete_code:
        return {"Nice work chief": None}
    deleted = await store.delete_all_users()
    log.warning(f"Deleted all users ({deleted})")
    return {"isItDone?": "it has been done!"}


@router.post("/api/users/{user_id}/exercises", response_model=ExerciseOut)
async def add_exercise(
    user_id: str,
    request: Request,
    store: UserStore = Depends(get_store),
) -> ExerciseOut:
    body: ExerciseIn = await _read_payload(request, ExerciseIn)
    try:
        user = await store.append_exercise(user_id, body.description, body.duration, body.date)
    except UserNotFound:
        raise HTTPException(404, "User not found")
    return ExerciseOut(
        id=user.id,
        username=user.username,
        date=to_date_string(body.date),
        duration=coerce_int(body.duration),
        description=body.description,
    )


@router.get("/api/users/{user_id}/logs", response_model=LogOut)
async def get_logs(
    user_id: str,
    limit: Optional[str] = Query(None, description="max entries, counted from the first logged"),
    date_from: Optional[str] = Query(None, alias="from", description="YYYY-MM-DD"),
    date_to: Optional[str] = Query(None, alias="to", description="YYYY-MM-DD"),
    store: UserStore = Depends(get_store),
) -> LogOut:
    try:
        user = await store.find_user_by_id(user_id)
    except UserNotFound:
        raise HTTPException(404, "User not found")
    return assemble_log(user, limit, date_from, date_to)


# -----------------------------------------------------------------------------
# App (with lifespan)
# -----------------------------------------------------------------------------
async def _store_unavailable(request: Request, exc: StoreUnavailable) -> JSONResponse:
    log.error(f"{request.method} {request.url.path} failed: {exc}")
    return JSONResponse(status_code=503, content={"detail": "Store unavailable"})


def create_app(
    store: UserStore,
    db_type: Optional[str] = None,
    delete_code: str = DELETE_CODE,
    cors_origins: Optional[List[str]] = None,
) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator:
        await store.init()
        yield
        await store.close()

    app = FastAPI(
        title="Exercise Tracker API",
        description="Create users, log exercises and read back a filtered exercise log.",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.store = store
    app.state.db_type = db_type or store.description
    app.state.delete_code = delete_code

    origins = CORS_ORIGINS if cors_origins is None else cors_origins
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_exception_handler(StoreUnavailable, _store_unavailable)
    app.include_router(router)
    return app


log.info(f"Using {DB_TYPE}")
app = create_app(UserStore.from_url(DB_URL, DB_TYPE), DB_TYPE)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host=HOST, port=PORT)
