from fastapi import FastAPI, APIRouter, HTTPException, Depends
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from dotenv import load_dotenv
from starlette.middleware.cors import CORSMiddleware
from starlette.requests import Request
from fastapi.responses import JSONResponse
import os
import logging
from pathlib import Path
from pydantic import BaseModel, Field, EmailStr
from typing import Any, List, Optional
import uuid
from datetime import datetime, timezone, timedelta
import bcrypt
import jwt
from pymongo.errors import DuplicateKeyError

ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

from backend import dates
from backend.errors import AppError, NotFoundError, app_error_handler
from backend.leaderboard import CommunityStats, LeaderboardEntry, build_leaderboard
from backend.storage import STORE_ERRORS, connect_database
from backend.streaks import CheckInOutcome, check_in, load_owned_habit

logger = logging.getLogger(__name__)

# Database handle is initialized on startup.
client = None
db: Any = None

APP_ENV = os.environ.get("APP_ENV") or os.environ.get("ENV") or "development"
IS_PROD = APP_ENV.lower() in {"prod", "production"}

_DEFAULT_JWT_SECRET = "streak-tracker-secret-key"
_jwt_secret_env = os.environ.get("JWT_SECRET")
JWT_SECRET = _jwt_secret_env or _DEFAULT_JWT_SECRET
JWT_SECRET_SOURCE = "env" if _jwt_secret_env else "default"
JWT_ALGORITHM = "HS256"
JWT_EXPIRATION_HOURS = 24

LEADERBOARD_DEFAULT_LIMIT = int(os.environ.get("LEADERBOARD_DEFAULT_LIMIT", "20"))
LEADERBOARD_MAX_LIMIT = 100

app = FastAPI()

api_router = APIRouter(prefix="/api")

security = HTTPBearer()

# ============== MODELS ==============

class UserCreate(BaseModel):
    email: EmailStr
    password: str = Field(..., min_length=6)
    username: Optional[str] = Field(None, max_length=50)

class UserLogin(BaseModel):
    email: EmailStr
    password: str

class UserResponse(BaseModel):
    id: str
    email: str
    display_name: str
    created_at: str

class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    user: UserResponse

class ProfileResponse(BaseModel):
    user_id: str
    display_name: str
    created_at: str

class HabitCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)

class HabitUpdate(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)

class HabitResponse(BaseModel):
    id: str
    user_id: str
    name: str
    current_streak: int = 0
    longest_streak: int = 0
    last_check_in: Optional[str] = None
    created_at: str

class CheckInResponse(BaseModel):
    habit_id: str
    outcome: CheckInOutcome
    current_streak: int
    longest_streak: int
    last_check_in: Optional[str] = None

class LeaderboardResponse(BaseModel):
    entries: List[LeaderboardEntry]
    stats: CommunityStats
    limit: int
    timezone: str
    generated_at: str

# ============== AUTH HELPERS ==============

def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode('utf-8'), bcrypt.gensalt()).decode('utf-8')

def verify_password(password: str, hashed: str) -> bool:
    return bcrypt.checkpw(password.encode('utf-8'), hashed.encode('utf-8'))

def create_access_token(user_id: str, email: str) -> str:
    payload = {
        "user_id": user_id,
        "email": email,
        "exp": datetime.now(timezone.utc) + timedelta(hours=JWT_EXPIRATION_HOURS)
    }
    return jwt.encode(payload, JWT_SECRET, algorithm=JWT_ALGORITHM)

async def get_current_user(credentials: HTTPAuthorizationCredentials = Depends(security)):
    try:
        payload = jwt.decode(credentials.credentials, JWT_SECRET, algorithms=[JWT_ALGORITHM])
        user_id = payload.get("user_id")
        if user_id is None:
            raise HTTPException(status_code=401, detail="Invalid token")
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Token has expired")
    except jwt.InvalidTokenError:
        raise HTTPException(status_code=401, detail="Invalid token")

    user = await db.users.find_one({"id": user_id}, {"_id": 0, "password": 0})
    if user is None:
        raise HTTPException(status_code=401, detail="User not found")
    return user

def get_now() -> datetime:
    return dates.now()

async def ensure_profile(user: dict, display_name: Optional[str] = None) -> dict:
    # Profiles are bootstrapped on the first authenticated session.
    profile = await db.profiles.find_one({"user_id": user["id"]}, {"_id": 0})
    if profile:
        return profile

    # Upsert so concurrent first sessions leave exactly one row.
    try:
        result = await db.profiles.update_one(
            {"user_id": user["id"]},
            {
                "$setOnInsert": {
                    "display_name": (display_name or "").strip() or user["email"].split("@", 1)[0],
                    "created_at": datetime.now(timezone.utc).isoformat(),
                }
            },
            upsert=True,
        )
    except DuplicateKeyError:
        # Another session's upsert won the unique user_id index.
        pass
    else:
        if result.upserted_id is not None:
            logger.info("Profile created: user=%s", user["id"])
    return await db.profiles.find_one({"user_id": user["id"]}, {"_id": 0})

def _user_response(user: dict, profile: dict) -> UserResponse:
    return UserResponse(
        id=user["id"],
        email=user["email"],
        display_name=profile["display_name"],
        created_at=user["created_at"]
    )

# ============== AUTH ROUTES ==============

@api_router.post("/auth/register", response_model=TokenResponse)
async def register(user_data: UserCreate):
    existing_user = await db.users.find_one({"email": user_data.email})
    if existing_user:
        raise HTTPException(status_code=400, detail="Email already registered")

    user_id = str(uuid.uuid4())
    now = datetime.now(timezone.utc).isoformat()

    user_doc = {
        "id": user_id,
        "email": user_data.email,
        "password": hash_password(user_data.password),
        "created_at": now
    }

    await db.users.insert_one(user_doc)
    profile = await ensure_profile(user_doc, user_data.username)

    token = create_access_token(user_id, user_data.email)

    return TokenResponse(access_token=token, user=_user_response(user_doc, profile))

@api_router.post("/auth/login", response_model=TokenResponse)
async def login(login_data: UserLogin):
    user = await db.users.find_one({"email": login_data.email})
    if not user or not verify_password(login_data.password, user["password"]):
        raise HTTPException(status_code=401, detail="Invalid email or password")

    profile = await ensure_profile(user)
    token = create_access_token(user["id"], user["email"])

    return TokenResponse(access_token=token, user=_user_response(user, profile))

@api_router.get("/auth/me", response_model=UserResponse)
async def get_me(current_user: dict = Depends(get_current_user)):
    profile = await ensure_profile(current_user)
    return _user_response(current_user, profile)

@api_router.get("/profile", response_model=ProfileResponse)
async def get_profile(current_user: dict = Depends(get_current_user)):
    return await ensure_profile(current_user)

# ============== HABIT ROUTES ==============

@api_router.post("/habits", response_model=HabitResponse)
async def create_habit(habit_data: HabitCreate, current_user: dict = Depends(get_current_user)):
    habit_doc = {
        "id": str(uuid.uuid4()),
        "user_id": current_user["id"],
        "name": habit_data.name.strip(),
        "current_streak": 0,
        "longest_streak": 0,
        "last_check_in": None,
        "created_at": datetime.now(timezone.utc).isoformat(),
    }

    await db.habits.insert_one(habit_doc)
    logger.info("Habit created: habit=%s owner=%s", habit_doc["id"], current_user["id"])

    return HabitResponse(**{k: v for k, v in habit_doc.items() if k != "_id"})

@api_router.get("/habits", response_model=List[HabitResponse])
async def get_habits(current_user: dict = Depends(get_current_user)):
    return await db.habits.find(
        {"user_id": current_user["id"]},
        {"_id": 0}
    ).sort("created_at", 1).to_list(1000)

@api_router.get("/habits/{habit_id}", response_model=HabitResponse)
async def get_habit(habit_id: str, current_user: dict = Depends(get_current_user)):
    return await load_owned_habit(db, habit_id, current_user["id"])

@api_router.put("/habits/{habit_id}", response_model=HabitResponse)
async def update_habit(habit_id: str, habit_data: HabitUpdate, current_user: dict = Depends(get_current_user)):
    await load_owned_habit(db, habit_id, current_user["id"])

    result = await db.habits.update_one(
        {"id": habit_id, "user_id": current_user["id"]},
        {"$set": {"name": habit_data.name.strip()}}
    )
    if result.matched_count == 0:
        raise NotFoundError("Habit not found")

    return await load_owned_habit(db, habit_id, current_user["id"])

@api_router.delete("/habits/{habit_id}")
async def delete_habit(habit_id: str, current_user: dict = Depends(get_current_user)):
    await load_owned_habit(db, habit_id, current_user["id"])

    result = await db.habits.delete_one({"id": habit_id, "user_id": current_user["id"]})
    if result.deleted_count == 0:
        raise NotFoundError("Habit not found")

    logger.info("Habit deleted: habit=%s owner=%s", habit_id, current_user["id"])
    return {"message": "Habit deleted successfully"}

@api_router.post("/habits/{habit_id}/check-in", response_model=CheckInResponse)
async def check_in_habit(
    habit_id: str,
    current_user: dict = Depends(get_current_user),
    now: datetime = Depends(get_now),
):
    result = await check_in(db, habit_id, current_user["id"], now)
    return CheckInResponse(**result.model_dump())

# ============== LEADERBOARD ROUTES ==============

@api_router.get("/leaderboard", response_model=LeaderboardResponse)
async def get_leaderboard(limit: int = LEADERBOARD_DEFAULT_LIMIT, now: datetime = Depends(get_now)):
    limit = max(1, min(LEADERBOARD_MAX_LIMIT, limit))
    board = await build_leaderboard(db, limit, now)
    return LeaderboardResponse(
        entries=board.entries,
        stats=board.stats,
        limit=limit,
        timezone=str(dates.get_streak_tz()),
        generated_at=board.generated_at,
    )

# ============== BASIC ROUTES ==============

@api_router.get("/")
async def root():
    return {"message": "Streak Tracker API"}

@api_router.get("/health")
async def health_check():
    return {"status": "healthy"}

app.include_router(api_router)


async def store_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.warning("%s %s: store failure (%s)", request.method, request.url.path, str(exc))
    return JSONResponse(
        status_code=503,
        content={"detail": "Storage unavailable", "code": "store_unavailable"},
    )


app.add_exception_handler(AppError, app_error_handler)
for _store_error in STORE_ERRORS:
    app.add_exception_handler(_store_error, store_error_handler)

cors_origins_env = os.environ.get('CORS_ORIGINS', '*')
cors_origins = [o.strip() for o in cors_origins_env.split(',') if o.strip()]
if not cors_origins:
    cors_origins = ['*']
cors_allow_all = len(cors_origins) == 1 and cors_origins[0] == '*'

app.add_middleware(
    CORSMiddleware,
    # Avoid using '*' with credentials. In production, set CORS_ORIGINS to your frontend URL(s).
    allow_credentials=not cors_allow_all,
    allow_origins=cors_origins,
    allow_methods=["*"],
    allow_headers=["*"],
)

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)


@app.on_event("startup")
async def startup_db_client():
    global client, db

    if IS_PROD and JWT_SECRET_SOURCE == "default":
        raise RuntimeError("JWT_SECRET must be set in production (refusing to start with default secret).")
    if JWT_SECRET_SOURCE == "default":
        logger.warning("JWT_SECRET not set; using insecure default. Set JWT_SECRET for persistent logins and security.")

    if db is not None:
        return

    data_file = os.environ.get("DATA_FILE")
    client, db = await connect_database(
        os.environ.get("MONGO_URL"),
        os.environ.get("DB_NAME", "streak_tracker"),
        Path(data_file) if data_file else (ROOT_DIR / "data" / "db.json"),
    )
    logger.info("Streak day boundary: %s", dates.get_streak_tz())

@app.on_event("shutdown")
async def shutdown_db_client():
    if client is not None:
        client.close()
