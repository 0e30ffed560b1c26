import logging
import random
import string
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from typing import List, Optional, Dict, Any

from fastapi import FastAPI, HTTPException, Depends, Header, Query, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from jose import JWTError, jwt
from passlib.context import CryptContext
from pydantic import BaseModel, Field

import attempts
import config
from database import create_document, ensure_indexes, get_db
from errors import QuizAppError, ValidationError
from logging_config import RequestLoggingMiddleware, setup_logging
from schemas import (
    Attempt, AttemptStart, AttemptSubmit, GradingUpdate, ProgressSaved, ProgressUpdate,
    Question, Quiz, User, ViolationCreate, ViolationRecorded,
)

setup_logging()
logger = logging.getLogger("quiz_app")

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")

STAFF_ROLES = ("superadmin", "teacher")


class Token(BaseModel):
    access_token: str
    token_type: str = "bearer"


class LoginRequest(BaseModel):
    email: str
    password: str


# Simple in-db user storage with hashed passwords (seeded on startup)

def seed_super_admin():
    db = get_db()
    existing = db["user"].find_one({"email": config.ADMIN_EMAIL})
    if not existing:
        admin = User(uid="admin-1", role="superadmin", email=config.ADMIN_EMAIL, name="Super Admin")
        db["user"].insert_one({**admin.model_dump(), "password": pwd_context.hash(config.ADMIN_PASSWORD)})
        logger.info("Seeded super admin %s", config.ADMIN_EMAIL)


@asynccontextmanager
async def lifespan(app: FastAPI):
    ensure_indexes()
    if config.SEED_ADMIN:
        seed_super_admin()
    yield


app = FastAPI(title="Quiz Attempt Service", lifespan=lifespan)

app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(QuizAppError)
async def quiz_app_error_handler(request: Request, exc: QuizAppError):
    return JSONResponse(status_code=exc.status_code, content=jsonable_encoder(exc.to_dict()))


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    loc = [str(part) for part in errors[0].get("loc", ())[1:]] if errors else []
    error = ValidationError(errors[0]["msg"] if errors else "Invalid request", field=".".join(loc) or None)
    content = error.to_dict()
    content["errors"] = jsonable_encoder(errors)
    return JSONResponse(status_code=error.status_code, content=content)


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled exception on {request.method} {request.url.path}: {exc}", exc_info=True)
    return JSONResponse(status_code=500, content={"detail": "Internal server error"})


def create_access_token(data: dict, expires_delta: Optional[timedelta] = None):
    to_encode = data.copy()
    expire = datetime.utcnow() + (expires_delta or timedelta(minutes=config.ACCESS_TOKEN_EXPIRE_MINUTES))
    to_encode.update({"exp": expire})
    encoded_jwt = jwt.encode(to_encode, config.SECRET_KEY, algorithm=config.ALGORITHM)
    return encoded_jwt


def get_current_user(authorization: Optional[str] = Header(None)) -> Dict[str, Any]:
    if not authorization:
        raise HTTPException(status_code=401, detail="Not authenticated")
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token:
        raise HTTPException(status_code=401, detail="Invalid authentication scheme")
    try:
        payload = jwt.decode(token, config.SECRET_KEY, algorithms=[config.ALGORITHM])
    except JWTError:
        raise HTTPException(status_code=401, detail="Invalid token")
    user_id: str = payload.get("sub")
    if user_id is None:
        raise HTTPException(status_code=401, detail="Invalid token")
    return {"uid": user_id, "email": payload.get("email"), "role": payload.get("role")}


def require_staff(user=Depends(get_current_user)) -> Dict[str, Any]:
    if user["role"] not in STAFF_ROLES:
        raise HTTPException(status_code=403, detail="Forbidden")
    return user


@app.get("/")
async def root():
    return {"message": "Backend OK", "time": datetime.utcnow().isoformat()}


@app.post("/auth/login", response_model=Token)
def login(payload: LoginRequest):
    db = get_db()
    user = db["user"].find_one({"email": payload.email})
    if not user or not pwd_context.verify(payload.password, user.get("password", "")):
        logger.warning("Failed login for %s", payload.email)
        raise HTTPException(status_code=401, detail="Invalid credentials")
    token = create_access_token({
        "sub": user["uid"],
        "email": user["email"],
        "role": user["role"],
    })
    return Token(access_token=token)


# Quizzes
class QuizCreateRequest(BaseModel):
    title: str
    timeLimit: int = Field(..., gt=0)
    questions: List[Question] = []
    totalMarks: Optional[float] = None
    passingMarks: Optional[float] = None
    maxAttempts: int = Field(1, ge=1)
    shuffleQuestions: bool = False
    showCorrectAnswers: bool = False
    showCorrectAnswersAfter: str = "after_submission"
    isPublished: bool = True
    startDate: Optional[datetime] = None
    endDate: Optional[datetime] = None


@app.post("/quizzes", status_code=201)
def create_quiz(data: QuizCreateRequest, user=Depends(require_staff)):
    code = generate_quiz_code()
    quiz = Quiz(id=code, code=code, createdBy=user["uid"], **data.model_dump())
    doc = quiz.model_dump(mode="json", exclude={"startDate", "endDate", "createdAt", "updatedAt"})
    doc.update({"startDate": quiz.startDate, "endDate": quiz.endDate})
    create_document("quiz", doc)
    logger.info("Quiz %s created by %s", code, user["uid"])
    return {"id": code, "code": code}


@app.get("/quizzes/{code}")
def get_quiz_by_code(code: str):
    db = get_db()
    quiz = db["quiz"].find_one({"code": code}, {"_id": 0})
    if not quiz:
        raise HTTPException(status_code=404, detail="Quiz not found")
    # do not leak correct answers here
    for q in quiz.get("questions", []):
        q.pop("correctOptions", None)
        for opt in q.get("options", []):
            opt.pop("isCorrect", None)
    return quiz


# Attempts
@app.post("/attempts/start")
def start_attempt(data: AttemptStart, request: Request):
    ip = request.headers.get("x-forwarded-for") or request.headers.get("x-real-ip")
    if not ip and request.client:
        ip = request.client.host
    attempt = attempts.start_attempt(
        data.quizCode,
        data.studentId,
        ip_address=ip,
        user_agent=request.headers.get("user-agent"),
    )
    status_code = 201 if attempt.get("isNew") else 200
    return JSONResponse(status_code=status_code, content=jsonable_encoder(attempt))


@app.get("/attempts")
def list_attempts(
    quizId: Optional[str] = None,
    studentId: Optional[str] = None,
    status: Optional[str] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    startDate: Optional[datetime] = None,
    endDate: Optional[datetime] = None,
    user=Depends(require_staff),
):
    return attempts.list_attempts(
        quizId, studentId, status, page=page, limit=limit, start_date=startDate, end_date=endDate,
    )


@app.get("/attempts/{attempt_id}", response_model=Attempt)
def get_attempt(attempt_id: str):
    return attempts.get_attempt(attempt_id)


@app.get("/attempts/{attempt_id}/review")
def review_attempt(attempt_id: str, user=Depends(get_current_user)):
    review = attempts.review_attempt(attempt_id, viewer_id=user["uid"], staff=user["role"] in STAFF_ROLES)
    return JSONResponse(content=jsonable_encoder(review))


@app.put("/attempts/{attempt_id}/progress", response_model=ProgressSaved)
def save_progress(attempt_id: str, data: ProgressUpdate):
    return ProgressSaved(**attempts.save_progress(attempt_id, data))


@app.post("/attempts/{attempt_id}/violations", response_model=ViolationRecorded)
def record_violation(attempt_id: str, data: ViolationCreate):
    return ViolationRecorded(**attempts.record_violation(attempt_id, data))


@app.post("/attempts/{attempt_id}/submit")
def submit_attempt(attempt_id: str, data: AttemptSubmit):
    return attempts.submit_attempt(attempt_id, data)


@app.patch("/attempts/{attempt_id}/grading")
def grade_attempt(attempt_id: str, data: GradingUpdate, user=Depends(require_staff)):
    return attempts.grade_attempt(attempt_id, data, graded_by=user["uid"])


@app.get("/dashboard/stats")
def dashboard_stats(user=Depends(require_staff)):
    db = get_db()
    quizzes = db["quiz"].count_documents({})
    total = db["attempt"].count_documents({})
    active = db["attempt"].count_documents({"status": attempts.IN_PROGRESS})
    flagged = db["attempt"].count_documents({"violations": {"$ne": []}})
    return {"quizzes": quizzes, "attempts": total, "activeAttempts": active, "flaggedAttempts": flagged}


def generate_quiz_code() -> str:
    return ''.join(random.choices(string.ascii_uppercase + string.digits, k=6))
