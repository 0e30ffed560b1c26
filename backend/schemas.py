from enum import Enum
from typing import List, Optional, Dict, Any, Union
from pydantic import BaseModel, Field
from datetime import datetime


class AttemptStatus(str, Enum):
    IN_PROGRESS = "in_progress"
    SUBMITTED = "submitted"
    AUTO_SUBMITTED = "auto_submitted"
    TIMED_OUT = "timed_out"
    VIOLATION_TERMINATED = "violation_terminated"
    GRADED = "graded"


# Statuses that count towards a quiz's maxAttempts
COMPLETED_STATUSES = [s.value for s in AttemptStatus if s is not AttemptStatus.IN_PROGRESS]


class ViolationType(str, Enum):
    FULLSCREEN_EXIT = "fullscreen_exit"
    TAB_SWITCH = "tab_switch"
    FOCUS_LOST = "focus_lost"
    VISIBILITY_HIDDEN = "visibility_hidden"
    COPY_ATTEMPT = "copy_attempt"
    PASTE_ATTEMPT = "paste_attempt"
    RIGHT_CLICK = "right_click"
    DEV_TOOLS = "dev_tools"
    SCREENSHOT_ATTEMPT = "screenshot_attempt"


class QuestionType(str, Enum):
    SINGLE_CHOICE_RADIO = "single_choice_radio"
    SINGLE_CHOICE_DROPDOWN = "single_choice_dropdown"
    MULTIPLE_CHOICE = "multiple_choice"
    PICTURE_CHOICE = "picture_choice"
    FILL_BLANKS = "fill_blanks"
    MATCHING = "matching"
    MATCHING_TEXT = "matching_text"
    FREE_TEXT = "free_text"


AnswerValue = Union[List[str], str]


# Users Collection Schema
class User(BaseModel):
    uid: str
    role: str  # "superadmin" | "teacher" | "student"
    email: str
    name: str


# Quizzes Collection Schema
class QuestionOption(BaseModel):
    id: str
    text: str
    isCorrect: bool = False


class Question(BaseModel):
    id: str
    text: str
    questionType: QuestionType = QuestionType.SINGLE_CHOICE_RADIO
    options: List[QuestionOption] = []
    correctOptions: List[str] = []  # fill_blanks / matching: expected value per position
    points: float = Field(1, ge=0)


class Quiz(BaseModel):
    id: str
    title: str
    code: str
    timeLimit: int  # minutes
    version: int = 1
    createdBy: str
    questions: List[Question] = []
    totalMarks: Optional[float] = None
    passingMarks: Optional[float] = None
    maxAttempts: int = 1
    shuffleQuestions: bool = False
    showCorrectAnswers: bool = False
    showCorrectAnswersAfter: str = "after_submission"  # or "never"
    isPublished: bool = True
    isActive: bool = True
    startDate: Optional[datetime] = None
    endDate: Optional[datetime] = None
    createdAt: Optional[datetime] = Field(default_factory=datetime.utcnow)
    updatedAt: Optional[datetime] = Field(default_factory=datetime.utcnow)


# Attempts Collection Schema
class Violation(BaseModel):
    type: ViolationType
    timestamp: datetime
    details: Optional[Any] = None


class Attempt(BaseModel):
    id: str = Field(alias="_id")
    quizId: str
    studentId: str
    attemptNumber: int = 1
    status: AttemptStatus = AttemptStatus.IN_PROGRESS
    answers: Dict[str, Any] = {}
    currentQuestionIndex: int = Field(0, ge=0)
    timeRemaining: int = Field(0, ge=0)  # seconds, as reported by the client
    timeLimit: int = 0  # seconds
    violations: List[Violation] = []
    questionOrder: Optional[List[str]] = None
    startedAt: Optional[datetime] = None
    submittedAt: Optional[datetime] = None
    score: Optional[float] = None
    totalMarks: Optional[float] = None
    percentage: Optional[int] = None
    passed: Optional[bool] = None
    gradedAt: Optional[datetime] = None
    gradedBy: Optional[str] = None
    feedback: Optional[str] = None
    ipAddress: Optional[str] = None
    userAgent: Optional[str] = None
    version: int = 0  # bumped by every write
    createdAt: Optional[datetime] = None
    updatedAt: Optional[datetime] = None

    model_config = {"populate_by_name": True}


# Request bodies
class ProgressUpdate(BaseModel):
    answers: Optional[Dict[str, AnswerValue]] = None
    currentQuestionIndex: Optional[int] = Field(None, ge=0)
    timeRemaining: Optional[int] = Field(None, ge=0)


class ViolationCreate(BaseModel):
    type: str = ""
    details: Optional[Any] = None


class AttemptStart(BaseModel):
    quizCode: str
    studentId: str


class AttemptSubmit(BaseModel):
    answers: Optional[Dict[str, AnswerValue]] = None
    violations: List[ViolationCreate] = []
    autoSubmit: Optional[Union[bool, str]] = None


class GradingAction(str, Enum):
    UPDATE_SCORE = "update_score"
    UPDATE_FEEDBACK = "update_feedback"
    FINALIZE_GRADING = "finalize_grading"


class GradingUpdate(BaseModel):
    action: GradingAction
    newScore: Optional[float] = None
    feedback: Optional[str] = None
    justification: Optional[str] = None


# Responses
class ProgressSaved(BaseModel):
    success: bool = True
    savedAt: datetime


class ViolationRecorded(BaseModel):
    success: bool = True
    violationCount: int
    recordedAt: datetime
