"""
Quiz attempt ledger.

An attempt document is the only shared state: every operation here is a
single read or a single conditional write against the ``attempt``
collection. Writes that touch in-progress fields are filtered on
``status == "in_progress"`` inside the same ``find_one_and_update`` call, so
the lifecycle check and the write are one atomic step in MongoDB. A write
that matches nothing is re-read to tell a missing attempt from a closed one.

Every write also bumps an integer ``version``; submission scores a snapshot
and only writes if that version is still current.

Timestamps come from the server clock, never from the client.
"""

import logging
import random
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Callable, Dict, Optional

from pymongo import DESCENDING, ReturnDocument
from pymongo.errors import DuplicateKeyError, PyMongoError

import config
from database import (
    NEWEST_FIRST, create_document, get_db, get_documents, serialize_document, to_object_id, utcnow,
)
from errors import (
    AttemptExpiredError, ForbiddenError, InvalidStateError, NotFoundError, StorageFailure, ValidationError,
)
from grading import (
    as_answer_list, correct_options, has_passed, percentage_of, question_outcome, score_attempt, total_marks,
)
from schemas import (
    COMPLETED_STATUSES, Attempt, AttemptStatus, AttemptSubmit, GradingAction, GradingUpdate,
    ProgressUpdate, ViolationCreate, ViolationType,
)

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]

IN_PROGRESS = AttemptStatus.IN_PROGRESS.value
KNOWN_VIOLATIONS = {v.value for v in ViolationType}
SUBMIT_RETRIES = 3


def _attempts():
    return get_db()["attempt"]


@contextmanager
def _storage(operation: str):
    try:
        yield
    except DuplicateKeyError:
        raise
    except PyMongoError as exc:
        logger.error("Storage failure during %s", operation, exc_info=True)
        raise StorageFailure(operation) from exc


def _object_id(attempt_id: str):
    oid = to_object_id(attempt_id)
    if oid is None:
        raise NotFoundError("Quiz attempt", str(attempt_id))
    return oid


def _reject(attempt_id: str, oid, message: str):
    """Raise the right error for a conditional write that matched nothing."""
    with _storage("attempt lookup"):
        current = _attempts().find_one({"_id": oid}, {"status": 1})
    if current is None:
        raise NotFoundError("Quiz attempt", str(attempt_id))
    logger.info("Refused write on attempt %s in status %s", attempt_id, current.get("status"))
    raise InvalidStateError(message, status=current.get("status"))


def _unsafe_key(key: Any) -> bool:
    return not isinstance(key, str) or not key or "." in key or key.startswith("$")


def validate_answer_keys(answers: Optional[Dict[str, Any]]) -> None:
    # keys become "answers.<id>" update paths
    for question_id in answers or {}:
        if _unsafe_key(question_id):
            raise ValidationError(f"Invalid question id {question_id!r}", field="answers")


def validate_violation(violation: ViolationCreate) -> str:
    vtype = (violation.type or "").strip()
    if not vtype:
        raise ValidationError("Violation type is required", field="type")
    if vtype not in KNOWN_VIOLATIONS:
        raise ValidationError(f"Unknown violation type {vtype!r}", field="type")
    return vtype


def validate_details(value: Any) -> None:
    """Reject field names MongoDB will not store, at any depth."""
    if isinstance(value, dict):
        for key, item in value.items():
            if _unsafe_key(key):
                raise ValidationError(f"Invalid key {key!r} in violation details", field="details")
            validate_details(item)
    elif isinstance(value, list):
        for item in value:
            validate_details(item)


def _violation_entry(violation: ViolationCreate, now: datetime) -> Dict[str, Any]:
    vtype = validate_violation(violation)
    validate_details(violation.details)
    return {"type": vtype, "timestamp": now, "details": violation.details}


def _answer_paths(answers: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    return {f"answers.{qid}": value for qid, value in (answers or {}).items()}


def find_attempt(attempt_id: str) -> Dict[str, Any]:
    oid = _object_id(attempt_id)
    with _storage("attempt lookup"):
        doc = _attempts().find_one({"_id": oid})
    if doc is None:
        raise NotFoundError("Quiz attempt", str(attempt_id))
    return doc


def get_attempt(attempt_id: str) -> Attempt:
    return Attempt.model_validate(serialize_document(find_attempt(attempt_id)))


def ensure_in_progress(doc: Dict[str, Any], message: str = "Cannot update completed attempt") -> None:
    if doc.get("status") != IN_PROGRESS:
        raise InvalidStateError(message, status=doc.get("status"))


def save_progress(attempt_id: str, update: ProgressUpdate, clock: Clock = utcnow) -> Dict[str, Any]:
    """Merge the supplied fields into an in-progress attempt.

    Answers are merged per question id; fields left out of ``update`` keep
    their stored value. Returns ``{"savedAt": ...}``, the time the write was
    applied.
    """
    fields = {k: v for k, v in update.model_dump(exclude_unset=True).items() if v is not None}
    validate_answer_keys(fields.get("answers"))
    oid = _object_id(attempt_id)

    now = clock()
    changes: Dict[str, Any] = {"updatedAt": now}
    changes.update(_answer_paths(fields.get("answers")))
    if "currentQuestionIndex" in fields:
        changes["currentQuestionIndex"] = fields["currentQuestionIndex"]
    if "timeRemaining" in fields:
        changes["timeRemaining"] = fields["timeRemaining"]

    with _storage("progress save"):
        doc = _attempts().find_one_and_update(
            {"_id": oid, "status": IN_PROGRESS},
            {"$set": changes, "$inc": {"version": 1}},
            projection={"_id": 1},
            return_document=ReturnDocument.AFTER,
        )
    if doc is None:
        _reject(attempt_id, oid, "Cannot update completed attempt")

    logger.debug("Saved progress on attempt %s (%s)", attempt_id, ", ".join(sorted(fields)) or "no fields")
    return {"savedAt": now}


def record_violation(attempt_id: str, violation: ViolationCreate, clock: Clock = utcnow) -> Dict[str, Any]:
    """Append one integrity event to an in-progress attempt.

    Escalation (auto-submit after N events) is up to the caller; the returned
    count comes from the same write that appended the event.
    """
    now = clock()
    entry = _violation_entry(violation, now)
    oid = _object_id(attempt_id)

    with _storage("violation record"):
        doc = _attempts().find_one_and_update(
            {"_id": oid, "status": IN_PROGRESS},
            {"$push": {"violations": entry}, "$set": {"updatedAt": now}, "$inc": {"version": 1}},
            projection={"violations": 1},
            return_document=ReturnDocument.AFTER,
        )
    if doc is None:
        _reject(attempt_id, oid, "Cannot record violation for completed attempt")

    count = len(doc.get("violations", []))
    logger.warning("Violation %s on attempt %s (total %d)", entry["type"], attempt_id, count)
    return {"violationCount": count, "recordedAt": now}


def time_left(attempt: Dict[str, Any], now: datetime) -> int:
    elapsed = int((now - attempt["startedAt"]).total_seconds())
    return max(0, attempt.get("timeLimit", 0) - elapsed)


def _check_quiz_available(quiz: Dict[str, Any], now: datetime) -> None:
    if not quiz.get("isPublished", True):
        raise ForbiddenError("Quiz is not published yet")
    if quiz.get("isActive") is False:
        raise ForbiddenError("Quiz has been deactivated")
    if quiz.get("startDate") and now < quiz["startDate"]:
        raise ForbiddenError("Quiz has not started yet")
    if quiz.get("endDate") and now > quiz["endDate"]:
        raise ForbiddenError("Quiz deadline has passed")


def start_attempt(
    quiz_code: str,
    student_id: str,
    ip_address: Optional[str] = None,
    user_agent: Optional[str] = None,
    clock: Clock = utcnow,
) -> Dict[str, Any]:
    """Create a new attempt, or resume the student's open one on this quiz."""
    db = get_db()
    now = clock()
    with _storage("quiz lookup"):
        quiz = db["quiz"].find_one({"code": quiz_code})
    if not quiz:
        raise NotFoundError("Quiz", quiz_code)
    _check_quiz_available(quiz, now)

    quiz_id = quiz.get("id")
    with _storage("attempt lookup"):
        existing = _attempts().find_one({"quizId": quiz_id, "studentId": student_id, "status": IN_PROGRESS})

    if existing:
        remaining = time_left(existing, now)
        if remaining <= 0:
            with _storage("attempt expiry"):
                _attempts().update_one(
                    {"_id": existing["_id"], "status": IN_PROGRESS},
                    {"$set": {
                        "status": AttemptStatus.TIMED_OUT.value,
                        "submittedAt": now,
                        "timeRemaining": 0,
                        "updatedAt": now,
                    }, "$inc": {"version": 1}},
                )
            logger.info("Attempt %s expired on resume", existing["_id"])
            raise AttemptExpiredError(str(existing["_id"]))
        resumed = serialize_document(existing)
        resumed.update({"timeRemaining": remaining, "isResumed": True})
        return resumed

    with _storage("attempt count"):
        completed = _attempts().count_documents(
            {"quizId": quiz_id, "studentId": student_id, "status": {"$in": COMPLETED_STATUSES}}
        )
        last = _attempts().find_one(
            {"quizId": quiz_id, "studentId": student_id},
            {"attemptNumber": 1},
            sort=[("attemptNumber", DESCENDING)],
        )
    max_attempts = quiz.get("maxAttempts", 1)
    if completed >= max_attempts:
        raise ForbiddenError(f"Maximum attempts ({max_attempts}) reached")

    time_limit = (quiz.get("timeLimit") or config.DEFAULT_TIME_LIMIT_MINUTES) * 60
    question_order = None
    if quiz.get("shuffleQuestions"):
        ids = [q["id"] for q in quiz.get("questions", [])]
        question_order = random.sample(ids, len(ids))

    attempt = {
        "quizId": quiz_id,
        "studentId": student_id,
        "attemptNumber": (last or {}).get("attemptNumber", 0) + 1,
        "status": IN_PROGRESS,
        "answers": {},
        "currentQuestionIndex": 0,
        "timeRemaining": time_limit,
        "timeLimit": time_limit,
        "violations": [],
        "questionOrder": question_order,
        "startedAt": now,
        "submittedAt": None,
        "ipAddress": ip_address or "unknown",
        "userAgent": user_agent or "unknown",
        "version": 0,
        "createdAt": now,
        "updatedAt": now,
    }
    try:
        with _storage("attempt create"):
            attempt_id = create_document("attempt", attempt)
    except DuplicateKeyError:
        # another request created the same attemptNumber first
        raise InvalidStateError("An attempt for this quiz is already being started")

    logger.info("Started attempt %s (#%d) on quiz %s for %s",
                attempt_id, attempt["attemptNumber"], quiz_id, student_id)
    created = serialize_document(attempt)
    created.update({"_id": attempt_id, "isNew": True})
    return created


def _submission_status(auto_submit: Any) -> str:
    if auto_submit == "timeout":
        return AttemptStatus.TIMED_OUT.value
    if auto_submit == "violations":
        return AttemptStatus.VIOLATION_TERMINATED.value
    if auto_submit:
        return AttemptStatus.AUTO_SUBMITTED.value
    return AttemptStatus.SUBMITTED.value


def submit_attempt(attempt_id: str, payload: AttemptSubmit, clock: Clock = utcnow) -> Dict[str, Any]:
    """Close an in-progress attempt and score it.

    The write is conditioned on the ``version`` that was scored, so an
    autosave landing between the read and the write makes us re-read and
    score again instead of freezing stale answers.
    """
    validate_answer_keys(payload.answers)
    oid = _object_id(attempt_id)
    now = clock()
    final_violations = [_violation_entry(v, now) for v in payload.violations]
    status = _submission_status(payload.autoSubmit)

    for _ in range(SUBMIT_RETRIES):
        doc = find_attempt(attempt_id)
        ensure_in_progress(doc, "Quiz already submitted")
        with _storage("quiz lookup"):
            quiz = get_db()["quiz"].find_one({"id": doc["quizId"]})
        if not quiz:
            raise NotFoundError("Quiz", str(doc["quizId"]))

        answers = {**doc.get("answers", {}), **(payload.answers or {})}
        result = score_attempt(quiz, answers)

        changes = _answer_paths(payload.answers)
        changes.update({
            "status": status,
            "submittedAt": now,
            "score": result["score"],
            "totalMarks": result["totalMarks"],
            "percentage": result["percentage"],
            "passed": result["passed"],
            "timeRemaining": 0,
            "updatedAt": now,
        })
        update: Dict[str, Any] = {"$set": changes, "$inc": {"version": 1}}
        if final_violations:
            update["$push"] = {"violations": {"$each": final_violations}}

        with _storage("attempt submit"):
            written = _attempts().find_one_and_update(
                {"_id": oid, "status": IN_PROGRESS, "version": doc.get("version")},
                update,
                projection={"_id": 1},
                return_document=ReturnDocument.AFTER,
            )
        if written is not None:
            logger.info("Attempt %s closed as %s with score %s/%s",
                        attempt_id, status, result["score"], result["totalMarks"])
            return {
                "success": True,
                "score": result["score"],
                "totalMarks": result["totalMarks"],
                "percentage": result["percentage"],
                "passed": result["passed"],
                "status": status,
                "submittedAt": now,
            }
        logger.debug("Attempt %s changed while submitting, retrying", attempt_id)

    raise InvalidStateError("Attempt kept changing during submission", status=IN_PROGRESS)


def grade_attempt(
    attempt_id: str,
    update: GradingUpdate,
    graded_by: Optional[str] = None,
    clock: Clock = utcnow,
) -> Dict[str, Any]:
    oid = _object_id(attempt_id)
    doc = find_attempt(attempt_id)
    if doc.get("status") == IN_PROGRESS:
        raise InvalidStateError("Attempt has not been submitted yet", status=IN_PROGRESS)

    now = clock()
    changes: Dict[str, Any] = {"gradedAt": now, "gradedBy": graded_by, "updatedAt": now}
    log_entry: Dict[str, Any] = {"action": update.action.value, "by": graded_by, "at": now}

    if update.action is GradingAction.UPDATE_SCORE:
        if update.newScore is None or update.newScore < 0:
            raise ValidationError("Valid score is required", field="newScore")
        if not update.justification or len(update.justification.strip()) < 10:
            raise ValidationError("Justification (min 10 chars) is required for score changes",
                                  field="justification")
        with _storage("quiz lookup"):
            quiz = get_db()["quiz"].find_one({"id": doc["quizId"]}) or {}
        marks = total_marks(quiz) if quiz else doc.get("totalMarks") or 0
        percentage = percentage_of(update.newScore, marks)
        changes.update({
            "score": update.newScore,
            "totalMarks": marks,
            "percentage": percentage,
            "passed": has_passed(update.newScore, percentage, quiz.get("passingMarks")),
        })
        log_entry.update({
            "previousScore": doc.get("score"),
            "newScore": update.newScore,
            "justification": update.justification.strip(),
        })
    elif update.action is GradingAction.UPDATE_FEEDBACK:
        if not update.feedback:
            raise ValidationError("Feedback is required", field="feedback")
        changes["feedback"] = update.feedback
    else:
        changes["status"] = AttemptStatus.GRADED.value

    with _storage("attempt grading"):
        graded = _attempts().find_one_and_update(
            {"_id": oid, "status": {"$ne": IN_PROGRESS}},
            {"$set": changes, "$push": {"gradingLog": log_entry}, "$inc": {"version": 1}},
            return_document=ReturnDocument.AFTER,
        )
    if graded is None:
        _reject(attempt_id, oid, "Attempt has not been submitted yet")

    logger.info("Attempt %s graded (%s) by %s", attempt_id, update.action.value, graded_by)
    return {
        "success": True,
        "status": graded.get("status"),
        "score": graded.get("score"),
        "percentage": graded.get("percentage"),
        "passed": graded.get("passed"),
        "feedback": graded.get("feedback"),
        "gradedAt": graded.get("gradedAt"),
    }


def _grading_status(doc: Dict[str, Any], questions) -> str:
    if doc.get("gradedAt"):
        return "manually_graded"
    if any(not q["autoGraded"] for q in questions):
        return "pending"
    return "auto_graded"


def _reveal_answers(quiz: Dict[str, Any], staff: bool) -> bool:
    if staff:
        return True
    return bool(quiz.get("showCorrectAnswers")) and quiz.get("showCorrectAnswersAfter") == "after_submission"


def review_attempt(
    attempt_id: str,
    viewer_id: Optional[str] = None,
    staff: bool = False,
    clock: Clock = utcnow,
) -> Dict[str, Any]:
    """Per-question breakdown of an attempt.

    Students may only review their own attempts. Correct answers are shown
    to staff, and to students when the quiz releases them after submission;
    integrity data (violations, IP, user agent) is staff only.
    """
    doc = find_attempt(attempt_id)
    if not staff and doc.get("studentId") != viewer_id:
        raise ForbiddenError("Access denied")

    with _storage("quiz lookup"):
        quiz = get_db()["quiz"].find_one({"id": doc["quizId"]})
    if not quiz:
        raise NotFoundError("Quiz", str(doc["quizId"]))

    reveal = _reveal_answers(quiz, staff)
    answers = doc.get("answers") or {}
    questions = []
    for number, q in enumerate(quiz.get("questions", []), start=1):
        answer = answers.get(q["id"])
        detail = {
            "questionId": q["id"],
            "questionNumber": number,
            "questionText": q.get("text"),
            "questionType": q.get("questionType"),
            "options": [{"id": o.get("id"), "text": o.get("text")} for o in q.get("options", [])],
            "points": q.get("points", 1),
            "studentAnswer": as_answer_list(answer),
            **question_outcome(q, answer),
        }
        if reveal:
            detail["correctOptions"] = correct_options(q)
        questions.append(detail)

    computed = round(sum(q["marksAwarded"] for q in questions), 2)
    marks = total_marks(quiz)
    score = doc["score"] if doc.get("score") is not None else computed
    percentage = doc["percentage"] if doc.get("percentage") is not None else percentage_of(score, marks)
    passed = doc["passed"] if doc.get("passed") is not None else has_passed(score, percentage, quiz.get("passingMarks"))

    started = doc.get("startedAt")
    ended = doc.get("submittedAt") or clock()
    review = {
        "_id": str(doc["_id"]),
        "quizId": doc["quizId"],
        "quizTitle": quiz.get("title"),
        "studentId": doc.get("studentId"),
        "attemptNumber": doc.get("attemptNumber"),
        "status": doc.get("status"),
        "gradingStatus": _grading_status(doc, questions),
        "startedAt": started,
        "submittedAt": doc.get("submittedAt"),
        "timeAllocated": doc.get("timeLimit") or (quiz.get("timeLimit") or config.DEFAULT_TIME_LIMIT_MINUTES) * 60,
        "timeSpent": int((ended - started).total_seconds()) if started else 0,
        "timeRemaining": doc.get("timeRemaining"),
        "score": score,
        "totalMarks": marks,
        "percentage": percentage,
        "passed": passed,
        "passingMarks": quiz.get("passingMarks"),
        "gradedAt": doc.get("gradedAt"),
        "gradedBy": doc.get("gradedBy"),
        "feedback": doc.get("feedback"),
        "questions": questions,
    }
    if staff:
        review.update({
            "violations": doc.get("violations") or [],
            "ipAddress": doc.get("ipAddress"),
            "userAgent": doc.get("userAgent"),
        })
    return review


def _summary(doc: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "_id": doc["_id"],
        "quizId": doc.get("quizId"),
        "studentId": doc.get("studentId"),
        "attemptNumber": doc.get("attemptNumber"),
        "status": doc.get("status"),
        "score": doc.get("score") or 0,
        "totalMarks": doc.get("totalMarks") or 0,
        "percentage": doc.get("percentage") or 0,
        "passed": doc.get("passed") or False,
        "startedAt": doc.get("startedAt"),
        "submittedAt": doc.get("submittedAt"),
        "violationCount": len(doc.get("violations") or []),
    }


def list_attempts(
    quiz_id: Optional[str] = None,
    student_id: Optional[str] = None,
    status: Optional[str] = None,
    page: int = 1,
    limit: int = 10,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
) -> Dict[str, Any]:
    filter_dict: Dict[str, Any] = {}
    if quiz_id:
        filter_dict["quizId"] = quiz_id
    if student_id:
        filter_dict["studentId"] = student_id
    if status:
        filter_dict["status"] = status
    if start_date or end_date:
        started: Dict[str, Any] = {}
        if start_date:
            started["$gte"] = start_date
        if end_date:
            started["$lte"] = end_date
        filter_dict["startedAt"] = started

    page = max(page, 1)
    with _storage("attempt listing"):
        total = _attempts().count_documents(filter_dict)
        rows = get_documents("attempt", filter_dict, limit=limit, skip=(page - 1) * limit, sort=NEWEST_FIRST)
    return {
        "success": True,
        "data": [_summary(row) for row in rows],
        "pagination": {
            "page": page,
            "limit": limit,
            "total": total,
            "pages": -(-total // limit) if limit else 0,
        },
    }
