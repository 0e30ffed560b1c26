from datetime import datetime, timedelta

import pytest

import attempts
import database
import grading
from errors import AttemptExpiredError, ForbiddenError, InvalidStateError, NotFoundError, ValidationError
from schemas import AttemptSubmit, GradingUpdate, ProgressUpdate, ViolationCreate


def _start(clock, student="stu-1"):
    return attempts.start_attempt("QZ1234", student, ip_address="10.0.0.7", user_agent="pytest", clock=clock)


def test_start_creates_in_progress_attempt(quiz, stored, clock):
    created = _start(clock)

    assert created["isNew"] is True
    doc = stored(created["_id"])
    assert doc["status"] == "in_progress"
    assert doc["attemptNumber"] == 1
    assert doc["timeLimit"] == 30 * 60
    assert doc["timeRemaining"] == 30 * 60
    assert doc["answers"] == {}
    assert doc["violations"] == []
    assert doc["startedAt"] == clock()
    assert doc["ipAddress"] == "10.0.0.7"


def test_start_shuffles_question_order_when_enabled(db, quiz, stored, clock):
    db["quiz"].update_one({"code": "QZ1234"}, {"$set": {"shuffleQuestions": True}})

    created = _start(clock)

    assert sorted(stored(created["_id"])["questionOrder"]) == ["q1", "q2", "q3", "q4"]


def test_start_resumes_open_attempt_with_server_time(quiz, clock):
    created = _start(clock)
    clock.advance(120)

    resumed = _start(clock)

    assert resumed["_id"] == created["_id"]
    assert resumed["isResumed"] is True
    assert resumed["timeRemaining"] == 30 * 60 - 120


def test_resume_ignores_client_reported_time(quiz, clock):
    created = _start(clock)
    attempts.save_progress(created["_id"], ProgressUpdate(timeRemaining=5000), clock=clock)
    clock.advance(60)

    resumed = _start(clock)

    assert resumed["timeRemaining"] == 30 * 60 - 60


def test_resume_after_time_limit_closes_attempt(quiz, stored, clock):
    created = _start(clock)
    clock.advance(30 * 60 + 1)

    with pytest.raises(AttemptExpiredError):
        _start(clock)

    doc = stored(created["_id"])
    assert doc["status"] == "timed_out"
    assert doc["submittedAt"] == clock()
    assert doc["timeRemaining"] == 0


def test_start_unknown_quiz(db, clock):
    with pytest.raises(NotFoundError):
        attempts.start_attempt("NOPE00", "stu-1", clock=clock)


@pytest.mark.parametrize("changes, message", [
    ({"isPublished": False}, "not published"),
    ({"isActive": False}, "deactivated"),
])
def test_start_refused_for_unavailable_quiz(db, quiz, clock, changes, message):
    db["quiz"].update_one({"code": "QZ1234"}, {"$set": changes})

    with pytest.raises(ForbiddenError) as exc_info:
        _start(clock)

    assert message in exc_info.value.message


def test_start_refused_outside_quiz_window(db, quiz, clock):
    db["quiz"].update_one({"code": "QZ1234"}, {"$set": {"startDate": clock() + timedelta(days=1)}})
    with pytest.raises(ForbiddenError):
        _start(clock)

    db["quiz"].update_one({"code": "QZ1234"}, {"$set": {"startDate": None, "endDate": clock() - timedelta(days=1)}})
    with pytest.raises(ForbiddenError):
        _start(clock)


def test_start_enforces_max_attempts(quiz, clock):
    first = _start(clock)
    attempts.submit_attempt(first["_id"], AttemptSubmit(), clock=clock)
    second = _start(clock)
    assert second["attemptNumber"] == 2
    attempts.submit_attempt(second["_id"], AttemptSubmit(), clock=clock)

    with pytest.raises(ForbiddenError):
        _start(clock)


def test_submit_scores_and_closes_attempt(quiz, stored, clock):
    attempt_id = _start(clock)["_id"]
    attempts.save_progress(attempt_id, ProgressUpdate(answers={"q1": ["b"], "q2": ["a"]}), clock=clock)
    clock.advance(300)

    result = attempts.submit_attempt(attempt_id, AttemptSubmit(answers={"q3": ["  paris"]}), clock=clock)

    # q1 2 + q2 1 (one of two primes) + q3 1, out of 10
    assert result["score"] == 4
    assert result["totalMarks"] == 10
    assert result["percentage"] == 40
    assert result["passed"] is False
    assert result["status"] == "submitted"
    doc = stored(attempt_id)
    assert doc["status"] == "submitted"
    assert doc["answers"] == {"q1": ["b"], "q2": ["a"], "q3": ["  paris"]}
    assert doc["timeRemaining"] == 0
    assert doc["submittedAt"] == clock()


def test_submitted_attempt_is_frozen(quiz, stored, clock):
    attempt_id = _start(clock)["_id"]
    attempts.submit_attempt(attempt_id, AttemptSubmit(), clock=clock)
    before = stored(attempt_id)
    clock.advance(10)

    with pytest.raises(InvalidStateError):
        attempts.save_progress(attempt_id, ProgressUpdate(answers={"q1": ["b"]}), clock=clock)
    with pytest.raises(InvalidStateError):
        attempts.record_violation(attempt_id, ViolationCreate(type="tab_switch"), clock=clock)
    with pytest.raises(InvalidStateError):
        attempts.submit_attempt(attempt_id, AttemptSubmit(), clock=clock)

    assert stored(attempt_id) == before


@pytest.mark.parametrize("reason, status", [
    ("timeout", "timed_out"),
    ("violations", "violation_terminated"),
    (True, "auto_submitted"),
    ("visibility", "auto_submitted"),
])
def test_auto_submit_reasons(quiz, clock, reason, status):
    attempt_id = _start(clock)["_id"]

    result = attempts.submit_attempt(attempt_id, AttemptSubmit(autoSubmit=reason), clock=clock)

    assert result["status"] == status


def test_submit_appends_final_violations_with_server_time(quiz, stored, clock):
    attempt_id = _start(clock)["_id"]
    attempts.record_violation(attempt_id, ViolationCreate(type="tab_switch"), clock=clock)
    clock.advance(20)

    attempts.submit_attempt(
        attempt_id,
        AttemptSubmit(violations=[ViolationCreate(type="fullscreen_exit")], autoSubmit="violations"),
        clock=clock,
    )

    violations = stored(attempt_id)["violations"]
    assert [v["type"] for v in violations] == ["tab_switch", "fullscreen_exit"]
    assert violations[-1]["timestamp"] == clock()


def test_submit_rejects_bad_final_violation(quiz, stored, clock):
    attempt_id = _start(clock)["_id"]

    with pytest.raises(ValidationError):
        attempts.submit_attempt(attempt_id, AttemptSubmit(violations=[ViolationCreate(type="")]), clock=clock)

    assert stored(attempt_id)["status"] == "in_progress"


def test_grading_requires_closed_attempt(quiz, clock):
    attempt_id = _start(clock)["_id"]

    with pytest.raises(InvalidStateError):
        attempts.grade_attempt(attempt_id, GradingUpdate(action="finalize_grading"), graded_by="teacher-1", clock=clock)


def test_score_override_needs_justification(quiz, clock):
    attempt_id = _start(clock)["_id"]
    attempts.submit_attempt(attempt_id, AttemptSubmit(), clock=clock)

    with pytest.raises(ValidationError):
        attempts.grade_attempt(
            attempt_id, GradingUpdate(action="update_score", newScore=7, justification="ok"), clock=clock
        )
    with pytest.raises(ValidationError):
        attempts.grade_attempt(
            attempt_id, GradingUpdate(action="update_score", newScore=-1, justification="a long enough reason"),
            clock=clock,
        )


def test_manual_grading_flow(quiz, stored, clock):
    attempt_id = _start(clock)["_id"]
    attempts.submit_attempt(attempt_id, AttemptSubmit(answers={"q1": ["b"]}), clock=clock)
    clock.advance(3600)

    scored = attempts.grade_attempt(
        attempt_id,
        GradingUpdate(action="update_score", newScore=7, justification="Free text answer earns full marks"),
        graded_by="teacher-1",
        clock=clock,
    )
    assert scored["score"] == 7
    assert scored["percentage"] == 70
    assert scored["passed"] is True

    attempts.grade_attempt(attempt_id, GradingUpdate(action="update_feedback", feedback="Well argued"),
                           graded_by="teacher-1", clock=clock)
    final = attempts.grade_attempt(attempt_id, GradingUpdate(action="finalize_grading"),
                                   graded_by="teacher-1", clock=clock)

    assert final["status"] == "graded"
    assert final["feedback"] == "Well argued"
    doc = stored(attempt_id)
    assert doc["gradedBy"] == "teacher-1"
    assert [entry["action"] for entry in doc["gradingLog"]] == ["update_score", "update_feedback", "finalize_grading"]
    assert doc["gradingLog"][0]["previousScore"] == 2


def test_list_attempts_filters_and_paginates(quiz, make_attempt, clock):
    for n in range(3):
        make_attempt(studentId="stu-1", status="submitted")
        clock.advance(60)
    make_attempt(studentId="stu-2")

    page = attempts.list_attempts(quiz_id="QZ1234", student_id="stu-1", page=1, limit=2)

    assert page["pagination"] == {"page": 1, "limit": 2, "total": 3, "pages": 2}
    assert len(page["data"]) == 2
    assert page["data"][0]["startedAt"] > page["data"][1]["startedAt"]
    assert attempts.list_attempts(status="in_progress")["pagination"]["total"] == 1


def test_submit_rescores_when_autosave_lands_mid_submission(monkeypatch, quiz, stored, clock):
    attempt_id = _start(clock)["_id"]
    calls = []

    def score_with_concurrent_save(quiz_doc, answers):
        if not calls:
            attempts.save_progress(attempt_id, ProgressUpdate(answers={"q1": ["b"]}), clock=clock)
        calls.append(dict(answers))
        return grading.score_attempt(quiz_doc, answers)

    monkeypatch.setattr(attempts, "score_attempt", score_with_concurrent_save)

    result = attempts.submit_attempt(attempt_id, AttemptSubmit(), clock=clock)

    assert len(calls) == 2
    assert result["score"] == 2
    doc = stored(attempt_id)
    assert doc["answers"] == {"q1": ["b"]}
    assert doc["score"] == 2
    assert doc["version"] == 2


def test_submit_gives_up_when_attempt_keeps_changing(monkeypatch, quiz, stored, clock):
    attempt_id = _start(clock)["_id"]

    def score_while_saving(quiz_doc, answers):
        attempts.save_progress(attempt_id, ProgressUpdate(currentQuestionIndex=1), clock=clock)
        return grading.score_attempt(quiz_doc, answers)

    monkeypatch.setattr(attempts, "score_attempt", score_while_saving)

    with pytest.raises(InvalidStateError, match="kept changing"):
        attempts.submit_attempt(attempt_id, AttemptSubmit(), clock=clock)

    doc = stored(attempt_id)
    assert doc["status"] == "in_progress"
    assert doc["version"] == attempts.SUBMIT_RETRIES
    assert doc.get("score") is None


def test_concurrent_start_is_invalid_state(monkeypatch, db, quiz, clock):
    def create_after_rival(collection_name, data):
        db["attempt"].insert_one({
            "quizId": data["quizId"],
            "studentId": data["studentId"],
            "attemptNumber": data["attemptNumber"],
            "status": "in_progress",
        })
        return database.create_document(collection_name, data)

    monkeypatch.setattr(attempts, "create_document", create_after_rival)

    with pytest.raises(InvalidStateError, match="already being started"):
        _start(clock)

    assert db["attempt"].count_documents({}) == 1


def _finished_attempt(clock):
    attempt_id = _start(clock)["_id"]
    attempts.save_progress(attempt_id, ProgressUpdate(answers={"q1": ["b"], "q2": ["a"], "q4": "Because"}), clock=clock)
    attempts.record_violation(attempt_id, ViolationCreate(type="tab_switch"), clock=clock)
    clock.advance(600)
    attempts.submit_attempt(attempt_id, AttemptSubmit(answers={"q3": ["paris"]}), clock=clock)
    return attempt_id


def test_review_breaks_down_each_question_for_staff(quiz, clock):
    attempt_id = _finished_attempt(clock)

    review = attempts.review_attempt(attempt_id, viewer_id="teacher-1", staff=True, clock=clock)

    outcomes = {q["questionId"]: (q["marksAwarded"], q["isCorrect"], q["autoGraded"]) for q in review["questions"]}
    assert outcomes == {
        "q1": (2, True, True),
        "q2": (1, "partial", True),
        "q3": (1, True, True),
        "q4": (0, False, False),
    }
    assert review["questions"][1]["studentAnswer"] == ["a"]
    assert review["questions"][1]["correctOptions"] == ["a", "b"]
    assert review["gradingStatus"] == "pending"
    assert review["score"] == 4
    assert review["percentage"] == 40
    assert review["timeAllocated"] == 1800
    assert review["timeSpent"] == 600
    assert review["violations"][0]["type"] == "tab_switch"
    assert review["ipAddress"] == "10.0.0.7"


def test_review_hides_answers_and_integrity_data_from_student(quiz, clock):
    attempt_id = _finished_attempt(clock)

    review = attempts.review_attempt(attempt_id, viewer_id="stu-1", clock=clock)

    assert all("correctOptions" not in q for q in review["questions"])
    assert all("isCorrect" not in opt for q in review["questions"] for opt in q["options"])
    assert "violations" not in review
    assert "ipAddress" not in review
    assert review["questions"][0]["isCorrect"] is True


def test_review_shows_answers_when_quiz_releases_them(db, quiz, clock):
    db["quiz"].update_one({"code": "QZ1234"}, {"$set": {"showCorrectAnswers": True}})
    attempt_id = _finished_attempt(clock)

    review = attempts.review_attempt(attempt_id, viewer_id="stu-1", clock=clock)

    assert review["questions"][0]["correctOptions"] == ["b"]


def test_review_of_someone_elses_attempt_is_forbidden(quiz, clock):
    attempt_id = _finished_attempt(clock)

    with pytest.raises(ForbiddenError):
        attempts.review_attempt(attempt_id, viewer_id="stu-2", clock=clock)


def test_review_grading_status_follows_manual_grading(quiz, clock):
    attempt_id = _finished_attempt(clock)
    attempts.grade_attempt(attempt_id, GradingUpdate(action="finalize_grading"), graded_by="teacher-1", clock=clock)

    review = attempts.review_attempt(attempt_id, viewer_id="stu-1", clock=clock)

    assert review["gradingStatus"] == "manually_graded"
    assert review["status"] == "graded"


def test_review_of_open_attempt_counts_time_so_far(quiz, clock):
    attempt_id = _start(clock)["_id"]
    clock.advance(90)

    review = attempts.review_attempt(attempt_id, viewer_id="stu-1", clock=clock)

    assert review["timeSpent"] == 90
    assert review["score"] == 0


def test_list_attempts_filters_by_start_date(quiz, make_attempt, clock):
    make_attempt()
    clock.advance(86400)
    later = make_attempt(status="submitted")

    page = attempts.list_attempts(start_date=datetime(2025, 3, 11))

    assert [a["_id"] for a in page["data"]] == [later]
    assert attempts.list_attempts(end_date=datetime(2025, 3, 10, 12))["pagination"]["total"] == 1
    assert attempts.list_attempts(
        start_date=datetime(2025, 3, 10), end_date=datetime(2025, 3, 12)
    )["pagination"]["total"] == 2
