"""
Automatic scoring of quiz attempts.

Questions are the embedded question dicts of a quiz document; answers are
the attempt's mapping of question id -> selected option ids (or typed
values for fill-in questions).
"""

import math
from typing import Any, Dict, List, Optional

from schemas import QuestionType

SINGLE_CHOICE_TYPES = {
    QuestionType.SINGLE_CHOICE_RADIO.value,
    QuestionType.SINGLE_CHOICE_DROPDOWN.value,
    QuestionType.PICTURE_CHOICE.value,
}
POSITIONAL_TYPES = {QuestionType.FILL_BLANKS.value, QuestionType.MATCHING.value}
MANUAL_TYPES = {QuestionType.FREE_TEXT.value, QuestionType.MATCHING_TEXT.value}


def as_answer_list(value: Any) -> List[str]:
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        return [str(v) for v in value]
    return [str(value)]


def correct_options(question: Dict[str, Any]) -> List[str]:
    explicit = question.get("correctOptions") or []
    if explicit:
        return list(explicit)
    return [opt.get("id") for opt in question.get("options", []) if opt.get("isCorrect")]


def score_question(question: Dict[str, Any], answer: Any) -> float:
    points = question.get("points", 1)
    qtype = question.get("questionType", QuestionType.SINGLE_CHOICE_RADIO.value)
    chosen = as_answer_list(answer)
    correct = correct_options(question)

    if qtype in SINGLE_CHOICE_TYPES:
        if chosen and chosen[0] in correct:
            return points
        return 0

    if qtype == QuestionType.MULTIPLE_CHOICE.value:
        if not correct:
            return 0
        right = len([a for a in chosen if a in correct])
        wrong = len(chosen) - right
        return max(0, (right - wrong) / len(correct) * points)

    if qtype in POSITIONAL_TYPES:
        if not correct:
            return 0
        matches = 0
        for i, expected in enumerate(correct):
            if i < len(chosen) and chosen[i].strip().lower() == expected.strip().lower():
                matches += 1
        return matches / len(correct) * points

    # free text and text matching are left for the instructor
    return 0


def question_outcome(question: Dict[str, Any], answer: Any) -> Dict[str, Any]:
    """Marks and correctness of one answer, as shown on the review page."""
    auto_graded = question.get("questionType") not in MANUAL_TYPES
    marks = score_question(question, answer) if auto_graded else 0
    points = question.get("points", 1)
    if auto_graded and points > 0 and marks >= points:
        is_correct: Any = True
    elif marks > 0:
        is_correct = "partial"
    else:
        is_correct = False
    return {"marksAwarded": round(marks, 2), "isCorrect": is_correct, "autoGraded": auto_graded}


def total_marks(quiz: Dict[str, Any]) -> float:
    if quiz.get("totalMarks"):
        return quiz["totalMarks"]
    return sum(q.get("points", 1) for q in quiz.get("questions", []))


def percentage_of(score: float, marks: float) -> int:
    # half-up, so 12.5% reads as 13%
    return math.floor(score / marks * 100 + 0.5) if marks > 0 else 0


def has_passed(score: float, percentage: int, passing_marks: Optional[float]) -> bool:
    if passing_marks:
        return score >= passing_marks
    return percentage >= 50


def score_attempt(quiz: Dict[str, Any], answers: Dict[str, Any]) -> Dict[str, Any]:
    score = 0.0
    for q in quiz.get("questions", []):
        score += score_question(q, answers.get(q["id"]))
    score = round(score, 2)
    marks = total_marks(quiz)
    percentage = percentage_of(score, marks)
    return {
        "score": score,
        "totalMarks": marks,
        "percentage": percentage,
        "passed": has_passed(score, percentage, quiz.get("passingMarks")),
        "needsManualGrading": any(
            q.get("questionType") in MANUAL_TYPES for q in quiz.get("questions", [])
        ),
    }
