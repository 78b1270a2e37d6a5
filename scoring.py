"""Presence scoring policy.

An attendee earns one check for joining and one for every ping that lands
inside the geofence. Submitting is the gate: it turns the accumulated score
into a verdict without adding a check of its own.
"""

from typing import NamedTuple

from settings import CHECK_BUDGET, MIN_REQUIRED

INCOMPLETE = "incomplete"
PRESENT = "present"
ABSENT = "absent"
VERDICTS = (INCOMPLETE, PRESENT, ABSENT)

METHOD_AUTO = "auto"
METHOD_MANUAL = "manual"


class ScoreResult(NamedTuple):
    verdict: str
    score: int
    message: str


def evaluate(score: int, budget: int = CHECK_BUDGET, min_required: int = MIN_REQUIRED) -> ScoreResult:
    """Turn a check score into a verdict. Never returns ``absent``."""
    if score >= min_required:
        return ScoreResult(PRESENT, score, f"Attendance marked present: passed {score}/{budget} checks")
    return ScoreResult(
        INCOMPLETE,
        score,
        f"Attendance incomplete: passed {score}/{budget} checks, need {min_required}",
    )
