"""
Enrollment decisions: select and drop.

Each attempt runs inside one store transaction. The seat reservation is a
conditional UPDATE on the course row, so two students racing for the last
seat cannot both get it regardless of what the earlier reads saw.
"""

import logging

from sqlalchemy import func
from sqlalchemy.exc import DBAPIError, IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from course_selection import models
from course_selection.schemas import Outcome, OutcomeCode

logger = logging.getLogger("course-selection.enrollment")

# SQLSTATE serialization_failure / deadlock_detected
_RETRYABLE_SQLSTATES = {"40001", "40P01"}


def _is_retryable(exc: SQLAlchemyError) -> bool:
    if isinstance(exc, IntegrityError):
        # lost a race on the live-enrollment unique index
        return True
    if isinstance(exc, DBAPIError):
        orig = exc.orig
        if getattr(orig, "pgcode", None) in _RETRYABLE_SQLSTATES:
            return True
        if "database is locked" in str(orig):
            return True
    return False


class EnrollmentService:
    def __init__(self, store, max_attempts: int = 2):
        self.store = store
        self.max_attempts = max(1, max_attempts)

    def select(self, student_id: str, course_code: str) -> Outcome:
        return self._run("select", self._select, student_id, course_code)

    def drop(self, student_id: str, course_code: str) -> Outcome:
        return self._run("drop", self._drop, student_id, course_code)

    def _run(self, action, decide, student_id, course_code):
        for attempt in range(1, self.max_attempts + 1):
            try:
                with self.store.transaction() as db:
                    outcome = decide(db, student_id, course_code)
            except SQLAlchemyError as e:
                if attempt < self.max_attempts and _is_retryable(e):
                    logger.warning("%s student=%s course=%s conflicted (attempt %d), retrying: %s",
                                   action, student_id, course_code, attempt, e)
                    continue
                logger.exception("%s student=%s course=%s failed", action, student_id, course_code)
                return Outcome(code=OutcomeCode.SYSTEM_ERROR,
                               message="Course %s failed: storage unavailable, nothing was changed" % action)
            logger.info("%s student=%s course=%s -> %s", action, student_id, course_code, outcome.code.value)
            return outcome

    def _select(self, db: Session, student_id, course_code):
        student = db.get(models.User, student_id)
        if student is None or student.role != models.ROLE_STUDENT or not student.is_active:
            return Outcome(code=OutcomeCode.STUDENT_INACTIVE,
                           message="Student %s is not an active student" % student_id)

        course = db.get(models.Course, course_code)
        if course is None or course.status != models.COURSE_PUBLISHED:
            return Outcome(code=OutcomeCode.COURSE_NOT_OPEN,
                           message="Course %s is not open for selection" % course_code)

        selected = {
            code for (code,) in db.query(models.Enrollment.course_code).filter(
                models.Enrollment.student_id == student_id,
                models.Enrollment.status == models.ENROLLMENT_SELECTED,
            )
        }
        if course_code in selected:
            return Outcome(code=OutcomeCode.ALREADY_SELECTED,
                           message="Course %s is already selected" % course_code)

        missing = self._missing_prerequisite(db, student_id, course, selected)
        if missing is not None:
            return Outcome(code=OutcomeCode.PREREQUISITE_NOT_MET, course_code=missing,
                           message="Prerequisite %s of course %s is not met" % (missing, course_code))

        conflict = self._conflicting_course(db, course, selected)
        if conflict is not None:
            return Outcome(code=OutcomeCode.TIME_CONFLICT, course_code=conflict,
                           message="Course %s overlaps with selected course %s" % (course_code, conflict))

        if course.current_selected >= course.capacity_limit:
            return _course_full(course_code)

        reserved = db.query(models.Course).filter(
            models.Course.course_code == course_code,
            models.Course.current_selected < models.Course.capacity_limit,
        ).update({models.Course.current_selected: models.Course.current_selected + 1},
                 synchronize_session=False)
        if reserved == 0:
            return _course_full(course_code)

        db.add(models.Enrollment(student_id=student_id, course_code=course_code,
                                 status=models.ENROLLMENT_SELECTED))
        db.flush()
        return Outcome(code=OutcomeCode.SUCCESS, message="Course %s selected" % course_code)

    def _missing_prerequisite(self, db, student_id, course, selected):
        required = course.prerequisite_codes
        if not required:
            return None
        completed = {
            code for (code,) in db.query(models.CompletedCourse.course_code).filter(
                models.CompletedCourse.student_id == student_id,
                models.CompletedCourse.course_code.in_(required),
            )
        }
        for code in sorted(required):
            if code not in selected and code not in completed:
                return code
        return None

    def _conflicting_course(self, db, course, selected):
        if course.schedule_day is None or not selected:
            return None
        row = db.query(models.Course.course_code).filter(
            models.Course.course_code.in_(selected),
            models.Course.schedule_day == course.schedule_day,
            models.Course.start_period <= course.end_period,
            models.Course.end_period >= course.start_period,
        ).order_by(models.Course.course_code).first()
        return row[0] if row else None

    def _drop(self, db: Session, student_id, course_code):
        dropped = db.query(models.Enrollment).filter(
            models.Enrollment.student_id == student_id,
            models.Enrollment.course_code == course_code,
            models.Enrollment.status == models.ENROLLMENT_SELECTED,
        ).update({models.Enrollment.status: models.ENROLLMENT_DROPPED,
                  models.Enrollment.dropped_at: func.now()},
                 synchronize_session=False)
        if dropped == 0:
            return Outcome(code=OutcomeCode.NO_ACTIVE_ENROLLMENT,
                           message="No active enrollment in course %s" % course_code)
        db.query(models.Course).filter(models.Course.course_code == course_code).update(
            {models.Course.current_selected: models.Course.current_selected - 1},
            synchronize_session=False)
        return Outcome(code=OutcomeCode.SUCCESS, message="Course %s dropped" % course_code)


def _course_full(course_code):
    return Outcome(code=OutcomeCode.COURSE_FULL, message="Course %s is full" % course_code)
