import sqlite3
import threading
from concurrent.futures import ThreadPoolExecutor

import pytest
from sqlalchemy.exc import OperationalError

from course_selection import models
from course_selection.enrollment import EnrollmentService
from course_selection.schemas import OutcomeCode
from conftest import assert_counts_consistent, enrollment_rows, selected_count


def test_select_creates_enrollment_and_takes_a_seat(store, service, make_student, make_course):
    make_student("S1")
    make_course("CS101", capacity=2)

    outcome = service.select("S1", "CS101")

    assert outcome.code is OutcomeCode.SUCCESS
    assert outcome.ok
    assert selected_count(store, "CS101") == 1
    assert enrollment_rows(store, "S1") == [("S1", "CS101", "Selected")]


def test_selecting_twice_is_already_selected(store, service, make_student, make_course):
    make_student("S1")
    make_course("CS101")
    service.select("S1", "CS101")

    outcome = service.select("S1", "CS101")

    assert outcome.code is OutcomeCode.ALREADY_SELECTED
    assert selected_count(store, "CS101") == 1
    assert len(enrollment_rows(store, "S1")) == 1


@pytest.mark.parametrize("status", [models.COURSE_PENDING, models.COURSE_REJECTED])
def test_unpublished_course_is_not_open(store, service, make_student, make_course, status):
    make_student("S1")
    make_course("CS101", status=status)

    assert service.select("S1", "CS101").code is OutcomeCode.COURSE_NOT_OPEN
    assert selected_count(store, "CS101") == 0


def test_unknown_course_is_not_open(service, make_student):
    make_student("S1")
    assert service.select("S1", "NOPE").code is OutcomeCode.COURSE_NOT_OPEN


def test_inactive_or_unknown_student_is_rejected(store, service, make_student, make_course):
    make_student("S9", active=False)
    make_course("CS101")

    assert service.select("S9", "CS101").code is OutcomeCode.STUDENT_INACTIVE
    assert service.select("GHOST", "CS101").code is OutcomeCode.STUDENT_INACTIVE
    # teachers cannot hold enrollments
    assert service.select("T001", "CS101").code is OutcomeCode.STUDENT_INACTIVE
    assert enrollment_rows(store, code="CS101") == []


def test_missing_prerequisite_is_named(store, service, make_student, make_course):
    make_student("S1")
    make_course("MATH1")
    make_course("CS100")
    make_course("CS201", prerequisites=("MATH1", "CS100"))

    outcome = service.select("S1", "CS201")

    assert outcome.code is OutcomeCode.PREREQUISITE_NOT_MET
    assert outcome.course_code == "CS100"
    assert selected_count(store, "CS201") == 0
    assert enrollment_rows(store, "S1") == []


def test_prerequisite_met_by_completion_or_current_selection(store, service, make_student, make_course):
    make_student("S1")
    make_course("MATH1")
    make_course("CS100")
    make_course("CS201", prerequisites=("MATH1", "CS100"))
    with store.transaction() as db:
        db.add(models.CompletedCourse(student_id="S1", course_code="MATH1"))
    assert service.select("S1", "CS100").ok

    assert service.select("S1", "CS201").code is OutcomeCode.SUCCESS


def test_overlapping_slot_is_a_time_conflict(store, service, make_student, make_course):
    make_student("S1")
    make_course("CS101", day=1, periods=(1, 2))
    make_course("EE101", day=1, periods=(2, 3))
    assert service.select("S1", "CS101").ok

    outcome = service.select("S1", "EE101")

    assert outcome.code is OutcomeCode.TIME_CONFLICT
    assert outcome.course_code == "CS101"
    assert selected_count(store, "EE101") == 0
    assert enrollment_rows(store, "S1") == [("S1", "CS101", "Selected")]


def test_adjacent_periods_and_other_days_do_not_conflict(service, make_student, make_course):
    make_student("S1")
    make_course("CS101", day=1, periods=(1, 2))
    make_course("CS102", day=1, periods=(3, 4))
    make_course("CS103", day=2, periods=(1, 2))
    make_course("CS104")  # no fixed slot

    for code in ("CS101", "CS102", "CS103", "CS104"):
        assert service.select("S1", code).ok, code


def test_full_course(store, service, make_student, make_course):
    make_student("S1")
    make_student("S2")
    make_course("CS101", capacity=1)
    make_course("SEM0", capacity=0)
    assert service.select("S1", "CS101").ok

    assert service.select("S2", "CS101").code is OutcomeCode.COURSE_FULL
    assert service.select("S2", "SEM0").code is OutcomeCode.COURSE_FULL
    assert selected_count(store, "CS101") == 1
    assert enrollment_rows(store, "S2") == []


def test_checks_run_in_order(service, make_student, make_course):
    make_student("S1")
    make_student("S2")
    make_course("CS100")
    # full and missing a prerequisite: prerequisite is reported first
    make_course("CS201", capacity=0, prerequisites=("CS100",))

    assert service.select("S1", "CS201").code is OutcomeCode.PREREQUISITE_NOT_MET


def test_drop_without_enrollment(store, service, make_student, make_course):
    make_student("S1")
    make_course("CS101")

    assert service.drop("S1", "CS101").code is OutcomeCode.NO_ACTIVE_ENROLLMENT
    assert selected_count(store, "CS101") == 0


def test_drop_releases_the_seat_and_allows_reselect(store, service, make_student, make_course):
    make_student("S1")
    make_course("CS101", capacity=1)
    assert service.select("S1", "CS101").ok

    assert service.drop("S1", "CS101").code is OutcomeCode.SUCCESS
    assert selected_count(store, "CS101") == 0
    assert service.drop("S1", "CS101").code is OutcomeCode.NO_ACTIVE_ENROLLMENT

    assert service.select("S1", "CS101").code is OutcomeCode.SUCCESS
    assert enrollment_rows(store, "S1") == [("S1", "CS101", "Dropped"), ("S1", "CS101", "Selected")]
    assert_counts_consistent(store)


def test_dropped_course_no_longer_blocks_its_slot(service, make_student, make_course):
    make_student("S1")
    make_course("CS101", day=3, periods=(5, 6))
    make_course("EE101", day=3, periods=(5, 6))
    service.select("S1", "CS101")
    service.drop("S1", "CS101")

    assert service.select("S1", "EE101").ok


def test_last_seat_race_has_one_winner(store, make_student, make_course):
    make_student("S1")
    make_student("S2")
    make_course("CS101", capacity=1)
    service = EnrollmentService(store)
    barrier = threading.Barrier(2)

    def attempt(student_id):
        barrier.wait()
        return service.select(student_id, "CS101").code

    with ThreadPoolExecutor(max_workers=2) as pool:
        codes = list(pool.map(attempt, ["S1", "S2"]))

    assert sorted(c.value for c in codes) == ["CourseFull", "Success"]
    assert selected_count(store, "CS101") == 1
    assert_counts_consistent(store)


def test_many_concurrent_students_never_overfill(store, make_student, make_course):
    students = [make_student("S%02d" % i) for i in range(12)]
    make_course("CS101", capacity=5)
    service = EnrollmentService(store)

    with ThreadPoolExecutor(max_workers=6) as pool:
        codes = list(pool.map(lambda s: service.select(s, "CS101").code, students))

    assert codes.count(OutcomeCode.SUCCESS) == 5
    assert codes.count(OutcomeCode.COURSE_FULL) == 7
    assert selected_count(store, "CS101") == 5
    assert_counts_consistent(store)


def _locked():
    return OperationalError("BEGIN IMMEDIATE", {}, sqlite3.OperationalError("database is locked"))


def test_lock_conflict_is_retried_once(store, service, make_student, make_course, monkeypatch):
    make_student("S1")
    make_course("CS101")
    calls = []
    real_select = service._select

    def flaky(db, student_id, course_code):
        calls.append(course_code)
        if len(calls) == 1:
            raise _locked()
        return real_select(db, student_id, course_code)

    monkeypatch.setattr(service, "_select", flaky)

    assert service.select("S1", "CS101").code is OutcomeCode.SUCCESS
    assert len(calls) == 2
    assert selected_count(store, "CS101") == 1


def test_repeated_conflict_becomes_system_error(store, service, make_student, make_course, monkeypatch):
    make_student("S1")
    make_course("CS101")
    calls = []

    def always_locked(db, student_id, course_code):
        calls.append(course_code)
        raise _locked()

    monkeypatch.setattr(service, "_drop", always_locked)

    outcome = service.drop("S1", "CS101")
    assert outcome.code is OutcomeCode.SYSTEM_ERROR
    assert len(calls) == 2


def test_storage_failure_is_system_error_without_partial_state(store, service, make_student, make_course):
    make_student("S1")
    make_course("CS101")
    with store.engine.begin() as conn:
        conn.exec_driver_sql(
            "CREATE TRIGGER reject_enrollment BEFORE INSERT ON enrollments "
            "BEGIN SELECT RAISE(ABORT, 'storage rejected insert'); END"
        )

    outcome = service.select("S1", "CS101")

    assert outcome.code is OutcomeCode.SYSTEM_ERROR
    # the seat reservation is rolled back together with the failed insert
    assert selected_count(store, "CS101") == 0
    assert enrollment_rows(store, "S1") == []
