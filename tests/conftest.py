import pytest

from course_selection import models
from course_selection.database import Store
from course_selection.directory import hash_password
from course_selection.enrollment import EnrollmentService

TEACHER_ID = "T001"


@pytest.fixture
def store(tmp_path):
    store = Store("sqlite:///%s" % (tmp_path / "course_selection.db"), timeout=10)
    store.create_all()
    with store.transaction() as db:
        db.add(models.User(user_id=TEACHER_ID, user_name="Prof. Lin", account="lin",
                           password=hash_password("teacher1"), role=models.ROLE_TEACHER,
                           department="CS"))
    yield store
    store.dispose()


@pytest.fixture
def service(store):
    return EnrollmentService(store)


@pytest.fixture
def make_student(store):
    def _make(user_id, active=True, department="CS"):
        with store.transaction() as db:
            db.add(models.User(user_id=user_id, user_name="Student %s" % user_id, account=user_id.lower(),
                               password=hash_password("student1"), role=models.ROLE_STUDENT,
                               department=department, is_active=active))
        return user_id
    return _make


@pytest.fixture
def make_course(store):
    def _make(code, capacity=30, day=None, periods=(1, 2), prerequisites=(),
              status=models.COURSE_PUBLISHED, credit=3.0):
        with store.transaction() as db:
            course = models.Course(
                course_code=code, course_name="Course %s" % code, credit=credit, class_hour=48,
                teacher_id=TEACHER_ID, capacity_limit=capacity, current_selected=0, status=status,
            )
            if day is not None:
                course.schedule_day = day
                course.start_period, course.end_period = periods
            course.prerequisites = [models.CoursePrerequisite(prerequisite_code=p) for p in prerequisites]
            db.add(course)
        return code
    return _make


def selected_count(store, code):
    with store.transaction() as db:
        return db.get(models.Course, code).current_selected


def enrollment_rows(store, student_id=None, code=None):
    with store.transaction() as db:
        q = db.query(models.Enrollment)
        if student_id:
            q = q.filter(models.Enrollment.student_id == student_id)
        if code:
            q = q.filter(models.Enrollment.course_code == code)
        return [(e.student_id, e.course_code, e.status) for e in q.order_by(models.Enrollment.id)]


def assert_counts_consistent(store):
    with store.transaction() as db:
        for course in db.query(models.Course):
            live = db.query(models.Enrollment).filter(
                models.Enrollment.course_code == course.course_code,
                models.Enrollment.status == models.ENROLLMENT_SELECTED,
            ).count()
            assert course.current_selected == live, course.course_code
