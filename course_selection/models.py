from sqlalchemy import (
    Boolean, CheckConstraint, Column, DateTime, Float, ForeignKey, Index, Integer, String, Text,
    UniqueConstraint, func, text,
)
from sqlalchemy.orm import relationship

from course_selection.database import Base

ROLE_STUDENT = "Student"
ROLE_TEACHER = "Teacher"
ROLE_ADMIN = "EduAdmin"

COURSE_PENDING = "Pending"
COURSE_PUBLISHED = "Published"
COURSE_REJECTED = "Rejected"

ENROLLMENT_SELECTED = "Selected"
ENROLLMENT_DROPPED = "Dropped"

DAY_NAMES = {1: "Mon", 2: "Tue", 3: "Wed", 4: "Thu", 5: "Fri", 6: "Sat", 7: "Sun"}


class User(Base):
    __tablename__ = "users"
    user_id = Column(String(32), primary_key=True)
    user_name = Column(String(64), nullable=False)
    account = Column(String(64), unique=True, index=True, nullable=False)
    password = Column(String(128), nullable=False)
    role = Column(String(16), nullable=False, index=True)
    department = Column(String(64))
    contact = Column(String(64))
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())


class Course(Base):
    __tablename__ = "courses"
    __table_args__ = (
        CheckConstraint("capacity_limit >= 0", name="ck_course_capacity"),
        CheckConstraint(
            "current_selected >= 0 AND current_selected <= capacity_limit",
            name="ck_course_selected_within_capacity",
        ),
    )
    course_code = Column(String(32), primary_key=True)
    course_name = Column(String(128), nullable=False)
    credit = Column(Float, default=0.0, nullable=False)
    class_hour = Column(Integer, default=0, nullable=False)
    teacher_id = Column(String(32), ForeignKey("users.user_id"), index=True, nullable=False)
    schedule_day = Column(Integer)
    start_period = Column(Integer)
    end_period = Column(Integer)
    classroom = Column(String(64))
    capacity_limit = Column(Integer, default=0, nullable=False)
    current_selected = Column(Integer, default=0, nullable=False)
    course_type = Column(String(32))
    description = Column(Text)
    status = Column(String(16), default=COURSE_PENDING, nullable=False, index=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    teacher = relationship("User")
    prerequisites = relationship(
        "CoursePrerequisite",
        foreign_keys="CoursePrerequisite.course_code",
        cascade="all, delete-orphan",
        order_by="CoursePrerequisite.prerequisite_code",
    )

    @property
    def prerequisite_codes(self):
        return [p.prerequisite_code for p in self.prerequisites]

    @property
    def teacher_name(self):
        return self.teacher.user_name if self.teacher is not None else None

    @property
    def schedule_time(self):
        if self.schedule_day is None:
            return None
        return "%s %d-%d" % (DAY_NAMES[self.schedule_day], self.start_period, self.end_period)

    @property
    def remaining_capacity(self):
        return self.capacity_limit - self.current_selected


class CoursePrerequisite(Base):
    __tablename__ = "course_prerequisites"
    __table_args__ = (UniqueConstraint("course_code", "prerequisite_code", name="uq_course_prerequisite"),)
    id = Column(Integer, primary_key=True)
    course_code = Column(String(32), ForeignKey("courses.course_code"), index=True, nullable=False)
    prerequisite_code = Column(String(32), ForeignKey("courses.course_code"), nullable=False)


class Enrollment(Base):
    __tablename__ = "enrollments"
    __table_args__ = (
        # at most one live enrollment per student and course; Dropped rows are history
        Index(
            "uq_enrollment_selected",
            "student_id",
            "course_code",
            unique=True,
            sqlite_where=text("status = 'Selected'"),
            postgresql_where=text("status = 'Selected'"),
        ),
    )
    id = Column(Integer, primary_key=True, index=True)
    student_id = Column(String(32), ForeignKey("users.user_id"), index=True, nullable=False)
    course_code = Column(String(32), ForeignKey("courses.course_code"), index=True, nullable=False)
    status = Column(String(16), default=ENROLLMENT_SELECTED, nullable=False)
    selected_at = Column(DateTime(timezone=True), server_default=func.now())
    dropped_at = Column(DateTime(timezone=True))

    student = relationship("User")
    course = relationship("Course")


class CompletedCourse(Base):
    __tablename__ = "completed_courses"
    __table_args__ = (UniqueConstraint("student_id", "course_code", name="uq_completed_course"),)
    id = Column(Integer, primary_key=True)
    student_id = Column(String(32), ForeignKey("users.user_id"), index=True, nullable=False)
    course_code = Column(String(32), ForeignKey("courses.course_code"), nullable=False)
    completed_at = Column(DateTime(timezone=True), server_default=func.now())


class OperationLog(Base):
    __tablename__ = "operation_log"
    log_id = Column(Integer, primary_key=True)
    operator_id = Column(String(32), index=True, nullable=False)
    operation_type = Column(String(64), nullable=False)
    operation_content = Column(Text)
    operation_time = Column(DateTime(timezone=True), server_default=func.now(), index=True)
