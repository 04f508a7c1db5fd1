"""
Course catalog: the teacher proposal / admin approval workflow and the
read side used by students, teachers and reports.

The catalog never touches enrollment status or enrolled counts; those
belong to course_selection.enrollment.
"""

import logging

from sqlalchemy import func
from sqlalchemy.orm import Session, joinedload, selectinload

from course_selection import models, schemas

logger = logging.getLogger("course-selection.catalog")


class CourseNotFound(LookupError):
    pass


class DuplicateCourse(ValueError):
    pass


class InvalidCourse(ValueError):
    pass


def _courses(db: Session):
    return db.query(models.Course).options(
        joinedload(models.Course.teacher), selectinload(models.Course.prerequisites)
    )


class CatalogService:
    def __init__(self, db: Session):
        self.db = db

    def get_course(self, course_code: str):
        return _courses(self.db).filter(models.Course.course_code == course_code).first()

    def get_student_enrollments(self, student_id: str):
        return self.db.query(models.Enrollment).filter(
            models.Enrollment.student_id == student_id
        ).order_by(models.Enrollment.selected_at.desc(), models.Enrollment.id.desc()).all()

    def propose_course(self, teacher_id: str, course_in: schemas.CourseCreate):
        db = self.db
        if db.get(models.Course, course_in.course_code) is not None:
            raise DuplicateCourse("Course %s already exists" % course_in.course_code)
        prerequisites = sorted(set(course_in.prerequisites))
        if course_in.course_code in prerequisites:
            raise InvalidCourse("Course cannot require itself")
        known = {
            code for (code,) in db.query(models.Course.course_code).filter(
                models.Course.course_code.in_(prerequisites)
            )
        }
        unknown = [code for code in prerequisites if code not in known]
        if unknown:
            raise InvalidCourse("Unknown prerequisite course(s): %s" % ", ".join(unknown))

        course = models.Course(
            course_code=course_in.course_code,
            course_name=course_in.course_name,
            credit=course_in.credit,
            class_hour=course_in.class_hour,
            teacher_id=teacher_id,
            schedule_day=course_in.schedule_day,
            start_period=course_in.start_period,
            end_period=course_in.end_period,
            classroom=course_in.classroom,
            capacity_limit=course_in.capacity_limit,
            current_selected=0,
            course_type=course_in.course_type,
            description=course_in.description,
            status=models.COURSE_PENDING,
        )
        course.prerequisites = [
            models.CoursePrerequisite(prerequisite_code=code) for code in prerequisites
        ]
        db.add(course)
        db.commit()
        logger.info("Teacher %s proposed course %s", teacher_id, course.course_code)
        return self.get_course(course.course_code)

    def audit_course(self, course_code: str, decision: str):
        if decision not in (models.COURSE_PUBLISHED, models.COURSE_REJECTED):
            raise InvalidCourse("decision must be Published or Rejected")
        course = self.db.get(models.Course, course_code)
        if course is None:
            raise CourseNotFound("Course %s not found" % course_code)
        if course.status != models.COURSE_PENDING:
            raise InvalidCourse("Course %s is %s, only Pending courses can be audited"
                                % (course_code, course.status))
        course.status = decision
        self.db.commit()
        logger.info("Course %s audited -> %s", course_code, decision)
        return self.get_course(course_code)

    def list_published(self):
        return _courses(self.db).filter(
            models.Course.status == models.COURSE_PUBLISHED
        ).order_by(models.Course.course_code).all()

    def list_pending(self):
        return _courses(self.db).filter(
            models.Course.status == models.COURSE_PENDING
        ).order_by(models.Course.created_at, models.Course.course_code).all()

    def list_by_teacher(self, teacher_id: str):
        return _courses(self.db).filter(
            models.Course.teacher_id == teacher_id
        ).order_by(models.Course.course_code).all()

    def course_statistics(self):
        stats = []
        for course in self.list_published():
            rate = course.current_selected / course.capacity_limit if course.capacity_limit else 0.0
            stats.append(schemas.CourseStatOut(
                course_code=course.course_code,
                course_name=course.course_name,
                teacher_name=course.teacher_name,
                credit=course.credit,
                capacity_limit=course.capacity_limit,
                current_selected=course.current_selected,
                saturation_rate=round(rate, 4),
            ))
        return stats

    def course_roster(self, course_code: str):
        if self.db.get(models.Course, course_code) is None:
            raise CourseNotFound("Course %s not found" % course_code)
        rows = self.db.query(models.User, models.Enrollment.selected_at).join(
            models.Enrollment, models.Enrollment.student_id == models.User.user_id
        ).filter(
            models.Enrollment.course_code == course_code,
            models.Enrollment.status == models.ENROLLMENT_SELECTED,
        ).order_by(models.Enrollment.selected_at.desc(), models.Enrollment.id.desc()).all()
        return [
            schemas.RosterEntryOut(user_id=user.user_id, user_name=user.user_name,
                                   department=user.department, selection_time=selected_at)
            for user, selected_at in rows
        ]

    def student_selected_courses(self, student_id: str):
        return _courses(self.db).join(
            models.Enrollment, models.Enrollment.course_code == models.Course.course_code
        ).filter(
            models.Enrollment.student_id == student_id,
            models.Enrollment.status == models.ENROLLMENT_SELECTED,
        ).order_by(models.Course.schedule_day, models.Course.start_period, models.Course.course_code).all()

    def student_course_stats(self, student_id: str):
        count, credits = self.db.query(
            func.count(models.Enrollment.id), func.sum(models.Course.credit)
        ).join(
            models.Course, models.Course.course_code == models.Enrollment.course_code
        ).filter(
            models.Enrollment.student_id == student_id,
            models.Enrollment.status == models.ENROLLMENT_SELECTED,
        ).one()
        return schemas.StudentStatsOut(course_count=count or 0, total_credits=float(credits or 0.0))

    def record_completion(self, student_id: str, course_code: str):
        if self.db.get(models.Course, course_code) is None:
            raise CourseNotFound("Course %s not found" % course_code)
        done = self.db.query(models.CompletedCourse).filter(
            models.CompletedCourse.student_id == student_id,
            models.CompletedCourse.course_code == course_code,
        ).first()
        if done is None:
            done = models.CompletedCourse(student_id=student_id, course_code=course_code)
            self.db.add(done)
            self.db.commit()
            logger.info("Recorded completion of %s for student %s", course_code, student_id)
        return done
