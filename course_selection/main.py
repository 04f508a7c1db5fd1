# course_selection/main.py
from typing import List, Optional
import logging

from fastapi import BackgroundTasks, Depends, FastAPI, HTTPException, Query, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from itsdangerous import BadSignature, URLSafeSerializer
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from course_selection import audit, models, schemas
from course_selection.catalog import CatalogService, CourseNotFound, DuplicateCourse, InvalidCourse
from course_selection.config import Settings, load_settings
from course_selection.database import Store
from course_selection.directory import DuplicateUser, UserDirectory, UserInUse, UserNotFound
from course_selection.enrollment import EnrollmentService
from course_selection.events import CATALOG_EVENTS, ENROLLMENT_EVENTS, EventPublisher

logger = logging.getLogger("course-selection")


def get_store(request: Request) -> Store:
    return request.app.state.store


def get_db(store: Store = Depends(get_store)):
    db = store.SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_enrollments(request: Request) -> EnrollmentService:
    return request.app.state.enrollments


def get_publisher(request: Request) -> EventPublisher:
    return request.app.state.publisher


def current_user(request: Request, session_token: str = Query(...), db: Session = Depends(get_db)) -> models.User:
    try:
        payload = request.app.state.serializer.loads(session_token)
    except BadSignature as exc:
        raise HTTPException(status_code=401, detail="Invalid token") from exc
    user = db.get(models.User, payload.get("user_id"))
    # end the read transaction; enrollment decisions run on their own connection
    db.commit()
    if not user or not user.is_active:
        raise HTTPException(status_code=401, detail="Invalid user")
    return user


def require_role(*roles):
    def dependency(user: models.User = Depends(current_user)) -> models.User:
        if user.role not in roles:
            raise HTTPException(status_code=403, detail="%s role required" % " or ".join(roles))
        return user
    return dependency


require_student = require_role(models.ROLE_STUDENT)
require_teacher = require_role(models.ROLE_TEACHER)
require_admin = require_role(models.ROLE_ADMIN)


def _course_out(course) -> schemas.CourseOut:
    return schemas.CourseOut.model_validate(course)


def _outcome_response(outcome: schemas.Outcome, response: Response, success_status: int = 201) -> schemas.Outcome:
    if outcome.ok:
        response.status_code = success_status
    elif outcome.code is schemas.OutcomeCode.SYSTEM_ERROR:
        response.status_code = 503
    return outcome


def create_app(settings: Optional[Settings] = None, store: Optional[Store] = None,
               publisher: Optional[EventPublisher] = None) -> FastAPI:
    settings = settings or load_settings()
    logging.basicConfig(level=settings.log_level)

    app = FastAPI(title="Course Selection Service")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.state.settings = settings
    app.state.store = store
    app.state.publisher = publisher or EventPublisher(settings.rabbitmq_url)
    app.state.serializer = URLSafeSerializer(settings.session_secret, salt="course-selection")
    app.state.enrollments = EnrollmentService(store, settings.select_max_attempts) if store else None

    @app.on_event("startup")
    def startup():
        if app.state.store is None:
            logger.info("Connecting store %s", settings.database_url.split("@")[-1])
            app.state.store = Store(settings.database_url, timeout=settings.db_timeout)
            app.state.enrollments = EnrollmentService(app.state.store, settings.select_max_attempts)
        app.state.store.create_all()
        with app.state.store.transaction() as db:
            UserDirectory(db).ensure_admin(settings.admin_account, settings.admin_password)
        logger.info("Startup complete.")

    @app.on_event("shutdown")
    def shutdown():
        if app.state.store is not None:
            app.state.store.dispose()

    _register_routes(app)
    return app


def _register_routes(app: FastAPI):

    @app.get("/")
    def root():
        return {"service": "Course Selection Service", "status": "running",
                "endpoints": ["/courses", "/enrollments", "/docs", "/openapi.json"]}

    @app.get("/health")
    def health(store: Store = Depends(get_store)):
        try:
            store.ping()
        except SQLAlchemyError as e:
            logger.exception("Health check failed: %s", e)
            raise HTTPException(status_code=503, detail="Database unreachable")
        return {"status": "ok"}

    # --- auth ---

    @app.post("/auth/login", response_model=schemas.LoginOut)
    def login(payload: schemas.LoginIn, request: Request, db: Session = Depends(get_db)):
        user = UserDirectory(db).authenticate(payload.account, payload.password)
        if user is None:
            audit.write_log(db, payload.account, "LoginFailed", "Login failed for account %s" % payload.account)
            raise HTTPException(status_code=401, detail="Invalid credentials")
        audit.write_log(db, user.user_id, "Login", "%s(%s) logged in" % (user.user_name, user.user_id))
        token = request.app.state.serializer.dumps({"user_id": user.user_id})
        return schemas.LoginOut(session_token=token, user_id=user.user_id,
                                user_name=user.user_name, role=user.role)

    @app.post("/me/password")
    def change_password(payload: schemas.PasswordChangeIn, db: Session = Depends(get_db),
                        user: models.User = Depends(current_user)):
        if not UserDirectory(db).change_password(user.user_id, payload.old_password, payload.new_password):
            audit.write_log(db, user.user_id, "PasswordChangeFailed", "Old password did not match")
            raise HTTPException(status_code=400, detail="Old password is incorrect")
        audit.write_log(db, user.user_id, "PasswordChanged", "Password changed")
        return {"status": "ok"}

    # --- courses ---

    @app.get("/courses", response_model=List[schemas.CourseOut])
    def list_published_courses(db: Session = Depends(get_db), _: models.User = Depends(current_user)):
        return [_course_out(c) for c in CatalogService(db).list_published()]

    @app.post("/courses", response_model=schemas.CourseOut, status_code=201)
    def propose_course(course_in: schemas.CourseCreate, background_tasks: BackgroundTasks,
                       db: Session = Depends(get_db), user: models.User = Depends(require_teacher),
                       publisher: EventPublisher = Depends(get_publisher)):
        try:
            course = CatalogService(db).propose_course(user.user_id, course_in)
        except DuplicateCourse as e:
            raise HTTPException(status_code=409, detail=str(e))
        except InvalidCourse as e:
            raise HTTPException(status_code=400, detail=str(e))
        audit.write_log(db, user.user_id, "CourseProposed",
                        "Proposed %s %s" % (course.course_code, course.course_name))
        background_tasks.add_task(publisher.publish, CATALOG_EVENTS, "CourseProposed",
                                  {"course_code": course.course_code, "teacher_id": user.user_id})
        return _course_out(course)

    @app.get("/courses/pending", response_model=List[schemas.CourseOut])
    def list_pending_courses(db: Session = Depends(get_db), _: models.User = Depends(require_admin)):
        return [_course_out(c) for c in CatalogService(db).list_pending()]

    @app.get("/courses/{course_code}", response_model=schemas.CourseOut)
    def get_course(course_code: str, db: Session = Depends(get_db), user: models.User = Depends(current_user)):
        course = CatalogService(db).get_course(course_code)
        # unpublished courses are visible to their teacher and to admins only
        hidden = course is not None and course.status != models.COURSE_PUBLISHED and not (
            user.role == models.ROLE_ADMIN or course.teacher_id == user.user_id)
        if course is None or hidden:
            raise HTTPException(status_code=404, detail="Course not found")
        return _course_out(course)

    @app.post("/courses/{course_code}/audit", response_model=schemas.CourseOut)
    def audit_course(course_code: str, payload: schemas.AuditIn, background_tasks: BackgroundTasks,
                     db: Session = Depends(get_db), user: models.User = Depends(require_admin),
                     publisher: EventPublisher = Depends(get_publisher)):
        try:
            course = CatalogService(db).audit_course(course_code, payload.decision)
        except CourseNotFound as e:
            raise HTTPException(status_code=404, detail=str(e))
        except InvalidCourse as e:
            raise HTTPException(status_code=400, detail=str(e))
        audit.write_log(db, user.user_id, "CourseAudited", "%s -> %s" % (course_code, course.status))
        background_tasks.add_task(publisher.publish, CATALOG_EVENTS, "CourseAudited",
                                  {"course_code": course_code, "status": course.status})
        return _course_out(course)

    @app.get("/courses/{course_code}/students", response_model=List[schemas.RosterEntryOut])
    def course_students(course_code: str, db: Session = Depends(get_db),
                        user: models.User = Depends(require_role(models.ROLE_TEACHER, models.ROLE_ADMIN))):
        catalog = CatalogService(db)
        course = catalog.get_course(course_code)
        if course is None:
            raise HTTPException(status_code=404, detail="Course not found")
        if user.role == models.ROLE_TEACHER and course.teacher_id != user.user_id:
            raise HTTPException(status_code=403, detail="Not your course")
        roster = catalog.course_roster(course_code)
        audit.write_log(db, user.user_id, "RosterViewed", "%s: %d student(s)" % (course_code, len(roster)))
        return roster

    @app.get("/teachers/me/courses", response_model=List[schemas.CourseOut])
    def my_teaching_courses(db: Session = Depends(get_db), user: models.User = Depends(require_teacher)):
        return [_course_out(c) for c in CatalogService(db).list_by_teacher(user.user_id)]

    # --- enrollment decisions ---

    @app.post("/enrollments", response_model=schemas.Outcome)
    def select_course(selection: schemas.SelectionIn, response: Response, background_tasks: BackgroundTasks,
                      db: Session = Depends(get_db), user: models.User = Depends(require_student),
                      enrollments: EnrollmentService = Depends(get_enrollments),
                      publisher: EventPublisher = Depends(get_publisher)):
        outcome = enrollments.select(user.user_id, selection.course_code)
        audit.write_log(db, user.user_id, "SelectCourse", "%s: %s" % (selection.course_code, outcome.code.value))
        if outcome.ok:
            background_tasks.add_task(publisher.publish, ENROLLMENT_EVENTS, "CourseSelected",
                                      {"student_id": user.user_id, "course_code": selection.course_code})
        return _outcome_response(outcome, response)

    @app.delete("/enrollments/{course_code}", response_model=schemas.Outcome)
    def drop_course(course_code: str, response: Response, background_tasks: BackgroundTasks,
                    db: Session = Depends(get_db), user: models.User = Depends(require_student),
                    enrollments: EnrollmentService = Depends(get_enrollments),
                    publisher: EventPublisher = Depends(get_publisher)):
        outcome = enrollments.drop(user.user_id, course_code)
        audit.write_log(db, user.user_id, "DropCourse", "%s: %s" % (course_code, outcome.code.value))
        if outcome.ok:
            background_tasks.add_task(publisher.publish, ENROLLMENT_EVENTS, "CourseDropped",
                                      {"student_id": user.user_id, "course_code": course_code})
        return _outcome_response(outcome, response, success_status=200)

    @app.get("/me/enrollments", response_model=List[schemas.EnrollmentOut])
    def my_enrollments(db: Session = Depends(get_db), user: models.User = Depends(require_student)):
        return [schemas.EnrollmentOut.model_validate(e)
                for e in CatalogService(db).get_student_enrollments(user.user_id)]

    @app.get("/me/courses", response_model=List[schemas.CourseOut])
    def my_courses(db: Session = Depends(get_db), user: models.User = Depends(require_student)):
        return [_course_out(c) for c in CatalogService(db).student_selected_courses(user.user_id)]

    @app.get("/me/stats", response_model=schemas.StudentStatsOut)
    def my_stats(db: Session = Depends(get_db), user: models.User = Depends(require_student)):
        return CatalogService(db).student_course_stats(user.user_id)

    # --- administration ---

    @app.get("/reports/course-stats", response_model=List[schemas.CourseStatOut])
    def course_stats(db: Session = Depends(get_db), _: models.User = Depends(require_admin)):
        return CatalogService(db).course_statistics()

    @app.get("/students", response_model=List[schemas.UserOut])
    def list_students(db: Session = Depends(get_db), _: models.User = Depends(require_admin)):
        return [schemas.UserOut.model_validate(u) for u in UserDirectory(db).list_users(models.ROLE_STUDENT)]

    @app.post("/students", response_model=schemas.UserOut, status_code=201)
    def add_student(user_in: schemas.UserCreate, db: Session = Depends(get_db),
                    admin: models.User = Depends(require_admin)):
        try:
            student = UserDirectory(db).add_student(user_in)
        except DuplicateUser as e:
            raise HTTPException(status_code=409, detail=str(e))
        audit.write_log(db, admin.user_id, "StudentAdded", "%s(%s)" % (student.user_name, student.user_id))
        return schemas.UserOut.model_validate(student)

    @app.delete("/students/{user_id}", response_model=schemas.UserOut)
    def deactivate_student(user_id: str, db: Session = Depends(get_db),
                           admin: models.User = Depends(require_admin),
                           enrollments: EnrollmentService = Depends(get_enrollments)):
        try:
            student = UserDirectory(db).deactivate_student(user_id, enrollments)
        except UserNotFound as e:
            raise HTTPException(status_code=404, detail=str(e))
        except RuntimeError as e:
            raise HTTPException(status_code=503, detail=str(e))
        audit.write_log(db, admin.user_id, "StudentDeactivated", user_id)
        return schemas.UserOut.model_validate(student)

    @app.post("/students/{user_id}/completions", status_code=201)
    def record_completion(user_id: str, payload: schemas.CompletionIn, db: Session = Depends(get_db),
                          admin: models.User = Depends(require_admin)):
        try:
            UserDirectory(db).get_user(user_id, models.ROLE_STUDENT)
            CatalogService(db).record_completion(user_id, payload.course_code)
        except (UserNotFound, CourseNotFound) as e:
            raise HTTPException(status_code=404, detail=str(e))
        audit.write_log(db, admin.user_id, "CompletionRecorded", "%s completed %s" % (user_id, payload.course_code))
        return {"student_id": user_id, "course_code": payload.course_code}

    @app.get("/teachers", response_model=List[schemas.UserOut])
    def list_teachers(db: Session = Depends(get_db), _: models.User = Depends(require_admin)):
        return [schemas.UserOut.model_validate(u) for u in UserDirectory(db).list_users(models.ROLE_TEACHER)]

    @app.post("/teachers", response_model=schemas.UserOut, status_code=201)
    def add_teacher(user_in: schemas.UserCreate, db: Session = Depends(get_db),
                    admin: models.User = Depends(require_admin)):
        try:
            teacher = UserDirectory(db).add_teacher(user_in)
        except DuplicateUser as e:
            raise HTTPException(status_code=409, detail=str(e))
        audit.write_log(db, admin.user_id, "TeacherAdded", "%s(%s)" % (teacher.user_name, teacher.user_id))
        return schemas.UserOut.model_validate(teacher)

    @app.delete("/teachers/{user_id}", status_code=204)
    def delete_teacher(user_id: str, db: Session = Depends(get_db), admin: models.User = Depends(require_admin)):
        try:
            UserDirectory(db).delete_teacher(user_id)
        except UserNotFound as e:
            raise HTTPException(status_code=404, detail=str(e))
        except UserInUse as e:
            raise HTTPException(status_code=409, detail=str(e))
        audit.write_log(db, admin.user_id, "TeacherDeleted", user_id)
        return Response(status_code=204)

    @app.put("/users/{user_id}", response_model=schemas.UserOut)
    def update_user(user_id: str, changes: schemas.UserUpdate, db: Session = Depends(get_db),
                    admin: models.User = Depends(require_admin)):
        try:
            user = UserDirectory(db).update_user(user_id, changes)
        except UserNotFound as e:
            raise HTTPException(status_code=404, detail=str(e))
        audit.write_log(db, admin.user_id, "UserUpdated", user_id)
        return schemas.UserOut.model_validate(user)

    @app.get("/logs", response_model=List[schemas.OperationLogOut])
    def operation_logs(operator_id: Optional[str] = Query(None), limit: int = Query(200, ge=1, le=1000),
                       db: Session = Depends(get_db), _: models.User = Depends(require_admin)):
        return [schemas.OperationLogOut.model_validate(e) for e in audit.list_logs(db, operator_id, limit)]


app = create_app()
