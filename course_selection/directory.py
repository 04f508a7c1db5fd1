"""User directory: accounts, roles and student/teacher maintenance."""

import hashlib
import hmac
import logging
import secrets
from typing import Optional

from sqlalchemy import or_
from sqlalchemy.orm import Session

from course_selection import models, schemas

logger = logging.getLogger("course-selection.directory")


class UserNotFound(LookupError):
    pass


class DuplicateUser(ValueError):
    pass


class UserInUse(ValueError):
    pass


def hash_password(password: str, salt: Optional[str] = None) -> str:
    salt = salt or secrets.token_hex(8)
    digest = hashlib.sha256((salt + password).encode("utf-8")).hexdigest()
    return "%s$%s" % (salt, digest)


def verify_password(password: str, stored: str) -> bool:
    salt, _, _ = stored.partition("$")
    return hmac.compare_digest(hash_password(password, salt), stored)


class UserDirectory:
    def __init__(self, db: Session):
        self.db = db

    def get_user(self, user_id: str, role: Optional[str] = None):
        user = self.db.get(models.User, user_id)
        if user is None or (role is not None and user.role != role):
            raise UserNotFound("%s %s not found" % (role or "User", user_id))
        return user

    def authenticate(self, account: str, password: str):
        user = self.db.query(models.User).filter(models.User.account == account).first()
        if user is None or not user.is_active or not verify_password(password, user.password):
            logger.info("Login failed for account=%s", account)
            return None
        logger.info("Login ok user=%s role=%s", user.user_id, user.role)
        return user

    def add_student(self, user_in: schemas.UserCreate):
        return self._add(user_in, models.ROLE_STUDENT)

    def add_teacher(self, user_in: schemas.UserCreate):
        return self._add(user_in, models.ROLE_TEACHER)

    def add_admin(self, user_in: schemas.UserCreate):
        return self._add(user_in, models.ROLE_ADMIN)

    def ensure_admin(self, account: str, password: str):
        admin = self.db.query(models.User).filter(models.User.role == models.ROLE_ADMIN).first()
        if admin is None:
            admin = self.add_admin(schemas.UserCreate(
                user_id=account, user_name="Administrator", account=account, password=password))
        return admin

    def _add(self, user_in, role):
        clash = self.db.query(models.User).filter(
            or_(models.User.user_id == user_in.user_id, models.User.account == user_in.account)
        ).first()
        if clash is not None:
            raise DuplicateUser("User id or account already in use")
        user = models.User(
            user_id=user_in.user_id,
            user_name=user_in.user_name,
            account=user_in.account,
            password=hash_password(user_in.password),
            role=role,
            department=user_in.department,
            contact=user_in.contact,
            is_active=True,
        )
        self.db.add(user)
        self.db.commit()
        self.db.refresh(user)
        logger.info("Added %s %s", role, user.user_id)
        return user

    def update_user(self, user_id: str, changes: schemas.UserUpdate):
        user = self.get_user(user_id)
        for field, value in changes.model_dump(exclude_unset=True).items():
            setattr(user, field, value)
        self.db.commit()
        self.db.refresh(user)
        return user

    def list_users(self, role: str):
        return self.db.query(models.User).filter(
            models.User.role == role
        ).order_by(models.User.user_id).all()

    def change_password(self, user_id: str, old_password: str, new_password: str) -> bool:
        user = self.get_user(user_id)
        if not verify_password(old_password, user.password):
            return False
        user.password = hash_password(new_password)
        self.db.commit()
        logger.info("Password changed for user=%s", user_id)
        return True

    def deactivate_student(self, user_id: str, enrollments):
        """Mark the student inactive, then drop every live enrollment through
        the enrollment service. Enrollment history is kept.

        Deactivation commits first so a select racing with this call is
        rejected, and any select that committed earlier is seen by the
        enrollment read below.
        """
        user = self.get_user(user_id, models.ROLE_STUDENT)
        user.is_active = False
        self.db.commit()
        codes = [code for (code,) in self.db.query(models.Enrollment.course_code).filter(
            models.Enrollment.student_id == user_id,
            models.Enrollment.status == models.ENROLLMENT_SELECTED,
        )]
        # release our read transaction before the drops take the write lock
        self.db.commit()
        for code in codes:
            outcome = enrollments.drop(user_id, code)
            if outcome.code is schemas.OutcomeCode.SYSTEM_ERROR:
                raise RuntimeError("Could not drop %s for %s: %s" % (code, user_id, outcome.message))
        logger.info("Deactivated student %s, dropped %d course(s)", user_id, len(codes))
        return user

    def delete_teacher(self, user_id: str):
        user = self.get_user(user_id, models.ROLE_TEACHER)
        owned = self.db.query(models.Course).filter(models.Course.teacher_id == user_id).count()
        if owned:
            raise UserInUse("Teacher %s still owns %d course(s)" % (user_id, owned))
        self.db.delete(user)
        self.db.commit()
        logger.info("Deleted teacher %s", user_id)
