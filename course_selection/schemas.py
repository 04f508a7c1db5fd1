# course_selection/schemas.py
from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator


class OutcomeCode(str, Enum):
    SUCCESS = "Success"
    COURSE_NOT_OPEN = "CourseNotOpen"
    ALREADY_SELECTED = "AlreadySelected"
    PREREQUISITE_NOT_MET = "PrerequisiteNotMet"
    TIME_CONFLICT = "TimeConflict"
    COURSE_FULL = "CourseFull"
    NO_ACTIVE_ENROLLMENT = "NoActiveEnrollment"
    STUDENT_INACTIVE = "StudentInactive"
    SYSTEM_ERROR = "SystemError"


class Outcome(BaseModel):
    """Result of a select or drop decision.

    course_code is only set for PrerequisiteNotMet (the missing prerequisite)
    and TimeConflict (the already selected course occupying the slot).
    """

    code: OutcomeCode
    course_code: Optional[str] = None
    message: str = ""

    @property
    def ok(self) -> bool:
        return self.code is OutcomeCode.SUCCESS


class SelectionIn(BaseModel):
    course_code: str


class LoginIn(BaseModel):
    account: str
    password: str


class LoginOut(BaseModel):
    session_token: str
    user_id: str
    user_name: str
    role: str


class PasswordChangeIn(BaseModel):
    old_password: str
    new_password: str = Field(min_length=6)


class UserCreate(BaseModel):
    user_id: str
    user_name: str
    account: str
    password: str = Field(default="123456", min_length=6)
    department: Optional[str] = None
    contact: Optional[str] = None


class UserUpdate(BaseModel):
    user_name: Optional[str] = None
    department: Optional[str] = None
    contact: Optional[str] = None


class UserOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    user_id: str
    user_name: str
    role: str
    department: Optional[str] = None
    contact: Optional[str] = None
    is_active: bool


class CourseCreate(BaseModel):
    course_code: str
    course_name: str
    credit: float = Field(default=0.0, ge=0)
    class_hour: int = Field(default=0, ge=0)
    schedule_day: Optional[int] = Field(default=None, ge=1, le=7)
    start_period: Optional[int] = Field(default=None, ge=1)
    end_period: Optional[int] = Field(default=None, ge=1)
    classroom: Optional[str] = None
    capacity_limit: int = Field(ge=0)
    course_type: Optional[str] = None
    description: Optional[str] = None
    prerequisites: List[str] = []

    @model_validator(mode="after")
    def check_slot(self):
        parts = (self.schedule_day, self.start_period, self.end_period)
        if any(p is not None for p in parts):
            if any(p is None for p in parts):
                raise ValueError("schedule_day, start_period and end_period must be given together")
            if self.start_period > self.end_period:
                raise ValueError("start_period must not be after end_period")
        return self


class AuditIn(BaseModel):
    decision: str  # Published or Rejected


class CourseOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    course_code: str
    course_name: str
    credit: float
    class_hour: int
    teacher_id: str
    teacher_name: Optional[str] = None
    schedule_day: Optional[int] = None
    start_period: Optional[int] = None
    end_period: Optional[int] = None
    schedule_time: Optional[str] = None
    classroom: Optional[str] = None
    capacity_limit: int
    current_selected: int
    remaining_capacity: int
    course_type: Optional[str] = None
    description: Optional[str] = None
    status: str
    prerequisite_codes: List[str] = []


class EnrollmentOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    student_id: str
    course_code: str
    status: str
    selected_at: Optional[datetime] = None
    dropped_at: Optional[datetime] = None


class CourseStatOut(BaseModel):
    course_code: str
    course_name: str
    teacher_name: Optional[str] = None
    credit: float
    capacity_limit: int
    current_selected: int
    saturation_rate: float


class RosterEntryOut(BaseModel):
    user_id: str
    user_name: str
    department: Optional[str] = None
    selection_time: Optional[datetime] = None


class StudentStatsOut(BaseModel):
    course_count: int
    total_credits: float


class CompletionIn(BaseModel):
    course_code: str


class OperationLogOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    log_id: int
    operator_id: str
    operation_type: str
    operation_content: Optional[str] = None
    operation_time: Optional[datetime] = None
