import logging
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from course_selection import models

logger = logging.getLogger("course-selection.audit")


def write_log(db: Session, operator_id: str, operation_type: str, operation_content: str = "") -> None:
    """Append one operation log row and commit.

    Failures are logged and rolled back; the operation being logged has
    already completed by the time this runs.
    """
    try:
        db.add(models.OperationLog(operator_id=operator_id, operation_type=operation_type,
                                   operation_content=operation_content))
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.warning("Operation log write failed (%s %s %s): %s",
                       operator_id, operation_type, operation_content, e)


def list_logs(db: Session, operator_id: Optional[str] = None, limit: int = 200):
    q = db.query(models.OperationLog)
    if operator_id:
        q = q.filter(models.OperationLog.operator_id == operator_id)
    return q.order_by(models.OperationLog.operation_time.desc(),
                      models.OperationLog.log_id.desc()).limit(limit).all()
