from datetime import time

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, field_validator, model_validator
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from booking.auth.dependencies import get_current_user, require_admin
from booking.core import config
from booking.core.errors import ConflictError, NotFoundError
from booking.database import ensure_availability_schema, get_db
from booking.models.availability import AvailabilityRule
from booking.models.user import User

router = APIRouter(tags=['availability'])

# Monday (1) through Friday (5), counting from Sunday (0).
DEFAULT_WORK_DAYS = (1, 2, 3, 4, 5)
DATABASE_UNAVAILABLE = 'Database unavailable. Verify DATABASE_URL and database credentials.'


class AvailabilityRuleRequest(BaseModel):
    day_of_week: int
    start_time: time
    end_time: time
    is_available: bool = True

    @field_validator('day_of_week')
    @classmethod
    def validate_day_of_week(cls, value: int) -> int:
        if value < 0 or value > 6:
            raise ValueError('day_of_week must be between 0 (Sunday) and 6 (Saturday).')
        return value

    @model_validator(mode='after')
    def validate_window(self):
        if self.start_time >= self.end_time:
            raise ValueError('start_time must be before end_time.')
        return self


class AvailabilityRuleResponse(BaseModel):
    id: int
    day_of_week: int
    start_time: time
    end_time: time
    is_available: bool

    class Config:
        from_attributes = True


def ensure_database_ready() -> None:
    try:
        ensure_availability_schema()
    except SQLAlchemyError as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=DATABASE_UNAVAILABLE,
        ) from exc


def list_rules(db: Session) -> list[AvailabilityRule]:
    return db.query(AvailabilityRule).order_by(
        AvailabilityRule.day_of_week.asc(),
        AvailabilityRule.start_time.asc(),
    ).all()


@router.get('/rules', response_model=list[AvailabilityRuleResponse])
def get_rules(
    _current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    ensure_database_ready()
    return list_rules(db)


@router.post('/rules', response_model=AvailabilityRuleResponse, status_code=status.HTTP_201_CREATED)
def create_rule(
    data: AvailabilityRuleRequest,
    _admin: User = Depends(require_admin),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    rule = AvailabilityRule(
        day_of_week=data.day_of_week,
        start_time=data.start_time,
        end_time=data.end_time,
        is_available=data.is_available,
    )

    try:
        db.add(rule)
        db.commit()
        db.refresh(rule)
    except SQLAlchemyError as exc:
        db.rollback()
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=DATABASE_UNAVAILABLE) from exc

    return rule


@router.delete('/rules/{rule_id}', status_code=status.HTTP_204_NO_CONTENT)
def delete_rule(
    rule_id: int,
    _admin: User = Depends(require_admin),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    rule = db.query(AvailabilityRule).filter(AvailabilityRule.id == rule_id).first()
    if rule is None:
        raise NotFoundError('Availability rule not found')

    try:
        db.delete(rule)
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=DATABASE_UNAVAILABLE) from exc


@router.post('/rules/default', response_model=list[AvailabilityRuleResponse], status_code=status.HTTP_201_CREATED)
def create_default_rules(
    _admin: User = Depends(require_admin),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    if db.query(AvailabilityRule.id).first() is not None:
        raise ConflictError('Availability rules already exist')

    for day_of_week in DEFAULT_WORK_DAYS:
        db.add(
            AvailabilityRule(
                day_of_week=day_of_week,
                start_time=time(config.WORKDAY_START_HOUR, 0),
                end_time=time(config.WORKDAY_END_HOUR, 0),
                is_available=True,
            )
        )

    try:
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=DATABASE_UNAVAILABLE) from exc

    return list_rules(db)
