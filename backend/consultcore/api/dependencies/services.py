# backend/consultcore/api/dependencies/services.py
"""
Service layer dependencies for dependency injection.

Services are created per request around the request's session.
"""

from fastapi import Depends
from sqlalchemy.orm import Session

from ...services.booking_lifecycle_service import BookingLifecycleService
from ...services.lifecycle_sweeper import LifecycleSweeper
from ...services.payment_service import PaymentService
from .database import get_db


def get_lifecycle_service(db: Session = Depends(get_db)) -> BookingLifecycleService:
    return BookingLifecycleService(db)


def get_payment_service(
    db: Session = Depends(get_db),
    lifecycle: BookingLifecycleService = Depends(get_lifecycle_service),
) -> PaymentService:
    return PaymentService(db, lifecycle_service=lifecycle)


def get_lifecycle_sweeper(
    db: Session = Depends(get_db),
    lifecycle: BookingLifecycleService = Depends(get_lifecycle_service),
) -> LifecycleSweeper:
    return LifecycleSweeper(db, lifecycle_service=lifecycle)
