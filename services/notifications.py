"""
Notification hook.

Fired after a booking change has committed. Each notice is stored for the
in-app bell and mailed when SMTP is configured. Delivery problems are logged
and never reach the caller: the booking already happened.

Hooks take plain ids and counts captured before the commit, so firing them
never has to reload the booking.
"""

import logging
from functools import wraps
from typing import List, Optional

from sqlalchemy.exc import SQLAlchemyError

from models import db
from models.notification import Notification
from models.user import User
from services.errors import NotFoundError
from utils.emailer import email_configured, send_email

logger = logging.getLogger(__name__)


def _fire_and_forget(fn):
    @wraps(fn)
    def wrapper(*args, **kwargs):
        try:
            fn(*args, **kwargs)
        except SQLAlchemyError:
            db.session.rollback()
            logger.exception("Notification hook %s failed", fn.__name__)
    return wrapper


def _recipient_email(user_id: int) -> Optional[str]:
    user = db.session.get(User, user_id)
    return user.email if user is not None else None


def _fire(user_id: int, title: str, message: str) -> None:
    db.session.add(Notification(user_id=user_id, title=title, message=message))
    db.session.commit()

    if email_configured():
        email = _recipient_email(user_id)
        if email:
            sent, error = send_email(email, title, message)
            if not sent:
                logger.warning("Notification mail to user %s not sent: %s", user_id, error)


def _fire_all(user_ids: List[int], title: str, message: str) -> None:
    # one failing recipient must not starve the others
    for user_id in user_ids:
        try:
            _fire(user_id, title, message)
        except SQLAlchemyError:
            db.session.rollback()
            logger.exception("Failed to notify user %s (%r)", user_id, title)


@_fire_and_forget
def booking_created(booking_id: int, student_id: int, mentor_id: int, item_count: int) -> None:
    _fire_all(
        [mentor_id],
        "New Booking Received",
        f"You have received a new booking for {item_count} slot(s)",
    )
    _fire_all(
        [student_id],
        "Booking Confirmed",
        f"Your booking #{booking_id} for {item_count} slot(s) is confirmed",
    )


@_fire_and_forget
def booking_cancelled(
    booking_id: int,
    student_id: int,
    mentor_id: int,
    actor_id: int,
    cancelled_count: int,
    fully_cancelled: bool,
) -> None:
    if actor_id == student_id:
        recipients, cancelled_by = [mentor_id], "student"
    elif actor_id == mentor_id:
        recipients, cancelled_by = [student_id], "mentor"
    else:
        recipients, cancelled_by = [student_id, mentor_id], "administrator"

    if fully_cancelled:
        title, message = "Booking Cancelled", f"Booking #{booking_id} has been cancelled by the {cancelled_by}"
    else:
        title = "Booking Updated"
        message = f"{cancelled_count} slot(s) of booking #{booking_id} were cancelled by the {cancelled_by}"
    _fire_all(recipients, title, message)


@_fire_and_forget
def booking_completed(booking_id: int, student_id: int) -> None:
    _fire_all([student_id], "Booking Completed", f"Booking #{booking_id} has been marked as completed")


def _owned(notification_id: int, user_id: int) -> Notification:
    note = db.session.get(Notification, notification_id)
    if note is None or note.user_id != user_id:
        raise NotFoundError("Notification not found", details={"notificationId": notification_id})
    return note


def mark_read(notification_id: int, user_id: int) -> Notification:
    note = _owned(notification_id, user_id)
    note.is_read = True
    db.session.commit()
    return note


def delete(notification_id: int, user_id: int) -> None:
    db.session.delete(_owned(notification_id, user_id))
    db.session.commit()
