def _hhmm(value):
    return value.strftime("%H:%M") if value is not None else None


def _iso(value):
    return value.isoformat() if value is not None else None


def slot_json(s):
    return {
        "id": s.id,
        "mentorId": s.mentor_id,
        "date": s.date.isoformat(),
        "startTime": _hhmm(s.start_time),
        "endTime": _hhmm(s.end_time),
        "price": s.price,
        "status": s.status.value,
    }


def cart_item_json(i):
    return {
        "id": i.id,
        "slotId": i.slot_id,
        "mentorId": i.mentor_id,
        "date": i.date.isoformat(),
        "startTime": _hhmm(i.start_time),
        "endTime": _hhmm(i.end_time),
        "price": i.price,
        "heldAt": _iso(i.held_at),
        "expiresAt": _iso(i.expires_at),
    }


def booking_item_json(i):
    return {
        "id": i.id,
        "slotId": i.slot_id,
        "date": i.date.isoformat(),
        "startTime": _hhmm(i.start_time),
        "endTime": _hhmm(i.end_time),
        "price": i.price,
        "status": i.status.value,
        "cancelledAt": _iso(i.cancelled_at),
    }


def booking_json(b):
    return {
        "id": b.id,
        "studentId": b.student_id,
        "mentorId": b.mentor_id,
        "totalPrice": b.total_price,
        "status": b.status.value,
        "createdAt": _iso(b.created_at),
        "cancelledAt": _iso(b.cancelled_at),
        "cancelReason": b.cancel_reason,
        "completedAt": _iso(b.completed_at),
        "items": [booking_item_json(i) for i in b.items],
    }


def notification_json(n):
    return {
        "id": n.id,
        "title": n.title,
        "message": n.message,
        "isRead": n.is_read,
        "createdAt": _iso(n.created_at),
    }
