from .db import db
from .user import User, Role, Category, user_roles
from .audit_log import AuditLog
from .session import Session
from .slot import Slot, SlotStatus
from .cart_item import CartItem
from .booking import Booking, BookingItem, BookingStatus
from .notification import Notification
