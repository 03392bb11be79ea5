from .slot import OpenSlotRequest, SlotQuery, MentorSlotQuery
from .cart import AddCartItemRequest
from .booking import CheckoutRequest, CancelRequest, BookingQuery, AdminBookingQuery
