from .health import health_bp
from .slots import slots_bp
from .carts import carts_bp
from .bookings import bookings_bp
from .notifications import notifications_bp
