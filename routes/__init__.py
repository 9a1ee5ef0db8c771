from .health import health_bp
from .bikes import bike_bp
from .bookings import booking_bp
from .payments import payments_bp
from .stripe_webhook import webhook_bp
