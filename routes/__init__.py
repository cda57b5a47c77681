from .health import health_bp
from .auth import auth_bp
from .providers import provider_bp
from .services import service_bp
from .booking import booking_bp
from .payments import payments_bp
from .stripe_webhook import webhook_bp
from .reviews import review_bp
