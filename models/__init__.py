from .db import db
from .user import User, Role, user_roles
from .audit_log import AuditLog
from .session import Session
from .provider import Provider
from .service import Service
from .booking import Booking
from .payment import Payment
from .review import Review
