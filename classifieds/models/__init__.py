# Models package: import all models here so Alembic can discover them.

from classifieds.models.user import User  # noqa: F401
from classifieds.models.listing import Listing  # noqa: F401
from classifieds.models.message import Message  # noqa: F401
from classifieds.models.transaction import Transaction  # noqa: F401
from classifieds.models.entitlement import EntitlementGrant  # noqa: F401
from classifieds.models.reconciliation_error import ReconciliationError  # noqa: F401
from classifieds.models.stripe_event import StripeEvent  # noqa: F401
from classifieds.models.setting import Setting  # noqa: F401
from classifieds.models.audit import AuditEvent  # noqa: F401
