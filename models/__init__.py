# Importing every model here registers it with SQLAlchemy's metadata.
from .user import User
from .subscription_plan import SubscriptionPlan
from .subscription import Subscription, SubscriptionStateEnum
from .subscription_history import SubscriptionHistory, ImmutableHistoryError
from .archived_user_data import ArchivedUserData
from .audit_log import AuditLog
from .campaign_alert import CampaignAlert, MetricTypeEnum, AlertOperatorEnum
