import enum
from datetime import datetime
from extensions import db # Import the SQLAlchemy instance.

class SubscriptionStateEnum(enum.Enum):
    """
    Lifecycle states of a subscription.

    active -> expired -> suspended -> archived, with any state returning to
    active when billing confirms a payment. Only ACTIVE is writable.
    """
    ACTIVE = 'active'        # Paid and fully usable.
    EXPIRED = 'expired'      # Period ended without renewal, read-only grace period running.
    SUSPENDED = 'suspended'  # Grace period over, waiting for archival.
    ARCHIVED = 'archived'    # Profile anonymized and snapshotted. Row is kept.

    @staticmethod
    def from_value(value):
        """
        Maps a state string (e.g. from a request body) to a SubscriptionStateEnum member.
        Args:
            value (str): State name such as "active" or "suspended" (case-insensitive).
        Returns:
            SubscriptionStateEnum or None: The matching member, or None for unknown values.
        """
        if not isinstance(value, str):
            return None
        try:
            return SubscriptionStateEnum(value.strip().lower())
        except ValueError:
            return None


# Stripe statuses that mean the customer is paying for the current period.
HEALTHY_BILLING_STATUSES = ('active', 'trialing')
# Stripe statuses that mean renewal did not happen.
UNHEALTHY_BILLING_STATUSES = ('canceled', 'unpaid', 'incomplete_expired', 'past_due')


class Subscription(db.Model):
    """
    One user's billing relationship and its lifecycle state.

    Holds a snapshot of the plan (limits and features), the Stripe billing
    fields, and the lifecycle columns advanced by the scheduled sweep and by
    Stripe webhooks. `version` is used by SQLAlchemy as an optimistic lock:
    every UPDATE is issued with `WHERE version = <loaded version>`, so a writer
    working on a stale row gets a StaleDataError instead of overwriting a
    concurrent transition.
    """
    __tablename__ = 'subscriptions'

    id = db.Column(db.Integer, primary_key=True)

    # --- Identity ---
    # One subscription per user.
    user_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False, unique=True, index=True)

    # --- Plan snapshot ---
    plan_code = db.Column(db.String(50), nullable=True)
    plan_name = db.Column(db.String(100), nullable=True)
    billing_period = db.Column(db.String(20), nullable=True) # "monthly" / "yearly".
    store_limit = db.Column(db.Integer, nullable=False, default=1) # 0 = unlimited.
    campaign_limit = db.Column(db.Integer, nullable=False, default=5) # 0 = unlimited.
    features_enabled = db.Column(db.JSON, nullable=True)

    # --- Billing (mirrors Stripe) ---
    stripe_customer_id = db.Column(db.String(120), nullable=True, index=True)
    stripe_subscription_id = db.Column(db.String(100), unique=True, nullable=True, index=True)
    stripe_price_id = db.Column(db.String(100), nullable=True)
    # Raw Stripe subscription status string ("active", "past_due", "canceled", ...).
    status = db.Column(db.String(30), nullable=True, index=True)
    current_period_start = db.Column(db.DateTime, nullable=True)
    current_period_end = db.Column(db.DateTime, nullable=True, index=True)
    cancel_at_period_end = db.Column(db.Boolean, nullable=False, default=False)

    # --- Lifecycle ---
    state = db.Column(db.Enum(SubscriptionStateEnum), nullable=False, default=SubscriptionStateEnum.ACTIVE, index=True)
    readonly_mode = db.Column(db.Boolean, nullable=False, default=False)
    grace_period_ends_at = db.Column(db.DateTime, nullable=True)
    archive_scheduled_at = db.Column(db.DateTime, nullable=True)
    archived_at = db.Column(db.DateTime, nullable=True)
    state_change_reason = db.Column(db.String(255), nullable=True)
    last_state_change_at = db.Column(db.DateTime, nullable=True)

    # --- Optimistic lock ---
    version = db.Column(db.Integer, nullable=False)

    # --- Timestamps ---
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __mapper_args__ = {'version_id_col': version}

    # --- Plan ---
    def apply_plan(self, plan):
        """Copies limits and features of a SubscriptionPlan onto this subscription."""
        self.plan_code = plan.code
        self.plan_name = plan.name
        self.billing_period = plan.cadence
        self.store_limit = plan.store_limit
        self.campaign_limit = plan.campaign_limit
        self.features_enabled = list(plan.features or [])
        if plan.stripe_price_id:
            self.stripe_price_id = plan.stripe_price_id

    # --- State transitions ---
    # These only set columns; callers own the transaction and the history entry.
    def _change_state(self, new_state, reason, now):
        self.state = new_state
        self.readonly_mode = new_state != SubscriptionStateEnum.ACTIVE
        self.state_change_reason = reason
        self.last_state_change_at = now

    def mark_active(self, reason, now):
        self._change_state(SubscriptionStateEnum.ACTIVE, reason, now)
        self.grace_period_ends_at = None
        self.archive_scheduled_at = None
        self.archived_at = None

    def mark_expired(self, reason, now, grace_period_ends_at):
        self._change_state(SubscriptionStateEnum.EXPIRED, reason, now)
        self.grace_period_ends_at = grace_period_ends_at
        self.archive_scheduled_at = None
        self.archived_at = None

    def mark_suspended(self, reason, now, archive_scheduled_at):
        self._change_state(SubscriptionStateEnum.SUSPENDED, reason, now)
        self.grace_period_ends_at = None
        self.archive_scheduled_at = archive_scheduled_at
        self.archived_at = None

    def mark_archived(self, reason, now):
        self._change_state(SubscriptionStateEnum.ARCHIVED, reason, now)
        self.grace_period_ends_at = None
        self.archive_scheduled_at = None
        self.archived_at = now

    def to_snapshot(self):
        """Serializable copy of the row, used for archive snapshots and API responses."""
        def iso(value):
            return value.isoformat() if value else None

        return {
            'id': self.id,
            'user_id': self.user_id,
            'plan_code': self.plan_code,
            'plan_name': self.plan_name,
            'billing_period': self.billing_period,
            'store_limit': self.store_limit,
            'campaign_limit': self.campaign_limit,
            'features_enabled': list(self.features_enabled or []),
            'stripe_customer_id': self.stripe_customer_id,
            'stripe_subscription_id': self.stripe_subscription_id,
            'stripe_price_id': self.stripe_price_id,
            'status': self.status,
            'current_period_start': iso(self.current_period_start),
            'current_period_end': iso(self.current_period_end),
            'cancel_at_period_end': self.cancel_at_period_end,
            'state': self.state.value if self.state else None,
            'readonly_mode': self.readonly_mode,
            'grace_period_ends_at': iso(self.grace_period_ends_at),
            'archive_scheduled_at': iso(self.archive_scheduled_at),
            'archived_at': iso(self.archived_at),
            'state_change_reason': self.state_change_reason,
        }

    def __repr__(self):
        state = self.state.value if self.state else None
        return f'<Subscription user={self.user_id} state={state} status={self.status}>'
