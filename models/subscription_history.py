from datetime import datetime
from sqlalchemy import event
from extensions import db


class ImmutableHistoryError(RuntimeError):
    """Raised when code tries to change or remove a persisted history entry."""


class SubscriptionHistory(db.Model):
    """
    Append-only audit trail of subscription changes.

    Every lifecycle transition (sweep, webhook, admin) writes one entry that
    snapshots the plan, the billing status and period bounds at that moment.
    Entries are never updated or deleted.
    """
    __tablename__ = 'subscription_history'

    id = db.Column(db.Integer, primary_key=True)
    subscription_id = db.Column(db.Integer, db.ForeignKey('subscriptions.id'), nullable=False, index=True)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False, index=True)

    # e.g. "created", "renewed", "reactivated", "expired", "suspended", "archived", "admin_forced".
    event_type = db.Column(db.String(50), nullable=False, index=True)

    # --- Snapshot at the time of the event ---
    plan_name = db.Column(db.String(100), nullable=True)
    billing_period = db.Column(db.String(20), nullable=True)
    status = db.Column(db.String(30), nullable=True)
    state = db.Column(db.String(20), nullable=True)
    period_start = db.Column(db.DateTime, nullable=True)
    period_end = db.Column(db.DateTime, nullable=True)
    stripe_subscription_id = db.Column(db.String(100), nullable=True)
    stripe_invoice_id = db.Column(db.String(100), nullable=True)
    amount = db.Column(db.Numeric(10, 2), nullable=True)

    # `metadata` is reserved on declarative classes, hence the attribute name.
    event_metadata = db.Column('metadata', db.JSON, nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, index=True)

    subscription = db.relationship('Subscription')

    @classmethod
    def record(cls, subscription, event_type, stripe_invoice_id=None, amount=None, **metadata):
        """
        Builds a history entry for `subscription` and adds it to the session.

        The caller commits; the entry shares the transaction of the change it describes.
        """
        entry = cls(
            subscription=subscription,
            user_id=subscription.user_id,
            event_type=event_type,
            plan_name=subscription.plan_name,
            billing_period=subscription.billing_period,
            status=subscription.status,
            state=subscription.state.value if subscription.state else None,
            period_start=subscription.current_period_start,
            period_end=subscription.current_period_end,
            stripe_subscription_id=subscription.stripe_subscription_id,
            stripe_invoice_id=stripe_invoice_id,
            amount=amount,
            event_metadata=metadata or None,
        )
        db.session.add(entry)
        return entry

    def to_dict(self):
        return {
            'id': self.id,
            'event_type': self.event_type,
            'plan_name': self.plan_name,
            'billing_period': self.billing_period,
            'status': self.status,
            'state': self.state,
            'period_start': self.period_start.isoformat() if self.period_start else None,
            'period_end': self.period_end.isoformat() if self.period_end else None,
            'stripe_invoice_id': self.stripe_invoice_id,
            'amount': float(self.amount) if self.amount is not None else None,
            'metadata': self.event_metadata or {},
            'created_at': self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f'<SubscriptionHistory {self.event_type} sub={self.subscription_id}>'


@event.listens_for(SubscriptionHistory, 'before_update')
def _reject_history_update(mapper, connection, target):
    raise ImmutableHistoryError(f'Subscription history entry {target.id} is append-only and cannot be updated.')


@event.listens_for(SubscriptionHistory, 'before_delete')
def _reject_history_delete(mapper, connection, target):
    raise ImmutableHistoryError(f'Subscription history entry {target.id} is append-only and cannot be deleted.')
