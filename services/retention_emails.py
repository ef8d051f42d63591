"""
Win-back emails for lapsed subscriptions.

Sent on day 0, 5 and 10 after the billing period ended, while the subscription
is expired or suspended. Each send is recorded in audit_logs, which also keeps
a re-run on the same day from emailing the user twice.
"""
from dataclasses import dataclass, field

from flask import current_app, render_template

from extensions import db
from models.audit_log import AuditLog
from models.subscription import Subscription, SubscriptionStateEnum
from services.email_service import send_email
from utils.helpers import utcnow

RETENTION_EVENT = 'retention_email_sent'

# days since expiry -> (template, subject)
RETENTION_SCHEDULE = {
    0: ('emails/retention_d0.html', 'Your {plan_name} subscription has expired'),
    5: ('emails/retention_d5.html', 'Last chance: {discount}% off ends soon'),
    10: ('emails/retention_d10.html', 'Final notice: your account will be archived in 4 days'),
}


@dataclass
class RetentionResult:
    sent: int = 0
    skipped: int = 0
    errors: list = field(default_factory=list)

    def to_dict(self):
        return {'sent': self.sent, 'skipped': self.skipped, 'errors': list(self.errors)}


def days_since_expiry(subscription, now):
    if subscription.current_period_end is None:
        return None
    return int((now - subscription.current_period_end).total_seconds() // 86400)


def checkout_url(subscription):
    app_url = current_app.config.get('APP_URL', '').rstrip('/')
    discount = current_app.config.get('RETENTION_DISCOUNT_PERCENT', 20)
    return f"{app_url}/billing?plan={subscription.plan_code}&discount={discount}"


def _already_sent(subscription, days):
    sent = AuditLog.query.filter_by(subscription_id=subscription.id, event_type=RETENTION_EVENT).all()
    return any((entry.event_data or {}).get('days_since_expiry') == days for entry in sent)


def send_retention_emails(now=None):
    """
    Emails every expired or suspended subscriber whose expiry is exactly 0, 5
    or 10 days old. Per-user failures are collected, not raised.
    """
    now = now or utcnow()
    result = RetentionResult()
    discount = current_app.config.get('RETENTION_DISCOUNT_PERCENT', 20)

    subscriptions = (Subscription.query
                     .filter(Subscription.state.in_([SubscriptionStateEnum.EXPIRED, SubscriptionStateEnum.SUSPENDED]))
                     .order_by(Subscription.id)
                     .all())

    for subscription in subscriptions:
        days = days_since_expiry(subscription, now)
        if days not in RETENTION_SCHEDULE:
            result.skipped += 1
            continue

        user = subscription.user
        if user is None or not user.email:
            current_app.logger.warning(f"Retention email: no email for user {subscription.user_id}, skipping.")
            result.skipped += 1
            continue

        if _already_sent(subscription, days):
            result.skipped += 1
            continue

        template, subject = RETENTION_SCHEDULE[days]
        subject = subject.format(plan_name=subscription.plan_name or 'Sheet Tools', discount=discount)
        user_name = user.full_name or 'there'
        try:
            html = render_template(
                template,
                user_name=user_name,
                plan_name=subscription.plan_name,
                checkout_url=checkout_url(subscription),
                discount_percent=discount,
                grace_period_ends_at=subscription.grace_period_ends_at,
                archive_scheduled_at=subscription.archive_scheduled_at,
            )
            send_email(user.email, subject, html, to_name=user_name,
                       tags=[f'retention-d{days}', 'subscription-recovery'])
        except Exception as e:
            result.errors.append(f"{user.email}: {e}")
            current_app.logger.error(f"Failed to send D+{days} retention email to {user.email}: {e}", exc_info=True)
            continue

        result.sent += 1
        db.session.add(AuditLog(
            user_id=subscription.user_id,
            subscription_id=subscription.id,
            event_type=RETENTION_EVENT,
            event_data={
                'days_since_expiry': days,
                'discount_offered': discount,
                'email': user.email,
                'provider': 'brevo',
                'template': template,
                'subject': subject,
            },
        ))
        try:
            db.session.commit()
        except Exception as e:
            db.session.rollback()
            current_app.logger.error(f"Could not record retention email for subscription {subscription.id}: {e}", exc_info=True)

    current_app.logger.info(f"Retention emails finished: {result.sent} sent, {result.skipped} skipped, {len(result.errors)} errors.")
    return result
