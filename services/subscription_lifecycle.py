"""
Subscription lifecycle: active -> expired -> suspended -> archived.

The scheduled sweep (`run_state_sweep`) advances subscriptions whose time
thresholds have passed. Billing webhooks move subscriptions back to active or
into expiry through `activate_subscription` / `expire_from_billing`, and admins
can override the state with `force_state`.

Every write goes through the `version` column of Subscription, so two writers
racing on the same row cannot both succeed: the loser gets a StaleDataError
and its transaction (including the history entry) is rolled back.
"""
from dataclasses import dataclass, field
from datetime import timedelta

from flask import current_app
from sqlalchemy import func, or_
from sqlalchemy.orm.exc import StaleDataError

from extensions import db
from models.archived_user_data import ArchivedUserData
from models.audit_log import AuditLog
from models.campaign_alert import CampaignAlert
from models.subscription import Subscription, SubscriptionStateEnum
from models.subscription_history import SubscriptionHistory
from models.user import User
from utils.helpers import utcnow, days_until, isoformat_or_none
from utils.security import encrypt_json

# Reasons recorded in subscriptions.state_change_reason.
REASON_PERIOD_ENDED = 'subscription_period_ended'
REASON_GRACE_ENDED = 'grace_period_ended'
REASON_INACTIVE = 'inactive_period_ended'

# Entitlements for users without a subscription row and without a running trial.
FREE_PLAN_CODE = 'free'
FREE_PLAN_NAME = 'FREE'
DEFAULT_STORE_LIMIT = 1
DEFAULT_CAMPAIGN_LIMIT = 5

# Entitlements while a registration trial runs.
TRIAL_PLAN_CODE = 'trial'
TRIAL_PLAN_NAME = 'Trial'
TRIAL_STORE_LIMIT = 2
TRIAL_CAMPAIGN_LIMIT = 40
TRIAL_FEATURES = ['basic_analytics', 'product_sync', 'campaign_management', 'campaign_alerts']


@dataclass
class SweepResult:
    trials_expired: int = 0
    expired: int = 0
    suspended: int = 0
    archived: int = 0
    conflicts: int = 0 # Rows changed by someone else while the sweep was working on them.
    errors: list = field(default_factory=list)

    @property
    def changed(self):
        return self.trials_expired + self.expired + self.suspended + self.archived

    def to_dict(self):
        return {
            'trials_expired': self.trials_expired,
            'expired': self.expired,
            'suspended': self.suspended,
            'archived': self.archived,
            'conflicts': self.conflicts,
            'errors': list(self.errors),
        }


def _grace_period():
    return timedelta(days=current_app.config.get('GRACE_PERIOD_DAYS', 7))


def _archive_delay():
    return timedelta(days=current_app.config.get('ARCHIVE_DELAY_DAYS', 7))


# --- Sweep predicates ---
# Each phase re-checks its predicate on the freshly loaded row before acting,
# since an earlier commit in the same sweep (or a webhook) may have changed it.

def _due_for_expiry(subscription, now):
    return (subscription.state == SubscriptionStateEnum.ACTIVE
            and subscription.current_period_end is not None
            and subscription.current_period_end < now
            and subscription.status != 'active')


def _due_for_suspension(subscription, now):
    return (subscription.state == SubscriptionStateEnum.EXPIRED
            and subscription.grace_period_ends_at is not None
            and subscription.grace_period_ends_at < now)


def _due_for_archive(subscription, now):
    return (subscription.state == SubscriptionStateEnum.SUSPENDED
            and subscription.archive_scheduled_at is not None
            and subscription.archive_scheduled_at < now)


# --- Sweep transitions ---

def _expire(subscription, now):
    subscription.mark_expired(REASON_PERIOD_ENDED, now, grace_period_ends_at=now + _grace_period())
    SubscriptionHistory.record(subscription, 'expired', reason='period_ended')


def _suspend(subscription, now):
    subscription.mark_suspended(REASON_GRACE_ENDED, now, archive_scheduled_at=now + _archive_delay())
    SubscriptionHistory.record(subscription, 'suspended', reason='grace_period_ended')


def _archive(subscription, now):
    user = subscription.user
    snapshot = {
        'profile': user.to_snapshot(),
        'subscription': subscription.to_snapshot(),
        'timestamp': now.isoformat(),
    }
    db.session.add(ArchivedUserData(
        original_user_id=user.id,
        encrypted_snapshot=encrypt_json(snapshot),
        details={'plan_name': subscription.plan_name, 'archived_reason': 'inactivity'},
        anonymized_at=now,
        restoration_expires_at=now + timedelta(days=current_app.config.get('ARCHIVE_RESTORATION_DAYS', 90)),
        can_restore=True,
    ))
    user.anonymize()
    subscription.mark_archived(REASON_INACTIVE, now)
    SubscriptionHistory.record(subscription, 'archived', reason='inactivity', anonymized=True)


def _run_phase(name, query, predicate, transition, now, result):
    """
    Applies `transition` to every row of `query` that still satisfies `predicate`.
    Each row is committed on its own; a failing row is rolled back and recorded
    without stopping the phase. Returns the number of rows transitioned.
    """
    changed = 0
    for subscription in query.order_by(Subscription.id).all():
        subscription_id = subscription.id
        try:
            if not predicate(subscription, now):
                continue
            transition(subscription, now)
            db.session.commit()
            changed += 1
            current_app.logger.info(f"Subscription sweep: subscription {subscription_id} (user {subscription.user_id}) -> {subscription.state.value}.")
        except StaleDataError:
            db.session.rollback()
            result.conflicts += 1
            current_app.logger.warning(f"Subscription sweep ({name}): subscription {subscription_id} was modified concurrently, skipping.")
        except Exception as e:
            db.session.rollback()
            result.errors.append(f"{name} failed for subscription {subscription_id}: {e}")
            current_app.logger.error(f"Subscription sweep ({name}): error processing subscription {subscription_id}: {e}", exc_info=True)
    return changed


def _trial_duration_days():
    return current_app.config.get('TRIAL_DAYS', 10)


def _expire_trials(now, result):
    """
    Closes the trial of every user whose trial ended without a subscription.
    `trial_expired_at` makes this happen once per user.
    """
    changed = 0
    users = (User.query
             .outerjoin(Subscription, Subscription.user_id == User.id)
             .filter(Subscription.id.is_(None),
                     User.trial_ends_at.isnot(None),
                     User.trial_ends_at < now,
                     User.trial_expired_at.is_(None))
             .order_by(User.id)
             .all())
    for user in users:
        user_id = user.id
        try:
            user.trial_expired_at = now
            db.session.add(AuditLog(
                user_id=user_id,
                event_type='trial_expired',
                event_data={
                    'trial_ends_at': isoformat_or_none(user.trial_ends_at),
                    'trial_duration_days': _trial_duration_days(),
                },
            ))
            db.session.commit()
            changed += 1
            current_app.logger.info(f"Subscription sweep: trial of user {user_id} expired.")
        except Exception as e:
            db.session.rollback()
            result.errors.append(f"trial failed for user {user_id}: {e}")
            current_app.logger.error(f"Subscription sweep (trial): error processing user {user_id}: {e}", exc_info=True)
    return changed


def run_state_sweep(now=None):
    """
    Advances every subscription whose lifecycle threshold has passed.

    Ended trials are closed first. The subscription phases then run in order
    (expire, suspend, archive) and each re-queries the table, so a row moves at
    most one step per phase. Running the sweep again
    without time passing changes nothing.

    Args:
        now (datetime, optional): Naive UTC reference time. Defaults to the current time.

    Returns:
        SweepResult: Counts per transition, concurrent-modification conflicts and error messages.
    """
    now = now or utcnow()
    result = SweepResult()
    current_app.logger.info(f"Subscription sweep started at {now.isoformat()}.")

    result.trials_expired = _expire_trials(now, result)

    result.expired = _run_phase(
        'expire',
        Subscription.query.filter(
            Subscription.state == SubscriptionStateEnum.ACTIVE,
            Subscription.current_period_end < now,
            or_(Subscription.status.is_(None), Subscription.status != 'active'),
        ),
        _due_for_expiry, _expire, now, result,
    )
    result.suspended = _run_phase(
        'suspend',
        Subscription.query.filter(
            Subscription.state == SubscriptionStateEnum.EXPIRED,
            Subscription.grace_period_ends_at < now,
        ),
        _due_for_suspension, _suspend, now, result,
    )
    result.archived = _run_phase(
        'archive',
        Subscription.query.filter(
            Subscription.state == SubscriptionStateEnum.SUSPENDED,
            Subscription.archive_scheduled_at < now,
        ),
        _due_for_archive, _archive, now, result,
    )

    current_app.logger.info(
        f"Subscription sweep finished: {result.trials_expired} trials expired, {result.expired} expired, "
        f"{result.suspended} suspended, {result.archived} archived, {result.conflicts} conflicts, {len(result.errors)} errors."
    )
    return result


# --- Billing-driven transitions ---
# These stage changes in the session; the caller commits.

def activate_subscription(subscription, reason, now=None, plan=None, event_type='reactivated', **history):
    """
    Moves a subscription (from any state) to active.

    Clears read-only mode and the grace/archive timestamps, refreshes the plan
    snapshot when `plan` is given, and appends a history entry.
    """
    now = now or utcnow()
    previous_state = subscription.state.value if subscription.state else None
    if plan is not None:
        subscription.apply_plan(plan)
    subscription.mark_active(reason, now)
    SubscriptionHistory.record(subscription, event_type, reason=reason, previous_state=previous_state, **history)
    return subscription


def expire_from_billing(subscription, reason, now=None, status=None, event_type='expired', **history):
    """
    Applies a billing failure (payment failed, cancellation, unhealthy status).

    An active subscription becomes expired and starts its grace period. An
    already expired subscription keeps its running grace period. Suspended and
    archived subscriptions keep their state; only the billing status changes.
    """
    now = now or utcnow()
    if status is not None:
        subscription.status = status
    previous_state = subscription.state.value if subscription.state else None

    if subscription.state == SubscriptionStateEnum.ACTIVE:
        subscription.mark_expired(reason, now, grace_period_ends_at=now + _grace_period())
    elif subscription.state == SubscriptionStateEnum.EXPIRED:
        if subscription.grace_period_ends_at is None:
            subscription.grace_period_ends_at = now + _grace_period()
        subscription.state_change_reason = reason
    SubscriptionHistory.record(subscription, event_type, reason=reason, previous_state=previous_state, **history)
    return subscription


# --- Admin override ---

def force_state(subscription, new_state, admin, reason=None, now=None):
    """
    Sets a subscription's state directly on behalf of an admin.

    Args:
        subscription (Subscription): Target row.
        new_state (SubscriptionStateEnum or str): Desired state.
        admin (User): Acting admin, recorded in the audit log.
        reason (str, optional): Free-text reason. Defaults to "Admin force update by <email>".

    Raises:
        ValueError: If `new_state` is not a lifecycle state.
    """
    if not isinstance(new_state, SubscriptionStateEnum):
        new_state = SubscriptionStateEnum.from_value(new_state)
    if new_state is None:
        raise ValueError(f"Invalid state. Must be one of: {', '.join(s.value for s in SubscriptionStateEnum)}")

    now = now or utcnow()
    reason = reason or f"Admin force update by {admin.email}"
    old_state = subscription.state.value if subscription.state else None

    if new_state == SubscriptionStateEnum.ACTIVE:
        subscription.mark_active(reason, now)
    elif new_state == SubscriptionStateEnum.EXPIRED:
        subscription.mark_expired(reason, now, grace_period_ends_at=now + _grace_period())
    elif new_state == SubscriptionStateEnum.SUSPENDED:
        subscription.mark_suspended(reason, now, archive_scheduled_at=now + _archive_delay())
    else:
        subscription.mark_archived(reason, now)

    SubscriptionHistory.record(subscription, 'admin_forced', reason=reason, previous_state=old_state, admin_id=admin.id)
    db.session.add(AuditLog(
        user_id=subscription.user_id,
        subscription_id=subscription.id,
        event_type='admin_force_status',
        event_data={
            'old_state': old_state,
            'new_state': new_state.value,
            'reason': reason,
            'admin_id': admin.id,
            'admin_email': admin.email,
        },
    ))
    current_app.logger.info(f"Admin {admin.id} forced subscription {subscription.id} from {old_state} to {new_state.value}.")
    return subscription


# --- Entitlements ---

@dataclass
class PlanLimits:
    code: str
    name: str
    state: str
    readonly: bool
    store_limit: int # 0 = unlimited.
    campaign_limit: int # 0 = unlimited.
    features: list
    is_trial: bool = False


def effective_plan(user, now=None):
    """
    The plan the user's limits come from: the subscription row when there is
    one, otherwise the registration trial while it runs, otherwise the free tier.
    """
    now = now or utcnow()
    subscription = user.subscription
    if subscription is not None:
        return PlanLimits(
            code=subscription.plan_code or FREE_PLAN_CODE,
            name=subscription.plan_name or FREE_PLAN_NAME,
            state=subscription.state.value,
            readonly=subscription.readonly_mode,
            store_limit=subscription.store_limit,
            campaign_limit=subscription.campaign_limit,
            features=list(subscription.features_enabled or []),
        )
    if user.trial_active(now):
        return PlanLimits(TRIAL_PLAN_CODE, TRIAL_PLAN_NAME, SubscriptionStateEnum.ACTIVE.value, False,
                          TRIAL_STORE_LIMIT, TRIAL_CAMPAIGN_LIMIT, list(TRIAL_FEATURES), is_trial=True)
    return PlanLimits(FREE_PLAN_CODE, FREE_PLAN_NAME, SubscriptionStateEnum.ACTIVE.value, False,
                      DEFAULT_STORE_LIMIT, DEFAULT_CAMPAIGN_LIMIT, [])


def count_campaigns(user):
    """Distinct campaigns the user has alert rules for."""
    return (db.session.query(func.count(func.distinct(CampaignAlert.campaign_id)))
            .filter(CampaignAlert.user_id == user.id).scalar()) or 0


def campaign_limit_reached(user, campaign_id, now=None):
    """
    True when adding a rule for `campaign_id` would take the user past the
    campaign limit of their plan. Campaigns that already have a rule never count
    as new.
    """
    limit = effective_plan(user, now).campaign_limit
    if limit == 0:
        return False
    already_tracked = (CampaignAlert.query
                       .filter_by(user_id=user.id, campaign_id=campaign_id)
                       .first() is not None)
    if already_tracked:
        return False
    return count_campaigns(user) >= limit


def _limit_entry(limit, used=None):
    entry = {'limit': limit, 'unlimited': limit == 0}
    if used is not None:
        entry['used'] = used
        entry['available'] = None if limit == 0 else max(limit - used, 0)
    return entry


def build_entitlements(user, now=None):
    """
    What the user may currently do: plan, lifecycle state, limits and features,
    plus the dates the client uses for its read-only and trial banners.
    """
    now = now or utcnow()
    plan = effective_plan(user, now)
    subscription = user.subscription

    entitlements = {
        'user_id': user.id,
        'plan': {'code': plan.code, 'name': plan.name, 'state': plan.state, 'readonly': plan.readonly},
        'limits': {
            'stores': _limit_entry(plan.store_limit),
            'campaigns': _limit_entry(plan.campaign_limit, count_campaigns(user)),
        },
        'features': plan.features,
        'subscription_ends_at': None,
        'grace_period_ends_at': None,
        'archive_scheduled_at': None,
        'days_until_suspension': None,
        'days_until_archive': None,
        'trial_ends_at': isoformat_or_none(user.trial_ends_at) if plan.is_trial else None,
        'days_until_trial_end': days_until(user.trial_ends_at, now) if plan.is_trial else None,
    }
    if subscription is not None:
        entitlements.update({
            'subscription_ends_at': isoformat_or_none(subscription.current_period_end),
            'grace_period_ends_at': isoformat_or_none(subscription.grace_period_ends_at),
            'archive_scheduled_at': isoformat_or_none(subscription.archive_scheduled_at),
            'days_until_suspension': days_until(subscription.grace_period_ends_at, now),
            'days_until_archive': days_until(subscription.archive_scheduled_at, now),
        })
    return entitlements
