"""
Applies verified Stripe webhook events to local subscriptions.

Handlers stage their changes in the session and return a short description;
the webhook route owns the commit. Events are plain dicts (the parsed webhook
payload); Stripe API objects fetched here are read with item access only.
"""
import stripe
from flask import current_app

from extensions import db
from models.subscription import Subscription, HEALTHY_BILLING_STATUSES, UNHEALTHY_BILLING_STATUSES
from models.subscription_history import SubscriptionHistory
from models.subscription_plan import SubscriptionPlan
from models.user import User
from services.subscription_lifecycle import activate_subscription, expire_from_billing
from utils.helpers import utcnow, from_unix_timestamp


class BillingEventError(Exception):
    """A webhook event that cannot be applied. `status_code` is returned to Stripe."""

    def __init__(self, message, status_code=400):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


def _field(obj, *path):
    """Walks nested keys, returning None as soon as one is missing."""
    for key in path:
        if obj is None:
            return None
        try:
            obj = obj[key]
        except (KeyError, IndexError, TypeError):
            return None
    return obj


def _first_item(stripe_subscription):
    items = _field(stripe_subscription, 'items', 'data') or []
    return items[0] if len(items) else None


def _price_id(stripe_subscription):
    return _field(_first_item(stripe_subscription), 'price', 'id')


def _period_bounds(stripe_subscription):
    # Newer API versions report the period on the subscription item.
    item = _first_item(stripe_subscription)
    start = _field(stripe_subscription, 'current_period_start') or _field(item, 'current_period_start')
    end = _field(stripe_subscription, 'current_period_end') or _field(item, 'current_period_end')
    return from_unix_timestamp(start), from_unix_timestamp(end)


def _invoice_subscription_id(invoice):
    return (_field(invoice, 'subscription')
            or _field(invoice, 'parent', 'subscription_details', 'subscription'))


def _sync_billing_fields(subscription, stripe_subscription):
    """Copies status, period and cancellation flag from a Stripe subscription object."""
    subscription.stripe_subscription_id = _field(stripe_subscription, 'id') or subscription.stripe_subscription_id
    customer = _field(stripe_subscription, 'customer')
    if isinstance(customer, str):
        subscription.stripe_customer_id = customer
    status = _field(stripe_subscription, 'status')
    if status:
        subscription.status = status
    period_start, period_end = _period_bounds(stripe_subscription)
    if period_start:
        subscription.current_period_start = period_start
    if period_end:
        subscription.current_period_end = period_end
    subscription.cancel_at_period_end = bool(_field(stripe_subscription, 'cancel_at_period_end'))


def _plan_for_price(price_id):
    if not price_id:
        return None
    return SubscriptionPlan.query.filter_by(stripe_price_id=price_id).first()


def _find_subscription(stripe_subscription_id):
    if not stripe_subscription_id:
        return None
    return Subscription.query.filter_by(stripe_subscription_id=stripe_subscription_id).first()


def _invoice_already_applied(invoice_id, event_type):
    if not invoice_id:
        return False
    return SubscriptionHistory.query.filter_by(stripe_invoice_id=invoice_id, event_type=event_type).first() is not None


# --- Handlers ---

def _checkout_completed(session, now):
    user_id = _field(session, 'metadata', 'user_id') or _field(session, 'client_reference_id')
    stripe_subscription_id = _field(session, 'subscription')
    if not user_id or not stripe_subscription_id:
        raise BillingEventError('Missing user_id or subscription in checkout session', 400)
    try:
        user = db.session.get(User, int(user_id))
    except (TypeError, ValueError):
        raise BillingEventError(f'Invalid user_id {user_id!r} in checkout session', 400)
    if user is None:
        raise BillingEventError(f'User {user_id} not found', 404)

    # Stripe errors propagate: the route answers 500 and Stripe retries.
    stripe_subscription = stripe.Subscription.retrieve(stripe_subscription_id)
    price_id = _price_id(stripe_subscription)
    plan = _plan_for_price(price_id)
    if plan is None:
        raise BillingEventError(f'SubscriptionPlan with stripe_price_id {price_id} not found', 404)

    subscription = user.subscription
    is_new = subscription is None
    if is_new:
        subscription = Subscription(user_id=user.id, user=user)
        db.session.add(subscription)

    _sync_billing_fields(subscription, stripe_subscription)
    customer_id = _field(session, 'customer')
    if customer_id:
        subscription.stripe_customer_id = customer_id
        user.stripe_customer_id = customer_id

    activate_subscription(subscription, 'checkout_completed', now=now, plan=plan,
                          event_type='created' if is_new else 'reactivated')
    return f'user {user.id} subscribed to {plan.code}'


def _invoice_paid(invoice, now):
    stripe_subscription_id = _invoice_subscription_id(invoice)
    if not stripe_subscription_id:
        return f"invoice {_field(invoice, 'id')} has no subscription, ignored"
    invoice_id = _field(invoice, 'id')
    if _invoice_already_applied(invoice_id, 'renewed'):
        return f'invoice {invoice_id} already applied'

    subscription = _find_subscription(stripe_subscription_id)
    if subscription is None:
        current_app.logger.warning(f"invoice.paid: no local subscription for Stripe subscription {stripe_subscription_id}.")
        return f'no local subscription for {stripe_subscription_id}'

    stripe_subscription = stripe.Subscription.retrieve(stripe_subscription_id)
    _sync_billing_fields(subscription, stripe_subscription)
    subscription.status = 'active'
    plan = _plan_for_price(_price_id(stripe_subscription))
    if plan is None:
        current_app.logger.error(f"invoice.paid: Stripe price {_price_id(stripe_subscription)} does not match any local SubscriptionPlan; keeping the current plan snapshot.")

    amount_paid = _field(invoice, 'amount_paid')
    activate_subscription(
        subscription, 'invoice_paid', now=now, plan=plan, event_type='renewed',
        stripe_invoice_id=invoice_id,
        amount=amount_paid / 100.0 if amount_paid is not None else None,
    )
    return f'subscription {subscription.id} renewed'


def _subscription_updated(stripe_subscription, now):
    stripe_subscription_id = _field(stripe_subscription, 'id')
    subscription = _find_subscription(stripe_subscription_id)
    if subscription is None:
        current_app.logger.warning(f"customer.subscription.updated: no local subscription for {stripe_subscription_id}.")
        return f'no local subscription for {stripe_subscription_id}'

    _sync_billing_fields(subscription, stripe_subscription)
    status = subscription.status

    if status in HEALTHY_BILLING_STATUSES:
        plan = _plan_for_price(_price_id(stripe_subscription))
        if plan is None:
            current_app.logger.error(f"customer.subscription.updated: Stripe price {_price_id(stripe_subscription)} does not match any local SubscriptionPlan.")
        activate_subscription(subscription, 'subscription_updated', now=now, plan=plan, event_type='updated')
        return f'subscription {subscription.id} active ({status})'

    if status in UNHEALTHY_BILLING_STATUSES:
        expire_from_billing(subscription, 'subscription_updated', now=now, event_type='updated')
        return f'subscription {subscription.id} expired ({status})'

    # incomplete, paused, ...: record the provider status only.
    SubscriptionHistory.record(subscription, 'updated', reason='subscription_updated')
    return f'subscription {subscription.id} status {status}'


def _payment_failed(invoice, now):
    stripe_subscription_id = _invoice_subscription_id(invoice)
    if not stripe_subscription_id:
        return f"invoice {_field(invoice, 'id')} has no subscription, ignored"
    invoice_id = _field(invoice, 'id')
    if _invoice_already_applied(invoice_id, 'payment_failed'):
        return f'invoice {invoice_id} already applied'

    subscription = _find_subscription(stripe_subscription_id)
    if subscription is None:
        current_app.logger.warning(f"invoice.payment_failed: no local subscription for {stripe_subscription_id}.")
        return f'no local subscription for {stripe_subscription_id}'

    expire_from_billing(subscription, 'payment_failed', now=now, status='past_due',
                        event_type='payment_failed', stripe_invoice_id=invoice_id)
    return f'subscription {subscription.id} payment failed'


def _subscription_deleted(stripe_subscription, now):
    stripe_subscription_id = _field(stripe_subscription, 'id')
    subscription = _find_subscription(stripe_subscription_id)
    if subscription is None:
        current_app.logger.warning(f"customer.subscription.deleted: no local subscription for {stripe_subscription_id}.")
        return f'no local subscription for {stripe_subscription_id}'

    expire_from_billing(subscription, 'subscription_deleted', now=now, status='canceled', event_type='canceled')
    return f'subscription {subscription.id} canceled'


EVENT_HANDLERS = {
    'checkout.session.completed': _checkout_completed,
    'invoice.paid': _invoice_paid,
    'customer.subscription.updated': _subscription_updated,
    'invoice.payment_failed': _payment_failed,
    'customer.subscription.deleted': _subscription_deleted,
}


def handle_stripe_event(event, now=None):
    """
    Dispatches a verified Stripe event to its handler.

    Returns:
        tuple: (handled, description). Unknown event types return handled=False.

    Raises:
        BillingEventError: For malformed events or unknown users/plans.
    """
    event_type = _field(event, 'type')
    handler = EVENT_HANDLERS.get(event_type)
    if handler is None:
        return False, f'unhandled event type {event_type}'
    data_object = _field(event, 'data', 'object')
    if data_object is None:
        raise BillingEventError(f'Event {_field(event, "id")} has no data.object', 400)
    return True, handler(data_object, now or utcnow())
