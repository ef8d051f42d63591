import json

from flask import Blueprint, request, jsonify, current_app
from flask_login import login_required, current_user
import stripe # Import the Stripe Python library
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm.exc import StaleDataError

from extensions import db # For database operations
from models.subscription_plan import SubscriptionPlan
from models.subscription_history import SubscriptionHistory
from services.billing_events import handle_stripe_event, BillingEventError
from services.subscription_lifecycle import build_entitlements

# Blueprint for billing-related routes, under the '/billing' URL prefix.
billing_bp = Blueprint('billing', __name__, url_prefix='/billing')

# Note: stripe.api_key is set in create_app from app.config['STRIPE_SECRET_KEY'].
# STRIPE_WEBHOOK_SECRET is read per request for webhook signature verification.


@billing_bp.route('/create-checkout-session/<plan_code>', methods=['POST'])
@login_required
def create_checkout_session(plan_code):
    """
    Creates a Stripe Checkout session for the plan identified by `plan_code`.
    Returns the hosted checkout URL as JSON for the frontend to redirect to.
    """
    plan = SubscriptionPlan.query.filter_by(code=plan_code, is_active=True).first()
    if plan is None:
        return jsonify({"error": f"Unknown plan '{plan_code}'."}), 404
    if not plan.stripe_price_id:
        current_app.logger.error(f"User {current_user.id} attempted to subscribe to plan '{plan.code}' which has no stripe_price_id.")
        return jsonify({"error": "This plan is not available for online purchase at the moment."}), 400

    app_url = current_app.config.get('APP_URL', '').rstrip('/')
    checkout_session_params = {
        # client_reference_id and metadata.user_id link the session back to our User in webhook events.
        'client_reference_id': str(current_user.id),
        'metadata': {'user_id': str(current_user.id), 'plan_code': plan.code},
        'line_items': [{'price': plan.stripe_price_id, 'quantity': 1}],
        'mode': 'subscription',
        'success_url': f"{app_url}/billing?checkout=success&session_id={{CHECKOUT_SESSION_ID}}",
        'cancel_url': f"{app_url}/billing?checkout=cancelled",
        'allow_promotion_codes': True,
    }
    # Stripe accepts either an existing customer or an email for a new one, not both.
    if current_user.stripe_customer_id:
        checkout_session_params['customer'] = current_user.stripe_customer_id
    else:
        checkout_session_params['customer_email'] = current_user.email

    try:
        checkout_session = stripe.checkout.Session.create(**checkout_session_params)
        current_app.logger.info(f"Checkout session {checkout_session.id} created for user {current_user.id}, plan '{plan.code}'.")
        return jsonify({"url": checkout_session.url, "session_id": checkout_session.id}), 200
    except stripe.CardError as e:
        current_app.logger.warning(f"Stripe CardError for user {current_user.id} (plan {plan.code}): {e.code} - {e.user_message}")
        return jsonify({"error": e.user_message or "Your card was declined."}), 402
    except stripe.RateLimitError as e:
        current_app.logger.error(f"Stripe RateLimitError for user {current_user.id} (plan {plan.code}): {e}")
        return jsonify({"error": "Too many requests to the payment provider. Please try again shortly."}), 503
    except stripe.InvalidRequestError as e:
        current_app.logger.error(f"Stripe InvalidRequestError for user {current_user.id} (plan {plan.code}): {e}")
        return jsonify({"error": "Invalid payment request."}), 400
    except stripe.AuthenticationError as e:
        current_app.logger.critical(f"Stripe AuthenticationError: {e}. Check Stripe API key configuration.")
        return jsonify({"error": "Payment provider is misconfigured."}), 500
    except stripe.APIConnectionError as e:
        current_app.logger.error(f"Stripe APIConnectionError: {e}")
        return jsonify({"error": "Could not reach the payment provider."}), 503
    except stripe.StripeError as e:
        current_app.logger.error(f"Generic StripeError for user {current_user.id} (plan {plan.code}): {e}")
        return jsonify({"error": "Payment provider error."}), 502


# Stripe Webhook endpoint. Publicly accessible (no @login_required);
# authenticity is established by the Stripe-Signature header.
@billing_bp.route('/stripe-webhook', methods=['POST'])
def stripe_webhook():
    """
    Handles Stripe subscription events and drives the subscription lifecycle.

    Responses:
        400: missing/invalid signature or malformed event (Stripe does not retry a bad signature fix).
        404: event references a user or plan that does not exist locally.
        500: database conflict or Stripe API failure; Stripe retries the delivery.
        200: applied, already applied, or not a handled event type.
    """
    payload = request.get_data(as_text=True)
    sig_header = request.headers.get('Stripe-Signature')
    webhook_secret = current_app.config.get('STRIPE_WEBHOOK_SECRET')
    event_id_for_logging = 'unknown_event_id'

    if not webhook_secret:
        current_app.logger.error("Stripe webhook received but STRIPE_WEBHOOK_SECRET is not configured.")
        return 'Webhook secret not configured', 400
    if not sig_header:
        current_app.logger.error("Stripe webhook received without a Stripe-Signature header.")
        return 'Missing signature', 400

    # --- Webhook Signature Verification ---
    try:
        stripe.WebhookSignature.verify_header(payload, sig_header, webhook_secret)
        event = json.loads(payload)
    except stripe.SignatureVerificationError as e:
        current_app.logger.error(f"Webhook SignatureVerificationError: {e}")
        return 'Invalid signature', 400
    except ValueError as e:
        current_app.logger.error(f"Webhook ValueError: Invalid payload - {e}")
        return 'Invalid payload', 400

    if not isinstance(event, dict):
        return 'Invalid payload', 400
    event_id_for_logging = event.get('id', event_id_for_logging)
    event_type = event.get('type')
    current_app.logger.info(f"Stripe Webhook Event ID {event_id_for_logging}: Received event type '{event_type}'.")

    try:
        handled, description = handle_stripe_event(event)
        if not handled:
            current_app.logger.warning(f"Event ID {event_id_for_logging}: Received unhandled event type '{event_type}'.")
            return 'Success: Event received but not explicitly handled by this endpoint.', 200
        db.session.commit()
        current_app.logger.info(f"Event ID {event_id_for_logging} ({event_type}): {description}.")
    except BillingEventError as e:
        db.session.rollback()
        current_app.logger.error(f"Event ID {event_id_for_logging} ({event_type}): {e.message}")
        return e.message, e.status_code
    except StaleDataError as e:
        # A sweep or another delivery changed the row first; Stripe retries against the fresh row.
        db.session.rollback()
        current_app.logger.warning(f"Event ID {event_id_for_logging} ({event_type}): concurrent subscription update, asking Stripe to retry. {e}")
        return 'Concurrent update, retry', 500
    except stripe.StripeError as e:
        db.session.rollback()
        current_app.logger.error(f"Event ID {event_id_for_logging} ({event_type}): Stripe API error: {e}")
        return 'Failed to retrieve subscription details from Stripe', 500
    except SQLAlchemyError as e:
        db.session.rollback()
        current_app.logger.error(f"Event ID {event_id_for_logging} ({event_type}): database error: {e}", exc_info=True)
        return 'Database error', 500

    return 'Success', 200


@billing_bp.route('/api/plans', methods=['GET'])
def list_plans():
    """Active plans for the pricing page. Public."""
    plans = SubscriptionPlan.query.filter_by(is_active=True).order_by(SubscriptionPlan.price).all()
    return jsonify({"plans": [plan.to_dict() for plan in plans]}), 200


@billing_bp.route('/api/entitlements', methods=['GET'])
@login_required
def entitlements():
    """Plan, lifecycle state, limits and features of the current user."""
    return jsonify(build_entitlements(current_user)), 200


@billing_bp.route('/api/history', methods=['GET'])
@login_required
def subscription_history():
    """Most recent subscription history entries of the current user (newest first)."""
    try:
        limit = max(1, min(int(request.args.get('limit', 50)), 200))
    except ValueError:
        return jsonify({"error": "limit must be an integer."}), 400
    entries = (SubscriptionHistory.query
               .filter_by(user_id=current_user.id)
               .order_by(SubscriptionHistory.created_at.desc(), SubscriptionHistory.id.desc())
               .limit(limit)
               .all())
    return jsonify({"history": [entry.to_dict() for entry in entries]}), 200
