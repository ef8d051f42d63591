import hmac
from functools import wraps
from flask import jsonify, request, current_app
from flask_login import current_user


def writable_subscription_required(f):
    """
    Decorator for mutating endpoints.
    Rejects the request with 403 when the subscription is in read-only mode
    (expired, suspended or archived). Users without a subscription row are on
    the trial or free tier and stay writable; plan limits are checked by the
    endpoint itself.
    Must be applied after @login_required.
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        subscription = current_user.subscription
        if subscription is not None and subscription.readonly_mode:
            return jsonify({
                "error": "Your subscription is read-only. Renew it to make changes.",
                "state": subscription.state.value,
            }), 403
        return f(*args, **kwargs)
    return decorated_function


def admin_required(f):
    """Decorator restricting an endpoint to users flagged as admins. Apply after @login_required."""
    @wraps(f)
    def decorated_function(*args, **kwargs):
        if not current_user.is_authenticated or not current_user.is_admin:
            current_app.logger.warning(f"Non-admin access attempt to {request.path} by user {getattr(current_user, 'id', None)}.")
            return jsonify({"error": "Admin access required."}), 403
        return f(*args, **kwargs)
    return decorated_function


def cron_key_required(f):
    """
    Decorator for endpoints invoked by the external scheduler.
    The caller must send CRON_SECRET in the X-Cron-Key header (or as ?key=).
    An unset CRON_SECRET disables the endpoints entirely.
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        expected = current_app.config.get('CRON_SECRET') or ''
        provided = request.headers.get('X-Cron-Key') or request.args.get('key') or ''
        if not expected or not hmac.compare_digest(provided.encode('utf-8'), expected.encode('utf-8')):
            current_app.logger.warning(f"Rejected scheduled job call to {request.path}: bad or missing cron key.")
            return jsonify({"error": "Forbidden"}), 403
        return f(*args, **kwargs)
    return decorated_function
