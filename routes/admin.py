from flask import Blueprint, jsonify, current_app
from flask_login import login_required, current_user
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm.exc import StaleDataError

from extensions import db
from forms import ForceSubscriptionStateForm
from models.user import User
from services.subscription_lifecycle import force_state
from utils.decorators import admin_required

# Blueprint for admin-only operations.
admin_bp = Blueprint('admin', __name__, url_prefix='/admin')


@admin_bp.route('/api/subscriptions/<int:user_id>/state', methods=['POST'])
@login_required
@admin_required
def force_subscription_state(user_id):
    """
    Forces the subscription of `user_id` into the state given in the JSON body:
    {"new_state": "active|expired|suspended|archived", "reason": "..."}.
    The change is written to subscription history and the audit log.
    """
    form = ForceSubscriptionStateForm()
    if not form.validate_on_submit():
        return jsonify({"errors": form.errors}), 400

    user = db.session.get(User, user_id)
    if user is None or user.subscription is None:
        return jsonify({"error": "Subscription not found."}), 404
    subscription = user.subscription

    try:
        force_state(subscription, form.new_state.data, current_user, reason=form.reason.data or None)
        db.session.commit()
    except ValueError as e:
        db.session.rollback()
        return jsonify({"error": str(e)}), 400
    except StaleDataError:
        db.session.rollback()
        current_app.logger.warning(f"Admin {current_user.id}: subscription {subscription.id} changed concurrently, force update aborted.")
        return jsonify({"error": "Subscription was modified concurrently. Reload and try again."}), 409
    except SQLAlchemyError as e:
        db.session.rollback()
        current_app.logger.error(f"Admin {current_user.id}: error forcing state of subscription for user {user_id}: {e}", exc_info=True)
        return jsonify({"error": "Could not update subscription."}), 500

    return jsonify({"success": True, "subscription": subscription.to_snapshot()}), 200
