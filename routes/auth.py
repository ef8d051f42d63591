from flask import Blueprint, jsonify, current_app
from flask_login import login_user, logout_user, login_required, current_user
from sqlalchemy.exc import IntegrityError

from forms import LoginForm, RegistrationForm
from models.user import User
from extensions import db
from utils.helpers import utcnow

# Blueprint for authentication-related routes (register, login, logout, current user).
auth_bp = Blueprint('auth', __name__, url_prefix='/auth')


@auth_bp.route('/register', methods=['POST'])
def register():
    """
    Creates an account from a JSON body and logs the new user in.
    Returns 201 with the user, or 400 with the form errors.
    """
    if current_user.is_authenticated:
        return jsonify({"error": "Already logged in."}), 400

    form = RegistrationForm()
    if not form.validate_on_submit():
        return jsonify({"errors": form.errors}), 400

    user = User(
        email=form.email.data.lower(),
        full_name=form.full_name.data,
        company_name=form.company_name.data or None,
    )
    user.set_password(form.password.data)
    user.start_trial(utcnow(), current_app.config.get('TRIAL_DAYS', 10))
    db.session.add(user)
    try:
        db.session.commit()
    except IntegrityError as e:
        # Two concurrent registrations with the same email.
        db.session.rollback()
        current_app.logger.warning(f"Registration IntegrityError for email {user.email}: {e}")
        return jsonify({"error": "That email address is already registered."}), 400
    except Exception as e:
        db.session.rollback()
        current_app.logger.error(f"Error during registration for email {user.email}: {e}", exc_info=True)
        return jsonify({"error": "Registration failed. Please try again."}), 500

    login_user(user)
    current_app.logger.info(f"New user registered: {user.email} (ID: {user.id}).")
    return jsonify({"user": user.to_dict()}), 201


@auth_bp.route('/login', methods=['POST'])
def login():
    form = LoginForm()
    if not form.validate_on_submit():
        return jsonify({"errors": form.errors}), 400

    user = User.query.filter_by(email=form.email.data.lower()).first()
    if user is None or not user.check_password(form.password.data):
        current_app.logger.warning(f"Failed login attempt for email {form.email.data.lower()}.")
        return jsonify({"error": "Invalid email or password."}), 401

    login_user(user, remember=form.remember_me.data)
    current_app.logger.info(f"User {user.id} logged in.")
    return jsonify({"user": user.to_dict()}), 200


@auth_bp.route('/logout', methods=['POST'])
@login_required
def logout():
    current_app.logger.info(f"User {current_user.id} logged out.")
    logout_user()
    return jsonify({"success": True}), 200


@auth_bp.route('/me', methods=['GET'])
@login_required
def me():
    """Current user plus the state of their subscription (None when they never subscribed)."""
    subscription = current_user.subscription
    return jsonify({
        "user": current_user.to_dict(),
        "subscription": subscription.to_snapshot() if subscription else None,
    }), 200
