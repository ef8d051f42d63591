from datetime import datetime, timedelta
from extensions import db
import bcrypt
from flask_login import UserMixin # For Flask-Login integration (e.g., current_user).

ANONYMIZED_NAME = 'Anonymized User'

class User(db.Model, UserMixin):
    """
    Represents a user (account profile) in the application.

    Stores authentication details, the profile fields that are anonymized when an
    account is archived, the Stripe customer ID for billing, and the link to the
    user's single subscription record. UserMixin provides the methods Flask-Login
    expects (is_authenticated, get_id, ...).
    """
    __tablename__ = 'users' # Specifies the database table name.

    # --- Basic User Information ---
    id = db.Column(db.Integer, primary_key=True)
    email = db.Column(db.String(120), unique=True, nullable=False, index=True) # Used for login and notifications.
    password_hash = db.Column(db.String(128), nullable=True)
    full_name = db.Column(db.String(100), nullable=True)
    company_name = db.Column(db.String(150), nullable=True)
    is_admin = db.Column(db.Boolean, nullable=False, default=False) # Admins may force subscription states.

    # --- Trial ---
    trial_ends_at = db.Column(db.DateTime, nullable=True)
    trial_expired_at = db.Column(db.DateTime, nullable=True) # Set once by the sweep.

    # --- Timestamps ---
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # --- Billing Information ---
    # Links this user to a customer object in Stripe.
    stripe_customer_id = db.Column(db.String(120), unique=True, nullable=True, index=True)

    # --- Relationships ---
    # One subscription record per user (enforced by a unique user_id on subscriptions).
    subscription = db.relationship('Subscription', backref='user', uselist=False)
    campaign_alerts = db.relationship('CampaignAlert', backref='user', lazy='dynamic', cascade='all, delete-orphan')

    def set_password(self, password):
        """
        Hashes the provided password and stores it in `password_hash`.

        Args:
            password (str): The plain-text password to hash.
        """
        self.password_hash = bcrypt.hashpw(password.encode('utf-8'), bcrypt.gensalt()).decode('utf-8')

    def check_password(self, password):
        """
        Verifies if the provided password matches the stored hashed password.

        Returns:
            bool: True if the password matches, False otherwise (also when no hash is set).
        """
        if self.password_hash:
            return bcrypt.checkpw(password.encode('utf-8'), self.password_hash.encode('utf-8'))
        return False

    def start_trial(self, now, days):
        self.trial_ends_at = now + timedelta(days=days)
        self.trial_expired_at = None

    def trial_active(self, now):
        """True while the trial runs and no subscription row exists."""
        return (self.subscription is None
                and self.trial_ends_at is not None
                and self.trial_ends_at > now)

    def to_snapshot(self):
        """Profile fields captured in an archive snapshot."""
        return {
            'id': self.id,
            'email': self.email,
            'full_name': self.full_name,
            'company_name': self.company_name,
            'stripe_customer_id': self.stripe_customer_id,
            'trial_ends_at': self.trial_ends_at.isoformat() if self.trial_ends_at else None,
            'created_at': self.created_at.isoformat() if self.created_at else None,
        }

    def anonymize(self):
        # The email stays: it is the login identifier and the restoration key.
        self.full_name = ANONYMIZED_NAME
        self.company_name = None

    def to_dict(self):
        return {
            'id': self.id,
            'email': self.email,
            'full_name': self.full_name,
            'company_name': self.company_name,
            'is_admin': self.is_admin,
        }

    def __repr__(self):
        return f'<User {self.email}>'
