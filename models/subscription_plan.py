from extensions import db # Import the SQLAlchemy instance from extensions.

class SubscriptionPlan(db.Model):
    """
    Represents a subscription plan offered by the application.

    Besides name and price, a plan carries the usage limits and feature flags that
    are copied onto a user's subscription when it is activated, and the Stripe
    Price ID that identifies the plan inside billing events.
    """
    __tablename__ = 'subscription_plans'

    # --- Plan Identification and Details ---
    id = db.Column(db.Integer, primary_key=True)
    code = db.Column(db.String(50), unique=True, nullable=False, index=True) # Stable identifier, e.g. "starter_monthly".
    name = db.Column(db.String(100), nullable=False) # Display name, e.g. "Starter".
    cadence = db.Column(db.String(20), nullable=False, default='monthly') # "monthly" or "yearly".
    price = db.Column(db.Numeric(10, 2), nullable=False) # Numeric type for precise decimal values.
    currency = db.Column(db.String(3), nullable=False, default='usd')

    # --- Limits ---
    # 0 means unlimited.
    store_limit = db.Column(db.Integer, nullable=False, default=1)
    campaign_limit = db.Column(db.Integer, nullable=False, default=5)

    # --- Features ---
    # Feature flags enabled by this plan, stored as a JSON list of strings.
    # Example: ["campaign_alerts", "ai_insights"]
    features = db.Column(db.JSON, nullable=True)

    # --- Stripe Integration ---
    # Maps a Stripe price object onto this plan. Nullable for plans not yet linked to Stripe.
    stripe_price_id = db.Column(db.String(100), unique=True, nullable=True, index=True)
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    def to_dict(self):
        return {
            'code': self.code,
            'name': self.name,
            'cadence': self.cadence,
            'price': float(self.price) if self.price is not None else None,
            'currency': self.currency,
            'store_limit': self.store_limit,
            'campaign_limit': self.campaign_limit,
            'features': list(self.features or []),
        }

    def __repr__(self):
        return f'<SubscriptionPlan {self.code} - {self.price}>'
