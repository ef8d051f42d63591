import hashlib
import hmac
import json
import time
from datetime import datetime, timedelta

import pytest
from cryptography.fernet import Fernet

from app import create_app
from config import Config
from extensions import db as _db # Alias to avoid fixture name conflict
from models import User, SubscriptionPlan, Subscription, SubscriptionStateEnum, CampaignAlert, MetricTypeEnum, AlertOperatorEnum

TEST_PASSWORD = 'password123'


class TestConfig(Config):
    TESTING = True
    SQLALCHEMY_DATABASE_URI = 'sqlite:///:memory:' # Use in-memory SQLite for tests
    WTF_CSRF_ENABLED = False # Disable CSRF for form testing convenience
    SECRET_KEY = 'test-secret-key-for-forms' # Flask-Login requires a SECRET_KEY for the session
    FERNET_KEY = Fernet.generate_key()
    STRIPE_SECRET_KEY = 'sk_test_dummy'
    STRIPE_WEBHOOK_SECRET = 'whsec_test_secret'
    BREVO_API_KEY = 'test-brevo-key'
    BREVO_SENDER_EMAIL = 'noreply@test.local'
    CRON_SECRET = 'cron-test-secret'
    APP_URL = 'https://app.test'
    RETENTION_DISCOUNT_PERCENT = 20
    GRACE_PERIOD_DAYS = 7
    ARCHIVE_DELAY_DAYS = 7


@pytest.fixture(scope='session')
def app():
    """
    Session-wide test Flask application, created once with TestConfig.
    """
    app_instance = create_app(config_class=TestConfig)
    return app_instance


@pytest.fixture(scope='function')
def app_context(app):
    """
    Function-scoped application context, needed by anything touching
    current_app or the extensions initialized with init_app.
    """
    with app.app_context():
        yield


@pytest.fixture(scope='function')
def db(app_context):
    """
    Function-scoped database fixture.
    Creates all tables before each test and drops them afterwards.
    """
    _db.create_all()
    yield _db
    _db.session.remove()
    _db.drop_all()


@pytest.fixture(scope='function')
def client(app):
    """
    Test client. Function-scoped so login cookies do not leak between tests.
    Requests reuse the app context pushed by `db`, so the test and the view share one session.
    """
    return app.test_client()


@pytest.fixture
def now():
    return datetime(2025, 6, 15, 12, 0, 0)


# --- Factories ---

@pytest.fixture
def make_user(db):
    def _make_user(email='user@example.com', full_name='Jane Doe', company_name='Acme Ltd', is_admin=False, password=TEST_PASSWORD):
        user = User(email=email, full_name=full_name, company_name=company_name, is_admin=is_admin)
        user.set_password(password)
        db.session.add(user)
        db.session.commit()
        return user
    return _make_user


@pytest.fixture
def make_plan(db):
    def _make_plan(code='starter_monthly', name='Starter', stripe_price_id='price_starter', store_limit=1, campaign_limit=10, features=None, price='29.00'):
        plan = SubscriptionPlan(
            code=code, name=name, cadence='monthly', price=price, currency='eur',
            store_limit=store_limit, campaign_limit=campaign_limit,
            features=features if features is not None else ['campaign_alerts'],
            stripe_price_id=stripe_price_id,
        )
        db.session.add(plan)
        db.session.commit()
        return plan
    return _make_plan


@pytest.fixture
def make_subscription(db):
    def _make_subscription(user, state=SubscriptionStateEnum.ACTIVE, status='active', **fields):
        subscription = Subscription(
            user_id=user.id,
            plan_code=fields.pop('plan_code', 'starter_monthly'),
            plan_name=fields.pop('plan_name', 'Starter'),
            billing_period='monthly',
            store_limit=fields.pop('store_limit', 1),
            campaign_limit=fields.pop('campaign_limit', 10),
            features_enabled=fields.pop('features_enabled', ['campaign_alerts']),
            stripe_subscription_id=fields.pop('stripe_subscription_id', f'sub_{user.id}'),
            stripe_customer_id=fields.pop('stripe_customer_id', f'cus_{user.id}'),
            status=status,
            state=state,
            readonly_mode=state != SubscriptionStateEnum.ACTIVE,
            **fields,
        )
        db.session.add(subscription)
        db.session.commit()
        return subscription
    return _make_subscription


@pytest.fixture
def make_alert(db):
    def _make_alert(user, campaign_id='cmp_1', metric_type=MetricTypeEnum.ROAS, operator=AlertOperatorEnum.GTE,
                    threshold_value=2.0, channels=None, is_active=True, triggered_at=None):
        alert = CampaignAlert(
            user_id=user.id, campaign_id=campaign_id, campaign_name='Summer Sale',
            metric_type=metric_type, operator=operator, threshold_value=threshold_value,
            notification_channels=channels if channels is not None else ['visual'],
            is_active=is_active, triggered_at=triggered_at,
        )
        db.session.add(alert)
        db.session.commit()
        return alert
    return _make_alert


@pytest.fixture
def user(make_user):
    return make_user()


@pytest.fixture
def active_subscription(user, make_subscription, now):
    return make_subscription(user, current_period_start=now - timedelta(days=20), current_period_end=now + timedelta(days=10))


@pytest.fixture
def login(client):
    """Logs `user` in through the real login endpoint."""
    def _login(user, password=TEST_PASSWORD):
        response = client.post('/auth/login', json={'email': user.email, 'password': password})
        assert response.status_code == 200, response.get_json()
        return client
    return _login


@pytest.fixture
def auth_client(login, user):
    return login(user)


# --- Stripe webhooks ---

def sign_stripe_payload(payload, secret, timestamp=None):
    """Builds a Stripe-Signature header the same way Stripe does (HMAC-SHA256 over "t.payload")."""
    timestamp = timestamp or int(time.time())
    signature = hmac.new(secret.encode('utf-8'), f'{timestamp}.{payload}'.encode('utf-8'), hashlib.sha256).hexdigest()
    return f't={timestamp},v1={signature}'


@pytest.fixture
def post_stripe_event(client):
    """Posts a correctly signed Stripe event and returns the response."""
    counter = {'n': 0}

    def _post(event_type, data_object, secret=TestConfig.STRIPE_WEBHOOK_SECRET):
        counter['n'] += 1
        payload = json.dumps({
            'id': f'evt_test_{counter["n"]}',
            'type': event_type,
            'data': {'object': data_object},
        })
        return client.post(
            '/billing/stripe-webhook',
            data=payload,
            headers={'Stripe-Signature': sign_stripe_payload(payload, secret), 'Content-Type': 'application/json'},
        )
    return _post
