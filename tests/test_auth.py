from datetime import timedelta

from models import User
from utils.helpers import utcnow


REGISTRATION = {
    'email': 'New.User@Example.com',
    'password': 'secret123',
    'confirm_password': 'secret123',
    'full_name': 'New User',
    'company_name': 'Shop Co',
}


def test_register_creates_and_logs_in_user(client, db):
    response = client.post('/auth/register', json=REGISTRATION)

    assert response.status_code == 201
    assert response.get_json()['user']['email'] == 'new.user@example.com'
    user = User.query.filter_by(email='new.user@example.com').one()
    assert user.check_password('secret123')
    assert client.get('/auth/me').status_code == 200


def test_register_starts_trial(client, db):
    before = utcnow()
    client.post('/auth/register', json=REGISTRATION)

    user = User.query.filter_by(email='new.user@example.com').one()
    assert before + timedelta(days=10) <= user.trial_ends_at <= utcnow() + timedelta(days=10)
    assert user.trial_expired_at is None
    entitlements = client.get('/billing/api/entitlements').get_json()
    assert entitlements['plan']['code'] == 'trial'
    assert entitlements['limits']['stores']['limit'] == 2
    assert entitlements['days_until_trial_end'] == 10


def test_register_rejects_duplicate_email(client, user):
    response = client.post('/auth/register', json=dict(REGISTRATION, email='USER@example.com'))
    assert response.status_code == 400
    assert 'email' in response.get_json()['errors']


def test_register_rejects_password_mismatch(client, db):
    response = client.post('/auth/register', json=dict(REGISTRATION, confirm_password='other'))
    assert response.status_code == 400
    assert 'confirm_password' in response.get_json()['errors']


def test_login_with_wrong_password(client, user):
    response = client.post('/auth/login', json={'email': user.email, 'password': 'nope'})
    assert response.status_code == 401


def test_me_includes_subscription_state(auth_client, active_subscription):
    body = auth_client.get('/auth/me').get_json()
    assert body['user']['email'] == 'user@example.com'
    assert body['subscription']['state'] == 'active'
    assert body['subscription']['readonly_mode'] is False


def test_me_without_subscription(auth_client):
    assert auth_client.get('/auth/me').get_json()['subscription'] is None


def test_logout(auth_client):
    assert auth_client.post('/auth/logout').status_code == 200
    assert auth_client.get('/auth/me').status_code == 401


def test_entitlements_endpoint(auth_client, active_subscription, make_alert, user):
    make_alert(user, campaign_id='cmp_1')
    make_alert(user, campaign_id='cmp_1')
    make_alert(user, campaign_id='cmp_2')

    body = auth_client.get('/billing/api/entitlements').get_json()

    assert body['limits']['campaigns']['limit'] == 10
    assert body['limits']['campaigns']['used'] == 2


def test_history_endpoint(auth_client, user, active_subscription):
    response = auth_client.get('/billing/api/history?limit=5')
    assert response.status_code == 200
    assert response.get_json()['history'] == []
    assert auth_client.get('/billing/api/history?limit=abc').status_code == 400


def test_plans_endpoint_lists_active_plans(client, make_plan):
    make_plan(code='pro_monthly', name='Pro', stripe_price_id='price_pro', price='79.00')
    make_plan()
    retired = make_plan(code='legacy', name='Legacy', stripe_price_id='price_legacy', price='9.00')
    retired.is_active = False

    body = client.get('/billing/api/plans').get_json()

    assert [p['code'] for p in body['plans']] == ['starter_monthly', 'pro_monthly']
    assert body['plans'][0]['price'] == 29.0
