import pytest
from forms import RegistrationForm, LoginForm, CampaignAlertForm, CampaignAlertUpdateForm, ForceSubscriptionStateForm
from models.user import User # For testing unique email validation

# Forms are built from keyword data outside a request, or from a JSON body
# inside app.test_request_context(), which is how the API routes receive them.
# The 'db' fixture is passed to tests whose validators query the database.


def test_registration_form_valid_data(db):
    """Test RegistrationForm with all valid data."""
    form = RegistrationForm(
        full_name="Test User",
        email="newuser@example.com",
        password="password123",
        confirm_password="password123"
    )
    assert form.validate() == True
    assert not form.errors


def test_registration_form_missing_full_name(db):
    form = RegistrationForm(email="test@example.com", password="password123", confirm_password="password123")
    assert form.validate() == False
    assert "Full name is required." in form.errors["full_name"]


def test_registration_form_invalid_email_format(db):
    form = RegistrationForm(full_name="Test User", email="invalid-email", password="password123", confirm_password="password123")
    assert form.validate() == False
    assert "Invalid email address." in form.errors["email"]


def test_registration_form_password_too_short(db):
    form = RegistrationForm(full_name="Test User", email="test@example.com", password="123", confirm_password="123")
    assert form.validate() == False
    assert "Password must be at least 6 characters long." in form.errors["password"]


def test_registration_form_email_already_exists(db):
    """Test RegistrationForm for an email that already exists, in any letter case."""
    existing_user = User(email="exists@example.com", full_name="Existing User")
    existing_user.set_password("password")
    db.session.add(existing_user)
    db.session.commit()

    form = RegistrationForm(full_name="New User", email="Exists@Example.com", password="password123", confirm_password="password123")
    assert form.validate() == False
    assert "That email address is already registered. Please choose a different one or log in." in form.errors["email"]


# --- LoginForm Tests ---

def test_login_form_valid_data(app_context):
    form = LoginForm(email="user@example.com", password="password123", remember_me=True)
    # Checking the credentials themselves happens in the route.
    assert form.validate() == True


def test_login_form_missing_password(app_context):
    form = LoginForm(email="user@example.com")
    assert form.validate() == False
    assert "Password is required." in form.errors["password"]


# --- Campaign alert forms (JSON bodies) ---

def alert_form(app, form_class, payload, method='POST'):
    with app.test_request_context('/alerts/api/alerts', method=method, json=payload):
        form = form_class()
        valid = form.validate()
        return valid, form


VALID_ALERT = {
    'campaign_id': 'cmp_1',
    'metric_type': 'spent',
    'operator': '=',
    'threshold_value': 100,
    'notification_channels': ['email', 'sound'],
}


def test_campaign_alert_form_valid_json(app):
    valid, form = alert_form(app, CampaignAlertForm, VALID_ALERT)
    assert valid, form.errors
    assert form.threshold_value.data == 100.0
    assert form.notification_channels.data == ['email', 'sound']


def test_campaign_alert_form_zero_threshold_is_valid(app):
    valid, form = alert_form(app, CampaignAlertForm, dict(VALID_ALERT, threshold_value=0))
    assert valid, form.errors
    assert form.threshold_value.data == 0.0


@pytest.mark.parametrize('payload_change, field', [
    ({'metric_type': 'impressions'}, 'metric_type'),
    ({'operator': '<'}, 'operator'),
    ({'threshold_value': None}, 'threshold_value'),
    ({'notification_channels': ['push']}, 'notification_channels'),
])
def test_campaign_alert_form_rejects(app, payload_change, field):
    payload = dict(VALID_ALERT, **payload_change)
    if payload[field] is None:
        del payload[field]
    valid, form = alert_form(app, CampaignAlertForm, payload)
    assert not valid
    assert field in form.errors


@pytest.mark.parametrize('threshold', ['nan', 'inf', '-Infinity'])
def test_campaign_alert_forms_reject_non_finite_threshold(app, threshold):
    valid, form = alert_form(app, CampaignAlertForm, dict(VALID_ALERT, threshold_value=threshold))
    assert not valid
    assert form.errors['threshold_value'] == ['Threshold must be a finite number.']

    valid, form = alert_form(app, CampaignAlertUpdateForm, {'threshold_value': threshold}, method='PATCH')
    assert not valid
    assert 'threshold_value' in form.errors


def test_campaign_alert_update_form_accepts_partial_payload(app):
    valid, form = alert_form(app, CampaignAlertUpdateForm, {'operator': '<='}, method='PATCH')
    assert valid, form.errors
    assert form.operator.data == '<='


def test_campaign_alert_update_form_rejects_unknown_metric(app):
    valid, form = alert_form(app, CampaignAlertUpdateForm, {'metric_type': 'ctr'}, method='PATCH')
    assert not valid
    assert form.errors['metric_type'] == ['Not a valid metric.']


# --- Admin ---

@pytest.mark.parametrize('state, expected', [('archived', True), ('active', True), ('paused', False), ('', False)])
def test_force_state_form(app, state, expected):
    with app.test_request_context('/admin/api/subscriptions/1/state', method='POST', json={'new_state': state}):
        assert ForceSubscriptionStateForm().validate() is expected
