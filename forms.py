import math

from flask_wtf import FlaskForm
from wtforms import StringField, PasswordField, BooleanField, FloatField, SelectField, SelectMultipleField
from wtforms.validators import DataRequired, Email, EqualTo, Length, Optional, ValidationError, AnyOf # Import standard validators.
from models.user import User # Import User model for email validation.
from models.campaign_alert import MetricTypeEnum, AlertOperatorEnum, NOTIFICATION_CHANNELS
from models.subscription import SubscriptionStateEnum

METRIC_CHOICES = [(m.value, m.label) for m in MetricTypeEnum]
OPERATOR_CHOICES = [(o.value, o.value) for o in AlertOperatorEnum]
CHANNEL_CHOICES = [(c, c) for c in NOTIFICATION_CHANNELS]
STATE_CHOICES = [(s.value, s.value) for s in SubscriptionStateEnum]


class JSONForm(FlaskForm):
    """
    Base class for forms posted as JSON by the single-page frontend.
    Flask-WTF reads `request.get_json()` as form data; CSRF is not used because
    these endpoints authenticate with the session cookie plus JSON content type.
    """
    class Meta:
        csrf = False


class RegistrationForm(JSONForm):
    """
    Form for user registration.
    Custom validation checks that the email is not already registered.
    """
    email = StringField('Email', validators=[DataRequired(message="Email is required."), Email(message="Invalid email address.")])
    password = PasswordField('Password', validators=[DataRequired(message="Password is required."), Length(min=6, message="Password must be at least 6 characters long.")])
    confirm_password = PasswordField('Confirm Password', validators=[DataRequired(message="Please confirm your password."), EqualTo('password', message="Passwords must match.")])
    full_name = StringField('Full Name', validators=[DataRequired(message="Full name is required.")])
    company_name = StringField('Company', validators=[Optional(), Length(max=150)])

    def validate_email(self, email):
        """
        Raises:
            ValidationError: If the email is already taken (case-insensitive).
        """
        user = User.query.filter_by(email=email.data.lower()).first()
        if user:
            raise ValidationError('That email address is already registered. Please choose a different one or log in.')


class LoginForm(JSONForm):
    """Form for user login."""
    email = StringField('Email', validators=[DataRequired(message="Email is required."), Email(message="Invalid email address.")])
    password = PasswordField('Password', validators=[DataRequired(message="Password is required.")])
    remember_me = BooleanField('Remember Me')


def _require_finite(field):
    # float() also parses "nan" and "inf".
    if field.data is not None and not math.isfinite(field.data):
        raise ValidationError("Threshold must be a finite number.")


class CampaignAlertForm(JSONForm):
    """Creates a campaign alert. Unknown metrics and operators are rejected here."""
    campaign_id = StringField('Campaign', validators=[DataRequired(message="Campaign is required."), Length(max=100)])
    campaign_name = StringField('Campaign Name', validators=[Optional(), Length(max=255)])
    metric_type = SelectField('Metric', choices=METRIC_CHOICES, validators=[DataRequired(message="Metric is required.")])
    operator = SelectField('Operator', choices=OPERATOR_CHOICES, validators=[DataRequired(message="Operator is required.")])
    threshold_value = FloatField('Threshold')
    # Missing channels default to ['visual'] and a missing is_active to True; see routes.alerts.
    notification_channels = SelectMultipleField('Channels', choices=CHANNEL_CHOICES, validators=[Optional()])
    is_active = BooleanField('Active')

    def validate_threshold_value(self, field):
        # InputRequired would reject a threshold of 0.
        if field.data is None and not field.process_errors:
            raise ValidationError("Threshold is required.")
        _require_finite(field)


class CampaignAlertUpdateForm(JSONForm):
    """Partial update of an alert; callers apply only the keys present in the request."""
    campaign_name = StringField('Campaign Name', validators=[Optional(), Length(max=255)])
    metric_type = SelectField('Metric', choices=METRIC_CHOICES, validators=[Optional()], validate_choice=False)
    operator = SelectField('Operator', choices=OPERATOR_CHOICES, validators=[Optional()], validate_choice=False)
    threshold_value = FloatField('Threshold', validators=[Optional()])
    notification_channels = SelectMultipleField('Channels', choices=CHANNEL_CHOICES, validators=[Optional()])
    is_active = BooleanField('Active')

    def validate_threshold_value(self, field):
        _require_finite(field)

    def validate_metric_type(self, field):
        if field.data and field.data not in [value for value, _ in METRIC_CHOICES]:
            raise ValidationError('Not a valid metric.')

    def validate_operator(self, field):
        if field.data and field.data not in [value for value, _ in OPERATOR_CHOICES]:
            raise ValidationError('Not a valid operator.')


class ForceSubscriptionStateForm(JSONForm):
    """Admin override of a subscription's lifecycle state."""
    new_state = StringField('State', validators=[
        DataRequired(message="new_state is required."),
        AnyOf([value for value, _ in STATE_CHOICES], message="Invalid state. Must be one of: active, expired, suspended, archived"),
    ])
    reason = StringField('Reason', validators=[Optional(), Length(max=255)])
