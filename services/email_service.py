"""Transactional email through the Brevo HTTP API."""
import requests
from flask import current_app, render_template

from models.campaign_alert import MetricTypeEnum, AlertOperatorEnum


class EmailDeliveryError(Exception):
    """Raised when Brevo is not configured or refuses / fails to accept a message."""


def send_email(to_email, subject, html_content, to_name=None, sender_name=None, tags=None):
    """
    Sends one HTML email through Brevo's /smtp/email endpoint.

    Args:
        to_email (str): Recipient address.
        subject (str): Subject line.
        html_content (str): Rendered HTML body.
        to_name (str, optional): Recipient display name.
        sender_name (str, optional): Overrides BREVO_SENDER_NAME.
        tags (list of str, optional): Brevo tags for reporting.

    Returns:
        str or None: Brevo message id when provided in the response.

    Raises:
        EmailDeliveryError: On missing API key, network failure or a non-2xx response.
    """
    api_key = current_app.config.get('BREVO_API_KEY')
    if not api_key:
        raise EmailDeliveryError("BREVO_API_KEY is not configured.")

    recipient = {'email': to_email}
    if to_name:
        recipient['name'] = to_name
    payload = {
        'sender': {
            'name': sender_name or current_app.config.get('BREVO_SENDER_NAME'),
            'email': current_app.config.get('BREVO_SENDER_EMAIL'),
        },
        'to': [recipient],
        'subject': subject,
        'htmlContent': html_content,
    }
    if tags:
        payload['tags'] = list(tags)

    try:
        response = requests.post(
            current_app.config.get('BREVO_API_URL', 'https://api.brevo.com/v3/smtp/email'),
            headers={
                'api-key': api_key,
                'Accept': 'application/json',
                'Content-Type': 'application/json',
            },
            json=payload,
            timeout=current_app.config.get('EMAIL_TIMEOUT_SECONDS', 10),
        )
    except requests.exceptions.RequestException as e:
        raise EmailDeliveryError(f"Could not reach Brevo: {e}") from e

    if response.status_code not in (200, 201, 202):
        raise EmailDeliveryError(f"Brevo rejected email to {to_email}: {response.status_code} - {response.text}")

    try:
        message_id = response.json().get('messageId')
    except ValueError:
        message_id = None
    current_app.logger.info(f"Email '{subject}' sent to {to_email} (Brevo message id: {message_id}).")
    return message_id


def format_metric_value(value):
    return f"{value:.2f}"


def campaign_alert_subject(metric_type, operator, threshold_value):
    return f"Alert: {metric_type.label} {operator.phrase} {threshold_value:g}"


def send_campaign_alert_email(to_email, campaign_id, metric_type, operator, threshold_value, current_value, campaign_name=None):
    """
    Notifies a user that one of their campaign alerts fired.

    `metric_type` and `operator` may be enum members or their string values.
    """
    if not isinstance(metric_type, MetricTypeEnum):
        metric_type = MetricTypeEnum(metric_type)
    if not isinstance(operator, AlertOperatorEnum):
        operator = AlertOperatorEnum(operator)

    html = render_template(
        'emails/campaign_alert.html',
        campaign_id=campaign_id,
        campaign_name=campaign_name,
        metric_label=metric_type.label,
        operator_phrase=operator.phrase,
        threshold_value=format_metric_value(threshold_value),
        current_value=format_metric_value(current_value),
        dashboard_url=f"{current_app.config.get('APP_URL', '').rstrip('/')}/dashboard",
    )
    return send_email(
        to_email,
        campaign_alert_subject(metric_type, operator, threshold_value),
        html,
        sender_name=current_app.config.get('ALERT_SENDER_NAME', 'Campaign Alerts'),
        tags=['campaign-alert'],
    )
