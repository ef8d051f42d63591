import pytest
import requests

from models import MetricTypeEnum, AlertOperatorEnum
from services.email_service import (
    EmailDeliveryError, send_email, send_campaign_alert_email, campaign_alert_subject, format_metric_value,
)


@pytest.fixture
def brevo_post(mocker):
    response = mocker.Mock(status_code=201, text='{"messageId": "<abc@brevo>"}')
    response.json.return_value = {'messageId': '<abc@brevo>'}
    return mocker.patch('services.email_service.requests.post', return_value=response)


def test_send_email_posts_to_brevo(app_context, brevo_post):
    message_id = send_email('jane@example.com', 'Hello', '<p>Hi</p>', to_name='Jane', tags=['test'])

    assert message_id == '<abc@brevo>'
    url = brevo_post.call_args.args[0]
    kwargs = brevo_post.call_args.kwargs
    assert url == 'https://api.brevo.com/v3/smtp/email'
    assert kwargs['headers']['api-key'] == 'test-brevo-key'
    assert kwargs['json']['to'] == [{'email': 'jane@example.com', 'name': 'Jane'}]
    assert kwargs['json']['sender']['email'] == 'noreply@test.local'
    assert kwargs['json']['tags'] == ['test']
    assert kwargs['timeout'] == 10


def test_send_email_raises_on_rejection(app_context, brevo_post):
    brevo_post.return_value.status_code = 400
    brevo_post.return_value.text = 'invalid sender'
    with pytest.raises(EmailDeliveryError) as excinfo:
        send_email('jane@example.com', 'Hello', '<p>Hi</p>')
    assert '400' in str(excinfo.value)


def test_send_email_wraps_network_errors(app_context, brevo_post):
    brevo_post.side_effect = requests.exceptions.ConnectTimeout('timed out')
    with pytest.raises(EmailDeliveryError):
        send_email('jane@example.com', 'Hello', '<p>Hi</p>')


def test_send_email_requires_api_key(app, app_context, brevo_post):
    app.config['BREVO_API_KEY'] = None
    try:
        with pytest.raises(EmailDeliveryError):
            send_email('jane@example.com', 'Hello', '<p>Hi</p>')
    finally:
        app.config['BREVO_API_KEY'] = 'test-brevo-key'
    brevo_post.assert_not_called()


def test_campaign_alert_subject():
    assert campaign_alert_subject(MetricTypeEnum.ROAS, AlertOperatorEnum.GTE, 2.0) == 'Alert: ROAS reached or exceeded 2'
    assert campaign_alert_subject(MetricTypeEnum.CPC, AlertOperatorEnum.LTE, 0.35) == 'Alert: CPC dropped to or below 0.35'
    assert format_metric_value(100.004) == '100.00'


def test_campaign_alert_email_renders_template(app_context, brevo_post):
    send_campaign_alert_email('jane@example.com', 'cmp_1', 'spent', '=', 100.0, 100.004, campaign_name='Summer Sale')

    payload = brevo_post.call_args.kwargs['json']
    assert payload['subject'] == 'Alert: Amount Spent equals 100'
    assert payload['sender']['name'] == 'Campaign Alerts'
    assert payload['tags'] == ['campaign-alert']
    assert 'Summer Sale' in payload['htmlContent']
    assert '100.00' in payload['htmlContent']
    assert 'https://app.test/dashboard' in payload['htmlContent']
