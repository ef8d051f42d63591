from datetime import datetime

import pytest
from sqlalchemy.exc import OperationalError

from models import CampaignAlert, MetricTypeEnum, AlertOperatorEnum
from services.alert_evaluator import AlertEvaluator, CampaignMetrics, SOUND_CUE, compare, triggered_alerts
from services.email_service import EmailDeliveryError

CLOCK = datetime(2025, 6, 15, 12, 0, 0)


@pytest.fixture
def email_sender(mocker):
    return mocker.Mock(return_value='msg-1')


@pytest.fixture
def evaluator(email_sender):
    return AlertEvaluator(email_sender=email_sender, clock=lambda: CLOCK)


def roas(value):
    return CampaignMetrics(results=10, spent=50.0, cpc=0.4, roas=value)


def reload(alert):
    return CampaignAlert.query.get(alert.id)


# --- Comparison ---

@pytest.mark.parametrize('value, operator, threshold, expected', [
    (2.5, AlertOperatorEnum.GTE, 2.0, True),
    (2.0, AlertOperatorEnum.GTE, 2.0, True),
    (1.5, AlertOperatorEnum.GTE, 2.0, False),
    (0.3, AlertOperatorEnum.LTE, 0.5, True),
    (0.6, AlertOperatorEnum.LTE, 0.5, False),
    (100.004, AlertOperatorEnum.EQ, 100.00, True),
    (100.02, AlertOperatorEnum.EQ, 100.00, False),
    (None, AlertOperatorEnum.GTE, 0.0, False),
])
def test_compare(value, operator, threshold, expected):
    assert compare(value, operator, threshold) is expected


def test_metrics_value_for_each_metric():
    metrics = CampaignMetrics(results=3, spent=12.5, cpc=0.8, roas=2.2)
    assert metrics.value_for(MetricTypeEnum.RESULTS) == 3
    assert metrics.value_for(MetricTypeEnum.SPENT) == 12.5
    assert metrics.value_for(MetricTypeEnum.CPC) == 0.8
    assert metrics.value_for(MetricTypeEnum.ROAS) == 2.2


def test_metrics_from_mapping():
    metrics = CampaignMetrics.from_mapping({'results': '4', 'spent': 10, 'roas': 1.5})
    assert metrics == CampaignMetrics(results=4.0, spent=10.0, cpc=None, roas=1.5)
    with pytest.raises(ValueError):
        CampaignMetrics.from_mapping({'roas': 'lots'})
    with pytest.raises(ValueError):
        CampaignMetrics.from_mapping({'spent': True})
    for value in ('nan', float('inf'), '-inf'):
        with pytest.raises(ValueError):
            CampaignMetrics.from_mapping({'roas': value})


# --- Episodes ---

def test_roas_episode_notifies_once_and_rearms(user, make_alert, evaluator, email_sender):
    alert = make_alert(user, metric_type=MetricTypeEnum.ROAS, operator=AlertOperatorEnum.GTE, threshold_value=2.0,
                       channels=['visual', 'sound', 'email'])

    result = evaluator.evaluate_campaign(user, 'cmp_1', roas(1.5))
    assert result.triggered == []
    assert reload(alert).triggered_at is None

    result = evaluator.evaluate_campaign(user, 'cmp_1', roas(2.5))
    assert result.triggered == [alert.id]
    assert reload(alert).triggered_at == CLOCK
    assert email_sender.call_count == 1
    channels = [n['channel'] for n in result.notifications]
    assert channels == ['visual', 'sound', 'email']
    assert result.notifications[1]['cue'] == SOUND_CUE

    result = evaluator.evaluate_campaign(user, 'cmp_1', roas(2.6))
    assert result.triggered == []
    assert result.notifications == []
    assert email_sender.call_count == 1

    result = evaluator.evaluate_campaign(user, 'cmp_1', roas(1.8))
    assert result.cleared == [alert.id]
    assert reload(alert).triggered_at is None

    result = evaluator.evaluate_campaign(user, 'cmp_1', roas(2.1))
    assert result.triggered == [alert.id]
    assert email_sender.call_count == 2


def test_email_payload_carries_campaign_context(user, make_alert, evaluator, email_sender):
    make_alert(user, metric_type=MetricTypeEnum.SPENT, operator=AlertOperatorEnum.EQ, threshold_value=100.0, channels=['email'])

    evaluator.evaluate_campaign(user, 'cmp_1', CampaignMetrics(spent=100.004))

    email_sender.assert_called_once_with(
        to_email='user@example.com',
        campaign_id='cmp_1',
        metric_type=MetricTypeEnum.SPENT,
        operator=AlertOperatorEnum.EQ,
        threshold_value=100.0,
        current_value=100.004,
        campaign_name='Summer Sale',
    )


def test_equality_outside_epsilon_does_not_trigger(user, make_alert, evaluator):
    make_alert(user, metric_type=MetricTypeEnum.SPENT, operator=AlertOperatorEnum.EQ, threshold_value=100.0)
    assert evaluator.evaluate_campaign(user, 'cmp_1', CampaignMetrics(spent=100.02)).triggered == []


def test_persisted_trigger_prevents_renotification(user, make_alert, evaluator, email_sender):
    # Alert already inside an episode from an earlier evaluation (e.g. before a page reload).
    make_alert(user, channels=['email'], triggered_at=datetime(2025, 6, 14, 9, 0, 0))

    result = evaluator.evaluate_campaign(user, 'cmp_1', roas(3.0))

    assert result.triggered == []
    email_sender.assert_not_called()


def test_only_active_alerts_of_user_and_campaign_are_evaluated(user, make_user, make_alert, evaluator):
    other_user = make_user(email='other@example.com')
    own = make_alert(user, campaign_id='cmp_1')
    make_alert(user, campaign_id='cmp_1', is_active=False)
    make_alert(user, campaign_id='cmp_2')
    make_alert(other_user, campaign_id='cmp_1')

    result = evaluator.evaluate_campaign(user, 'cmp_1', roas(5.0))

    assert result.triggered == [own.id]


def test_missing_metric_never_triggers(user, make_alert, evaluator):
    make_alert(user, metric_type=MetricTypeEnum.CPC, operator=AlertOperatorEnum.LTE, threshold_value=1.0)
    assert evaluator.evaluate_campaign(user, 'cmp_1', CampaignMetrics(roas=3.0)).triggered == []


# --- Failures are logged and swallowed ---

def test_email_failure_is_swallowed(user, make_alert, evaluator, email_sender):
    alert = make_alert(user, channels=['visual', 'email'])
    email_sender.side_effect = EmailDeliveryError('Brevo down')

    result = evaluator.evaluate_campaign(user, 'cmp_1', roas(3.0))

    assert result.triggered == [alert.id]
    assert result.notifications[-1] == {'channel': 'email', 'alert_id': alert.id, 'status': 'failed'}
    assert reload(alert).triggered_at == CLOCK


def test_failed_trigger_write_skips_notification(db, user, make_alert, evaluator, email_sender, mocker):
    alert = make_alert(user, channels=['email'])
    mocker.patch.object(db.session, 'commit', side_effect=OperationalError('UPDATE', {}, Exception('database is locked')))

    result = evaluator.evaluate_campaign(user, 'cmp_1', roas(3.0))

    assert result.triggered == []
    email_sender.assert_not_called()
    mocker.stopall()
    assert reload(alert).triggered_at is None


def test_triggered_alerts_lists_open_episodes(user, make_alert, evaluator):
    open_alert = make_alert(user, campaign_id='cmp_1')
    make_alert(user, campaign_id='cmp_2')
    evaluator.evaluate_campaign(user, 'cmp_1', roas(3.0))

    assert [a.id for a in triggered_alerts(user)] == [open_alert.id]
