"""
Campaign alert evaluation.

Called whenever fresh metrics for a campaign arrive. Each active alert on the
campaign is compared against the snapshot; an alert notifies once per episode
(the stretch of evaluations during which its condition holds).

The persisted `triggered_at` column is the only "already notified" flag.
Starting an episode is a conditional UPDATE (`... WHERE triggered_at IS NULL`),
so two evaluations racing on the same alert cannot both notify.
"""
import math
from dataclasses import dataclass, field

from flask import current_app
from sqlalchemy.exc import SQLAlchemyError

from extensions import db
from models.campaign_alert import CampaignAlert, MetricTypeEnum, AlertOperatorEnum
from services.email_service import send_campaign_alert_email
from utils.helpers import utcnow

# Tolerance for the "=" operator.
EQUALITY_EPSILON = 0.01

# Two-tone notification beep, played by the client for the "sound" channel.
SOUND_CUE = {
    'tones': [
        {'frequency_hz': 800, 'waveform': 'sine', 'start_s': 0.0, 'duration_s': 0.5, 'gain': 0.3, 'end_gain': 0.01},
        {'frequency_hz': 1000, 'waveform': 'sine', 'start_s': 0.2, 'duration_s': 0.3, 'gain': 0.3, 'end_gain': 0.01},
    ],
}


@dataclass(frozen=True)
class CampaignMetrics:
    """Snapshot of a campaign's metrics. A metric that was not reported is None."""
    results: float = None
    spent: float = None
    cpc: float = None
    roas: float = None

    @classmethod
    def from_mapping(cls, data):
        """
        Builds a snapshot from a dict such as a JSON request body.

        Raises:
            ValueError: If a reported metric is not a finite number.
        """
        values = {}
        for metric in MetricTypeEnum:
            raw = data.get(metric.value)
            if raw is None or raw == '':
                values[metric.value] = None
                continue
            if isinstance(raw, bool):
                raise ValueError(f"Metric '{metric.value}' must be a number.")
            try:
                value = float(raw)
            except (TypeError, ValueError):
                raise ValueError(f"Metric '{metric.value}' must be a number.")
            if not math.isfinite(value):
                raise ValueError(f"Metric '{metric.value}' must be a finite number.")
            values[metric.value] = value
        return cls(**values)

    def value_for(self, metric_type):
        if metric_type is MetricTypeEnum.RESULTS:
            return self.results
        if metric_type is MetricTypeEnum.SPENT:
            return self.spent
        if metric_type is MetricTypeEnum.CPC:
            return self.cpc
        if metric_type is MetricTypeEnum.ROAS:
            return self.roas
        raise ValueError(f"Unknown metric type: {metric_type!r}")


def compare(value, operator, threshold):
    """Evaluates `value OPERATOR threshold`. A missing value never matches."""
    if value is None:
        return False
    if operator is AlertOperatorEnum.GTE:
        return value >= threshold
    if operator is AlertOperatorEnum.LTE:
        return value <= threshold
    if operator is AlertOperatorEnum.EQ:
        return abs(value - threshold) < EQUALITY_EPSILON
    raise ValueError(f"Unknown alert operator: {operator!r}")


def condition_holds(alert, metrics):
    return compare(metrics.value_for(alert.metric_type), alert.operator, alert.threshold_value)


@dataclass
class EvaluationResult:
    campaign_id: str
    triggered: list = field(default_factory=list) # Alert ids that started a new episode.
    cleared: list = field(default_factory=list)   # Alert ids whose episode ended.
    notifications: list = field(default_factory=list)

    def to_dict(self):
        return {
            'campaign_id': self.campaign_id,
            'triggered': list(self.triggered),
            'cleared': list(self.cleared),
            'notifications': list(self.notifications),
        }


class AlertEvaluator:
    """
    Evaluates a user's alerts for one campaign and dispatches notifications.

    Args:
        email_sender (callable, optional): Replaces send_campaign_alert_email (keyword arguments).
        clock (callable, optional): Returns the naive UTC "now". Defaults to utils.helpers.utcnow.
    """

    def __init__(self, email_sender=None, clock=None):
        self.email_sender = email_sender or send_campaign_alert_email
        self.clock = clock or utcnow

    def evaluate_campaign(self, user, campaign_id, metrics):
        result = EvaluationResult(campaign_id=campaign_id)
        alerts = (CampaignAlert.query
                  .filter_by(user_id=user.id, campaign_id=campaign_id, is_active=True)
                  .order_by(CampaignAlert.id)
                  .all())

        for alert in alerts:
            value = metrics.value_for(alert.metric_type)
            if compare(value, alert.operator, alert.threshold_value):
                if alert.triggered_at is None and self._start_episode(alert):
                    result.triggered.append(alert.id)
                    self._notify(user, alert, value, result)
            elif alert.triggered_at is not None:
                if self._end_episode(alert):
                    result.cleared.append(alert.id)
        return result

    def _start_episode(self, alert):
        """Sets triggered_at if it is still NULL. True only for the caller that set it."""
        alert_id = alert.id
        try:
            claimed = (CampaignAlert.query
                       .filter(CampaignAlert.id == alert_id, CampaignAlert.triggered_at.is_(None))
                       .update({CampaignAlert.triggered_at: self.clock()}, synchronize_session=False))
            db.session.commit()
        except SQLAlchemyError as e:
            db.session.rollback()
            current_app.logger.error(f"Could not mark campaign alert {alert_id} as triggered: {e}", exc_info=True)
            return False
        db.session.expire(alert)
        return claimed == 1

    def _end_episode(self, alert):
        alert_id = alert.id
        try:
            cleared = (CampaignAlert.query
                       .filter(CampaignAlert.id == alert_id, CampaignAlert.triggered_at.isnot(None))
                       .update({CampaignAlert.triggered_at: None}, synchronize_session=False))
            db.session.commit()
        except SQLAlchemyError as e:
            db.session.rollback()
            current_app.logger.error(f"Could not reset campaign alert {alert_id}: {e}", exc_info=True)
            return False
        db.session.expire(alert)
        return cleared == 1

    def _notify(self, user, alert, value, result):
        channels = set(alert.notification_channels or [])

        if 'visual' in channels:
            result.notifications.append({
                'channel': 'visual',
                'alert_id': alert.id,
                'campaign_id': alert.campaign_id,
                'message': f"{alert.metric_type.label} {alert.operator.phrase} {alert.threshold_value:g}",
            })

        if 'sound' in channels:
            result.notifications.append({'channel': 'sound', 'alert_id': alert.id, 'cue': SOUND_CUE})

        if 'email' in channels:
            status = 'skipped'
            if user.email:
                try:
                    self.email_sender(
                        to_email=user.email,
                        campaign_id=alert.campaign_id,
                        metric_type=alert.metric_type,
                        operator=alert.operator,
                        threshold_value=alert.threshold_value,
                        current_value=value,
                        campaign_name=alert.campaign_name,
                    )
                    status = 'sent'
                except Exception as e:
                    # Notification failures never fail the evaluation.
                    status = 'failed'
                    current_app.logger.error(f"Error sending alert email for campaign alert {alert.id} to user {user.id}: {e}", exc_info=True)
            else:
                current_app.logger.warning(f"Campaign alert {alert.id}: user {user.id} has no email address, email notification skipped.")
            result.notifications.append({'channel': 'email', 'alert_id': alert.id, 'status': status})


def triggered_alerts(user):
    """Alerts of `user` currently inside an episode (drives the dashboard badges)."""
    return (CampaignAlert.query
            .filter(CampaignAlert.user_id == user.id,
                    CampaignAlert.is_active.is_(True),
                    CampaignAlert.triggered_at.isnot(None))
            .order_by(CampaignAlert.triggered_at.desc())
            .all())
