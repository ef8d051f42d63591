import enum
from datetime import datetime
from extensions import db


class MetricTypeEnum(enum.Enum):
    """Campaign metrics an alert can watch."""
    RESULTS = 'results' # Conversions / results reported for the campaign.
    SPENT = 'spent'     # Amount spent.
    CPC = 'cpc'         # Cost per click.
    ROAS = 'roas'       # Return on ad spend.

    @property
    def label(self):
        return METRIC_LABELS[self]


METRIC_LABELS = {
    MetricTypeEnum.RESULTS: 'Results',
    MetricTypeEnum.SPENT: 'Amount Spent',
    MetricTypeEnum.CPC: 'CPC',
    MetricTypeEnum.ROAS: 'ROAS',
}


class AlertOperatorEnum(enum.Enum):
    """Comparison applied as `metric OPERATOR threshold`."""
    GTE = '>='
    LTE = '<='
    EQ = '='

    @property
    def phrase(self):
        return OPERATOR_PHRASES[self]


OPERATOR_PHRASES = {
    AlertOperatorEnum.GTE: 'reached or exceeded',
    AlertOperatorEnum.LTE: 'dropped to or below',
    AlertOperatorEnum.EQ: 'equals',
}

NOTIFICATION_CHANNELS = ('visual', 'sound', 'email')


class CampaignAlert(db.Model):
    """
    A user-defined threshold rule on one campaign metric.

    `triggered_at` is set while the condition holds and the episode has been
    notified, and cleared on the first evaluation where it no longer holds.
    Only the alert evaluator writes it.
    """
    __tablename__ = 'campaign_alerts'

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False, index=True)

    # Ad platform campaign identifier (Meta campaign id).
    campaign_id = db.Column(db.String(100), nullable=False, index=True)
    campaign_name = db.Column(db.String(255), nullable=True)

    metric_type = db.Column(db.Enum(MetricTypeEnum), nullable=False)
    operator = db.Column(db.Enum(AlertOperatorEnum), nullable=False)
    threshold_value = db.Column(db.Float, nullable=False)
    is_active = db.Column(db.Boolean, nullable=False, default=True, index=True)
    # Subset of NOTIFICATION_CHANNELS, stored as a JSON list.
    notification_channels = db.Column(db.JSON, nullable=False, default=lambda: ['visual'])

    triggered_at = db.Column(db.DateTime, nullable=True)

    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    def to_dict(self):
        return {
            'id': self.id,
            'campaign_id': self.campaign_id,
            'campaign_name': self.campaign_name,
            'metric_type': self.metric_type.value,
            'operator': self.operator.value,
            'threshold_value': self.threshold_value,
            'is_active': self.is_active,
            'notification_channels': list(self.notification_channels or []),
            'triggered_at': self.triggered_at.isoformat() if self.triggered_at else None,
        }

    def __repr__(self):
        return f'<CampaignAlert {self.id} {self.metric_type.value} {self.operator.value} {self.threshold_value}>'
