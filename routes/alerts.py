from flask import Blueprint, request, jsonify, current_app
from flask_login import login_required, current_user

from extensions import db
from forms import CampaignAlertForm, CampaignAlertUpdateForm
from models.campaign_alert import CampaignAlert, MetricTypeEnum, AlertOperatorEnum
from services.alert_evaluator import AlertEvaluator, CampaignMetrics, triggered_alerts
from services.subscription_lifecycle import campaign_limit_reached, effective_plan
from utils.decorators import writable_subscription_required

# Blueprint for campaign alert rules and their evaluation.
alerts_bp = Blueprint('alerts', __name__, url_prefix='/alerts')


def _get_own_alert(alert_id):
    return CampaignAlert.query.filter_by(id=alert_id, user_id=current_user.id).first()


@alerts_bp.route('/api/alerts', methods=['GET'])
@login_required
def list_alerts():
    """Alerts of the current user, optionally filtered with ?campaign_id=."""
    query = CampaignAlert.query.filter_by(user_id=current_user.id)
    campaign_id = request.args.get('campaign_id')
    if campaign_id:
        query = query.filter_by(campaign_id=campaign_id)
    alerts = query.order_by(CampaignAlert.created_at.desc(), CampaignAlert.id.desc()).all()
    return jsonify({"alerts": [alert.to_dict() for alert in alerts]}), 200


@alerts_bp.route('/api/alerts', methods=['POST'])
@login_required
@writable_subscription_required
def create_alert():
    form = CampaignAlertForm()
    if not form.validate_on_submit():
        return jsonify({"errors": form.errors}), 400

    campaign_id = form.campaign_id.data.strip()
    if campaign_limit_reached(current_user, campaign_id):
        limit = effective_plan(current_user).campaign_limit
        current_app.logger.info(f"User {current_user.id} hit the campaign limit ({limit}) adding campaign {campaign_id}.")
        return jsonify({"error": "Campaign limit reached for your plan.", "limit": limit}), 403

    payload = request.get_json(silent=True) or {}
    alert = CampaignAlert(
        user_id=current_user.id,
        campaign_id=campaign_id,
        campaign_name=form.campaign_name.data or None,
        metric_type=MetricTypeEnum(form.metric_type.data),
        operator=AlertOperatorEnum(form.operator.data),
        threshold_value=form.threshold_value.data,
        notification_channels=form.notification_channels.data or ['visual'],
        is_active=form.is_active.data if 'is_active' in payload else True,
    )
    db.session.add(alert)
    try:
        db.session.commit()
    except Exception as e:
        db.session.rollback()
        current_app.logger.error(f"Error creating campaign alert for user {current_user.id}: {e}", exc_info=True)
        return jsonify({"error": "Could not create alert."}), 500

    current_app.logger.info(f"User {current_user.id} created campaign alert {alert.id} on campaign {alert.campaign_id}.")
    return jsonify({"alert": alert.to_dict()}), 201


@alerts_bp.route('/api/alerts/<int:alert_id>', methods=['PATCH'])
@login_required
@writable_subscription_required
def update_alert(alert_id):
    alert = _get_own_alert(alert_id)
    if alert is None:
        return jsonify({"error": "Alert not found."}), 404

    form = CampaignAlertUpdateForm()
    if not form.validate_on_submit():
        return jsonify({"errors": form.errors}), 400

    payload = request.get_json(silent=True) or {}
    if 'campaign_name' in payload:
        alert.campaign_name = form.campaign_name.data or None
    if 'metric_type' in payload and form.metric_type.data:
        alert.metric_type = MetricTypeEnum(form.metric_type.data)
    if 'operator' in payload and form.operator.data:
        alert.operator = AlertOperatorEnum(form.operator.data)
    if 'threshold_value' in payload and form.threshold_value.data is not None:
        alert.threshold_value = form.threshold_value.data
    if 'notification_channels' in payload:
        alert.notification_channels = form.notification_channels.data or ['visual']
    if 'is_active' in payload:
        alert.is_active = form.is_active.data

    # A changed rule starts from a clean episode.
    if any(key in payload for key in ('metric_type', 'operator', 'threshold_value', 'is_active')):
        alert.triggered_at = None

    try:
        db.session.commit()
    except Exception as e:
        db.session.rollback()
        current_app.logger.error(f"Error updating campaign alert {alert_id}: {e}", exc_info=True)
        return jsonify({"error": "Could not update alert."}), 500
    return jsonify({"alert": alert.to_dict()}), 200


@alerts_bp.route('/api/alerts/<int:alert_id>', methods=['DELETE'])
@login_required
@writable_subscription_required
def delete_alert(alert_id):
    alert = _get_own_alert(alert_id)
    if alert is None:
        return jsonify({"error": "Alert not found."}), 404
    db.session.delete(alert)
    try:
        db.session.commit()
    except Exception as e:
        db.session.rollback()
        current_app.logger.error(f"Error deleting campaign alert {alert_id}: {e}", exc_info=True)
        return jsonify({"error": "Could not delete alert."}), 500
    current_app.logger.info(f"User {current_user.id} deleted campaign alert {alert_id}.")
    return '', 204


@alerts_bp.route('/api/alerts/triggered', methods=['GET'])
@login_required
def list_triggered_alerts():
    """Alerts currently inside a triggered episode, for dashboard badges."""
    return jsonify({"alerts": [alert.to_dict() for alert in triggered_alerts(current_user)]}), 200


@alerts_bp.route('/api/campaigns/<campaign_id>/evaluate', methods=['POST'])
@login_required
def evaluate_campaign(campaign_id):
    """
    Evaluates the user's active alerts on `campaign_id` against the metric
    snapshot in the JSON body ({"results", "spent", "cpc", "roas"}).
    Read-only subscriptions may still evaluate: it only updates alert state.
    """
    payload = request.get_json(silent=True)
    if not isinstance(payload, dict):
        return jsonify({"error": "Expected a JSON object with campaign metrics."}), 400
    try:
        metrics = CampaignMetrics.from_mapping(payload)
    except ValueError as e:
        return jsonify({"error": str(e)}), 400

    result = AlertEvaluator().evaluate_campaign(current_user, campaign_id, metrics)
    return jsonify(result.to_dict()), 200
