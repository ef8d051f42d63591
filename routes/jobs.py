from flask import Blueprint, jsonify, current_app

from services.retention_emails import send_retention_emails
from services.subscription_lifecycle import run_state_sweep
from utils.decorators import cron_key_required
from utils.helpers import utcnow

# Endpoints called by the external scheduler. Authenticated with the cron key, not a session.
jobs_bp = Blueprint('jobs', __name__, url_prefix='/jobs')


def _job_response(results, now):
    return jsonify({"success": True, "results": results, "timestamp": now.isoformat()}), 200


@jobs_bp.route('/subscription-sweep', methods=['POST'])
@cron_key_required
def subscription_sweep():
    """Advances subscriptions through expired / suspended / archived."""
    now = utcnow()
    try:
        result = run_state_sweep(now)
    except Exception as e:
        current_app.logger.exception("[CRON] subscription sweep failed")
        return jsonify({"success": False, "error": str(e)}), 500
    return _job_response(result.to_dict(), now)


@jobs_bp.route('/retention-emails', methods=['POST'])
@cron_key_required
def retention_emails():
    """Sends day 0 / 5 / 10 win-back emails to lapsed subscribers."""
    now = utcnow()
    try:
        result = send_retention_emails(now)
    except Exception as e:
        current_app.logger.exception("[CRON] retention emails failed")
        return jsonify({"success": False, "error": str(e)}), 500
    return _job_response(result.to_dict(), now)
