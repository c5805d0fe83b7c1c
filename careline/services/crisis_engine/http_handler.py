"""Crisis Engine HTTP handler.

Exposes message analysis and the alert lifecycle over HTTP. Alert state
errors map to 409, unknown ids to 404 and malformed bodies to 400.
"""
import logging
import os
from datetime import datetime

from flask import Flask, jsonify, request

from careline.shared.errors import AlertNotFound, InvalidTransition
from careline.shared.models import AnalysisRequest
from careline.shared.utils import hash_pii
from .engine import CrisisEngine

logger = logging.getLogger(__name__)

# Initialize Flask app
app = Flask(__name__)

# Configures the PII salt as a side effect
engine = CrisisEngine.from_env()


def _body():
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else None


def _transition_error(e: Exception, event: str, alert_id: str):
    if isinstance(e, AlertNotFound):
        return jsonify({"error": str(e)}), 404
    if isinstance(e, InvalidTransition):
        return jsonify({
            "error": str(e),
            "current_status": e.current_status,
        }), 409
    if isinstance(e, ValueError):
        return jsonify({"error": str(e)}), 400
    logger.error(event, extra={"alert_id": alert_id, "error": str(e)})
    return jsonify({"error": "Failed to update alert"}), 500


@app.route("/health", methods=["GET"])
def health():
    """Health check endpoint."""
    return jsonify({
        "status": "healthy",
        "service": "crisis-engine",
    }), 200


@app.route("/ready", methods=["GET"])
def ready():
    """Readiness check."""
    try:
        checks = engine.readiness()
    except Exception as e:
        logger.error("CRISIS_READY_ERROR", extra={"error": str(e)})
        return jsonify({"status": "not_ready"}), 503

    if not all(checks.values()):
        return jsonify({"status": "not_ready", "checks": checks}), 503
    return jsonify({"status": "ready", "checks": checks}), 200


@app.route("/analyze", methods=["POST"])
def analyze():
    """Analyse a message and open an alert if needed.

    Request Body:
        {
            "message_id": "msg_123",
            "content": "...",
            "user_id": "user_001",
            "conversation_id": "conv_001",
            "language": "en"
        }

    Response:
        {
            "result": {...} | null,
            "alert": {...} | null
        }
    """
    try:
        data = _body()
        if not data:
            return jsonify({"error": "Request body required"}), 400

        missing = [
            name for name in ("message_id", "content", "user_id", "conversation_id")
            if not data.get(name)
        ]
        if missing:
            return jsonify({"error": f"Missing {', '.join(missing)}"}), 400

        result, alert = engine.handle_message(AnalysisRequest(
            message_id=data["message_id"],
            content=data["content"],
            user_id=data["user_id"],
            conversation_id=data["conversation_id"],
            language=data.get("language"),
            metadata=data.get("metadata") or {},
        ))

        return jsonify({
            "result": result.to_dict() if result else None,
            "alert": alert.to_dict() if alert else None,
        }), 200

    except Exception as e:
        logger.error("CRISIS_ANALYZE_ERROR", extra={"error": str(e)})
        return jsonify({"error": "Failed to analyze message"}), 500


@app.route("/alerts", methods=["POST"])
def create_alert():
    """Raise an alert directly (panic button, manual escalation).

    Request Body:
        {
            "user_id": "user_001",
            "alert_type": "panic_button",
            "severity": "critical",
            "description": "User pressed the panic button",
            "context": {"location": {"address": "..."}}
        }
    """
    try:
        data = _body()
        if not data:
            return jsonify({"error": "Request body required"}), 400

        for name in ("user_id", "alert_type", "severity", "description"):
            if not data.get(name):
                return jsonify({"error": f"Missing {name}"}), 400

        alert = engine.create_alert(
            user_id=data["user_id"],
            alert_type=data["alert_type"],
            severity=data["severity"],
            description=data["description"],
            title=data.get("title"),
            conversation_id=data.get("conversation_id"),
            message_id=data.get("message_id"),
            context=data.get("context"),
            immediate_escalation=bool(data.get("immediate_escalation", False)),
            created_by=data.get("created_by") or "system",
        )

        logger.info(
            "ALERT_CREATED_HTTP",
            extra={
                "alert_id": alert.id,
                "user_id_hash": hash_pii(alert.user_id),
                "severity": alert.severity.value,
            }
        )
        return jsonify(alert.to_dict()), 201

    except ValueError as e:
        return jsonify({"error": str(e)}), 400
    except Exception as e:
        logger.error("ALERT_CREATE_ERROR", extra={"error": str(e)})
        return jsonify({"error": "Failed to create alert"}), 500


@app.route("/alerts/active", methods=["GET"])
def active_alerts():
    """All alerts not yet resolved or cancelled."""
    try:
        alerts = engine.active_alerts()
        return jsonify({
            "count": len(alerts),
            "alerts": [a.to_dict() for a in alerts],
        }), 200
    except Exception as e:
        logger.error("ALERT_LIST_ERROR", extra={"error": str(e)})
        return jsonify({"error": "Failed to list alerts"}), 500


@app.route("/alerts/metrics", methods=["GET"])
def alert_metrics():
    """Alert metrics.

    Query Params:
        since: ISO-8601 timestamp, only alerts created at or after it (optional)
    """
    try:
        since_arg = request.args.get("since")
        since = datetime.fromisoformat(since_arg) if since_arg else None
    except ValueError:
        return jsonify({"error": "Invalid since timestamp"}), 400

    try:
        return jsonify(engine.metrics(since=since).to_dict()), 200
    except Exception as e:
        logger.error("ALERT_METRICS_ERROR", extra={"error": str(e)})
        return jsonify({"error": "Failed to compute metrics"}), 500


@app.route("/alerts/<alert_id>", methods=["GET"])
def get_alert(alert_id: str):
    try:
        return jsonify(engine.get_alert(alert_id).to_dict()), 200
    except AlertNotFound as e:
        return jsonify({"error": str(e)}), 404
    except Exception as e:
        logger.error("ALERT_GET_ERROR", extra={"alert_id": alert_id, "error": str(e)})
        return jsonify({"error": "Failed to load alert"}), 500


@app.route("/alerts/<alert_id>/acknowledge", methods=["POST"])
def acknowledge_alert(alert_id: str):
    """Acknowledge an alert.

    Request Body:
        {
            "actor_id": "therapist_123",
            "notes": "Calling now"
        }
    """
    data = _body()
    if not data or not data.get("actor_id"):
        return jsonify({"error": "Missing actor_id"}), 400

    try:
        alert = engine.acknowledge(alert_id, data["actor_id"], notes=data.get("notes"))
        return jsonify(alert.to_dict()), 200
    except Exception as e:
        return _transition_error(e, "ALERT_ACKNOWLEDGE_ERROR", alert_id)


@app.route("/alerts/<alert_id>/progress", methods=["POST"])
def start_progress(alert_id: str):
    data = _body()
    if not data or not data.get("actor_id"):
        return jsonify({"error": "Missing actor_id"}), 400

    try:
        alert = engine.start_progress(alert_id, data["actor_id"], notes=data.get("notes"))
        return jsonify(alert.to_dict()), 200
    except Exception as e:
        return _transition_error(e, "ALERT_PROGRESS_ERROR", alert_id)


@app.route("/alerts/<alert_id>/resolve", methods=["POST"])
def resolve_alert(alert_id: str):
    """Resolve an alert.

    Request Body:
        {
            "actor_id": "therapist_123",
            "resolution": "User safe, follow-up booked"
        }
    """
    data = _body()
    if not data or not data.get("actor_id") or not data.get("resolution"):
        return jsonify({"error": "Missing actor_id or resolution"}), 400

    try:
        alert = engine.resolve(alert_id, data["actor_id"], data["resolution"])
        return jsonify(alert.to_dict()), 200
    except Exception as e:
        return _transition_error(e, "ALERT_RESOLVE_ERROR", alert_id)


@app.route("/alerts/<alert_id>/escalate", methods=["POST"])
def escalate_alert(alert_id: str):
    data = _body()
    if not data or not data.get("actor_id") or not data.get("reason"):
        return jsonify({"error": "Missing actor_id or reason"}), 400

    try:
        alert = engine.escalate(alert_id, data["actor_id"], data["reason"])
        return jsonify(alert.to_dict()), 200
    except Exception as e:
        return _transition_error(e, "ALERT_ESCALATE_ERROR", alert_id)


@app.route("/alerts/<alert_id>/cancel", methods=["POST"])
def cancel_alert(alert_id: str):
    data = _body()
    if not data or not data.get("actor_id") or not data.get("reason"):
        return jsonify({"error": "Missing actor_id or reason"}), 400

    try:
        alert = engine.cancel(alert_id, data["actor_id"], data["reason"])
        return jsonify(alert.to_dict()), 200
    except Exception as e:
        return _transition_error(e, "ALERT_CANCEL_ERROR", alert_id)


@app.route("/notifications/<notification_id>/confirm", methods=["POST"])
def confirm_notification(notification_id: str):
    """Record a delivery receipt or a recipient's reply.

    Request Body:
        {
            "status": "delivered" | "acknowledged" | "failed",
            "actor_id": "contact_1"
        }
    """
    data = _body()
    if not data or not data.get("status"):
        return jsonify({"error": "Missing status"}), 400

    try:
        notification = engine.confirm_notification(
            notification_id,
            data["status"],
            actor_id=data.get("actor_id"),
        )
        return jsonify(notification.to_dict()), 200
    except Exception as e:
        return _transition_error(e, "NOTIFICATION_CONFIRM_ERROR", notification_id)


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    port = int(os.getenv("PORT", "8003"))
    app.run(host="0.0.0.0", port=port, debug=False)
