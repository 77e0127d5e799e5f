import os

from flask import Flask, request, jsonify
from flask_cors import CORS

from checkin_models import InvalidPolicyError, NotFoundError, RecordTriggeredError, parse_timestamp
from checkin_system import CheckinSystem, setup_logging


def create_app(system: CheckinSystem) -> Flask:
    app = Flask(__name__)
    CORS(app)

    @app.errorhandler(NotFoundError)
    def not_found(e):
        return jsonify({"error": str(e)}), 404

    @app.errorhandler(InvalidPolicyError)
    def invalid_policy(e):
        return jsonify({"error": str(e)}), 400

    @app.errorhandler(RecordTriggeredError)
    def already_triggered(e):
        return jsonify({"error": str(e)}), 409

    @app.route("/checkin/<user_id>/initialize", methods=["POST"])
    def initialize(user_id):
        data = request.get_json(silent=True) or {}
        record = system.initialize_checkin(user_id, data.get("policy"))
        return jsonify(record.to_dict(system.clock())), 201

    @app.route("/checkin/<user_id>", methods=["POST"])
    def check_in(user_id):
        record = system.check_in(user_id)
        return jsonify(record.to_dict(system.clock()))

    @app.route("/checkin/<user_id>", methods=["GET"])
    def get_status(user_id):
        record = system.get_status(user_id)
        return jsonify(record.to_dict(system.clock()))

    @app.route("/checkin/<user_id>/policy", methods=["PATCH"])
    def update_policy(user_id):
        data = request.get_json(silent=True)
        if not isinstance(data, dict):
            return jsonify({"error": "Expected a JSON object of policy fields"}), 400
        record = system.update_policy(user_id, data)
        return jsonify(record.to_dict(system.clock()))

    @app.route("/checkin/<user_id>/notifications", methods=["GET"])
    def list_notifications(user_id):
        return jsonify([n.to_dict() for n in system.list_notifications(user_id)])

    @app.route("/sweep", methods=["POST"])
    def run_sweep():
        data = request.get_json(silent=True) or {}
        now = None
        if data.get("now"):
            try:
                now = parse_timestamp(data["now"])
            except ValueError:
                return jsonify({"error": "now must be an ISO 8601 timestamp"}), 400
        result = system.run_sweep(now)
        return jsonify(result.to_dict())

    return app


if __name__ == '__main__':
    setup_logging()
    app = create_app(CheckinSystem.from_file(os.environ.get("CHECKIN_CONFIG", "config.json")))
    app.run(debug=True)
