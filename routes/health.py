from flask import Blueprint, jsonify
from security.csrf import issue_csrf_token

health_bp = Blueprint("health", __name__)


@health_bp.get("/health")
def health():
    return jsonify(status="ok"), 200


@health_bp.get("/csrf")
def csrf():
    return issue_csrf_token(jsonify(message="CSRF cookie set")), 200
