"""Authentication API endpoints."""

from flask import Blueprint, request, jsonify
import requests

from services.gitlab_client import GitLabClient, GitLabAuthError

bp = Blueprint("auth", __name__, url_prefix="/api/auth")


@bp.route("/validate", methods=["POST"])
def validate_token():
    """Check that a GitLab access token works before the dashboard uses it.

    Expects JSON body with:
        - server: GitLab server URL (e.g. https://gitlab.com)
        - token: Personal or group access token

    Returns the token owner's profile.
    """
    body = request.get_json(silent=True) or {}
    server = (body.get("server") or "").rstrip("/")
    token = body.get("token")

    if not server or not token:
        return jsonify({"error": "Both server and token are required"}), 400

    client = GitLabClient(server, token)
    try:
        user = client.get_current_user()
    except GitLabAuthError as e:
        return jsonify({"error": str(e)}), 401
    except requests.exceptions.Timeout:
        return jsonify({"error": "Connection to GitLab timed out"}), 504
    except requests.exceptions.HTTPError as e:
        status = e.response.status_code if e.response is not None else 502
        return jsonify({"error": f"GitLab rejected the request: {status}"}), status
    except requests.exceptions.RequestException as e:
        return jsonify({"error": f"Could not reach GitLab: {e}"}), 500

    return jsonify({"data": {"valid": True, "user": user}})
