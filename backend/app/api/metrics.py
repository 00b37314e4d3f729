"""Timelog metrics API endpoints."""

from flask import Blueprint, request, jsonify
import requests

from app import get_dashboard_config
from services.gitlab_client import GitLabClient, GitLabQueryError
from services.timelog_metrics import TimelogMetricsService

bp = Blueprint("metrics", __name__, url_prefix="/api/metrics")


def get_gitlab_credentials():
    """Extract GitLab credentials from request headers."""
    server = request.headers.get("X-GitLab-Server", "").rstrip("/")
    token = request.headers.get("X-GitLab-Token")

    if not all([server, token]):
        return None, None

    return server, token


def get_group_path():
    """Group to analyze from the query string, else the configured one."""
    return request.args.get("group") or get_dashboard_config().get("groupPath")


def get_date_range():
    """Get optional date range from query params.

    Query params:
        - start_date: ISO date string (e.g., "2024-10-01")
        - end_date: ISO date string (e.g., "2025-07-01")

    Returns:
        Tuple of (start_date, end_date), either can be None
    """
    start_date = request.args.get("start_date")
    end_date = request.args.get("end_date")
    return start_date, end_date


def get_usernames():
    """Get team members from query params, else the configured team.

    Query params:
        - users: Comma-separated GitLab usernames
    """
    users = request.args.get("users", "")
    if users:
        return [u.strip() for u in users.split(",") if u.strip()]
    return list(get_dashboard_config().get("teamMembers") or [])


def build_service():
    """Create a metrics service from the dashboard config."""
    config = get_dashboard_config()
    return TimelogMetricsService(
        categories=config.get("categories"),
        sprint_weeks=config.get("sprintLengthWeeks") or 1,
        timezone=config.get("timezone")
    )


def fetch_and_calculate(view=None):
    """Fetch GitLab data for the request and calculate one view or all of them."""
    server, token = get_gitlab_credentials()

    if not server:
        return jsonify({"error": "Missing GitLab credentials in headers"}), 401

    group_path = get_group_path()
    if not group_path:
        return jsonify({"error": "Missing group path"}), 400

    start_date, end_date = get_date_range()

    try:
        service = build_service()
        client = GitLabClient(server, token, group_path)
        issues, timelogs = client.fetch_all(get_usernames(), start_date, end_date)

        if view is None:
            data = service.calculate_all(issues, timelogs)
        else:
            data = service.calculate_view(view, issues, timelogs)
        return jsonify({"data": data})
    except requests.exceptions.Timeout:
        return jsonify({"error": "Connection to GitLab timed out"}), 504
    except (GitLabQueryError, requests.exceptions.RequestException) as e:
        return jsonify({"error": f"Failed to fetch data from GitLab: {str(e)}"}), 502
    except Exception as e:
        return jsonify({"error": str(e)}), 500


@bp.route("/summary", methods=["GET"])
def get_summary():
    """Get all metrics combined for dashboard display.

    Query params:
        - group: GitLab group path (defaults to configured group)
        - start_date: Optional ISO date (e.g., "2024-10-01")
        - end_date: Optional ISO date (e.g., "2025-07-01")
        - users: Optional comma-separated usernames

    Returns combined object with all metric views, or
    ``{"hasData": false}`` when no time was logged in the window.
    """
    return fetch_and_calculate()


@bp.route("/categories", methods=["GET"])
def get_categories():
    """Get total hours per category."""
    return fetch_and_calculate("categories")


@bp.route("/team", methods=["GET"])
def get_team():
    """Get total hours per team member."""
    return fetch_and_calculate("team")


@bp.route("/weekly", methods=["GET"])
def get_weekly():
    """Get hours per team member per calendar week."""
    return fetch_and_calculate("weekly")


@bp.route("/heatmap", methods=["GET"])
def get_heatmap():
    """Get the daily activity grid (weeks of seven days, Sunday first)."""
    return fetch_and_calculate("heatmap")


@bp.route("/velocity", methods=["GET"])
def get_velocity():
    """Get velocity metrics for active sprints.

    Returns:
        - Per-sprint total, category and user hours
        - Average velocity over sprints with logged time
        - Average category hours per sprint
    """
    return fetch_and_calculate("velocity")


@bp.route("/collaboration", methods=["GET"])
def get_collaboration():
    """Get pairs of team members ranked by shared issues."""
    return fetch_and_calculate("collaboration")


@bp.route("/team-size", methods=["GET"])
def get_team_size():
    """Get the average number of contributors per issue for each category."""
    return fetch_and_calculate("team-size")


@bp.route("/complexity", methods=["GET"])
def get_complexity():
    """Get the average logged time per issue for each category."""
    return fetch_and_calculate("complexity")


@bp.route("/productivity", methods=["GET"])
def get_productivity():
    """Get hour-of-day and day-of-week distributions with peaks."""
    return fetch_and_calculate("productivity")


@bp.route("/deviation", methods=["GET"])
def get_deviation():
    """Get estimate vs. actual time per issue.

    Returns:
        - Issues ordered with worked and unestimated issues first
        - Estimated vs. actual hours per category
        - Average absolute deviation per category
    """
    return fetch_and_calculate("deviation")


@bp.route("/calculate", methods=["POST"])
def calculate():
    """Calculate all metrics from issues and timelogs in the request body.

    Expects JSON body with:
        - issues: List of GitLab issue nodes
        - timelogs: List of GitLab timelog nodes
    """
    data = request.get_json(silent=True)

    if not data:
        return jsonify({"error": "Missing request body"}), 400

    issues = data.get("issues", [])
    timelogs = data.get("timelogs", [])

    if not isinstance(issues, list) or not isinstance(timelogs, list):
        return jsonify({"error": "issues and timelogs must be lists"}), 400

    try:
        service = build_service()
        return jsonify({"data": service.calculate_all(issues, timelogs)})
    except Exception as e:
        return jsonify({"error": str(e)}), 500
