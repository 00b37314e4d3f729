"""Shared fixtures for Timelog Analyzer tests."""

import pytest
import sys
import os

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))


def make_timelog(user, iid, spent_at, seconds, labels=None,
                 estimate=0, total_spent=0, title=None):
    """Build a timelog node the way GitLab's GraphQL API returns it."""
    return {
        "user": {"name": user},
        "issue": {
            "title": title or f"Issue {iid}",
            "iid": iid,
            "labels": {"nodes": [{"title": label} for label in (labels or [])]},
            "timeEstimate": estimate,
            "totalTimeSpent": total_spent
        },
        "spentAt": spent_at,
        "timeSpent": seconds
    }


def make_issue(iid, labels=None, estimate=0, total_spent=0, title=None):
    """Build an issue node the way GitLab's GraphQL API returns it."""
    return {
        "title": title or f"Issue {iid}",
        "iid": iid,
        "labels": {"nodes": [{"title": label} for label in (labels or [])]},
        "timeEstimate": estimate,
        "totalTimeSpent": total_spent
    }


@pytest.fixture
def mock_gitlab_credentials():
    """Mock GitLab credentials for testing."""
    return {
        "server": "https://gitlab.example.com",
        "token": "glpat-test-token",
        "group_path": "team/project"
    }


@pytest.fixture
def service():
    """Metrics service with the default categories, naive timestamps."""
    from services.timelog_metrics import TimelogMetricsService
    return TimelogMetricsService()


@pytest.fixture
def pair_timelogs():
    """Alice and Bob both logging time on one 'Entwurf' issue."""
    return [
        make_timelog("Alice", "5", "2024-10-07T09:00:00", 3600, labels=["Entwurf"]),
        make_timelog("Bob", "5", "2024-10-08T14:00:00", 1800, labels=["Entwurf"])
    ]


@pytest.fixture
def sample_timelogs():
    """Timelogs across three weeks, with a one-week gap, several issues."""
    return [
        # Week of Mon 2024-10-07
        make_timelog("Alice", "1", "2024-10-07T09:00:00", 7200, labels=["bug", "Entwurf"]),
        make_timelog("Bob", "1", "2024-10-07T10:00:00", 3600, labels=["Entwurf"]),
        make_timelog("Alice", "2", "2024-10-09T16:00:00", 3600,
                     labels=["Implementation & Test", "Entwurf"]),
        # Nothing in the week of 2024-10-14
        make_timelog("Carol", "3", "2024-10-21T09:30:00", 5400, labels=["Projektmanagement"]),
        make_timelog("Bob", "2", "2024-10-22T11:00:00", 1800,
                     labels=["Implementation & Test"]),
        make_timelog("Alice", "4", "2024-10-23T20:00:00", 900, labels=["docs"]),
        make_timelog("Carol", "1", "2024-10-24T09:00:00", 3600, labels=["Entwurf"])
    ]


@pytest.fixture
def sample_issues():
    """Issues with a spread of estimates and logged time."""
    return [
        make_issue("1", ["Entwurf"], estimate=3600, total_spent=7200, title="Design API"),
        make_issue("2", ["Implementation & Test"], estimate=0, total_spent=36000, title="Build API"),
        make_issue("3", ["Projektmanagement"], estimate=7200, total_spent=6840, title="Plan sprint"),
        make_issue("4", ["docs"], estimate=3600, total_spent=900, title="Write docs"),
        make_issue("6", ["Entwurf"], estimate=0, total_spent=0, title="Untouched"),
        make_issue("7", ["Requirements Engineering"], estimate=3600, total_spent=0, title="Gather needs")
    ]


@pytest.fixture
def app(tmp_path):
    """Create Flask test app with a test dashboard config."""
    import json

    config_path = tmp_path / "dashboard-config.json"
    config_path.write_text(json.dumps({
        "groupPath": "team/project",
        "teamMembers": ["alice", "bob"],
        "sprintLengthWeeks": 1
    }))

    from app import create_app
    app = create_app(config_path=str(config_path))
    app.config['TESTING'] = True
    return app


@pytest.fixture
def client(app):
    """Create Flask test client."""
    return app.test_client()


@pytest.fixture
def gitlab_headers(mock_gitlab_credentials):
    """Request headers carrying GitLab credentials."""
    return {
        "X-GitLab-Server": mock_gitlab_credentials["server"],
        "X-GitLab-Token": mock_gitlab_credentials["token"]
    }
