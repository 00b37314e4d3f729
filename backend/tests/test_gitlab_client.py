"""Tests for GitLabClient."""

import pytest
from unittest.mock import Mock, patch
import sys
import os

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from services.gitlab_client import GitLabClient, GitLabAuthError, GitLabQueryError, PAGE_SIZE
from conftest import make_timelog, make_issue


def graphql_page(connection, nodes, has_next=False, cursor=None):
    """Build a GraphQL response body for one page of a group connection."""
    return {
        "data": {
            "group": {
                connection: {
                    "nodes": nodes,
                    "pageInfo": {"hasNextPage": has_next, "endCursor": cursor}
                }
            }
        }
    }


def mock_response(payload):
    response = Mock()
    response.json.return_value = payload
    response.raise_for_status.return_value = None
    return response


class TestGitLabClientInit:
    """Test client initialization."""

    def test_init_strips_trailing_slash(self, mock_gitlab_credentials):
        """Server URL should have trailing slash removed."""
        client = GitLabClient(
            server="https://gitlab.example.com/",
            token=mock_gitlab_credentials["token"],
            group_path=mock_gitlab_credentials["group_path"]
        )
        assert client.server == "https://gitlab.example.com"


class TestGetCurrentUser:
    """Test token owner lookup."""

    @patch("services.gitlab_client.requests.get")
    def test_returns_profile(self, mock_get, mock_gitlab_credentials):
        """Should map the REST user to the dashboard's profile shape."""
        mock_get.return_value = Mock(status_code=200, json=lambda: {
            "id": 7,
            "username": "alice",
            "name": "Alice Example",
            "avatar_url": "https://gitlab.example.com/a.png",
            "web_url": "https://gitlab.example.com/alice"
        })
        client = GitLabClient(mock_gitlab_credentials["server"], mock_gitlab_credentials["token"])

        user = client.get_current_user()

        assert user["username"] == "alice"
        assert user["avatarUrl"] == "https://gitlab.example.com/a.png"
        assert mock_get.call_args[0][0] == "https://gitlab.example.com/api/v4/user"

    @patch("services.gitlab_client.requests.get")
    def test_invalid_token(self, mock_get, mock_gitlab_credentials):
        """A 401 should raise GitLabAuthError."""
        mock_get.return_value = Mock(status_code=401)
        client = GitLabClient(mock_gitlab_credentials["server"], "expired")

        with pytest.raises(GitLabAuthError):
            client.get_current_user()


class TestRequest:
    """Test GraphQL requests."""

    @patch("services.gitlab_client.requests.post")
    def test_sends_bearer_token(self, mock_post, mock_gitlab_credentials):
        """Requests should go to the GraphQL endpoint with the token."""
        mock_post.return_value = mock_response({"data": {"group": None}})
        client = GitLabClient(**mock_gitlab_credentials)

        client._request("query { x }", {"a": 1})

        args, kwargs = mock_post.call_args
        assert args[0] == "https://gitlab.example.com/api/graphql"
        assert kwargs["headers"]["Authorization"] == "Bearer glpat-test-token"
        assert kwargs["json"] == {"query": "query { x }", "variables": {"a": 1}}

    @patch("services.gitlab_client.requests.post")
    def test_graphql_errors_raise(self, mock_post, mock_gitlab_credentials):
        """GraphQL errors should raise GitLabQueryError."""
        mock_post.return_value = mock_response({
            "errors": [{"message": "Field 'timelogs' doesn't exist"}]
        })
        client = GitLabClient(**mock_gitlab_credentials)

        with pytest.raises(GitLabQueryError, match="timelogs"):
            client._request("query { x }")


class TestPagination:
    """Test cursor pagination."""

    def test_follows_cursor(self, mock_gitlab_credentials):
        """Should request pages until hasNextPage is false."""
        client = GitLabClient(**mock_gitlab_credentials)
        pages = [
            graphql_page("issues", [make_issue("1")], has_next=True, cursor="c1")["data"],
            graphql_page("issues", [make_issue("2")])["data"]
        ]

        with patch.object(client, '_request', side_effect=pages) as mock_request:
            issues = client.get_issues()

        assert [issue["iid"] for issue in issues] == ["1", "2"]
        assert mock_request.call_count == 2
        first_vars = mock_request.call_args_list[0][0][1]
        second_vars = mock_request.call_args_list[1][0][1]
        assert first_vars["after"] is None
        assert first_vars["first"] == PAGE_SIZE
        assert first_vars["fullPath"] == "team/project"
        assert second_vars["after"] == "c1"

    def test_missing_group_raises(self, mock_gitlab_credentials):
        """An inaccessible group should raise GitLabQueryError."""
        client = GitLabClient(**mock_gitlab_credentials)

        with patch.object(client, '_request', return_value={"group": None}):
            with pytest.raises(GitLabQueryError):
                client.get_issues()

    def test_timelog_filters_passed(self, mock_gitlab_credentials):
        """Timelog queries should carry user and date filters."""
        client = GitLabClient(**mock_gitlab_credentials)
        page = graphql_page("timelogs", [])["data"]

        with patch.object(client, '_request', return_value=page) as mock_request:
            client.get_timelogs("alice", "2024-10-01", "2024-12-31")

        variables = mock_request.call_args[0][1]
        assert variables["username"] == "alice"
        assert variables["startDate"] == "2024-10-01"
        assert variables["endDate"] == "2024-12-31"


class TestFetchAll:
    """Test parallel fetching."""

    def test_timelogs_in_username_order(self, mock_gitlab_credentials):
        """Timelogs should be concatenated in the order usernames were given."""
        client = GitLabClient(**mock_gitlab_credentials)
        by_user = {
            "alice": [make_timelog("Alice", "1", "2024-10-07T09:00:00", 600)],
            "bob": [make_timelog("Bob", "1", "2024-10-07T10:00:00", 600)]
        }

        with patch.object(client, 'get_issues', return_value=[make_issue("1")]), \
             patch.object(client, 'get_timelogs',
                          side_effect=lambda username, *args: by_user[username]):
            issues, timelogs = client.fetch_all(["bob", "alice"])

        assert len(issues) == 1
        assert [log["user"]["name"] for log in timelogs] == ["Bob", "Alice"]

    def test_duplicate_usernames_fetched_once(self, mock_gitlab_credentials):
        """Repeated usernames should not duplicate timelogs."""
        client = GitLabClient(**mock_gitlab_credentials)

        with patch.object(client, 'get_issues', return_value=[]), \
             patch.object(client, 'get_timelogs',
                          return_value=[make_timelog("Alice", "1", "2024-10-07T09:00:00", 600)]
                          ) as mock_timelogs:
            _, timelogs = client.fetch_all(["alice", "alice"])

        assert mock_timelogs.call_count == 1
        assert len(timelogs) == 1

    def test_without_usernames_fetches_everyone(self, mock_gitlab_credentials):
        """No usernames should fetch all of the group's timelogs once."""
        client = GitLabClient(**mock_gitlab_credentials)

        with patch.object(client, 'get_issues', return_value=[]), \
             patch.object(client, 'get_timelogs', return_value=[]) as mock_timelogs:
            client.fetch_all(None, "2024-10-01", None)

        mock_timelogs.assert_called_once_with(None, "2024-10-01", None)

    def test_failure_propagates(self, mock_gitlab_credentials):
        """A failed fetch should fail the whole call."""
        client = GitLabClient(**mock_gitlab_credentials)

        with patch.object(client, 'get_issues', return_value=[]), \
             patch.object(client, 'get_timelogs', side_effect=GitLabQueryError("boom")):
            with pytest.raises(GitLabQueryError):
                client.fetch_all(["alice"])
