"""GitLab GraphQL client for issues and timelogs."""

import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Optional
import requests

logger = logging.getLogger(__name__)

PAGE_SIZE = 100

ISSUES_QUERY = """
query($fullPath: ID!, $first: Int!, $after: String) {
    group(fullPath: $fullPath) {
        issues(first: $first, after: $after) {
            nodes {
                title
                iid
                labels { nodes { title } }
                timeEstimate
                totalTimeSpent
            }
            pageInfo {
                hasNextPage
                endCursor
            }
        }
    }
}
"""

TIMELOGS_QUERY = """
query($fullPath: ID!, $first: Int!, $after: String,
      $startDate: Time, $endDate: Time, $username: String) {
    group(fullPath: $fullPath) {
        timelogs(first: $first, after: $after, startDate: $startDate,
                 endDate: $endDate, username: $username) {
            nodes {
                user { name }
                issue {
                    title
                    iid
                    labels { nodes { title } }
                    timeEstimate
                    totalTimeSpent
                }
                spentAt
                timeSpent
            }
            pageInfo {
                hasNextPage
                endCursor
            }
        }
    }
}
"""


class GitLabQueryError(Exception):
    """GitLab answered the GraphQL request with errors or without data."""


class GitLabAuthError(Exception):
    """GitLab rejected the access token."""


class GitLabClient:
    """Fetches group issues and timelogs from the GitLab GraphQL API."""

    def __init__(self, server: str, token: str, group_path: Optional[str] = None,
                 max_workers: int = 6):
        self.server = server.rstrip("/")
        self.token = token
        self.group_path = group_path
        self.max_workers = max_workers

    def _headers(self) -> dict:
        return {
            "Authorization": f"Bearer {self.token}",
            "Accept": "application/json"
        }

    def get_current_user(self) -> dict:
        """Get the user the token belongs to from the REST API.

        Raises:
            GitLabAuthError: token is invalid or expired
            requests.exceptions.HTTPError: any other non-2xx answer
        """
        response = requests.get(f"{self.server}/api/v4/user", headers=self._headers(), timeout=10)
        if response.status_code == 401:
            raise GitLabAuthError("Invalid credentials")
        response.raise_for_status()

        user = response.json()
        return {
            "id": user.get("id"),
            "username": user.get("username"),
            "name": user.get("name"),
            "avatarUrl": user.get("avatar_url"),
            "webUrl": user.get("web_url")
        }

    def _request(self, query: str, variables: Optional[dict] = None) -> dict:
        """Make authenticated GraphQL request to GitLab."""
        response = requests.post(
            f"{self.server}/api/graphql",
            json={"query": query, "variables": variables or {}},
            headers=self._headers(),
            timeout=30
        )
        response.raise_for_status()
        payload = response.json()

        errors = payload.get("errors")
        if errors:
            messages = "; ".join(e.get("message", "unknown error") for e in errors)
            raise GitLabQueryError(f"GitLab query failed: {messages}")

        return payload.get("data") or {}

    def _paginate(self, query: str, connection: str, variables: Optional[dict] = None) -> list:
        """Follow endCursor until GitLab reports no further page."""
        all_nodes = []
        cursor = None

        while True:
            data = self._request(query, {
                **(variables or {}),
                "fullPath": self.group_path,
                "first": PAGE_SIZE,
                "after": cursor
            })

            group = data.get("group")
            if group is None:
                raise GitLabQueryError(f"Group not found or not accessible: {self.group_path}")

            page = group.get(connection) or {}
            all_nodes.extend(page.get("nodes") or [])

            page_info = page.get("pageInfo") or {}
            if not page_info.get("hasNextPage"):
                break

            cursor = page_info.get("endCursor")

        return all_nodes

    def get_issues(self) -> list:
        """Get all issues of the group."""
        issues = self._paginate(ISSUES_QUERY, "issues")
        logger.info(f"Fetched {len(issues)} issues for {self.group_path}")
        return issues

    def get_timelogs(self, username: Optional[str] = None,
                     start_date: Optional[str] = None, end_date: Optional[str] = None) -> list:
        """Get timelogs of the group, optionally for a single user.

        Args:
            username: GitLab username to filter by (all users when None)
            start_date: Optional ISO date, earliest spentAt to include
            end_date: Optional ISO date, latest spentAt to include
        """
        timelogs = self._paginate(TIMELOGS_QUERY, "timelogs", {
            "username": username,
            "startDate": start_date,
            "endDate": end_date
        })
        logger.info(f"Fetched {len(timelogs)} timelogs for {username or 'all users'}")
        return timelogs

    def fetch_all(self, usernames: Optional[list] = None,
                  start_date: Optional[str] = None, end_date: Optional[str] = None) -> tuple:
        """Fetch issues and every user's timelogs in parallel.

        Returns only once every collection is complete. Timelogs are
        concatenated in the order of ``usernames`` regardless of which fetch
        finished first.
        """
        usernames = list(dict.fromkeys(usernames or []))
        user_timelogs = {}
        issues = []

        with ThreadPoolExecutor(max_workers=self.max_workers) as executor:
            issues_future = executor.submit(self.get_issues)
            if usernames:
                futures = {
                    executor.submit(self.get_timelogs, username, start_date, end_date): username
                    for username in usernames
                }
            else:
                futures = {executor.submit(self.get_timelogs, None, start_date, end_date): None}

            for future in as_completed(futures):
                user_timelogs[futures[future]] = future.result()
            issues = issues_future.result()

        timelogs = []
        for username in (usernames or [None]):
            timelogs.extend(user_timelogs.get(username, []))

        return issues, timelogs
