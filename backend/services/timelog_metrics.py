"""Timelog metrics calculation service."""

import logging
import math
from datetime import date, datetime
from typing import Callable, Optional
from dateutil import parser as date_parser
from dateutil import tz

from services.calendar_buckets import (
    DEFAULT_SPRINT_WEEKS,
    bucket_sprints,
    build_heatmap,
    sum_by_day,
    sunday_weekday,
    week_key,
)
from services.time_units import HOURS_PRECISION, SECONDS_PER_HOUR, seconds_to_hours

logger = logging.getLogger(__name__)

DEFAULT_CATEGORIES = (
    "Requirements Engineering",
    "Entwurf",
    "Implementation & Test",
    "Projektmanagement",
)

WEEKDAY_NAMES = (
    "Sunday", "Monday", "Tuesday", "Wednesday",
    "Thursday", "Friday", "Saturday"
)

HOURS_PER_DAY = 24
TOP_COLLABORATIONS = 6

# Absolute deviation limits (percent) for the excellent and good ratings
DEVIATION_THRESHOLDS = {"excellent": 10, "good": 30}


class UnboundedDeviation:
    """Deviation of an issue that has logged time but no estimate.

    Not a number; it must never enter a sum or an average.
    """

    def __repr__(self):
        return "UNBOUNDED_DEVIATION"


UNBOUNDED_DEVIATION = UnboundedDeviation()


class TimelogMetricsService:
    """Service for deriving time-tracking analytics from GitLab timelogs.

    Every calculation is a pure function of the issues and timelogs passed
    in. The service only holds configuration, so one instance can be reused
    across reporting windows.
    """

    def __init__(self, categories: Optional[list] = None,
                 sprint_weeks: int = DEFAULT_SPRINT_WEEKS,
                 timezone: Optional[str] = None):
        self.categories = tuple(categories) if categories else DEFAULT_CATEGORIES
        if sprint_weeks < 1:
            raise ValueError(f"Sprint length must be at least one week, got {sprint_weeks}")
        self.sprint_weeks = sprint_weeks
        self.timezone = timezone
        self._tz = tz.gettz(timezone) if timezone else None
        if timezone and self._tz is None:
            raise ValueError(f"Unknown timezone: {timezone}")

    def _parse_date(self, value) -> Optional[datetime]:
        """Parse a GitLab timestamp into a naive local datetime."""
        if isinstance(value, datetime):
            parsed = value
        elif isinstance(value, str) and value:
            try:
                parsed = date_parser.isoparse(value)
            except (ValueError, OverflowError):
                return None
        else:
            return None

        # Naive timestamps are taken as already local
        if parsed.tzinfo is not None:
            parsed = parsed.astimezone(self._tz).replace(tzinfo=None)
        return parsed

    def _get_label_titles(self, entity: dict) -> list:
        """Extract label titles in their given order.

        Accepts GitLab's ``{"nodes": [{"title": ...}]}`` connection shape as
        well as a plain list of titles.
        """
        labels = entity.get("labels") if isinstance(entity, dict) else None
        if not labels:
            return []
        if isinstance(labels, dict):
            labels = labels.get("nodes") or []

        titles = []
        for label in labels:
            if isinstance(label, dict):
                title = label.get("title")
            else:
                title = label
            if isinstance(title, str):
                titles.append(title)
        return titles

    def _get_main_category(self, entity: dict) -> Optional[str]:
        """Return the first label that names a known category.

        Only one category is ever assigned; additional category labels on
        the same issue are ignored.
        """
        for title in self._get_label_titles(entity):
            if title in self.categories:
                return title
        return None

    def _get_seconds(self, value, default: Optional[float] = 0.0) -> Optional[float]:
        """Read a second count. Returns None for values that are not finite numbers."""
        if value is None:
            return default
        if isinstance(value, bool):
            return None
        try:
            seconds = float(value)
        except (TypeError, ValueError):
            return None
        return seconds if math.isfinite(seconds) else None

    def _normalize_timelogs(self, timelogs: list) -> list:
        """Validate raw timelog nodes and assign categories.

        Malformed records are logged and skipped so a single bad node does
        not abort the whole calculation.
        """
        normalized = []
        skipped = 0

        for log in timelogs or []:
            if not isinstance(log, dict):
                skipped += 1
                continue

            user = log.get("user") or {}
            user_name = user.get("name") if isinstance(user, dict) else None
            spent_at = self._parse_date(log.get("spentAt"))
            time_spent = self._get_seconds(log.get("timeSpent"), default=None)

            if not user_name or spent_at is None or time_spent is None:
                skipped += 1
                continue

            issue = log.get("issue") if isinstance(log.get("issue"), dict) else {}
            iid = issue.get("iid")

            normalized.append({
                "user": user_name,
                "iid": str(iid) if iid is not None else None,
                "title": issue.get("title", ""),
                "category": self._get_main_category(issue),
                "spentAt": spent_at,
                "timeSpent": time_spent
            })

        if skipped:
            logger.warning(f"Skipped {skipped} malformed timelog(s)")

        return normalized

    def _max_by(self, items: list, key: Callable) -> Optional[dict]:
        """Return the item with the strictly greatest key, first one on ties."""
        best = None
        for item in items:
            if best is None or key(item) > key(best):
                best = item
        return best

    def _calculate_category_totals(self, logs: list) -> dict:
        """Total hours per category. Uncategorized logs count nowhere."""
        totals = {category: 0.0 for category in self.categories}
        for log in logs:
            if log["category"] is not None:
                totals[log["category"]] += log["timeSpent"]

        return {category: seconds_to_hours(seconds) for category, seconds in totals.items()}

    def _calculate_user_totals(self, logs: list) -> dict:
        """Total hours per user across all logs."""
        totals = {}
        for log in logs:
            totals[log["user"]] = totals.get(log["user"], 0) + log["timeSpent"]

        return {user: seconds_to_hours(seconds) for user, seconds in totals.items()}

    def _calculate_weekly_user_hours(self, logs: list) -> list:
        """Hours per user per Sunday-start week, ordered chronologically."""
        weeks = {}
        for log in logs:
            label, sunday = week_key(log["spentAt"].date())
            if sunday not in weeks:
                weeks[sunday] = {"week": label, "weekStart": sunday, "users": {}}
            users = weeks[sunday]["users"]
            users[log["user"]] = users.get(log["user"], 0) + log["timeSpent"]

        return [
            {
                "week": weeks[key]["week"],
                "weekStart": weeks[key]["weekStart"].isoformat(),
                "users": {
                    user: seconds_to_hours(seconds)
                    for user, seconds in weeks[key]["users"].items()
                }
            }
            for key in sorted(weeks)
        ]

    def _calculate_heatmap(self, logs: list, today: Optional[date] = None) -> list:
        """Dense day grid for the activity heatmap."""
        day_totals = sum_by_day(logs, lambda log: log["spentAt"], lambda log: log["timeSpent"])
        return build_heatmap(day_totals, today=today)

    def _calculate_project_metrics(self, logs: list) -> dict:
        """Calculate the sprint series, velocity and category distribution.

        Sprints without any timelog are never materialized, so averages are
        taken over active sprints only.
        """
        windows = bucket_sprints(logs, lambda log: log["spentAt"], self.sprint_weeks)

        sprint_data = []
        total_category_seconds = {category: 0.0 for category in self.categories}
        cumulative_seconds = 0.0

        for window in windows:
            total_seconds = 0.0
            category_seconds = {category: 0.0 for category in self.categories}
            user_seconds = {}

            for log in window["records"]:
                total_seconds += log["timeSpent"]
                if log["category"] is not None:
                    category_seconds[log["category"]] += log["timeSpent"]
                    total_category_seconds[log["category"]] += log["timeSpent"]
                user_seconds[log["user"]] = user_seconds.get(log["user"], 0) + log["timeSpent"]

            cumulative_seconds += total_seconds

            sprint_data.append({
                "sprintNumber": window["sprintNumber"],
                "sprintStart": window["start"].date().isoformat(),
                "sprintEnd": window["end"].date().isoformat(),
                "totalHours": seconds_to_hours(total_seconds),
                "categoryHours": {
                    category: seconds_to_hours(seconds)
                    for category, seconds in category_seconds.items()
                },
                "userHours": {
                    user: seconds_to_hours(seconds)
                    for user, seconds in user_seconds.items()
                },
                "cumulativeHours": seconds_to_hours(cumulative_seconds),
                "logCount": len(window["records"])
            })

        total_sprints = len(sprint_data)
        total_hours = sum(log["timeSpent"] for log in logs) / SECONDS_PER_HOUR
        average_velocity = total_hours / total_sprints if total_sprints > 0 else 0

        category_distribution = [
            {
                "category": category,
                "hours": round(seconds / SECONDS_PER_HOUR / total_sprints, HOURS_PRECISION)
                if total_sprints > 0 else 0
            }
            for category, seconds in total_category_seconds.items()
        ]

        return {
            "sprints": sprint_data,
            "totalSprints": total_sprints,
            "averageVelocity": round(average_velocity, HOURS_PRECISION),
            "categoryDistribution": category_distribution,
            "sprintLengthWeeks": self.sprint_weeks
        }

    def _group_by_issue(self, logs: list) -> dict:
        """Group logs by issue iid.

        The category of an issue comes from the first timelog seen for it,
        since every log carries its own snapshot of the issue.
        """
        issues = {}
        for log in logs:
            iid = log["iid"]
            if iid is None:
                continue
            if iid not in issues:
                issues[iid] = {"category": log["category"], "users": {}, "timeSpent": 0.0}
            issues[iid]["users"][log["user"]] = True
            issues[iid]["timeSpent"] += log["timeSpent"]
        return issues

    def _calculate_collaboration(self, logs: list) -> dict:
        """Count the distinct issues each pair of users worked on together.

        Pairs are canonicalized alphabetically, so (A, B) and (B, A) are the
        same pair. Ranking is by count, descending; ties keep the order in
        which pairs were first met while scanning issues.
        """
        pair_counts = {}
        for issue in self._group_by_issue(logs).values():
            members = sorted(issue["users"])
            for i, first in enumerate(members):
                for second in members[i + 1:]:
                    pair_counts[(first, second)] = pair_counts.get((first, second), 0) + 1

        pairs = [
            {"source": source, "target": target, "value": count}
            for (source, target), count in pair_counts.items()
        ]
        pairs.sort(key=lambda pair: pair["value"], reverse=True)

        return {
            "pairs": pairs,
            "topPairs": pairs[:TOP_COLLABORATIONS],
            "mostCollaborativePair": pairs[0] if pairs else None
        }

    def _calculate_average_team_members(self, logs: list) -> list:
        """Average number of distinct contributors per issue, by category."""
        by_category = {}
        for issue in self._group_by_issue(logs).values():
            category = issue["category"]
            if category is None:
                continue
            if category not in by_category:
                by_category[category] = {"issues": 0, "memberSum": 0, "members": set()}
            stats = by_category[category]
            stats["issues"] += 1
            stats["memberSum"] += len(issue["users"])
            stats["members"].update(issue["users"])

        team_data = []
        for category in self.categories:
            stats = by_category.get(category)
            if not stats:
                continue
            average = stats["memberSum"] / stats["issues"] if stats["issues"] > 0 else 0
            team_data.append({
                "category": category,
                "averageMembers": round(average, 2),
                "totalIssues": stats["issues"],
                "totalMembers": len(stats["members"])
            })

        team_data.sort(key=lambda x: x["averageMembers"], reverse=True)
        return team_data

    def _calculate_issue_complexity(self, logs: list) -> list:
        """Average logged time per issue, by category."""
        by_category = {}
        for issue in self._group_by_issue(logs).values():
            category = issue["category"]
            if category is None:
                continue
            stats = by_category.setdefault(category, {"total": 0.0, "count": 0})
            stats["total"] += issue["timeSpent"]
            stats["count"] += 1

        complexity = []
        for category in self.categories:
            stats = by_category.get(category)
            if not stats:
                continue
            average = stats["total"] / stats["count"] if stats["count"] > 0 else 0
            complexity.append({
                "category": category,
                "averageTime": seconds_to_hours(average),
                "totalIssues": stats["count"],
                "totalTime": seconds_to_hours(stats["total"])
            })

        complexity.sort(key=lambda x: x["averageTime"], reverse=True)
        return complexity

    def _calculate_productivity(self, logs: list) -> dict:
        """Hour-of-day and day-of-week histograms with their peaks."""
        hourly = [0.0] * HOURS_PER_DAY
        weekly = [0.0] * len(WEEKDAY_NAMES)

        for log in logs:
            hourly[log["spentAt"].hour] += log["timeSpent"]
            weekly[sunday_weekday(log["spentAt"])] += log["timeSpent"]

        hourly_data = [
            {"hour": f"{hour}:00", "hourIndex": hour, "value": seconds_to_hours(seconds)}
            for hour, seconds in enumerate(hourly)
        ]
        weekly_data = [
            {"day": WEEKDAY_NAMES[index], "dayIndex": index, "value": seconds_to_hours(seconds)}
            for index, seconds in enumerate(weekly)
        ]

        return {
            "hourlyData": hourly_data,
            "weeklyData": weekly_data,
            "peakHour": self._max_by(hourly_data, lambda x: x["value"]),
            "peakDay": self._max_by(weekly_data, lambda x: x["value"])
        }

    def _calculate_deviation(self, estimate: float, actual: float):
        """Percentage deviation of actual time from the estimate.

        Returns UNBOUNDED_DEVIATION when time was logged against an issue
        without an estimate.
        """
        if estimate > 0:
            return (actual - estimate) / estimate * 100
        if actual > 0:
            return UNBOUNDED_DEVIATION
        return 0.0

    def _rate_deviation(self, estimate: float, deviation) -> str:
        if estimate <= 0:
            return "unestimated"
        magnitude = abs(deviation)
        if magnitude <= DEVIATION_THRESHOLDS["excellent"]:
            return "excellent"
        if magnitude <= DEVIATION_THRESHOLDS["good"]:
            return "good"
        return "poor"

    def _deviation_sort_key(self, row: dict) -> tuple:
        """Worked issues first, then unestimated ones, then largest |deviation|."""
        deviation = row["deviation"]
        unbounded = deviation is UNBOUNDED_DEVIATION
        return (
            row["actual"] <= 0,
            not unbounded,
            0 if unbounded else -abs(deviation)
        )

    def _calculate_issue_deviation(self, issues: list) -> dict:
        """Compare estimated and actual time for categorized issues."""
        rows = []
        skipped = 0

        for issue in issues or []:
            if not isinstance(issue, dict):
                skipped += 1
                continue

            category = self._get_main_category(issue)
            estimate = self._get_seconds(issue.get("timeEstimate"))
            actual = self._get_seconds(issue.get("totalTimeSpent"))
            if estimate is None or actual is None:
                skipped += 1
                continue

            if category is None or (estimate <= 0 and actual <= 0):
                continue

            rows.append({
                "issue": issue,
                "category": category,
                "estimate": estimate,
                "actual": actual,
                "deviation": self._calculate_deviation(estimate, actual)
            })

        if skipped:
            logger.warning(f"Skipped {skipped} malformed issue(s)")

        rows.sort(key=self._deviation_sort_key)

        issue_rows = []
        for row in rows:
            unbounded = row["deviation"] is UNBOUNDED_DEVIATION
            issue_rows.append({
                "iid": str(row["issue"].get("iid", "")),
                "title": row["issue"].get("title", ""),
                "category": row["category"],
                "estimateHours": seconds_to_hours(row["estimate"]),
                "actualHours": seconds_to_hours(row["actual"]),
                "deviationPercent": None if unbounded else round(row["deviation"], 2),
                "unboundedDeviation": unbounded,
                "rating": self._rate_deviation(row["estimate"], row["deviation"])
            })

        category_comparison = []
        average_deviation = []
        for category in self.categories:
            worked = [r for r in rows if r["category"] == category and r["actual"] > 0]
            finite = [r for r in worked if r["deviation"] is not UNBOUNDED_DEVIATION]

            category_comparison.append({
                "category": category,
                "estimated": seconds_to_hours(sum(r["estimate"] for r in worked)),
                "actual": seconds_to_hours(sum(r["actual"] for r in worked))
            })

            avg = sum(abs(r["deviation"]) for r in finite) / len(finite) if finite else 0
            average_deviation.append({
                "category": category,
                "averageDeviation": round(avg, 2)
            })

        return {
            "issues": issue_rows,
            "categoryComparison": category_comparison,
            "averageDeviationPerCategory": average_deviation
        }

    def _calculate_overview(self, project_metrics: dict, issues: list) -> dict:
        """Headline figures for the project overview."""
        main_focus = self._max_by(project_metrics["categoryDistribution"], lambda x: x["hours"])
        most_active = self._max_by(project_metrics["sprints"], lambda x: x["totalHours"])

        worked_seconds = []
        for issue in issues or []:
            if not isinstance(issue, dict):
                continue
            spent = self._get_seconds(issue.get("totalTimeSpent"))
            if spent and spent > 0:
                worked_seconds.append(spent)

        avg_issue_seconds = sum(worked_seconds) / len(worked_seconds) if worked_seconds else 0

        return {
            "averageVelocity": project_metrics["averageVelocity"],
            "activeSprints": project_metrics["totalSprints"],
            "mainFocus": main_focus,
            "averageIssueTime": {
                "hours": seconds_to_hours(avg_issue_seconds),
                "issueCount": len(worked_seconds)
            },
            "mostActiveSprint": {
                "sprintNumber": most_active["sprintNumber"],
                "sprintStart": most_active["sprintStart"],
                "sprintEnd": most_active["sprintEnd"],
                "totalHours": most_active["totalHours"]
            } if most_active else None
        }

    # Public methods - each view can be requested on its own
    VIEWS = (
        "categories", "team", "weekly", "heatmap", "velocity",
        "collaboration", "team-size", "complexity", "productivity", "deviation"
    )

    def calculate_view(self, view: str, issues: list, timelogs: list,
                       today: Optional[date] = None) -> dict:
        """Calculate a single dashboard view.

        Returns ``{"hasData": False}`` when there are no usable timelogs,
        otherwise ``{"hasData": True, "view": ..., "result": ...}``.
        """
        if view not in self.VIEWS:
            raise ValueError(f"Unknown metrics view: {view}")

        logs = self._normalize_timelogs(timelogs)
        if not logs:
            return {"hasData": False}

        if view == "categories":
            result = self._calculate_category_totals(logs)
        elif view == "team":
            result = self._calculate_user_totals(logs)
        elif view == "weekly":
            result = self._calculate_weekly_user_hours(logs)
        elif view == "heatmap":
            result = self._calculate_heatmap(logs, today)
        elif view == "velocity":
            result = self._calculate_project_metrics(logs)
        elif view == "collaboration":
            result = self._calculate_collaboration(logs)
        elif view == "team-size":
            result = self._calculate_average_team_members(logs)
        elif view == "complexity":
            result = self._calculate_issue_complexity(logs)
        elif view == "productivity":
            result = self._calculate_productivity(logs)
        else:
            result = self._calculate_issue_deviation(issues)

        return {"hasData": True, "view": view, "result": result}

    def calculate_all(self, issues: list, timelogs: list,
                      today: Optional[date] = None) -> dict:
        """Get all metrics combined for the dashboard from one input snapshot."""
        logs = self._normalize_timelogs(timelogs)
        if not logs:
            logger.info("No timelogs in reporting window, nothing to calculate")
            return {"hasData": False}

        project_metrics = self._calculate_project_metrics(logs)

        return {
            "hasData": True,
            "categoryTotals": self._calculate_category_totals(logs),
            "userTotals": self._calculate_user_totals(logs),
            "weeklyUserHours": self._calculate_weekly_user_hours(logs),
            "heatmap": self._calculate_heatmap(logs, today),
            "projectMetrics": project_metrics,
            "overview": self._calculate_overview(project_metrics, issues),
            "averageTeamMembers": self._calculate_average_team_members(logs),
            "issueComplexity": self._calculate_issue_complexity(logs),
            "collaboration": self._calculate_collaboration(logs),
            "productivity": self._calculate_productivity(logs),
            "issueDeviation": self._calculate_issue_deviation(issues)
        }
