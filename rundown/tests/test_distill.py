import unittest
from datetime import datetime, timezone
from unittest.mock import patch

import aiosqlite

from rundown.db.repositories import (
    SqliteAgentSessionRepository,
    SqliteFeatureRepository,
    SqliteGroupRepository,
    SqliteIssueRepository,
    SqlitePullRequestRepository,
    SqliteThreadRepository,
)
from rundown.db.sqlite_migrations import run_migrations
from rundown.models import BriefingOptions, Feature, FeatureRef, Group, PullRequest, TrackedIssue
from rundown.project import ProjectIdentity
from rundown.services.distill import (
    build_briefing,
    build_codebase_notes,
    build_decisions,
    build_user_signals,
    classify_priority,
    distill_briefing,
    rank_active_issues,
    score_issue,
)
from rundown.services.sessions import start_session

PROJECT = "acme/widgets"
NOW = datetime(2026, 3, 15, tzinfo=timezone.utc)


class _Settings:
    LOOKBACK_DAYS = 14


def _issue(number: int = 1, **kwargs) -> TrackedIssue:
    return TrackedIssue(number=number, title=kwargs.pop("title", f"Issue {number}"), **kwargs)


class PriorityTests(unittest.TestCase):
    def test_security_or_regression_is_critical(self) -> None:
        self.assertEqual(classify_priority(_issue(labels=["security"])), "critical")
        self.assertEqual(classify_priority(_issue(detected_labels=["regression"])), "critical")

    def test_bug_is_high(self) -> None:
        self.assertEqual(classify_priority(_issue(labels=["bug"])), "high")
        self.assertEqual(
            classify_priority(_issue(labels=["bug"], linked_threads=["a", "b", "c"])), "high"
        )

    def test_two_threads_without_bug_is_high(self) -> None:
        self.assertEqual(classify_priority(_issue(linked_threads=["a", "b"])), "high")

    def test_assignee_or_detected_label_is_medium(self) -> None:
        self.assertEqual(classify_priority(_issue(assignees=["octo"])), "medium")
        self.assertEqual(classify_priority(_issue(detected_labels=["ux"])), "medium")

    def test_plain_issue_is_low(self) -> None:
        self.assertEqual(classify_priority(_issue(linked_threads=["a"])), "low")

    def test_score_combines_weight_threads_and_reactions(self) -> None:
        issue = _issue(labels=["bug"], linked_threads=["a", "b", "c"], reactions={"+1": 4, "heart": 1})
        self.assertEqual(score_issue(issue), 3 * 10 + 3 * 3 + 5)

    def test_total_count_wins_over_per_emoji_counts(self) -> None:
        issue = _issue(reactions={"total_count": 7, "+1": 5, "heart": 2, "url": "https://x"})
        self.assertEqual(issue.reaction_count, 7)
        self.assertEqual(score_issue(issue), 10 + 7)


class RankingTests(unittest.TestCase):
    def test_orders_by_score_and_fills_fields(self) -> None:
        ranked = rank_active_issues(
            [
                _issue(1, title="Plain"),
                _issue(2, title="Leak", labels=["security"]),
                _issue(3, title="Crash", labels=["bug"], linked_threads=["t1", "t2"]),
            ]
        )

        self.assertEqual([item.id for item in ranked], ["#2", "#3", "#1"])
        leak, crash, plain = ranked
        self.assertEqual((leak.score, crash.score, plain.score), (40, 36, 10))
        self.assertEqual(crash.reports, 3)
        self.assertEqual(crash.source, "github + discord")
        self.assertEqual(leak.source, "github")
        self.assertEqual(leak.reports, 1)

    def test_keeps_at_most_ten_and_five_labels(self) -> None:
        issues = [_issue(i, labels=[f"l{j}" for j in range(8)]) for i in range(15)]
        ranked = rank_active_issues(issues)

        self.assertEqual(len(ranked), 10)
        self.assertEqual(ranked[0].labels, ["l0", "l1", "l2", "l3", "l4"])

    def test_equal_scores_keep_input_order(self) -> None:
        ranked = rank_active_issues([_issue(5), _issue(4), _issue(6)])
        self.assertEqual([item.id for item in ranked], ["#5", "#4", "#6"])


class SectionBuilderTests(unittest.TestCase):
    def test_user_signals_need_two_threads(self) -> None:
        cutoff = datetime(2026, 3, 1, tzinfo=timezone.utc)
        groups = [
            Group(id="g1", suggested_title="Lonely", thread_count=1),
            Group(
                id="g2",
                suggested_title="Sync stalls",
                thread_count=4,
                github_issue={"number": 9, "title": "Sync"},
                affects_features=[FeatureRef(id="sync", name="Sync"), FeatureRef(id="general", name="General")],
            ),
            Group(id="g3", thread_count=2),
        ]
        signals = build_user_signals(groups, cutoff)

        self.assertEqual([s.theme for s in signals], ["Sync stalls", "g3"])
        self.assertEqual(signals[0].summary, "Affects: Sync")
        self.assertEqual(signals[0].sources, ["discord", "github"])
        self.assertEqual(signals[0].period, "since 2026-03-01")
        self.assertEqual(signals[1].summary, "2 related threads grouped")
        self.assertEqual(signals[1].sources, ["discord"])

    def test_user_signals_capped_at_five(self) -> None:
        groups = [Group(id=f"g{i}", thread_count=i + 2) for i in range(8)]
        signals = build_user_signals(groups, datetime(2026, 3, 1, tzinfo=timezone.utc))
        self.assertEqual([s.count for s in signals], [9, 8, 7, 6, 5])

    def test_codebase_notes(self) -> None:
        notes = build_codebase_notes(
            [
                (Feature(id="a", name="Auth", priority="high"), ["src/auth.py", "src/auth.py", "src/login.py"]),
                (Feature(id="b", name="Search"), []),
                (Feature(id="c", name="Billing", priority="low"), ["src/billing.py"]),
            ],
            ungrouped_count=60,
        )

        self.assertEqual([n.area for n in notes], ["Auth", "Billing", "classification"])
        self.assertEqual(notes[0].note, "Mapped to 2 file(s): src/auth.py, src/login.py")
        self.assertEqual(notes[0].priority, "high")
        self.assertEqual(notes[1].priority, "medium")
        self.assertIsNone(notes[0].file)
        self.assertEqual(notes[2].note, "60 ungrouped threads need review")
        self.assertEqual(notes[2].priority, "high")

    def test_ungrouped_note_threshold(self) -> None:
        self.assertEqual(build_codebase_notes([], 10), [])
        [note] = build_codebase_notes([], 11)
        self.assertEqual(note.priority, "medium")

    def test_decisions_from_merged_changes(self) -> None:
        prs = [
            PullRequest(
                number=10,
                title="Fix login loop",
                merged=True,
                created_at="2026-03-11T09:30:00Z",
                linked_issues=[{"number": 1, "state": "open"}, {"number": 2, "state": "closed"}],
            ),
            PullRequest(number=11, title="Tidy CI", merged=True, created_at="2026-03-12T00:00:00+00:00"),
        ]
        first, second = build_decisions(prs)

        self.assertEqual(first.what, "Fix login loop")
        self.assertEqual(first.why, "Addresses #1, #2")
        self.assertEqual(first.when, "2026-03-11")
        self.assertEqual(first.status, "implemented")
        self.assertEqual(first.open_items, ["#1 still open"])
        self.assertEqual(second.why, "Direct improvement")
        self.assertEqual(second.open_items, [])


class DistillBriefingTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.db = await aiosqlite.connect(":memory:")
        self.db.row_factory = aiosqlite.Row
        await run_migrations(self.db)
        self.identity = ProjectIdentity(override=PROJECT)
        await self._seed()

    async def asyncTearDown(self) -> None:
        await self.db.close()

    async def _seed(self) -> None:
        issues = SqliteIssueRepository(self.db)
        await issues.upsert(
            {
                "number": 1,
                "title": "Login loop on Safari",
                "labels": ["bug"],
                "reactions": {"+1": 2, "heart": 1},
                "created_at": "2026-03-10T12:00:00+00:00",
            },
            PROJECT,
        )
        await issues.replace_thread_matches(
            PROJECT, 1, [{"thread_id": "t1"}, {"thread_id": "t2"}, {"thread_id": "t3"}]
        )
        await issues.upsert(
            {"number": 2, "title": "Token leak in logs", "labels": ["security"], "created_at": "2026-03-05T08:00:00+00:00"},
            PROJECT,
        )
        await issues.upsert(
            {"number": 3, "title": "Dark mode request", "assignees": ["octo"], "created_at": "2026-03-02T08:00:00+00:00"},
            PROJECT,
        )
        await issues.upsert({"number": 4, "title": "Ancient", "created_at": "2026-01-01T00:00:00+00:00"}, PROJECT)
        await issues.upsert(
            {
                "number": 5,
                "title": "Fixed crash",
                "state": "closed",
                "created_at": "2026-02-01T00:00:00+00:00",
                "updated_at": "2026-03-12T00:00:00+00:00",
            },
            PROJECT,
        )
        await issues.upsert(
            {"number": 1, "title": "Other project", "labels": ["security"], "created_at": "2026-03-10T00:00:00+00:00"},
            "someone/else",
        )

        prs = SqlitePullRequestRepository(self.db)
        await prs.upsert(
            {
                "number": 10,
                "title": "Fix Safari login loop",
                "merged": True,
                "state": "closed",
                "created_at": "2026-03-11T09:00:00+00:00",
                "merged_at": "2026-03-11T10:00:00+00:00",
                "linked_issue_numbers": [1],
            },
            PROJECT,
        )
        await prs.upsert({"number": 11, "title": "WIP", "created_at": "2026-03-12T00:00:00+00:00"}, PROJECT)

        groups = SqliteGroupRepository(self.db)
        await groups.upsert(
            {
                "id": "g1",
                "suggested_title": "Safari login loop",
                "github_issue": {"number": 1, "title": "Login loop on Safari"},
                "threads": [{"thread_id": "t1"}, {"thread_id": "t2"}, {"thread_id": "t3"}],
                "affects_features": [{"id": "f-auth", "name": "Auth"}],
                "created_at": "2026-03-09T00:00:00+00:00",
            },
            PROJECT,
        )
        await groups.upsert(
            {"id": "g2", "suggested_title": "One-off", "threads": [{"thread_id": "t9"}], "created_at": "2026-03-09T00:00:00+00:00"},
            PROJECT,
        )

        features = SqliteFeatureRepository(self.db)
        await features.upsert({"id": "f-auth", "name": "Auth", "priority": "high", "related_keywords": ["login"]}, PROJECT)
        await features.upsert({"id": "f-search", "name": "Search"}, PROJECT)
        await features.replace_code_mappings(
            "f-auth",
            [
                {"file_path": "src/auth.py", "similarity": 0.9},
                {"file_path": "src/session.py", "similarity": 0.8},
            ],
        )

        threads = SqliteThreadRepository(self.db)
        for i in range(12):
            await threads.upsert_ungrouped({"thread_id": f"u{i}", "thread_name": f"misc {i}"}, PROJECT)
        for i in range(4):
            await threads.record_classified(PROJECT, f"c{i}", classified_at="2026-03-13T00:00:00+00:00")
        await threads.record_classified(PROJECT, "old", classified_at="2026-02-01T00:00:00+00:00")

    async def test_full_briefing(self) -> None:
        context = await distill_briefing(self.db, identity=self.identity, now=NOW, settings=_Settings)

        self.assertEqual(context.project, PROJECT)
        self.assertIsNone(context.focus)
        self.assertEqual(context.last_updated, NOW.isoformat())

        self.assertEqual([i.id for i in context.active_issues], ["#1", "#2", "#3"])
        top = context.active_issues[0]
        self.assertEqual(top.priority, "high")
        self.assertEqual(top.score, 30 + 9 + 3)
        self.assertEqual(top.reports, 4)
        self.assertEqual(context.active_issues[1].priority, "critical")
        self.assertEqual(context.active_issues[2].priority, "medium")

        [signal] = context.user_signals
        self.assertEqual(signal.theme, "Safari login loop")
        self.assertEqual(signal.count, 3)
        self.assertEqual(signal.period, "since 2026-03-01")
        self.assertEqual(signal.summary, "Affects: Auth")
        self.assertEqual(signal.sources, ["discord", "github"])

        self.assertEqual([n.area for n in context.codebase_notes], ["Auth", "classification"])
        self.assertEqual(context.codebase_notes[0].note, "Mapped to 2 file(s): src/auth.py, src/session.py")
        self.assertEqual(context.codebase_notes[1].note, "12 ungrouped threads need review")

        [decision] = context.decisions
        self.assertEqual(decision.what, "Fix Safari login loop")
        self.assertEqual(decision.why, "Addresses #1")
        self.assertEqual(decision.when, "2026-03-11")
        self.assertEqual(decision.open_items, ["#1 still open"])

        activity = context.recent_activity
        self.assertEqual(
            (activity.issues_opened, activity.issues_closed, activity.prs_opened, activity.prs_merged),
            (3, 1, 2, 1),
        )
        self.assertEqual(activity.discord_threads, 4)
        self.assertEqual(activity.period, "last 14 days")
        self.assertEqual(context.preferences, {"last_scope": "none"})

    async def test_since_narrows_the_window(self) -> None:
        context = await distill_briefing(
            self.db, BriefingOptions(since="2026-03-10"), identity=self.identity, now=NOW, settings=_Settings
        )

        self.assertEqual([i.id for i in context.active_issues], ["#1"])
        self.assertEqual(context.recent_activity.period, "last 5 days")
        self.assertEqual(context.user_signals, [])

    async def test_since_compares_offset_timestamps_in_utc(self) -> None:
        issues = SqliteIssueRepository(self.db)
        await issues.upsert({"number": 1, "title": "Late", "created_at": "2026-10-03T10:00:00-05:00"}, "tz/repo")
        await issues.upsert({"number": 2, "title": "Early", "created_at": "2026-10-03T15:00:00+05:00"}, "tz/repo")

        context = await distill_briefing(
            self.db,
            BriefingOptions(since="2026-10-03T12:00:00Z", project="tz/repo"),
            identity=self.identity,
            now=datetime(2026, 10, 5, tzinfo=timezone.utc),
            settings=_Settings,
        )

        self.assertEqual([i.id for i in context.active_issues], ["#1"])
        self.assertEqual(context.recent_activity.issues_opened, 1)

    async def test_scope_filters_sections(self) -> None:
        context = await distill_briefing(
            self.db, BriefingOptions(scope=" Token "), identity=self.identity, now=NOW, settings=_Settings
        )

        self.assertEqual(context.focus, "token")
        self.assertEqual([i.id for i in context.active_issues], ["#2"])
        self.assertEqual(context.user_signals, [])

    async def test_explicit_project_overrides_identity(self) -> None:
        context = await distill_briefing(
            self.db, BriefingOptions(project="someone/else"), identity=self.identity, now=NOW, settings=_Settings
        )

        self.assertEqual(context.project, "someone/else")
        self.assertEqual([i.id for i in context.active_issues], ["#1"])
        self.assertEqual(context.active_issues[0].priority, "critical")
        self.assertEqual(context.decisions, [])

    async def test_invalid_since_raises(self) -> None:
        with self.assertRaises(ValueError):
            await distill_briefing(
                self.db, BriefingOptions(since="last tuesday"), identity=self.identity, now=NOW, settings=_Settings
            )

    async def test_failing_section_degrades_to_empty(self) -> None:
        with patch("rundown.services.distill.get_issue_repository", side_effect=RuntimeError("db down")):
            context = await distill_briefing(self.db, identity=self.identity, now=NOW, settings=_Settings)

        self.assertEqual(context.active_issues, [])
        self.assertEqual(context.recent_activity.issues_opened, 0)
        self.assertEqual(context.recent_activity.period, "last 14 days")
        self.assertEqual(len(context.user_signals), 1)
        self.assertEqual(len(context.decisions), 1)
        self.assertEqual(len(context.codebase_notes), 2)

    async def test_preferences_and_last_session(self) -> None:
        session = await start_session(self.db, ["auth", "billing"], PROJECT)
        await start_session(self.db, ["elsewhere"], "someone/else")

        briefing = await build_briefing(self.db, identity=self.identity, now=NOW, settings=_Settings)

        self.assertEqual(briefing.context.preferences, {"last_scope": "auth, billing"})
        self.assertEqual(briefing.last_session.session_id, session.session_id)

    async def test_last_session_failure_is_not_fatal(self) -> None:
        with patch.object(SqliteAgentSessionRepository, "get_last", side_effect=RuntimeError("boom")):
            briefing = await build_briefing(self.db, identity=self.identity, now=NOW, settings=_Settings)

        self.assertIsNone(briefing.last_session)
        self.assertEqual(briefing.context.preferences, {"last_scope": "none"})


if __name__ == "__main__":
    unittest.main()
