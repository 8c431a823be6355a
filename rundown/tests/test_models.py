import unittest

from rundown.models import Feature, Group, TrackedIssue, normalize_labels, normalize_reactions


class LabelNormalizationTests(unittest.TestCase):
    def test_flattens_label_objects_and_lowercases(self) -> None:
        labels = normalize_labels([{"name": "Bug"}, "Security", {"name": "bug"}, None, ""])
        self.assertEqual(labels, ["bug", "security"])

    def test_decodes_json_text(self) -> None:
        self.assertEqual(normalize_labels('["UI", "ui", "docs"]'), ["ui", "docs"])

    def test_missing_value_is_empty(self) -> None:
        self.assertEqual(normalize_labels(None), [])


class ReactionNormalizationTests(unittest.TestCase):
    def test_drops_non_numeric_entries(self) -> None:
        reactions = normalize_reactions({"url": "https://x", "+1": 3, "heart": 2, "flag": True})
        self.assertEqual(reactions, {"+1": 3, "heart": 2})

    def test_non_mapping_is_empty(self) -> None:
        self.assertEqual(normalize_reactions(["+1"]), {})
        self.assertEqual(normalize_reactions("not json"), {})


class TrackedIssueTests(unittest.TestCase):
    def test_reaction_count_prefers_total(self) -> None:
        issue = TrackedIssue(number=1, reactions={"total_count": 4, "+1": 3, "heart": 1})
        self.assertEqual(issue.reaction_count, 4)

    def test_reaction_count_sums_without_total(self) -> None:
        issue = TrackedIssue(number=1, reactions='{"+1": 2, "rocket": 1, "url": "x"}')
        self.assertEqual(issue.reaction_count, 3)

    def test_storage_row_is_decoded(self) -> None:
        issue = TrackedIssue.model_validate(
            {
                "number": 7,
                "title": None,
                "state": "CLOSED",
                "labels": '[{"name": "Bug"}]',
                "detected_labels": '["regression", "bug"]',
                "assignees": '[{"login": "octo"}]',
                "linked_threads": '["t1", "t2"]',
            }
        )
        self.assertEqual(issue.title, "")
        self.assertEqual(issue.state, "closed")
        self.assertEqual(issue.all_labels, ["bug", "regression"])
        self.assertEqual(issue.assignees, ["octo"])
        self.assertEqual(issue.linked_threads, ["t1", "t2"])


class CatalogModelTests(unittest.TestCase):
    def test_feature_keywords_and_priority_defaults(self) -> None:
        feature = Feature.model_validate({"id": "f1", "name": "Auth", "related_keywords": '["login"]', "priority": "URGENT"})
        self.assertEqual(feature.related_keywords, ["login"])
        self.assertEqual(feature.priority, "medium")

    def test_group_thread_count_defaults_to_member_count(self) -> None:
        group = Group(id="g1", threads=[{"thread_id": "a"}, {"thread_id": "b"}])
        self.assertEqual(group.thread_count, 2)


if __name__ == "__main__":
    unittest.main()
