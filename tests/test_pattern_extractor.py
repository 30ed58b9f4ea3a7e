"""Tests for the Pattern Extractor."""

from voice_learning_pipeline.tasks.pattern_extractor import (
    UNKNOWN_ISSUE,
    IssueCategory,
    PatternExtractor,
    extract_issue,
    keywords_for,
)


class TestOutcomeBuckets:
    def test_voicemail_counted_separately(self, make_record):
        records = [
            make_record("a", "Agent: Hi!", successful=True),
            make_record("b", "Please leave a message", successful=False, in_voicemail=True),
            make_record("c", "Agent: Hello?", successful=None),
        ]

        summary = PatternExtractor().extract(records)

        assert summary.total == 3
        assert summary.voicemail == 1
        assert summary.failed == 1
        # Unknown outcome counts as successful
        assert summary.successful == 2
        assert summary.success_rate == 66.7

    def test_breakdown_per_agent(self, make_record):
        from dataclasses import replace

        records = [
            replace(make_record("a", "Agent: Hi!"), agent_id="agent_grace"),
            replace(make_record("b", "Agent: Hi!", successful=False), agent_id="agent_max"),
            replace(make_record("c", "Leave a message", in_voicemail=True), agent_id="agent_max"),
        ]

        summary = PatternExtractor().extract(records)

        assert summary.by_agent["agent_grace"].total == 1
        assert summary.by_agent["agent_max"].total == 2
        assert summary.by_agent["agent_max"].failed == 1
        assert summary.by_agent["agent_max"].voicemail == 1
        assert summary.digest()["by_agent"]["agent_max"] == {
            "total": 2,
            "successful": 1,
            "failed": 1,
            "voicemail": 1,
        }


class TestIssueCategories:
    def test_aggregates_with_at_most_three_examples(self, make_record):
        records = [make_record(f"d{i}", "User: any discount codes this week?") for i in range(5)]

        summary = PatternExtractor().extract(records)

        assert summary.issues["discount-request"].count == 5
        assert summary.issues["discount-request"].examples == ["d0", "d1", "d2"]
        assert len(summary.unhandled) == 5

    def test_one_match_per_category_in_table_order(self, make_record):
        record = make_record("x", "User: I'd like to cancel unless you have a coupon for me")

        matches = PatternExtractor().match(record)

        assert [m.category for m in matches] == ["discount-request", "cancellation"]

    def test_excerpt_is_flattened_context(self, make_record):
        transcript = "A" * 300 + "\nUser: how do I reorder the ribeye box?\n" + "B" * 300
        matches = PatternExtractor().match(make_record("r", transcript))

        assert matches[0].category == IssueCategory.REORDER.value
        excerpt = matches[0].excerpt
        assert "\n" not in excerpt
        assert "how do I reorder" in excerpt
        assert len(excerpt) <= len("how do I reorder") + 200

    def test_repeated_greeting_detected(self, make_record):
        transcript = (
            "Agent: Hi, this is Grace from The Meatery\n"
            "User: hello?\n"
            "Agent: Hi, this is Grace from The Meatery\n"
        )
        categories = [m.category for m in PatternExtractor().match(make_record("g", transcript))]
        assert categories == ["repeated-greeting"]

    def test_new_categories_exclude_known(self, make_record):
        records = [
            make_record("a", "User: do you have a promo?"),
            make_record("b", "User: is the sausage gluten free?"),
        ]

        summary = PatternExtractor().extract(records, known_categories={"discount-request"})

        assert summary.new_categories == ["dietary-inquiry"]

    def test_keywords_for_unknown_category(self):
        assert keywords_for("reorder") == ["reorder", "order again"]
        assert keywords_for("general") == []


class TestEdgeCases:
    def test_negative_call_becomes_edge_case(self, make_record):
        record = make_record(
            "n1",
            "Agent: Hi there\nUser: my order arrived wrong\nAgent: Sorry",
            sentiment="Negative",
            custom={"resolution_preference": "replacement"},
        )

        summary = PatternExtractor().extract([record])

        assert len(summary.edge_cases) == 1
        edge = summary.edge_cases[0]
        assert edge.issue == "User: my order arrived wrong"
        assert edge.resolution == "replacement"

    def test_neutral_call_is_not_an_edge_case(self, make_record):
        record = make_record("n2", "User: this is wrong", sentiment="Neutral")
        assert PatternExtractor().extract([record]).edge_cases == []

    def test_issue_falls_back_to_unknown(self):
        assert extract_issue("Agent: Hello\nUser: bye") == UNKNOWN_ISSUE


def test_extraction_is_deterministic(make_record):
    records = [
        make_record("a", "User: where is my shipping update?", sentiment="very_dissatisfied"),
        make_record("b", "User: speak to a human please"),
    ]
    extractor = PatternExtractor()
    assert extractor.extract(records).to_dict() == extractor.extract(records).to_dict()
