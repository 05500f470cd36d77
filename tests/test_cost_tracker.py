import logging

import pytest

from assembly_guides.cost_tracker import MODEL_PRICING, CostTracker, calculate_cost


class TestCalculateCost:
    @pytest.mark.parametrize("model", sorted(MODEL_PRICING))
    def test_one_million_each_costs_sum_of_rates(self, model):
        rates = MODEL_PRICING[model]
        assert calculate_cost(model, 1_000_000, 1_000_000) == pytest.approx(
            rates["input"] + rates["output"]
        )

    def test_unknown_model_is_free_and_warns(self, caplog):
        with caplog.at_level(logging.WARNING, logger="assembly_guides.cost_tracker"):
            assert calculate_cost("unknown-model", 5_000, 7_000) == 0
        assert "unknown-model" in caplog.text

    def test_small_call(self):
        # 10k in / 2k out on flash: 0.001 + 0.0008
        assert calculate_cost("gemini-2.0-flash", 10_000, 2_000) == pytest.approx(0.0018)


class TestCostTracker:
    def test_record_and_totals(self):
        tracker = CostTracker("job-1")
        entry = tracker.record("gemini-2.0-flash", 1_000_000, 0, label="page_1_flash")
        tracker.record("gemini-2.5-pro", 0, 1_000_000, label="page_1_content_escalation")
        tracker.record("gemini-2.0-flash", 500_000, 500_000)

        assert entry.cost_usd == pytest.approx(0.10)
        assert entry.label == "page_1_flash"
        assert tracker.call_count == 3
        assert tracker.total_input_tokens == 1_500_000
        assert tracker.total_output_tokens == 1_500_000
        assert tracker.total_cost_usd == pytest.approx(0.10 + 10.0 + 0.05 + 0.20)

    def test_summary_breakdown_per_model(self):
        tracker = CostTracker()
        tracker.record("gemini-2.0-flash", 1_000_000, 0)
        tracker.record("gemini-2.0-flash", 1_000_000, 0)
        tracker.record("gpt-4o", 1_000_000, 0)

        summary = tracker.summary()
        breakdown = {row["model"]: row for row in summary["breakdown"]}

        assert summary["call_count"] == 3
        assert breakdown["gemini-2.0-flash"]["calls"] == 2
        assert breakdown["gemini-2.0-flash"]["cost_usd"] == pytest.approx(0.20)
        assert breakdown["gpt-4o"]["cost_usd"] == pytest.approx(2.50)
        # summary() is a pure projection
        assert tracker.summary() == summary

    def test_entries_are_a_copy(self):
        tracker = CostTracker()
        tracker.record("gpt-4o", 1, 1)
        tracker.entries.clear()
        assert tracker.call_count == 1

    def test_reset(self):
        tracker = CostTracker()
        tracker.record("gpt-4o", 1, 1)
        tracker.reset()
        assert tracker.call_count == 0
        assert tracker.total_cost_usd == 0
