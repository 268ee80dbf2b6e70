"""Tests for outcome recording and min_confidence adaptation."""

import pytest

from routeguard.exceptions import InputValidationError
from routeguard.learning import OutcomeRecorder, WeightAdapter, performance_report
from routeguard.models import DecisionType, Pattern, UserAction


@pytest.fixture
def recorder(store):
    return OutcomeRecorder(store)


def record_window(recorder, successes, total, agent="a"):
    for i in range(total):
        recorder.record([agent], Pattern.SEQUENTIAL, 40, i < successes, 1000.0)


def set_min_confidence(store, value):
    store.update_weights(lambda w: setattr(w, "min_confidence", value))


class TestOutcomeRecorder:
    """Tests for OutcomeRecorder."""

    def test_updates_agent_and_pattern_stats(self, store, recorder):
        """Each outcome updates agent and pattern counters."""
        recorder.record(["a", "b"], Pattern.PARALLEL, 55, True, 2000.0, tokens_used=1200)
        recorder.record(["a"], "sequential", 20, False, 1000.0)

        a = store.get_agent_stat("a")
        assert a.invocations == 2
        assert a.successes == 1
        assert a.failures == 1
        assert a.avg_latency_ms == pytest.approx(1500.0)
        assert store.get_agent_stat("b").invocations == 1
        assert store.get_pattern_stat(Pattern.PARALLEL).total == 1
        assert store.get_pattern_stat(Pattern.SEQUENTIAL).success_rate == 0.0
        assert store.outcome_count() == 2

    def test_success_rate_matches_counters(self, store, recorder):
        """success_rate always equals successes / invocations."""
        results = [True, False, True, True, False, True, False]
        for ok in results:
            recorder.record(["x"], Pattern.SINGLE, 10, ok, 100.0)
            stat = store.get_agent_stat("x")
            assert stat.success_rate == stat.successes / stat.invocations
        assert store.get_agent_stat("x").successes == 4

    def test_duplicate_agents_counted_once(self, store, recorder):
        """An agent listed twice in one outcome is counted once."""
        recorder.record(["a", "a"], Pattern.SEQUENTIAL, 10, True, 10.0)
        assert store.get_agent_stat("a").invocations == 1

    def test_user_action_stored(self, store, recorder):
        """User actions are normalized onto the outcome."""
        outcome = recorder.record(["a"], Pattern.SINGLE, 10, True, 10.0, user_action="approved")
        assert outcome.user_action == UserAction.APPROVED
        assert store.recent_outcomes(1)[0].user_action == UserAction.APPROVED

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"agents": []},
            {"agents": "a"},
            {"pattern": "swarm"},
            {"complexity": 101},
            {"success": "yes"},
            {"latency_ms": -1},
            {"tokens_used": -5},
            {"user_action": "maybe"},
        ],
    )
    def test_invalid_input_writes_nothing(self, store, recorder, kwargs):
        """Validation failures leave all state untouched."""
        args = {
            "agents": ["a"],
            "pattern": Pattern.SINGLE,
            "complexity": 10,
            "success": True,
            "latency_ms": 10.0,
            "tokens_used": 0,
            "user_action": UserAction.IGNORED,
        }
        args.update(kwargs)
        with pytest.raises(InputValidationError):
            recorder.record(**args)
        assert store.outcome_count() == 0
        assert store.get_agent_stat("a") is None


class TestWeightAdapter:
    """Tests for WeightAdapter."""

    def test_high_success_raises_threshold(self, store, recorder):
        """avg_success 0.95 over 20 raises min_confidence by one step."""
        record_window(recorder, successes=19, total=20)
        result = WeightAdapter(store).adapt()
        assert result.adapted is True
        assert result.reason == "increased"
        assert result.avg_success == pytest.approx(0.95)
        assert store.get_weights().min_confidence == pytest.approx(0.75)

    def test_raise_capped_at_ceiling(self, store, recorder):
        """The threshold never exceeds 0.90."""
        set_min_confidence(store, 0.88)
        record_window(recorder, successes=20, total=20)
        WeightAdapter(store).adapt()
        assert store.get_weights().min_confidence == pytest.approx(0.90)

    def test_low_success_lowers_threshold(self, store, recorder):
        """avg_success 0.40 lowers min_confidence by one step."""
        record_window(recorder, successes=8, total=20)
        result = WeightAdapter(store).adapt()
        assert result.reason == "decreased"
        assert store.get_weights().min_confidence == pytest.approx(0.65)

    def test_lower_floored(self, store, recorder):
        """The threshold never drops below 0.50."""
        set_min_confidence(store, 0.52)
        record_window(recorder, successes=0, total=20)
        WeightAdapter(store).adapt()
        assert store.get_weights().min_confidence == pytest.approx(0.50)

    def test_middle_band_unchanged(self, store, recorder):
        """avg_success 0.70 leaves the threshold alone."""
        record_window(recorder, successes=14, total=20)
        result = WeightAdapter(store).adapt()
        assert result.reason == "unchanged"
        assert store.get_weights().min_confidence == pytest.approx(0.70)

    def test_insufficient_samples(self, store, recorder):
        """Fewer than min_samples outcomes is a no-op."""
        record_window(recorder, successes=19, total=19)
        result = WeightAdapter(store).adapt()
        assert result.adapted is False
        assert result.reason == "insufficient_samples"
        assert store.get_weights().min_confidence == pytest.approx(0.70)

    def test_idempotent_without_new_outcomes(self, store, recorder):
        """Re-running on an unchanged log does not move the threshold."""
        record_window(recorder, successes=20, total=20)
        adapter = WeightAdapter(store)
        adapter.adapt()
        second = adapter.adapt()
        assert second.adapted is False
        assert second.reason == "no_new_outcomes"
        assert store.get_weights().min_confidence == pytest.approx(0.75)

    def test_window_uses_newest_outcomes(self, store, recorder):
        """Only the newest window of outcomes is considered."""
        record_window(recorder, successes=0, total=100)
        record_window(recorder, successes=100, total=100)
        result = WeightAdapter(store).adapt()
        assert result.sample_count == 100
        assert result.avg_success == pytest.approx(1.0)

    def test_version_bumped(self, store, recorder):
        """A change to the weights bumps their version."""
        before = store.get_weights().version
        record_window(recorder, successes=20, total=20)
        WeightAdapter(store).adapt()
        assert store.get_weights().version == before + 1

    def test_decision_logged(self, store, recorder, tracer):
        """Adaptations are recorded as learning_optimization decisions."""
        record_window(recorder, successes=20, total=20)
        WeightAdapter(store, tracer=tracer).adapt()
        decisions = tracer.query_decisions(DecisionType.LEARNING_OPTIMIZATION)
        assert len(decisions) == 1
        assert decisions[0].outcome == "increased"
        assert decisions[0].confidence == pytest.approx(1.0)


class TestPerformanceReport:
    """Tests for performance_report."""

    def test_report_contents(self, store, recorder):
        """Report lists weights, top agents and pattern performance."""
        recorder.record(["good"], Pattern.SEQUENTIAL, 10, True, 100.0)
        recorder.record(["bad"], Pattern.SEQUENTIAL, 10, False, 100.0)
        report = performance_report(store)
        assert report["weights"]["success_rate"] == 0.40
        assert report["thresholds"]["min_confidence"] == 0.70
        assert report["outcomes_recorded"] == 2
        assert [a["agent_id"] for a in report["top_agents"]] == ["good", "bad"]
        assert report["pattern_performance"]["sequential"]["total"] == 2
