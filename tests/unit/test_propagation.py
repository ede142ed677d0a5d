"""
Tests for propagation passes.
"""

from dynaform.core.enums import EvaluationOutcome, SkipReason
from dynaform.dependencies.propagation import EvaluationRecord, PropagationPass


def applied(rule_id, key):
    return EvaluationRecord(rule_id=rule_id, instance_key=key, outcome=EvaluationOutcome.APPLIED)


class TestPropagationPass:
    """Test PropagationPass."""

    def test_runs_in_rank_order(self):
        """Test that lower ranks run first regardless of enqueue order."""
        order = []
        pass_ = PropagationPass("p1")
        pass_.enqueue("tax", 2, "tax", lambda: order.append("tax") or applied("tax", "tax"))
        pass_.enqueue("markup", 1, "markup", lambda: order.append("markup") or applied("markup", "markup"))

        result = pass_.run()

        assert order == ["markup", "tax"]
        assert result.applied_keys == ["markup", "tax"]
        assert result.pass_id == "p1"
        assert result.finished_at is not None

    def test_work_can_enqueue_more(self):
        """Test that writes during a pass extend the same pass."""
        pass_ = PropagationPass()

        def first():
            pass_.enqueue("second", 5, "r2", lambda: applied("r2", "second"))
            return applied("r1", "first")

        pass_.enqueue("first", 1, "r1", first)
        assert pass_.run().applied_keys == ["first", "second"]

    def test_duplicate_enqueue(self):
        """Test that a queued instance is not queued twice."""
        pass_ = PropagationPass()
        assert pass_.enqueue("a", 1, "r", lambda: None) is True
        assert pass_.enqueue("a", 1, "r", lambda: None) is False

    def test_at_most_once(self):
        """Test that re-enqueueing an instance that ran records a skip."""
        pass_ = PropagationPass()

        def again():
            pass_.enqueue("a", 1, "r", lambda: applied("r", "a"), caused_by="b")
            return applied("r", "a")

        pass_.enqueue("a", 1, "r", again)
        result = pass_.run()

        assert pass_.has_run("a")
        assert len(result.applied) == 1
        assert result.skipped[0].skip_reason == SkipReason.ALREADY_APPLIED
        assert result.skipped[0].caused_by == "b"

    def test_deferred_armed_after_queue(self):
        """Test that deferred instances arm after synchronous work, last arm wins."""
        events = []
        pass_ = PropagationPass()
        pass_.defer("city", lambda: events.append("arm-1"))
        pass_.defer("city", lambda: events.append("arm-2"))
        pass_.enqueue("a", 1, "r", lambda: events.append("sync") or None)

        result = pass_.run()

        assert events == ["sync", "arm-2"]
        assert result.armed == ["city"]

    def test_to_dict(self):
        """Test the summary."""
        pass_ = PropagationPass("p")
        pass_.record(EvaluationRecord("r", "x", EvaluationOutcome.FAILED, error="boom"))
        data = pass_.run().to_dict()
        assert data["failed"] == 1
        assert data["records"][0]["error"] == "boom"
        assert data["duration_ms"] >= 0
