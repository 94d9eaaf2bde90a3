"""
Test trace collection and queries.
"""

import threading

import pytest

from evoprompt.core import TraceCollector


class TestTraceCollection:
    """Test ingesting execution events."""

    def test_collect_generates_id(self):
        """Test a missing trace id is generated."""
        collector = TraceCollector()
        trace = collector.collect_trace("llm.call", {"attributes": {"tokens": 5}})

        assert trace.trace_id.startswith("gepa-trace-")
        assert len(trace.trace_id) == len("gepa-trace-") + 8
        assert collector.collected_count == 1

    def test_duplicate_trace_id_recorded_once(self):
        """Test submitting the same trace id twice keeps one record."""
        collector = TraceCollector()
        collector.collect_trace("llm.call", {"trace_id": "abc", "attributes": {"response": "first"}})
        collector.collect_trace("llm.call", {"trace_id": "abc", "attributes": {"response": "second"}})

        assert collector.collected_count == 1
        assert collector.get("abc").response_text == "second"

    def test_ingest_requires_event_name(self):
        """Test events without a name are rejected."""
        collector = TraceCollector()
        with pytest.raises(ValueError):
            collector.ingest({"trace_id": "abc"})

    def test_ingest_event(self):
        """Test the explicit ingestion entrypoint."""
        collector = TraceCollector()
        trace = collector.ingest({
            "trace_id": "t1",
            "event_name": "llm.generate",
            "timestamp": 123.0,
            "span_id": "s1",
            "attributes": {"gen_ai.usage.total_tokens": 10},
            "metadata": {"optimization_run_id": "run-1"},
        })

        assert trace.timestamp == 123.0
        assert trace.span_id == "s1"
        assert collector.traces == [trace]

    def test_concurrent_writers(self):
        """Test concurrent writers never exceed the number of distinct ids."""
        collector = TraceCollector()

        def worker(offset):
            for i in range(50):
                collector.collect_trace("llm.call", {"trace_id": f"id-{(offset + i) % 60}"})

        threads = [threading.Thread(target=worker, args=(n * 10,)) for n in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert collector.collected_count == 60


class TestTraceQueries:
    """Test filtering collected traces."""

    @pytest.fixture
    def collector(self):
        collector = TraceCollector()
        collector.collect_trace("llm.predict", {"metadata": {"optimization_run_id": "r1", "generation": 0}})
        collector.collect_trace("module.predict_complete", {"metadata": {"optimization_run_id": "r1", "generation": 1}})
        collector.collect_trace("llm.predict", {"metadata": {"optimization_run_id": "r2", "generation": 0}})
        collector.collect_trace("cache.hit", {})
        return collector

    def test_traces_for_run(self, collector):
        assert len(collector.traces_for_run("r1")) == 2
        assert len(collector.traces_for_run("missing")) == 0

    def test_traces_where(self, collector):
        assert len(collector.traces_where(optimization_run_id="r1", generation=0)) == 1

    def test_type_queries(self, collector):
        assert len(collector.llm_traces()) == 2
        assert len(collector.module_traces()) == 1

    def test_clear(self, collector):
        collector.clear()
        assert collector.collected_count == 0
