"""
Trace collection for reflective analysis.

TraceCollector turns execution events into deduplicated ExecutionTrace
records. Events arrive through ingest()/collect_trace(); binding a host
event bus to these entrypoints is left to the caller.
"""

import logging
import secrets
import threading
import time
from typing import Any, Dict, List, Mapping, Optional

from ..entities import ExecutionTrace


logger = logging.getLogger(__name__)


class TraceCollector:
    """Thread-safe store of execution traces keyed by trace_id."""

    def __init__(self):
        self._traces: Dict[str, ExecutionTrace] = {}
        self._lock = threading.Lock()

    @property
    def traces(self) -> List[ExecutionTrace]:
        """Snapshot of collected traces in arrival order."""
        with self._lock:
            return list(self._traces.values())

    @property
    def collected_count(self) -> int:
        with self._lock:
            return len(self._traces)

    def ingest(self, event: Mapping[str, Any]) -> ExecutionTrace:
        """
        Record an event of the form
        {trace_id?, event_name, timestamp?, span_id?, attributes, metadata}.

        Returns:
            The stored ExecutionTrace
        """
        event_name = event.get("event_name")
        if not event_name:
            raise ValueError("Trace event requires an event_name")
        return self.collect_trace(event_name, event)

    def collect_trace(self, event_name: str, event_data: Mapping[str, Any]) -> ExecutionTrace:
        """
        Collect a trace from raw event data.

        A missing trace_id is generated. Submitting an id that is already
        stored replaces the earlier record, so the count never exceeds the
        number of distinct ids.
        """
        trace_id = event_data.get("trace_id") or self._generate_trace_id()
        trace = ExecutionTrace(
            trace_id=trace_id,
            event_name=event_name,
            timestamp=event_data.get("timestamp") or time.time(),
            span_id=event_data.get("span_id"),
            attributes=event_data.get("attributes") or {},
            metadata=event_data.get("metadata") or {},
        )

        with self._lock:
            if trace_id in self._traces:
                logger.debug(f"Replacing duplicate trace {trace_id}")
            self._traces[trace_id] = trace

        return trace

    def traces_for_run(self, run_id: str) -> List[ExecutionTrace]:
        """Traces whose metadata carries the given optimization_run_id."""
        return [t for t in self.traces if t.metadata.get("optimization_run_id") == run_id]

    def traces_where(self, **metadata: Any) -> List[ExecutionTrace]:
        """Traces whose metadata matches every given key/value."""
        return [
            t for t in self.traces
            if all(t.metadata.get(key) == value for key, value in metadata.items())
        ]

    def llm_traces(self) -> List[ExecutionTrace]:
        return [t for t in self.traces if t.is_llm_trace()]

    def module_traces(self) -> List[ExecutionTrace]:
        return [t for t in self.traces if t.is_module_trace()]

    def get(self, trace_id: str) -> Optional[ExecutionTrace]:
        with self._lock:
            return self._traces.get(trace_id)

    def clear(self):
        with self._lock:
            self._traces.clear()

    @staticmethod
    def _generate_trace_id() -> str:
        return f"gepa-trace-{secrets.token_hex(4)}"
