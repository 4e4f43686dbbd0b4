"""
Thread-aware tracing utility for performance analysis.

Usage:
    from stereodeblur.tracing import tracer, trace

    tracer.enable()

    with trace("propagation"):
        walk_tree()

    @trace_function("joint_psf")
    def estimate():
        pass

    tracer.print_summary()

Spans are nested per thread: a span opened inside a worker thread is a
child of the spans that the same thread has open, so the pass spans of
the calling thread and the node spans of the pool threads are reported
side by side.
"""

import threading
import time
from contextlib import contextmanager
from functools import wraps
from collections import defaultdict


class Tracer:
    """Global tracer collecting span counts and wall time."""

    def __init__(self):
        self._enabled = False
        self._lock = threading.Lock()
        self._local = threading.local()
        self._spans = defaultdict(lambda: {"count": 0, "total_time": 0.0})
        self._call_order = []

    def _stack(self):
        stack = getattr(self._local, "stack", None)
        if stack is None:
            stack = self._local.stack = []
        return stack

    def enable(self):
        """Enable tracing and drop previously collected data."""
        self.reset()
        self._enabled = True

    def disable(self):
        self._enabled = False

    def is_enabled(self):
        return self._enabled

    def reset(self):
        with self._lock:
            self._spans.clear()
            self._call_order.clear()
        self._local = threading.local()

    def enter(self, name):
        if not self._enabled:
            return
        self._stack().append((name, time.perf_counter()))

    def exit(self, name):
        if not self._enabled:
            return
        stack = self._stack()
        if not stack:
            return

        end_time = time.perf_counter()
        span_name, start_time = stack.pop()
        self._add("/".join([s[0] for s in stack] + [span_name]), end_time - start_time)

    def _add(self, full_name, elapsed):
        with self._lock:
            if full_name not in self._spans:
                self._call_order.append(full_name)
            self._spans[full_name]["count"] += 1
            self._spans[full_name]["total_time"] += elapsed

    def get_summary(self):
        """Get timing summary as a list of dicts."""
        with self._lock:
            results = []
            for name in self._call_order:
                data = self._spans[name]
                results.append({
                    "name": name,
                    "count": data["count"],
                    "total_time": data["total_time"],
                    "avg_time": data["total_time"] / data["count"] if data["count"] > 0 else 0,
                })
        return results

    def print_summary(self):
        summary = self.get_summary()
        if not summary:
            print("No tracing data collected.")
            return

        # worker spans overlap in time, so percentages refer to summed span time
        top_level_time = sum(
            s["total_time"] for s in summary if "/" not in s["name"]
        )

        print("\n" + "=" * 80)
        print("TIMING SUMMARY")
        print("=" * 80)
        print(f"{'Span':<50} {'Count':>8} {'Total (s)':>12} {'Avg (ms)':>12} {'%':>6}")
        print("-" * 80)

        for span in summary:
            name = span["name"]
            depth = name.count("/")
            display_name = "  " * depth + name.split("/")[-1]
            if len(display_name) > 50:
                display_name = display_name[:47] + "..."

            pct = (span["total_time"] / top_level_time * 100) if top_level_time > 0 else 0

            print(f"{display_name:<50} {span['count']:>8} {span['total_time']:>12.4f} "
                  f"{span['avg_time']*1000:>12.3f} {pct:>5.1f}%")

        print("-" * 80)
        print(f"{'Total traced time:':<50} {'':<8} {top_level_time:>12.4f}")
        print("=" * 80 + "\n")


tracer = Tracer()


@contextmanager
def trace(name):
    """Context manager for tracing a code block."""
    tracer.enter(name)
    try:
        yield
    finally:
        tracer.exit(name)


def trace_function(name=None):
    """Decorator for tracing a function."""
    def decorator(func):
        span_name = name or func.__name__

        @wraps(func)
        def wrapper(*args, **kwargs):
            tracer.enter(span_name)
            try:
                return func(*args, **kwargs)
            finally:
                tracer.exit(span_name)

        return wrapper
    return decorator
