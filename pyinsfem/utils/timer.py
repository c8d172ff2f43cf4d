"""Accumulated wall-clock time per named section."""
from __future__ import annotations

import time
from collections import defaultdict
from contextlib import contextmanager


class SectionTimer:
    def __init__(self):
        self.totals = defaultdict(float)
        self.calls = defaultdict(int)

    @contextmanager
    def section(self, name: str):
        tic = time.perf_counter()
        try:
            yield
        finally:
            self.totals[name] += time.perf_counter() - tic
            self.calls[name] += 1

    def summary(self) -> str:
        if not self.totals:
            return "no timed sections"
        width = max(len(k) for k in self.totals)
        rows = [f"{'section':<{width}}  calls   wall [s]"]
        for name, total in sorted(self.totals.items(), key=lambda kv: -kv[1]):
            rows.append(f"{name:<{width}}  {self.calls[name]:5d}  {total:9.3f}")
        return "\n".join(rows)
