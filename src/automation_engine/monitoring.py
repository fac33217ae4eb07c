"""Metrics and structured event logging for trigger evaluation and executions."""
from __future__ import annotations

import logging
from collections import defaultdict
from typing import Any, Dict, List, Optional


class MetricsRecorder:
    """In-memory metrics recorder shared by the evaluator, executor and summarizer."""

    def __init__(self) -> None:
        self.counters: Dict[str, Dict[str, float]] = defaultdict(lambda: defaultdict(float))
        self.histograms: Dict[str, Dict[str, List[float]]] = defaultdict(dict)

    def inc(self, name: str, labels: Optional[Dict[str, str]] = None, value: float = 1) -> None:
        self.counters[name][self._labels_key(labels)] += value

    def observe(self, name: str, value: float, labels: Optional[Dict[str, str]] = None) -> None:
        bucket = self.histograms[name].setdefault(self._labels_key(labels), [])
        bucket.append(value)

    def get_counter(self, name: str, labels: Optional[Dict[str, str]] = None) -> float:
        return self.counters[name].get(self._labels_key(labels), 0.0)

    def total(self, name: str) -> float:
        """Sum of a counter across all label sets."""
        return sum(self.counters[name].values())

    def snapshot(self) -> Dict[str, Any]:
        """Counters plus count/avg/max per histogram, for logging or the CLI."""
        histograms = {}
        for name, series in self.histograms.items():
            for labels_key, values in series.items():
                if values:
                    histograms[f"{name}{{{labels_key}}}"] = {
                        "count": len(values),
                        "avg": sum(values) / len(values),
                        "max": max(values),
                    }
        return {
            "counters": {
                f"{name}{{{labels_key}}}": value
                for name, series in self.counters.items()
                for labels_key, value in series.items()
            },
            "histograms": histograms,
        }

    def _labels_key(self, labels: Optional[Dict[str, str]]) -> str:
        if not labels:
            return "__no_labels__"
        return "|".join(f"{k}={v}" for k, v in sorted(labels.items()))


class EventLogger:
    """Structured event logger for trigger and execution events."""

    def __init__(self, name: str = "automation.events") -> None:
        self.logger = logging.getLogger(name)

    def log(self, event: str, **payload: Any) -> None:
        self.logger.info(event, extra={"event": event, **payload})
