import csv
import logging
import os
import sys
import time
from typing import List, Optional, TextIO

import matplotlib
matplotlib.use("Agg")  # Charts are written to files; no display needed
import matplotlib.pyplot as plt

from metrics import ResultSet, Sample, Summary, format_latency, format_size

logger = logging.getLogger(__name__)

CHART_SIZE_INCHES = (8, 4)


def print_summary(summary: Summary, label: str = "Client", out: Optional[TextIO] = None):
    out = out or sys.stdout
    print(f"{label}: {summary.total} requests, {summary.succeeded} succeeded, {summary.failed} failed"
          + (f", {summary.abandoned} abandoned" if summary.abandoned else ""), file=out)
    print(f"Average latency: {format_latency(summary.mean_latency)} ms "
          f"(trimmed {format_latency(summary.trimmed_mean_latency)} ms, "
          f"min {format_latency(summary.min_latency)} ms, max {format_latency(summary.max_latency)} ms)",
          file=out)
    if summary.succeeded:
        print(", ".join(f"{name}={format_latency(value)}" for name, value in summary.percentiles.items())
              + " ms", file=out)
    for reason, count in summary.failure_reasons.items():
        print(f"  {reason}: {count}", file=out)


def _ensure_parent(path: str):
    parent = os.path.dirname(path)
    if parent and not os.path.exists(parent):
        os.makedirs(parent)


def save_results_csv(result_set: ResultSet, filename: str):
    _ensure_parent(filename)
    with open(filename, 'w', newline='') as f:
        writer = csv.writer(f)
        writer.writerow(Sample._fields + ("latency_ms",))
        for s in result_set:
            writer.writerow(list(s) + [format_latency(s.latency)])
    logger.info(f"Detailed results saved to {filename}")


def append_summary_csv(summary: Summary, filename: str, label: str):
    _ensure_parent(filename)
    row = {"timestamp": time.strftime('%Y-%m-%d %H:%M:%S'), "label": label, **summary.as_row()}
    file_exists = os.path.isfile(filename)
    with open(filename, 'a', newline='') as f:
        csv_writer = csv.DictWriter(f, fieldnames=list(row.keys()))
        if not file_exists:
            csv_writer.writeheader()
        csv_writer.writerow(row)
    logger.info(f"Summary appended to {filename}")


def write_latency_chart(summary: Summary, path: str, caption: str = "Request latency"):
    """Latency of each successful attempt, in dispatch order."""
    _ensure_parent(path)
    fig, ax = plt.subplots(figsize=CHART_SIZE_INCHES)
    try:
        if summary.latencies:
            indices = [index for index, _ in summary.latencies]
            values_ms = [latency * 1000 for _, latency in summary.latencies]
            ax.plot(indices, values_ms, color="tab:blue", linewidth=1, label="Request")
            if summary.mean_latency is not None:
                ax.axhline(summary.mean_latency * 1000, color="tab:red", linestyle="--", linewidth=1,
                           label=f"mean {format_latency(summary.mean_latency)} ms")
            ax.legend(loc="upper left")
        else:
            ax.text(0.5, 0.5, "no successful requests", ha="center", va="center", transform=ax.transAxes)
        ax.set_title(caption)
        ax.set_xlabel("Attempt")
        ax.set_ylabel("Latency (ms)")
        ax.grid(axis="x", alpha=0.3)
        fig.savefig(path, format="svg", bbox_inches="tight")
    finally:
        plt.close(fig)
    logger.info(f"Latency chart written to {path}")


def write_payload_chart(measurements: List, path: str,
                        caption: str = "Same machine HTTP requests by payload size"):
    """Mean latency per payload size; sizes without a success are skipped."""
    _ensure_parent(path)
    points = [(m.payload_size, m.summary.mean_latency * 1000)
              for m in measurements if m.summary.mean_latency is not None]
    fig, ax = plt.subplots(figsize=CHART_SIZE_INCHES)
    try:
        if points:
            sizes, values_ms = zip(*points)
            ax.plot(sizes, values_ms, color="tab:blue", marker=".", label="Request")
            ax.set_xscale("log", base=2)
            ax.set_xticks(sizes[::max(1, len(sizes) // 10)])
            ax.set_xticklabels([format_size(s) for s in sizes[::max(1, len(sizes) // 10)]], rotation=45)
            ax.legend(loc="upper left")
        ax.set_title(caption)
        ax.set_xlabel("Size")
        ax.set_ylabel("Average ms")
        fig.savefig(path, format="svg", bbox_inches="tight")
    finally:
        plt.close(fig)
    logger.info(f"Payload chart written to {path}")
