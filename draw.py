#!/usr/bin/env python3
"""
Window Controller Emulator Log Visualization Script
Parse per-flow CSV logs written by simulate.py and generate charts
"""

import argparse
import csv
import glob
import os
import re
from dataclasses import dataclass
from typing import Dict, List

import matplotlib.pyplot as plt
import numpy as np

plt.rcParams["font.sans-serif"] = ["DejaVu Sans"]
plt.rcParams["axes.unicode_minus"] = False

MTU_BYTES = 1500

COLORS = {
    "probabilistic": "#2ecc71",
    "aimd": "#3498db",
    "delay": "#e74c3c",
    "gradient": "#9b59b6",
    "fixed": "#7f8c8d",
}


@dataclass
class FlowTrace:
    """Single flow log"""

    strategy: str
    flow_id: int
    times_ms: np.ndarray
    rtts_ms: np.ndarray
    windows: np.ndarray
    timeouts_ms: np.ndarray

    @property
    def duration_ms(self) -> float:
        """Span covered by the log (ms)"""
        if len(self.times_ms) > 1:
            return float(self.times_ms[-1] - self.times_ms[0])
        return 0.0

    @property
    def throughput_mbps(self) -> float:
        """Calculate throughput (Mbps)"""
        if self.duration_ms > 0:
            return len(self.times_ms) * MTU_BYTES * 8 / (self.duration_ms / 1e3) / 1e6
        return 0.0

    @property
    def avg_rtt_ms(self) -> float:
        """Average RTT (ms)"""
        if len(self.rtts_ms) > 0:
            return float(np.mean(self.rtts_ms))
        return 0.0

    @property
    def p95_rtt_ms(self) -> float:
        """95th percentile RTT (ms)"""
        if len(self.rtts_ms) > 0:
            return float(np.percentile(self.rtts_ms, 95))
        return 0.0


def parse_flow_log(filepath: str, strategy: str, flow_id: int) -> FlowTrace:
    """Parse one simulate.py CSV log"""
    columns: Dict[str, List[float]] = {
        "time_ms": [],
        "rtt_ms": [],
        "window": [],
        "timeout_ms": [],
    }
    with open(filepath, "r", newline="") as f:
        for row in csv.DictReader(f):
            for name in columns:
                columns[name].append(float(row[name]))

    return FlowTrace(
        strategy=strategy,
        flow_id=flow_id,
        times_ms=np.array(columns["time_ms"]),
        rtts_ms=np.array(columns["rtt_ms"]),
        windows=np.array(columns["window"]),
        timeouts_ms=np.array(columns["timeout_ms"]),
    )


def load_all_results(log_dir: str = "./logs/sim") -> List[FlowTrace]:
    """Load all flow logs"""
    results = []
    for filepath in sorted(glob.glob(os.path.join(log_dir, "*_flow*.csv"))):
        filename = os.path.basename(filepath)
        # Parse filename: strategy_flowN.csv
        match = re.match(r"(\w+?)_flow(\d+)\.csv$", filename)
        if match:
            results.append(
                parse_flow_log(filepath, match.group(1), int(match.group(2)))
            )
    return results


def plot_time_series(results: List[FlowTrace], output_dir: str = "./logs/plots"):
    """Plot window and RTT over time, one row per strategy"""
    os.makedirs(output_dir, exist_ok=True)

    by_strategy: Dict[str, List[FlowTrace]] = {}
    for r in results:
        by_strategy.setdefault(r.strategy, []).append(r)

    strategies = sorted(by_strategy)
    fig, axes = plt.subplots(len(strategies), 2, figsize=(14, 3.5 * len(strategies)))
    if len(strategies) == 1:
        axes = axes.reshape(1, -1)

    for i, strategy in enumerate(strategies):
        for trace in by_strategy[strategy]:
            seconds = trace.times_ms / 1e3
            label = f"flow {trace.flow_id}"
            axes[i, 0].step(seconds, trace.windows, where="post", label=label)
            axes[i, 1].plot(seconds, trace.rtts_ms, linewidth=0.8, label=label)

        axes[i, 0].set_ylabel("Window (datagrams)")
        axes[i, 0].set_title(f"{strategy}: window")
        axes[i, 1].set_ylabel("RTT (ms)")
        axes[i, 1].set_title(f"{strategy}: RTT")
        for ax in axes[i]:
            ax.set_xlabel("Time (s)")
            ax.grid(alpha=0.3)
            ax.legend(fontsize=8)

    plt.tight_layout()
    plt.savefig(os.path.join(output_dir, "time_series.png"), dpi=150)
    plt.close()

    print(f"Time series charts saved to: {output_dir}")


def plot_strategy_comparison(
    results: List[FlowTrace], output_dir: str = "./logs/plots"
):
    """Plot strategy comparison charts"""
    os.makedirs(output_dir, exist_ok=True)

    strategies = sorted({r.strategy for r in results})
    if len(strategies) < 2:
        print("At least 2 strategies required for comparison")
        return

    throughputs = []
    avg_rtts = []
    p95_rtts = []
    for strategy in strategies:
        traces = [r for r in results if r.strategy == strategy]
        throughputs.append(sum(t.throughput_mbps for t in traces))
        avg_rtts.append(np.mean([t.avg_rtt_ms for t in traces]))
        p95_rtts.append(np.mean([t.p95_rtt_ms for t in traces]))

    x = np.arange(len(strategies))
    colors = [COLORS.get(s, "#333333") for s in strategies]
    fig, axes = plt.subplots(1, 2, figsize=(14, 5))

    # Throughput
    axes[0].bar(x, throughputs, 0.6, color=colors, edgecolor="black", linewidth=0.5)
    axes[0].set_ylabel("Throughput (Mbps)")
    axes[0].set_title("Strategy Throughput Comparison")

    # Delay
    width = 0.35
    axes[1].bar(x - width / 2, avg_rtts, width, label="mean", color=colors)
    axes[1].bar(
        x + width / 2, p95_rtts, width, label="p95", color=colors, alpha=0.5
    )
    axes[1].set_ylabel("RTT (ms)")
    axes[1].set_title("Strategy Delay Comparison")
    axes[1].legend()

    for ax in axes:
        ax.set_xticks(x)
        ax.set_xticklabels(strategies, rotation=30, ha="right")
        ax.grid(axis="y", alpha=0.3)

    plt.tight_layout()
    plt.savefig(os.path.join(output_dir, "strategy_comparison.png"), dpi=150)
    plt.close()

    print(f"Strategy comparison charts saved to: {output_dir}")


def generate_summary_table(results: List[FlowTrace], output_dir: str = "./logs/plots"):
    """Generate summary table"""
    os.makedirs(output_dir, exist_ok=True)

    summary = []
    for r in results:
        summary.append(
            {
                "Strategy": r.strategy,
                "Flow": r.flow_id,
                "Throughput (Mbps)": f"{r.throughput_mbps:.2f}",
                "Mean RTT (ms)": f"{r.avg_rtt_ms:.1f}",
                "P95 RTT (ms)": f"{r.p95_rtt_ms:.1f}",
                "Mean Window": f"{np.mean(r.windows) if len(r.windows) else 0:.1f}",
            }
        )

    csv_path = os.path.join(output_dir, "summary.csv")
    with open(csv_path, "w", newline="") as f:
        writer = csv.DictWriter(f, fieldnames=summary[0].keys())
        writer.writeheader()
        writer.writerows(summary)

    print(f"Summary table saved to: {csv_path}")
    return csv_path


def process_log_dir(log_dir: str, output_dir: str) -> bool:
    """Load one log directory and generate plots"""
    print(f"\n--- Processing: {log_dir} -> {output_dir} ---")

    results = [r for r in load_all_results(log_dir) if len(r.times_ms) > 0]
    print(f"Loaded {len(results)} flow logs from {log_dir}")

    if not results:
        print(f"Warning: No flow logs found in {log_dir}")
        return False

    plot_time_series(results, output_dir)
    plot_strategy_comparison(results, output_dir)
    generate_summary_table(results, output_dir)
    return True


def main():
    """Main function"""
    parser = argparse.ArgumentParser(description="Window Controller Log Visualization")
    parser.add_argument(
        "--log-dir", default="./logs/sim", help="Directory with simulate.py logs"
    )
    parser.add_argument(
        "--output-dir", default="./logs/plots", help="Output directory for plots"
    )
    args = parser.parse_args()

    print("=" * 60)
    print("Window Controller Log Visualization")
    print("=" * 60)

    if not os.path.isdir(args.log_dir):
        print(f"Warning: Directory not found: {args.log_dir}")
        return 1

    ok = process_log_dir(args.log_dir, args.output_dir)
    print("\n" + "=" * 60)
    print("All charts generated!" if ok else "No charts generated")
    print("=" * 60)
    return 0 if ok else 1


if __name__ == "__main__":
    raise SystemExit(main())
