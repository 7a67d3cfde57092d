#!/usr/bin/env python3
"""
Bottleneck link emulator for comparing window controllers.

Millisecond-step, deterministic model of one bottleneck shared by one or
more flows:

    sender --(delay)--> FIFO queue --(delivery opportunities)--> receiver
    sender <------------------(delay)------------------------------ ack

Delivery opportunities come either from a constant rate or from a
mahimahi-style trace file (one millisecond timestamp per line, each line
one MTU-sized delivery opportunity, looped when exhausted). Every flow runs
its own controller; the sender keeps at most window_size() datagrams in
flight and, when no ack has arrived for timeout_ms(), sends one more
datagram flagged as timeout-triggered.
"""

import argparse
import csv
import heapq
import logging
import os
from collections import deque
from dataclasses import dataclass, field
from typing import Deque, Dict, List, Optional, Tuple

import numpy as np

from controller import STRATEGIES, WindowController, make_controller

logger = logging.getLogger("Simulator")

MTU_BYTES = 1500


@dataclass
class LinkConfig:
    """Bottleneck link parameters"""

    rate_pkts_per_ms: float = 1.0  # used when no trace is given
    delay_ms: int = 20  # one-way propagation delay
    queue_limit: Optional[int] = None  # packets; None = unbounded
    trace: Optional[np.ndarray] = None  # delivery opportunity timestamps (ms)


@dataclass
class FlowLog:
    """Per-ack record of one flow's controller"""

    flow_id: int
    strategy: str
    times: List[int] = field(default_factory=list)
    sequences: List[int] = field(default_factory=list)
    rtts: List[int] = field(default_factory=list)
    windows: List[int] = field(default_factory=list)
    timeouts: List[int] = field(default_factory=list)
    sent: int = 0
    timeout_sends: int = 0
    dropped: int = 0

    @property
    def acked(self) -> int:
        return len(self.sequences)

    def throughput_mbps(self, duration_ms: int) -> float:
        """Goodput (Mbps) assuming MTU-sized datagrams"""
        if duration_ms <= 0:
            return 0.0
        return self.acked * MTU_BYTES * 8 / (duration_ms / 1e3) / 1e6

    @property
    def avg_rtt_ms(self) -> float:
        return float(np.mean(self.rtts)) if self.rtts else 0.0

    @property
    def p95_rtt_ms(self) -> float:
        return float(np.percentile(self.rtts, 95)) if self.rtts else 0.0


class Flow:
    """Sender side of one flow"""

    def __init__(self, flow_id: int, controller: WindowController):
        self.flow_id = flow_id
        self.controller = controller
        self.log = FlowLog(flow_id, controller.name)
        self.next_seq = 0
        self.highest_acked = -1
        self.last_activity = 0
        self.send_times: Dict[int, int] = {}

    @property
    def in_flight(self) -> int:
        return self.next_seq - (self.highest_acked + 1)

    def send(self, now: int, after_timeout: bool = False) -> Tuple[int, int]:
        seq = self.next_seq
        self.next_seq += 1
        self.send_times[seq] = now
        self.log.sent += 1
        if after_timeout:
            self.log.timeout_sends += 1
        self.controller.datagram_was_sent(seq, now, after_timeout)
        return seq, now

    def receive_ack(self, seq: int, recv_time_peer: int, now: int):
        send_time = self.send_times.pop(seq)
        self.highest_acked = max(self.highest_acked, seq)
        self.last_activity = now
        self.controller.ack_received(seq, send_time, recv_time_peer, now)

        log = self.log
        log.times.append(now)
        log.sequences.append(seq)
        log.rtts.append(now - send_time)
        log.windows.append(self.controller.window_size())
        log.timeouts.append(self.controller.timeout_ms())


class Simulator:
    """
    Runs the flows against the link for `duration_ms` milliseconds.

    Args:
        flows: Senders sharing the bottleneck
        link: Link parameters
    """

    def __init__(self, flows: List[Flow], link: LinkConfig):
        self.flows = {f.flow_id: f for f in flows}
        self.link = link
        self.now = 0

        # (arrival_at_queue, flow_id, seq), FIFO because delay is constant
        self._to_queue: Deque[Tuple[int, int, int]] = deque()
        self._queue: Deque[Tuple[int, int]] = deque()
        # (ack_arrival, flow_id, seq, recv_time_peer)
        self._acks: List[Tuple[int, int, int, int]] = []

        self._credit = 0.0
        self._trace_index = 0
        self._trace_offset = 0

    def _opportunities(self, now: int) -> int:
        """Delivery opportunities at millisecond `now`"""
        trace = self.link.trace
        if trace is None:
            self._credit += self.link.rate_pkts_per_ms
            count = int(self._credit)
            self._credit -= count
            return count

        count = 0
        period = int(trace[-1]) + 1
        while trace[self._trace_index] + self._trace_offset <= now:
            if trace[self._trace_index] + self._trace_offset == now:
                count += 1
            self._trace_index += 1
            if self._trace_index == len(trace):
                self._trace_index = 0
                self._trace_offset += period
        return count

    def step(self):
        now = self.now

        # 1. Acks due now
        while self._acks and self._acks[0][0] <= now:
            _, flow_id, seq, recv_time_peer = heapq.heappop(self._acks)
            self.flows[flow_id].receive_ack(seq, recv_time_peer, now)

        # 2. Packets reaching the bottleneck
        while self._to_queue and self._to_queue[0][0] <= now:
            _, flow_id, seq = self._to_queue.popleft()
            limit = self.link.queue_limit
            if limit is not None and len(self._queue) >= limit:
                flow = self.flows[flow_id]
                flow.log.dropped += 1
                flow.send_times.pop(seq, None)
                continue
            self._queue.append((flow_id, seq))

        # 3. Deliveries
        for _ in range(self._opportunities(now)):
            if not self._queue:
                break
            flow_id, seq = self._queue.popleft()
            heapq.heappush(self._acks, (now + self.link.delay_ms, flow_id, seq, now))

        # 4. Senders
        for flow in self.flows.values():
            controller = flow.controller
            if now - flow.last_activity >= controller.timeout_ms():
                self._enqueue(flow, *flow.send(now, after_timeout=True))
                flow.last_activity = now
            while flow.in_flight < controller.window_size():
                self._enqueue(flow, *flow.send(now))
                if flow.in_flight == 1:
                    flow.last_activity = now

        self.now += 1

    def _enqueue(self, flow: Flow, seq: int, send_time: int):
        self._to_queue.append((send_time + self.link.delay_ms, flow.flow_id, seq))

    def run(self, duration_ms: int) -> List[FlowLog]:
        while self.now < duration_ms:
            self.step()
        return [f.log for f in self.flows.values()]


def load_trace(path: str) -> np.ndarray:
    """Load a mahimahi-style delivery trace (one ms timestamp per line)"""
    trace = np.loadtxt(path, dtype=np.int64, ndmin=1)
    if trace.size == 0:
        raise ValueError(f"Empty trace file: {path}")
    return np.sort(trace)


def run_simulation(
    strategy: str,
    duration_ms: int,
    link: LinkConfig,
    flows: int = 1,
    **overrides,
) -> List[FlowLog]:
    """Build one controller per flow and run the emulator"""
    senders = []
    for flow_id in range(1, flows + 1):
        logger.info(f"Creating {strategy} controller for flow {flow_id}")
        senders.append(Flow(flow_id, make_controller(strategy, **overrides)))
    return Simulator(senders, link).run(duration_ms)


def write_flow_log(log: FlowLog, output_dir: str) -> str:
    """Write one flow's per-ack log as CSV"""
    os.makedirs(output_dir, exist_ok=True)
    path = os.path.join(output_dir, f"{log.strategy}_flow{log.flow_id}.csv")
    with open(path, "w", newline="") as f:
        writer = csv.writer(f)
        writer.writerow(["time_ms", "sequence", "rtt_ms", "window", "timeout_ms"])
        writer.writerows(
            zip(log.times, log.sequences, log.rtts, log.windows, log.timeouts)
        )
    return path


def summarize(logs: List[FlowLog], duration_ms: int):
    for log in logs:
        print(
            f"[{log.strategy}] flow {log.flow_id}: "
            f"throughput={log.throughput_mbps(duration_ms):.2f} Mbps, "
            f"avg_rtt={log.avg_rtt_ms:.1f} ms, p95_rtt={log.p95_rtt_ms:.1f} ms, "
            f"sent={log.sent}, acked={log.acked}, "
            f"timeouts={log.timeout_sends}, dropped={log.dropped}"
        )


def main():
    parser = argparse.ArgumentParser(description="Datagram window controller emulator")
    parser.add_argument(
        "--strategy",
        action="append",
        choices=sorted(STRATEGIES),
        help="Strategy to run (repeatable), Default: all",
    )
    parser.add_argument(
        "--duration", type=int, default=10000, help="Duration in ms, Default: 10000"
    )
    parser.add_argument(
        "--rate",
        type=float,
        default=1.0,
        help="Link rate in packets/ms when no trace is given, Default: 1.0",
    )
    parser.add_argument("--trace", default=None, help="mahimahi delivery trace file")
    parser.add_argument(
        "--delay", type=int, default=20, help="One-way delay in ms, Default: 20"
    )
    parser.add_argument(
        "--queue-limit", type=int, default=None, help="Queue limit in packets"
    )
    parser.add_argument("--flows", type=int, default=1, help="Number of flows")
    parser.add_argument(
        "--output-dir", default="./logs/sim", help="Directory for per-flow CSV logs"
    )
    parser.add_argument(
        "--verbose", action="store_true", default=False, help="Verbose, Default: False"
    )
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="[%(asctime)s] %(levelname)s - %(message)s",
        datefmt="%H:%M:%S",
    )

    link = LinkConfig(
        rate_pkts_per_ms=args.rate,
        delay_ms=args.delay,
        queue_limit=args.queue_limit,
        trace=load_trace(args.trace) if args.trace else None,
    )

    print("=" * 60)
    print("Datagram Window Controller Emulator")
    print("=" * 60)

    for strategy in args.strategy or sorted(STRATEGIES):
        logs = run_simulation(strategy, args.duration, link, flows=args.flows)
        summarize(logs, args.duration)
        for log in logs:
            write_flow_log(log, args.output_dir)

    print(f"Flow logs saved to: {args.output_dir}")


if __name__ == "__main__":
    main()
