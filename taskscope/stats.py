"""Statistics for tasks, resources and async operations.

Instants are monotonic integer nanoseconds (as from ``time.monotonic_ns``)
and durations are integer nanoseconds.
"""

from __future__ import annotations

import datetime as _dt
import itertools
import logging
import struct
import threading
import time
from dataclasses import dataclass, field

from .sync import Mutex
from .visitors import WakeKind, WakeOp

_log = logging.getLogger(__name__)

_NS_PER_SEC = 1_000_000_000
_U64_MASK = (1 << 64) - 1
_I64_MAX = (1 << 63) - 1
_EPOCH = _dt.datetime(1970, 1, 1, tzinfo=_dt.timezone.utc)
_V2_COOKIE = 0x1C84_9303 | 0x10
_SIGFIG = 2

Timestamp = tuple[int, int]


@dataclass(frozen=True)
class TimeAnchor:
    """Pairs a monotonic instant with a wall-clock time (ns since the epoch)."""

    mono: int = field(default_factory=time.monotonic_ns)
    sys: int = field(default_factory=time.time_ns)

    def _system_ns(self, t: int) -> int:
        return self.sys + max(0, t - self.mono)

    def to_system_time(self, t: int) -> _dt.datetime:
        """Convert a monotonic instant to a UTC datetime."""
        return _EPOCH + _dt.timedelta(microseconds=self._system_ns(t) // 1000)

    def to_timestamp(self, t: int) -> Timestamp:
        """Convert a monotonic instant to ``(seconds, nanos)`` since the epoch."""
        return divmod(self._system_ns(t), _NS_PER_SEC)


def _proto_duration(ns: int, what: str) -> int:
    if ns // _NS_PER_SEC > _I64_MAX:
        _log.error("failed to convert `%s` to protobuf duration: out of range", what)
        return 0
    return ns


def _stamp(base_time: TimeAnchor, at: int | None) -> Timestamp | None:
    return None if at is None else base_time.to_timestamp(at)


@dataclass(frozen=True)
class DurationHistogram:
    raw_histogram: bytes
    max_value: int
    high_outliers: int
    highest_outlier: int | None


@dataclass(frozen=True)
class PollStatsSnapshot:
    polls: int
    first_poll: Timestamp | None
    last_poll_started: Timestamp | None
    last_poll_ended: Timestamp | None
    busy_time: int


@dataclass(frozen=True)
class TaskStatsSnapshot:
    poll_stats: PollStatsSnapshot
    created_at: Timestamp
    dropped_at: Timestamp | None
    wakes: int
    waker_clones: int
    self_wakes: int
    waker_drops: int
    last_wake: Timestamp | None
    scheduled_time: int


@dataclass(frozen=True)
class ResourceStatsSnapshot:
    created_at: Timestamp
    dropped_at: Timestamp | None


@dataclass(frozen=True)
class AsyncOpStatsSnapshot:
    poll_stats: PollStatsSnapshot
    created_at: Timestamp
    dropped_at: Timestamp | None
    task_id: int | None


def _zigzag(n: int) -> int:
    return ((n << 1) ^ (n >> 63)) & _U64_MASK


def _write_varint(out: bytearray, value: int) -> None:
    for _ in range(8):
        if value < 0x80:
            out.append(value)
            return
        out.append((value & 0x7F) | 0x80)
        value >>= 7
    out.append(value & 0xFF)


class _HdrHistogram:
    """High dynamic range histogram with a lowest discernible value of 1."""

    def __init__(self, high: int, sigfig: int) -> None:
        if high < 2:
            raise ValueError("histogram max must be at least twice its lowest value (1)")
        if high > _U64_MASK:
            raise ValueError("histogram max must fit in 64 bits")
        self.high = high
        self.sigfig = sigfig
        largest_single_unit = 2 * 10**sigfig
        magnitude = (largest_single_unit - 1).bit_length()
        self._half_magnitude = max(magnitude - 1, 0)
        sub_bucket_count = 1 << (self._half_magnitude + 1)
        self._half_count = sub_bucket_count // 2
        self._mask = sub_bucket_count - 1
        self._lz_base = 64 - magnitude
        buckets = 1
        smallest_untrackable = sub_bucket_count
        while smallest_untrackable <= high:
            if smallest_untrackable > _U64_MASK // 2:
                buckets += 1
                break
            smallest_untrackable <<= 1
            buckets += 1
        self._counts = [0] * ((buckets + 1) * self._half_count)
        self.max_value = 0

    def _index_for(self, value: int) -> int:
        bucket = self._lz_base - (64 - (value | self._mask).bit_length())
        sub_bucket = value >> bucket
        return ((bucket + 1) << self._half_magnitude) + sub_bucket - self._half_count

    def record(self, value: int) -> None:
        index = self._index_for(value)
        if index >= len(self._counts):
            raise ValueError(f"value {value} is out of the histogram's range")
        self._counts[index] += 1
        self.max_value = max(self.max_value, value)

    def serialize_v2(self) -> bytes:
        payload = bytearray()
        counts = self._counts[: self._index_for(self.max_value) + 1]
        for is_zero, group in itertools.groupby(counts, key=lambda c: c == 0):
            run = list(group)
            if is_zero and len(run) > 1:
                _write_varint(payload, _zigzag(-len(run)))
            else:
                for count in run:
                    _write_varint(payload, _zigzag(count))
        header = struct.pack(">IIIIQQd", _V2_COOKIE, len(payload), 0, self.sigfig, 1, self.high, 1.0)
        return header + bytes(payload)


class Histogram:
    """Duration histogram that clamps values above ``max`` and counts them as outliers."""

    def __init__(self, max: int) -> None:
        self.max = max
        self._histogram = _HdrHistogram(max, _SIGFIG)
        self.outliers = 0
        self.max_outlier: int | None = None

    def record_duration(self, duration: int) -> None:
        duration_ns = duration & _U64_MASK
        if duration_ns > self.max:
            self.outliers += 1
            self.max_outlier = duration_ns if self.max_outlier is None else max(self.max_outlier, duration_ns)
            duration_ns = self.max
        self._histogram.record(duration_ns)

    def to_proto(self) -> DurationHistogram:
        return DurationHistogram(
            raw_histogram=self._histogram.serialize_v2(),
            max_value=self.max,
            high_outliers=self.outliers,
            highest_outlier=self.max_outlier,
        )


def _latest(a: int | None, b: int | None) -> int | None:
    if a is None:
        return b
    if b is None:
        return a
    return max(a, b)


@dataclass
class _PollState:
    poll_histogram: Histogram | None
    scheduled_histogram: Histogram | None
    current_polls: int = 0
    polls: int = 0
    first_poll: int | None = None
    last_wake: int | None = None
    last_poll_started: int | None = None
    last_poll_ended: int | None = None
    busy_time: int = 0
    scheduled_time: int = 0


class PollStats:
    """Poll counts, timestamps and durations; histograms are optional."""

    def __init__(self, poll_histogram: Histogram | None = None, scheduled_histogram: Histogram | None = None) -> None:
        self._state = Mutex(_PollState(poll_histogram, scheduled_histogram))

    def wake(self, at: int) -> None:
        with self._state.lock() as guard:
            guard.value.last_wake = _latest(guard.value.last_wake, at)

    def start_poll(self, at: int) -> None:
        with self._state.lock() as guard:
            st = guard.value
            st.current_polls += 1
            if st.current_polls - 1 > 0:
                return
            if st.first_poll is None:
                st.first_poll = at
            st.last_poll_started = at
            st.polls += 1
            # A poll ending after the last wake was likely a self-wake, so
            # measure from whichever came last.
            scheduled = _latest(st.last_wake, st.last_poll_ended)
            if scheduled is None:
                return
            elapsed = max(0, at - scheduled)
            if st.scheduled_histogram is not None:
                st.scheduled_histogram.record_duration(elapsed)
            st.scheduled_time += elapsed

    def end_poll(self, at: int) -> None:
        with self._state.lock() as guard:
            st = guard.value
            st.current_polls -= 1
            if st.current_polls + 1 > 1:
                return
            started = st.last_poll_started
            if started is None:
                _log.warning("a poll ended, but no start timestamp was recorded")
                return
            st.last_poll_ended = at
            if at < started:
                _log.warning(
                    "possible clock skew: a poll's end timestamp was before its start "
                    "(start = %d, end = %d)",
                    started,
                    at,
                )
                return
            elapsed = at - started
            if st.poll_histogram is not None:
                st.poll_histogram.record_duration(elapsed)
            st.busy_time += elapsed

    def _with_state(self, fn):
        with self._state.lock() as guard:
            return fn(guard.value)

    def to_proto(self, base_time: TimeAnchor) -> PollStatsSnapshot:
        with self._state.lock() as guard:
            st = guard.value
            return PollStatsSnapshot(
                polls=st.polls,
                first_poll=_stamp(base_time, st.first_poll),
                last_poll_started=_stamp(base_time, st.last_poll_started),
                last_poll_ended=_stamp(base_time, st.last_poll_ended),
                busy_time=_proto_duration(st.busy_time, "busy_time"),
            )


class TaskStats:
    """Waker and poll statistics for one task."""

    def __init__(self, poll_duration_max: int, scheduled_duration_max: int, created_at: int) -> None:
        self.created_at = created_at
        self._lock = threading.Lock()
        self._is_dirty = True
        self._is_dropped = False
        self._dropped_at: Mutex[int | None] = Mutex(None)
        self._wakes = 0
        self._waker_clones = 0
        self._waker_drops = 0
        self._self_wakes = 0
        self._poll_stats = PollStats(Histogram(poll_duration_max), Histogram(scheduled_duration_max))

    def _make_dirty(self) -> None:
        with self._lock:
            self._is_dirty = True

    def record_wake_op(self, op: WakeOp, at: int) -> None:
        if op.kind is WakeKind.CLONE:
            with self._lock:
                self._waker_clones += 1
        elif op.kind is WakeKind.DROP:
            with self._lock:
                self._waker_drops += 1
        elif op.kind is WakeKind.WAKE_BY_REF:
            self._wake(at, op.self_wake)
        else:
            # Waking by value consumes the waker without a drop event.
            with self._lock:
                self._waker_drops += 1
            self._wake(at, op.self_wake)
        self._make_dirty()

    def _wake(self, at: int, self_wake: bool) -> None:
        self._poll_stats.wake(at)
        with self._lock:
            self._wakes += 1
            if self_wake:
                self._self_wakes += 1
        self._make_dirty()

    def start_poll(self, at: int) -> None:
        self._poll_stats.start_poll(at)
        self._make_dirty()

    def end_poll(self, at: int) -> None:
        self._poll_stats.end_poll(at)
        self._make_dirty()

    def drop_task(self, dropped_at: int) -> None:
        with self._lock:
            if self._is_dropped:
                return
            self._is_dropped = True
        with self._dropped_at.lock() as guard:
            guard.value = dropped_at
        self._make_dirty()

    def poll_duration_histogram(self) -> DurationHistogram:
        return self._poll_stats._with_state(lambda st: st.poll_histogram.to_proto())

    def scheduled_duration_histogram(self) -> DurationHistogram:
        return self._poll_stats._with_state(lambda st: st.scheduled_histogram.to_proto())

    def take_unsent(self) -> bool:
        with self._lock:
            was_dirty, self._is_dirty = self._is_dirty, False
            return was_dirty

    def is_unsent(self) -> bool:
        with self._lock:
            return self._is_dirty

    def dropped_at(self) -> int | None:
        with self._lock:
            if not self._is_dropped:
                return None
        with self._dropped_at.lock() as guard:
            return guard.value

    def to_proto(self, base_time: TimeAnchor) -> TaskStatsSnapshot:
        poll_stats = self._poll_stats.to_proto(base_time)
        last_wake, scheduled = self._poll_stats._with_state(lambda st: (st.last_wake, st.scheduled_time))
        with self._dropped_at.lock() as guard:
            dropped = guard.value
        with self._lock:
            return TaskStatsSnapshot(
                poll_stats=poll_stats,
                created_at=base_time.to_timestamp(self.created_at),
                dropped_at=_stamp(base_time, dropped),
                wakes=self._wakes,
                waker_clones=self._waker_clones,
                self_wakes=self._self_wakes,
                waker_drops=self._waker_drops,
                last_wake=_stamp(base_time, last_wake),
                scheduled_time=_proto_duration(scheduled, "scheduled_time"),
            )


class ResourceStats:
    """Creation and drop times of a resource."""

    def __init__(self, created_at: int, inherit_child_attributes: bool, parent_id: int | None) -> None:
        self.created_at = created_at
        self.inherit_child_attributes = inherit_child_attributes
        self.parent_id = parent_id
        self._lock = threading.Lock()
        self._is_dirty = True
        self._is_dropped = False
        self._dropped_at: Mutex[int | None] = Mutex(None)

    def _make_dirty(self) -> None:
        with self._lock:
            self._is_dirty = True

    def drop_resource(self, dropped_at: int) -> None:
        with self._lock:
            if self._is_dropped:
                return
            self._is_dropped = True
        with self._dropped_at.lock() as guard:
            guard.value = dropped_at
        self._make_dirty()

    def take_unsent(self) -> bool:
        with self._lock:
            was_dirty, self._is_dirty = self._is_dirty, False
            return was_dirty

    def is_unsent(self) -> bool:
        with self._lock:
            return self._is_dirty

    def dropped_at(self) -> int | None:
        with self._lock:
            if not self._is_dropped:
                return None
        with self._dropped_at.lock() as guard:
            return guard.value

    def _stored_dropped_at(self) -> int | None:
        with self._dropped_at.lock() as guard:
            return guard.value

    def to_proto(self, base_time: TimeAnchor) -> ResourceStatsSnapshot:
        return ResourceStatsSnapshot(
            created_at=base_time.to_timestamp(self.created_at),
            dropped_at=_stamp(base_time, self._stored_dropped_at()),
        )


class AsyncOpStats:
    """Resource statistics plus polls and the last task to poll the operation."""

    def __init__(self, created_at: int, inherit_child_attributes: bool, parent_id: int | None) -> None:
        self.stats = ResourceStats(created_at, inherit_child_attributes, parent_id)
        self._task_id = 0
        self._lock = threading.Lock()
        self._poll_stats = PollStats()

    def task_id(self) -> int | None:
        with self._lock:
            return self._task_id if self._task_id > 0 else None

    def set_task_id(self, id: int) -> None:
        with self._lock:
            self._task_id = id
        self.stats._make_dirty()

    def drop_async_op(self, dropped_at: int) -> None:
        self.stats.drop_resource(dropped_at)

    def start_poll(self, at: int) -> None:
        self._poll_stats.start_poll(at)
        self.stats._make_dirty()

    def end_poll(self, at: int) -> None:
        self._poll_stats.end_poll(at)
        self.stats._make_dirty()

    def take_unsent(self) -> bool:
        return self.stats.take_unsent()

    def is_unsent(self) -> bool:
        return self.stats.is_unsent()

    def dropped_at(self) -> int | None:
        return self.stats.dropped_at()

    def to_proto(self, base_time: TimeAnchor) -> AsyncOpStatsSnapshot:
        return AsyncOpStatsSnapshot(
            poll_stats=self._poll_stats.to_proto(base_time),
            created_at=base_time.to_timestamp(self.stats.created_at),
            dropped_at=_stamp(base_time, self.stats._stored_dropped_at()),
            task_id=self.task_id(),
        )