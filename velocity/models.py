"""
Session and measurement data types
"""

import asyncio
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Dict, List, Optional


class Phase(str, Enum):
    INIT = 'Init'
    LATENCY = 'Latency'
    DOWNLOAD = 'Download'
    UPLOAD = 'Upload'
    DONE = 'Done'
    FAILED = 'Failed'


# Forward order every session walks through
PHASE_ORDER = [Phase.INIT, Phase.LATENCY, Phase.DOWNLOAD, Phase.UPLOAD, Phase.DONE]
TERMINAL_PHASES = (Phase.DONE, Phase.FAILED)


class Status(str, Enum):
    SUCCESS = 'success'
    PARTIAL = 'partial'
    FAILED = 'failed'


class Direction(str, Enum):
    DOWNLOAD = 'download'
    UPLOAD = 'upload'


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def isoformat(moment: Optional[datetime]) -> Optional[str]:
    return moment.isoformat() if moment else None


def _round(value: Optional[float], digits: int = 3) -> Optional[float]:
    return round(value, digits) if value is not None else None


@dataclass(frozen=True)
class RttSample:
    """One latency probe round trip"""
    seq: int
    rtt_ms: float


@dataclass(frozen=True)
class WindowSample:
    """Bytes moved during one fixed time window"""
    index: int
    byte_count: int
    seconds: float

    @property
    def bits_per_second(self) -> float:
        return self.byte_count * 8 / self.seconds


@dataclass(frozen=True)
class LatencyResult:
    status: Status
    probes: int
    sample_count: int
    timeouts: int
    degraded: bool = False
    min_ms: Optional[float] = None
    median_ms: Optional[float] = None
    p95_ms: Optional[float] = None
    max_ms: Optional[float] = None
    jitter_ms: Optional[float] = None
    error: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            'status': self.status.value,
            'degraded': self.degraded,
            'probes': self.probes,
            'sampleCount': self.sample_count,
            'timeouts': self.timeouts,
            'minMs': _round(self.min_ms),
            'medianMs': _round(self.median_ms),
            'p95Ms': _round(self.p95_ms),
            'maxMs': _round(self.max_ms),
            'jitterMs': _round(self.jitter_ms),
            'error': self.error,
        }


@dataclass(frozen=True)
class ThroughputResult:
    direction: Direction
    status: Status
    bits_per_second: Optional[int]
    bytes_transferred: int
    windows_total: int
    windows_used: int
    duration_ms: float
    partial: bool = False
    error: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            'status': self.status.value,
            'direction': self.direction.value,
            'bitsPerSecond': self.bits_per_second,
            'bytesTransferred': self.bytes_transferred,
            'windowsTotal': self.windows_total,
            'windowsUsed': self.windows_used,
            'durationMs': _round(self.duration_ms),
            'partial': self.partial,
            'error': self.error,
        }


@dataclass(frozen=True)
class PhaseTransition:
    phase: Phase
    at: datetime

    def to_dict(self) -> dict:
        return {'phase': self.phase.value, 'at': isoformat(self.at)}


@dataclass(frozen=True)
class ResultRecord:
    """Final (or in-progress snapshot of a) speed test result"""
    session_id: str
    status: Status
    phase: Phase
    ping_ms: Optional[float]
    jitter_ms: Optional[float]
    download_bps: Optional[int]
    upload_bps: Optional[int]
    sample_count: int
    server: Dict[str, object]
    timestamp: datetime
    failure_reason: Optional[str] = None
    transitions: tuple = ()

    def to_dict(self) -> dict:
        return {
            'status': self.status.value,
            'sessionId': self.session_id,
            'phase': self.phase.value,
            'timestamp': isoformat(self.timestamp),
            'data': {
                'pingMs': _round(self.ping_ms),
                'jitterMs': _round(self.jitter_ms),
                'downloadBps': self.download_bps,
                'uploadBps': self.upload_bps,
                'sampleCount': self.sample_count,
            },
            'server': dict(self.server),
            'failureReason': self.failure_reason,
            'transitions': [t.to_dict() for t in self.transitions],
        }


@dataclass
class Session:
    """One client's speed test run, mutated only by the coordinator"""
    session_id: str
    client_id: str
    created_at: datetime
    deadline: datetime
    expires_at: float  # registry clock value at which the session times out
    phase: Phase = Phase.INIT
    transitions: List[PhaseTransition] = field(default_factory=list)
    latency: Optional[LatencyResult] = None
    download: Optional[ThroughputResult] = None
    upload: Optional[ThroughputResult] = None
    failure_reason: Optional[str] = None
    record: Optional[ResultRecord] = None
    busy: bool = False
    cancelled: asyncio.Event = field(default_factory=asyncio.Event)
    clock: Callable[[], float] = field(default=time.monotonic, repr=False, compare=False)

    def __post_init__(self):
        if not self.transitions:
            self.transitions.append(PhaseTransition(self.phase, self.created_at))

    def remaining(self) -> float:
        """Seconds left before the session deadline"""
        return max(0.0, self.expires_at - self.clock())

    @property
    def finished(self) -> bool:
        return self.phase in TERMINAL_PHASES

    def to_dict(self) -> dict:
        return {
            'sessionId': self.session_id,
            'phase': self.phase.value,
            'createdAt': isoformat(self.created_at),
            'deadline': isoformat(self.deadline),
        }
