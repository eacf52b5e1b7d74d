"""
Velocity Configuration
Measurement timing, capacity limits and server settings
"""

import os
from dataclasses import dataclass, field, replace
from typing import Optional


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() == 'true'


@dataclass
class VelocityConfig:
    """Configuration for the speed test server"""

    # Server
    host: str = '0.0.0.0'
    port: int = 5000
    workers: int = field(default_factory=lambda: os.cpu_count() or 1)
    region: str = 'primary'
    ssl_keyfile: Optional[str] = None
    ssl_certfile: Optional[str] = None
    trust_proxy_headers: bool = False  # enable only behind a reverse proxy

    # Session registry
    max_sessions: int = 64
    max_sessions_per_client: int = 2
    session_timeout: float = 30.0
    result_retention: int = 1024
    reap_interval: float = 1.0

    # Worker pool
    pool_workers: int = 64
    pool_queue_size: int = 128

    # Latency phase
    probe_count: int = 20
    probe_interval: float = 0.05  # 50ms between probes
    probe_timeout: float = 2.0
    probe_timeout_ratio: float = 0.2
    max_probe_count: int = 200

    # Throughput phases
    duration: float = 10.0
    warmup: float = 2.0
    window: float = 0.2  # 200ms windows
    stall_windows: int = 3
    chunk_size: int = 128 * 1024  # 128KB chunks
    max_upload_bytes: int = 512 * 1024 * 1024  # 512MB max per upload
    payload_seed: Optional[int] = None

    # Logging
    log_level: str = 'INFO'

    @classmethod
    def from_env(cls) -> 'VelocityConfig':
        """Create configuration from environment variables"""
        seed = os.getenv('VELOCITY_PAYLOAD_SEED')
        return cls(
            host=os.getenv('VELOCITY_HOST', '0.0.0.0'),
            port=int(os.getenv('PORT', os.getenv('VELOCITY_PORT', 5000))),
            workers=int(os.getenv('VELOCITY_WORKERS', os.cpu_count() or 1)),
            region=os.getenv('REGION', 'primary'),
            ssl_keyfile=os.getenv('VELOCITY_SSL_KEYFILE') or None,
            ssl_certfile=os.getenv('VELOCITY_SSL_CERTFILE') or None,
            trust_proxy_headers=_env_bool('VELOCITY_TRUST_PROXY_HEADERS', 'false'),
            max_sessions=int(os.getenv('VELOCITY_MAX_SESSIONS', 64)),
            max_sessions_per_client=int(os.getenv('VELOCITY_MAX_SESSIONS_PER_CLIENT', 2)),
            session_timeout=float(os.getenv('VELOCITY_SESSION_TIMEOUT', 30.0)),
            result_retention=int(os.getenv('VELOCITY_RESULT_RETENTION', 1024)),
            pool_workers=int(os.getenv('VELOCITY_POOL_WORKERS', 64)),
            pool_queue_size=int(os.getenv('VELOCITY_POOL_QUEUE_SIZE', 128)),
            probe_count=int(os.getenv('VELOCITY_PROBE_COUNT', 20)),
            probe_interval=float(os.getenv('VELOCITY_PROBE_INTERVAL', 0.05)),
            probe_timeout=float(os.getenv('VELOCITY_PROBE_TIMEOUT', 2.0)),
            duration=float(os.getenv('VELOCITY_DURATION', 10.0)),
            warmup=float(os.getenv('VELOCITY_WARMUP', 2.0)),
            window=float(os.getenv('VELOCITY_WINDOW', 0.2)),
            stall_windows=int(os.getenv('VELOCITY_STALL_WINDOWS', 3)),
            chunk_size=int(os.getenv('VELOCITY_CHUNK_SIZE', 128 * 1024)),
            max_upload_bytes=int(os.getenv('VELOCITY_MAX_UPLOAD_BYTES', 512 * 1024 * 1024)),
            payload_seed=int(seed) if seed else None,
            log_level=os.getenv('VELOCITY_LOG_LEVEL', 'INFO'),
        )

    def with_overrides(self, **changes) -> 'VelocityConfig':
        """Return a validated copy with some fields replaced"""
        updated = replace(self, **changes)
        updated.validate()
        return updated

    def validate(self) -> bool:
        """Validate configuration parameters"""
        if self.workers <= 0:
            raise ValueError("workers must be positive")

        if self.max_sessions <= 0:
            raise ValueError("max_sessions must be positive")

        if not 0 < self.max_sessions_per_client <= self.max_sessions:
            raise ValueError("max_sessions_per_client must be between 1 and max_sessions")

        if self.session_timeout <= 0:
            raise ValueError("session_timeout must be positive")

        if self.pool_workers <= 0 or self.pool_queue_size <= 0:
            raise ValueError("pool_workers and pool_queue_size must be positive")

        if not 0 < self.probe_count <= self.max_probe_count:
            raise ValueError(f"probe_count must be between 1 and {self.max_probe_count}")

        if self.probe_interval < 0 or self.probe_timeout <= 0:
            raise ValueError("Invalid probe timing")

        if not 0 <= self.probe_timeout_ratio <= 1:
            raise ValueError("probe_timeout_ratio must be within [0, 1]")

        if self.window <= 0 or self.duration <= 0:
            raise ValueError("window and duration must be positive")

        if not 0 <= self.warmup < self.duration:
            raise ValueError("warmup must be shorter than duration")

        if self.stall_windows < 1:
            raise ValueError("stall_windows must be at least 1")

        if self.chunk_size <= 0 or self.max_upload_bytes <= 0:
            raise ValueError("chunk_size and max_upload_bytes must be positive")

        return True
