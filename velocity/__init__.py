"""
Velocity Speed Test Server
==========================

Real latency and throughput measurement over HTTP and WebSocket.

Modules:
- registry: session slots with global and per-client caps
- payload: incompressible payload generation and upload sinks
- latency: ping/pong round-trip probing
- throughput: windowed bandwidth estimation
- coordinator: per-session phase state machine
- workers: bounded worker pool for phase jobs
"""

__version__ = "1.0.0"
