"""
Session Registry
================

Tracks active measurement sessions and enforces two capacity caps:
one system-wide and one per client identifier, so that a single client
(or a NAT shared by many customers) cannot monopolise the server.
"""

import logging
import threading
import time
import uuid
from collections import OrderedDict
from datetime import timedelta
from typing import Callable, Dict, List, Optional

from velocity.errors import CapacityError, SessionNotFound
from velocity.models import Session, utcnow

logger = logging.getLogger(__name__)


class SessionRegistry:
    """Thread-safe registry of measurement sessions"""

    def __init__(self, max_sessions: int = 64, max_per_client: int = 2,
                 session_timeout: float = 30.0, retention: int = 1024,
                 clock: Callable[[], float] = time.monotonic):
        self.max_sessions = max_sessions
        self.max_per_client = max_per_client
        self.session_timeout = session_timeout
        self.retention = retention
        self.clock = clock

        self._lock = threading.Lock()
        self._active: Dict[str, Session] = {}
        self._per_client: Dict[str, int] = {}
        # Finished sessions kept only so their results stay readable
        self._finished: "OrderedDict[str, Session]" = OrderedDict()

    def open(self, client_id: str) -> Session:
        """Reserve a slot for a new session or raise CapacityError"""
        with self._lock:
            if len(self._active) >= self.max_sessions:
                logger.warning(f"Global session limit reached ({self.max_sessions}), rejecting {client_id}")
                raise CapacityError(
                    f"Server is at capacity ({self.max_sessions} concurrent tests). Please retry shortly."
                )

            client_count = self._per_client.get(client_id, 0)
            if client_count >= self.max_per_client:
                logger.warning(f"Per-client session limit reached for {client_id}: "
                               f"{client_count}/{self.max_per_client}")
                raise CapacityError(
                    f"Too many concurrent tests from your address ({client_count}/{self.max_per_client}). "
                    f"Multiple customers may share your IP address. Please wait for current tests to complete."
                )

            created_at = utcnow()
            session = Session(
                session_id=uuid.uuid4().hex,
                client_id=client_id,
                created_at=created_at,
                deadline=created_at + timedelta(seconds=self.session_timeout),
                expires_at=self.clock() + self.session_timeout,
                clock=self.clock,
            )
            self._active[session.session_id] = session
            self._per_client[client_id] = client_count + 1

        logger.debug(f"Session {session.session_id} opened for {client_id}: "
                     f"{len(self._active)}/{self.max_sessions} active")
        return session

    def close(self, session_id: str) -> Optional[Session]:
        """Release a session's slot. Closing twice is a no-op."""
        with self._lock:
            session = self._active.pop(session_id, None)
            if session is None:
                return None

            remaining = self._per_client.get(session.client_id, 1) - 1
            if remaining > 0:
                self._per_client[session.client_id] = remaining
            else:
                self._per_client.pop(session.client_id, None)

            self._finished[session_id] = session
            while len(self._finished) > self.retention:
                self._finished.popitem(last=False)

        logger.debug(f"Session {session_id} released ({session.phase.value})")
        return session

    def get(self, session_id: str) -> Session:
        with self._lock:
            session = self._active.get(session_id) or self._finished.get(session_id)
        if session is None:
            raise SessionNotFound(f"Unknown session: {session_id}")
        return session

    def is_active(self, session_id: str) -> bool:
        with self._lock:
            return session_id in self._active

    def active_sessions(self) -> List[Session]:
        with self._lock:
            return list(self._active.values())

    def expired(self) -> List[Session]:
        """Active sessions whose deadline has passed"""
        now = self.clock()
        with self._lock:
            return [s for s in self._active.values() if s.expires_at <= now]

    def occupancy(self) -> dict:
        """Current registry usage, for health reporting"""
        with self._lock:
            return {
                'active_sessions': len(self._active),
                'max_sessions': self.max_sessions,
                'max_sessions_per_client': self.max_per_client,
                'tracked_clients': len(self._per_client),
                'retained_results': len(self._finished),
            }
