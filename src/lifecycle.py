"""
Stream lifecycle orchestration.

Consumes ingest lifecycle events, prepares stream directories, starts and
stops one FFmpeg process per publishing connection and keeps the session
registry in line with the processes actually running.

Only one encoder may write into a stream directory at a time: a new publish
on a stream key takes over from the session already holding it once the
ingest server reports it as started (postPublish).
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Optional

from encoder_manager import EncoderHandle, EncoderProcessManager, EncoderSpawnError
from models import (
    ConnectionState,
    DonePublish,
    EncoderExited,
    LifecycleEvent,
    PostPublish,
    PrePublish,
)
from stream_layout import StreamLayout, validate_stream_key

logger = logging.getLogger(__name__)


@dataclass
class StreamSession:
    """A publishing connection with its running encoder."""
    connection_id: str
    stream_key: str
    encoder: EncoderHandle
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> Dict:
        return {
            "connection_id": self.connection_id,
            "stream_key": self.stream_key,
            "started_at": self.started_at.isoformat(),
            "encoder": self.encoder.get_status(),
        }


class SessionRegistry:
    """Active sessions keyed by connection id."""

    def __init__(self):
        self._sessions: Dict[str, StreamSession] = {}

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, connection_id: str) -> bool:
        return connection_id in self._sessions

    def get(self, connection_id: str) -> Optional[StreamSession]:
        return self._sessions.get(connection_id)

    def add(self, session: StreamSession) -> None:
        self._sessions[session.connection_id] = session

    def remove(self, connection_id: str) -> Optional[StreamSession]:
        return self._sessions.pop(connection_id, None)

    def find_by_stream_key(self, stream_key: str) -> List[StreamSession]:
        return [s for s in self._sessions.values() if s.stream_key == stream_key]

    def all(self) -> List[StreamSession]:
        return list(self._sessions.values())

    def clear(self) -> None:
        self._sessions.clear()


class StreamLifecycleOrchestrator:
    """
    State machine driven by ingest events.

    Per connection: IDLE -> PUBLISHING (prePublish) -> TRANSCODING (postPublish)
    -> ENDED (donePublish or encoder exit). Transitions for the same stream key
    are serialized with a per-key lock; a transition that finds no session is
    a no-op.
    """

    def __init__(
        self,
        layout: StreamLayout,
        encoder_manager: EncoderProcessManager,
        registry: Optional[SessionRegistry] = None,
    ):
        self.layout = layout
        self.encoder_manager = encoder_manager
        self.registry = registry if registry is not None else SessionRegistry()
        # connection_id -> stream_key between prePublish and postPublish
        self._pending: Dict[str, str] = {}
        # Per stream key lock and the number of transitions using it
        self._key_locks: Dict[str, asyncio.Lock] = {}
        self._lock_users: Dict[str, int] = {}

    async def dispatch(self, event: LifecycleEvent) -> Optional[StreamSession]:
        """Apply one lifecycle event. Returns the session created by PostPublish."""
        if isinstance(event, PrePublish):
            await self.on_pre_publish(event.connection_id, event.stream_key)
        elif isinstance(event, PostPublish):
            return await self.on_post_publish(event.connection_id, event.stream_key)
        elif isinstance(event, DonePublish):
            await self.on_done_publish(event.connection_id)
        elif isinstance(event, EncoderExited):
            await self.on_encoder_exit(event.connection_id, event.return_code)
        else:
            raise TypeError(f"Unsupported lifecycle event: {event!r}")
        return None

    def get_state(self, connection_id: str) -> ConnectionState:
        if connection_id in self.registry:
            return ConnectionState.TRANSCODING
        if connection_id in self._pending:
            return ConnectionState.PUBLISHING
        return ConnectionState.IDLE

    async def on_pre_publish(self, connection_id: str, stream_key: str) -> None:
        """Reset the stream directory before the ingest server accepts a publisher."""
        validate_stream_key(stream_key)
        logger.info(f"🎬 Stream starting: {stream_key} (connection {connection_id})")

        async with self._locked(stream_key):
            holders = [
                s.connection_id for s in self.registry.find_by_stream_key(stream_key)
                if s.connection_id != connection_id
            ]
            if holders:
                # The publish may still be refused, the running session keeps its files
                logger.info(
                    f"{stream_key} held by {', '.join(holders)}, deferring reset to postPublish")
            else:
                self.layout.ensure_stream_directory(stream_key, reset=True)
            self._pending[connection_id] = stream_key

    async def on_post_publish(self, connection_id: str, stream_key: str) -> Optional[StreamSession]:
        """Start FFmpeg for a publishing connection and register the session."""
        validate_stream_key(stream_key)

        async with self._locked(stream_key):
            self._pending.pop(connection_id, None)

            existing = self.registry.get(connection_id)
            if existing:
                logger.warning(
                    f"Connection {connection_id} already transcoding {existing.stream_key}, ignoring postPublish")
                return existing

            # Files of a superseded session must not be served as this one's
            took_over = await self._take_over(stream_key, connection_id)
            self.layout.ensure_stream_directory(stream_key, reset=took_over)

            try:
                encoder = await self.encoder_manager.start(
                    stream_key,
                    on_exit=self._exit_callback(connection_id),
                )
            except EncoderSpawnError as e:
                logger.error(f"❌ {e}")
                return None

            session = StreamSession(
                connection_id=connection_id,
                stream_key=stream_key,
                encoder=encoder,
            )
            self.registry.add(session)
            logger.info(
                f"Session {connection_id} transcoding {stream_key} ({len(self.registry)} active)")
            return session

    async def on_done_publish(self, connection_id: str) -> None:
        """Stop the encoder of a connection that stopped publishing."""
        self._pending.pop(connection_id, None)

        session = self.registry.get(connection_id)
        if session is None:
            logger.debug(f"donePublish for {connection_id} without active session")
            return

        logger.info(f"⏹️ Stream ending: {session.stream_key} (connection {connection_id})")
        async with self._locked(session.stream_key):
            # May have been removed by a takeover or exit while waiting for the lock
            if self.registry.get(connection_id) is not session:
                return
            self.registry.remove(connection_id)
            await self.encoder_manager.stop(session.encoder)

    async def on_encoder_exit(self, connection_id: str, return_code: Optional[int]) -> None:
        """Deregister a session whose FFmpeg process ended on its own."""
        session = self.registry.get(connection_id)
        if session is None:
            return

        async with self._locked(session.stream_key):
            if self.registry.get(connection_id) is session:
                self.registry.remove(connection_id)
                logger.info(
                    f"Session {connection_id} for {session.stream_key} removed after FFmpeg exit (code {return_code})")

    async def shutdown(self) -> None:
        """Stop every session's encoder and clear the registry."""
        sessions = self.registry.all()
        logger.info(f"Stopping {len(sessions)} active session(s)...")
        for session in sessions:
            self.registry.remove(session.connection_id)
            try:
                await self.encoder_manager.stop(session.encoder)
            except Exception as e:
                logger.error(f"Error stopping session {session.connection_id}: {e}")
        self._pending.clear()
        await self.encoder_manager.shutdown()

    @asynccontextmanager
    async def _locked(self, stream_key: str):
        """Hold the lock for a stream key, dropping it once no transition uses it."""
        lock = self._key_locks.get(stream_key)
        if lock is None:
            lock = self._key_locks[stream_key] = asyncio.Lock()
        self._lock_users[stream_key] = self._lock_users.get(stream_key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[stream_key] -= 1
            if self._lock_users[stream_key] == 0:
                del self._lock_users[stream_key]
                del self._key_locks[stream_key]

    async def _take_over(self, stream_key: str, connection_id: str) -> bool:
        """
        Stop sessions of other connections on the same key. Caller holds the key lock.

        Returns True if any session was stopped.
        """
        took_over = False
        for session in self.registry.find_by_stream_key(stream_key):
            if session.connection_id == connection_id:
                continue
            logger.warning(
                f"Connection {connection_id} takes over {stream_key} from {session.connection_id}")
            self.registry.remove(session.connection_id)
            await self.encoder_manager.stop(session.encoder)
            took_over = True
        return took_over

    def _exit_callback(self, connection_id: str):
        async def on_exit(return_code: Optional[int]):
            await self.dispatch(EncoderExited(connection_id, return_code))
        return on_exit
