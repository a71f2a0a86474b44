"""Durable sessions: one initialized child per logical client.

A session keeps its record (and restart bookkeeping) across process deaths;
only the bound client is swapped out when the child is recreated. A session
gets exactly one free bind; every later replacement of its child counts
against the restart budget and is reported to the caller.
"""

import asyncio
import time
from contextlib import suppress
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Optional

from tele_mcp.core.errors import (
    SessionNotFoundError,
    SessionRestartedError,
    TemporaryFailureError,
    TransportIOError,
    is_retriable,
    transport_error,
)
from tele_mcp.core.logging import logger
from tele_mcp.services.stdio_client import StdioRpcClient

MAX_RESTARTS = 3
RESTART_WINDOW_SEC = 5 * 60

ClientFactory = Callable[[], Awaitable[StdioRpcClient]]


@dataclass
class Session:
    session_id: str
    client: Optional[StdioRpcClient] = None
    restart_count: int = 0
    last_failure: float = 0.0
    # Set once the first child is bound; after that a missing or dead child
    # is a failure, never a fresh start.
    started: bool = False
    closed: bool = False
    lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)

    @property
    def bound(self) -> bool:
        return self.client is not None and self.client.alive


class SessionManager:
    def __init__(
        self,
        client_factory: ClientFactory,
        durable: bool = True,
        max_restarts: int = MAX_RESTARTS,
        restart_window_sec: float = RESTART_WINDOW_SEC,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.client_factory = client_factory
        self.durable = durable
        self.max_restarts = max_restarts
        self.restart_window_sec = restart_window_sec
        self.clock = clock
        self._sessions: Dict[str, Session] = {}
        self._binds: Dict[str, asyncio.Task] = {}

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, session_id: str) -> bool:
        return session_id in self._sessions

    def get(self, session_id: str) -> Optional[Session]:
        return self._sessions.get(session_id)

    def register(self, session_id: str) -> Session:
        """Session-open hook: record the session and bind a process in the background."""
        session = self._sessions.setdefault(session_id, Session(session_id))
        if session_id not in self._binds:
            task = asyncio.create_task(self._bind_logged(session))
            self._binds[session_id] = task
            task.add_done_callback(lambda t, sid=session_id: self._forget_bind(sid, t))
        return session

    def _forget_bind(self, session_id: str, task: asyncio.Task) -> None:
        if self._binds.get(session_id) is task:
            del self._binds[session_id]

    async def unregister(self, session_id: str) -> None:
        """Session-close hook: release the bound process and forget the session."""
        session = self._sessions.pop(session_id, None)
        task = self._binds.pop(session_id, None)
        if task is not None and not task.done():
            task.cancel()
            with suppress(asyncio.CancelledError):
                await task
        if session is None:
            return
        async with session.lock:
            session.closed = True
            await self._release(session)
        logger.info(f"Session {session_id} cleaned up")

    def _is_current(self, session: Session) -> bool:
        return not session.closed and self._sessions.get(session.session_id) is session

    async def _adopt(self, session: Session) -> StdioRpcClient:
        """Create a child for ``session``; caller holds the session lock."""
        client = await self.client_factory()
        if not self._is_current(session):
            # Unregistered while the child was starting.
            await client.close()
            raise SessionNotFoundError(f"session closed: {session.session_id}")
        session.client = client
        session.started = True
        return client

    async def _bind_logged(self, session: Session) -> None:
        try:
            await self._bind(session)
        except Exception as exc:
            logger.warning(f"Failed to create process for session {session.session_id}: {exc}")

    async def _bind(self, session: Session) -> StdioRpcClient:
        async with session.lock:
            if session.bound:
                return session.client
            if not self._is_current(session):
                raise SessionNotFoundError(f"session closed: {session.session_id}")
            await self._release(session)
            client = await self._adopt(session)
            logger.info(f"Session {session.session_id} created successfully")
            return client

    async def _release(self, session: Session) -> None:
        client = session.client
        session.client = None
        if client is not None:
            await client.close()

    async def resolve(self, session_id: str) -> Session:
        """The session record, with its first child bound if it never had one."""
        session = self._sessions.get(session_id)
        if session is None:
            if not self.durable:
                raise SessionNotFoundError(f"session not found: {session_id}")
            session = self._sessions.setdefault(session_id, Session(session_id))
        if session.bound:
            return session

        pending = self._binds.get(session_id)
        if pending is not None:
            with suppress(Exception):
                await asyncio.shield(pending)
            if session.bound:
                return session
        if session.started:
            # The child died after it was bound: ``call`` treats this as a
            # failure so the restart budget applies.
            return session
        if not self.durable:
            raise SessionNotFoundError(f"session not found: {session_id}")
        try:
            await self._bind(session)
        except SessionNotFoundError:
            raise
        except Exception as exc:
            logger.warning(f"Lazy session create failed for {session_id}: {exc}")
            raise TemporaryFailureError() from exc
        return session

    def _budget_exhausted(self, session: Session, now: float) -> bool:
        if session.restart_count < self.max_restarts:
            return False
        if now - session.last_failure < self.restart_window_sec:
            return True
        # The last failure is outside the window: start a fresh budget.
        session.restart_count = 0
        return False

    async def restart(self, session: Session, failed: Optional[StdioRpcClient] = None) -> None:
        async with session.lock:
            if session.client is not failed and session.bound:
                # A concurrent call already replaced the dead child.
                return
            if not self._is_current(session):
                raise SessionNotFoundError(f"session closed: {session.session_id}")
            await self._release(session)
            session.restart_count += 1
            session.last_failure = self.clock()
            await self._adopt(session)
        logger.info(
            f"Session {session.session_id} restarted "
            f"({session.restart_count}/{self.max_restarts})"
        )

    async def call(self, session_id: str, method: str, params: Optional[Dict[str, Any]] = None) -> Any:
        """Run one child request, recreating a dead child within the restart budget."""
        session = await self.resolve(session_id)
        client = session.client
        try:
            if client is None or not client.alive:
                raise transport_error(f"process exited: session {session_id} has no live process")
            return await client.request(method, params)
        except TransportIOError as exc:
            if not self.durable or not is_retriable(exc):
                raise
            if not self._is_current(session):
                raise SessionNotFoundError(f"session closed: {session_id}") from exc
            if self._budget_exhausted(session, self.clock()):
                logger.warning(f"Session {session_id} exceeded restart limit: {exc}")
                raise TemporaryFailureError() from exc
            logger.info(f"Attempting to restart session {session_id} due to error: {exc}")
            try:
                await self.restart(session, failed=client)
            except SessionNotFoundError:
                raise
            except Exception as restart_exc:
                logger.warning(f"Failed to restart session {session_id}: {restart_exc}")
                raise TemporaryFailureError() from exc
            raise SessionRestartedError() from exc

    async def close(self) -> None:
        for session_id in list(self._sessions):
            await self.unregister(session_id)
