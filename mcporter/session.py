"""Session/channel discipline for servers that need a handshake before use."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, Dict, Optional

from mcporter.config import SessionConfig
from mcporter.errors import SessionNotEstablishedError
from mcporter.result import Result
from mcporter.schema import SessionState

logger = logging.getLogger(__name__)

CHANNEL_ALIASES = ("channelId", "channel_id")

Handshake = Callable[[Dict[str, Any]], Awaitable[Result]]


class SessionPolicy:
    """
    Guards one session-scoped server.

    ``NoSession -> Active`` happens once, on the first successful handshake
    call. Repeating the handshake while active returns the stored result
    without contacting the server. Any other tool is rejected until then.
    """

    def __init__(self, server: str, config: Optional[SessionConfig] = None):
        self.server = server
        self.config = config or SessionConfig()
        self._state: Optional[SessionState] = None
        self._lock = asyncio.Lock()

    @property
    def handshake_tool(self) -> str:
        return self.config.handshake_tool

    @property
    def active(self) -> bool:
        return self._state is not None and self._state.established

    @property
    def state(self) -> Optional[SessionState]:
        return self._state

    @property
    def channel_id(self) -> Optional[str]:
        return self._state.channel_id if self._state else None

    def is_handshake(self, tool: str) -> bool:
        return tool == self.config.handshake_tool

    def check(self, tool: str) -> None:
        """Reject ``tool`` unless it is the handshake or a session is active."""
        if self.is_handshake(tool) or self.active:
            return
        raise SessionNotEstablishedError(
            self.server,
            f"Server '{self.server}' requires '{self.handshake_tool}' before calling '{tool}'",
        )

    def generate_channel_id(self) -> str:
        return f"{self.config.channel_prefix}-{int(time.time() * 1000)}"

    def resolve_arguments(self, arguments: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        """Handshake arguments with the channel id filled in."""
        args = dict(arguments or {})
        key = self.config.channel_argument
        if not args.get(key):
            for alias in CHANNEL_ALIASES:
                if args.get(alias):
                    args[key] = args.pop(alias)
                    break
            else:
                args[key] = self.generate_channel_id()
        return args

    async def handshake(
        self,
        arguments: Optional[Dict[str, Any]],
        perform: Handshake,
        generation: Optional[Callable[[], int]] = None,
    ) -> Result:
        """
        Run the handshake through ``perform`` unless a session is already active.

        ``generation`` reports the launch of the backend that answered; the
        session is bound to it (see :meth:`expire`).
        """
        async with self._lock:
            if self.active:
                logger.debug("Session for '%s' already active on %s", self.server, self.channel_id)
                return self._state.handshake_result

            args = self.resolve_arguments(arguments)
            channel_id = str(args[self.config.channel_argument])
            result = await perform(args)
            if result.is_error:
                raise SessionNotEstablishedError(
                    self.server,
                    f"Handshake '{self.handshake_tool}' on '{self.server}' failed: {result.text() or 'no details'}",
                )

            self._state = SessionState(
                server=self.server,
                channel_id=channel_id,
                established=True,
                generation=generation() if generation else 0,
                handshake_result=result,
            )
            logger.info("Joined channel %s on '%s'", channel_id, self.server)
            return result

    def reset(self) -> None:
        """Drop the session; the next call must handshake again."""
        if self._state is not None:
            logger.info("Leaving channel %s on '%s'", self._state.channel_id, self.server)
        self._state = None

    def expire(self, generation: int) -> bool:
        """Drop the session if the backend was relaunched since the handshake."""
        if self._state is None or self._state.generation == generation:
            return False
        logger.warning(
            "Server '%s' was restarted; channel %s is no longer joined",
            self.server,
            self._state.channel_id,
        )
        self._state = None
        return True
