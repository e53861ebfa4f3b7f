"""One-shot credential hand-off between an admin and a job stuck on a login wall."""

import asyncio
import logging
from typing import Optional

from showparser.logchannel import LogChannel
from showparser.models import LogLevel
from showparser.scraper import Credentials

logger = logging.getLogger(__name__)


class CredentialBroker:
    """
    A job that hits a login wall calls ``await_credentials``, which announces
    the wait on the log channel and suspends. An admin answers through
    ``submit``. At most one job waits at a time; the harvester is exclusive
    anyway.
    """

    def __init__(self, channel: Optional[LogChannel] = None) -> None:
        self._channel = channel
        self._waiter: Optional[asyncio.Future] = None

    @property
    def waiting(self) -> bool:
        return self._waiter is not None and not self._waiter.done()

    async def await_credentials(self, timeout_seconds: float = 300.0) -> Optional[Credentials]:
        """Wait for ``submit``; return None when nobody answers in time."""
        if self.waiting:
            raise RuntimeError("Another job is already waiting for credentials")
        self._waiter = asyncio.get_running_loop().create_future()
        if self._channel is not None:
            self._channel.publish(
                f"Login required: awaiting credentials (timeout {timeout_seconds:.0f}s)",
                LogLevel.WARNING,
            )
        try:
            return await asyncio.wait_for(asyncio.shield(self._waiter), timeout_seconds)
        except asyncio.TimeoutError:
            logger.warning("No credentials received within %.0fs", timeout_seconds)
            return None
        finally:
            if not self._waiter.done():
                self._waiter.cancel()
            self._waiter = None

    def submit(self, identifier: str, secret: str) -> bool:
        """Deliver credentials to the waiting job. Returns False if none is waiting."""
        if not self.waiting:
            return False
        self._waiter.set_result(Credentials(identifier=identifier, secret=secret))
        if self._channel is not None:
            self._channel.publish("Credentials received", LogLevel.INFO)
        return True
