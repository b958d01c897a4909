"""
PowerTrack Stream Client

This module implements the PowertrackStreamClient class that provisions the
filter rules, holds one long-lived PowerTrack streaming session and hands
each decoded activity to its consumer, reconnecting with exponential backoff
whenever the session goes idle, errors or is closed by the remote end.
"""

import asyncio
import contextlib
import json
import uuid
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

import aiohttp
import structlog
from prometheus_client import Counter

from rule_provisioner import RuleProvisioner
from shared.models import ReconnectState, RuleSet, StreamEvent

EVENTS_RECEIVED = Counter('powertrack_events_received_total', 'Total activities received from the stream')
CONNECTION_ATTEMPTS = Counter('powertrack_connection_attempts_total', 'Total stream connection attempts')
RECONNECTS = Counter('powertrack_reconnects_total', 'Total stream reconnections performed')


class StreamConnectionError(Exception):
    """Raised when the stream endpoint refuses or breaks the session."""


class PowertrackStreamClient:
    """Client owning one PowerTrack streaming session.

    Idle timeouts, transport errors and remote closes all converge on a single
    reconnect timer. A trigger that fires while a reconnect is pending replaces
    the pending timer, so only one reconnect is ever in flight.
    """

    def __init__(
        self,
        stream_url: str,
        username: str,
        password: str,
        provisioner: RuleProvisioner,
        rule_set: RuleSet,
        stream_timeout: float = 60.0,
        initial_backoff: float = 1.0,
        max_backoff: Optional[float] = None
    ) -> None:
        """Initialize the stream client.

        Args:
            stream_url: PowerTrack stream URL
            username: PowerTrack account username
            password: PowerTrack account password
            provisioner: Pushes rule_set before the stream opens
            rule_set: Rules to provision and to resolve activity tags against
            stream_timeout: Seconds without any data (keep-alives included)
                before the session is considered dead
            initial_backoff: Reconnect delay in seconds after a healthy session
            max_backoff: Optional ceiling for the reconnect delay in seconds
        """
        self.stream_url = stream_url
        self.auth = aiohttp.BasicAuth(username, password)
        self.provisioner = provisioner
        self.rule_set = rule_set
        self.stream_timeout = stream_timeout

        # Connection state
        self._reconnect_state = ReconnectState(floor=initial_backoff, ceiling=max_backoff)
        self._session: Optional[aiohttp.ClientSession] = None
        self._stream_task: Optional[asyncio.Task] = None
        self._reconnect_handle: Optional[asyncio.TimerHandle] = None
        self._on_event: Optional[Callable[[StreamEvent], None]] = None
        self._is_connected = False
        self._stopped = False

        # Logging with correlation IDs
        self.logger = structlog.get_logger(__name__)
        self._correlation_id = str(uuid.uuid4())

        # Statistics
        self._events_received = 0
        self._connection_attempts = 0
        self._reconnects = 0
        self._last_message_time: Optional[datetime] = None

    async def start(self, on_event: Callable[[StreamEvent], None]) -> None:
        """Provision the rules and open the stream.

        Args:
            on_event: Called once per activity, in arrival order

        Raises:
            RuleProvisioningError: If the rules could not be pushed
        """
        self._on_event = on_event
        self._stopped = False

        await self.provisioner.provision(self.rule_set)

        self.logger.info("Connecting stream", stream_url=self.stream_url)
        self._session = aiohttp.ClientSession(
            auth=self.auth,
            timeout=aiohttp.ClientTimeout(total=None, sock_connect=30)
        )
        self._open()

    def _open(self) -> None:
        self._correlation_id = str(uuid.uuid4())
        self._connection_attempts += 1
        CONNECTION_ATTEMPTS.inc()
        self._stream_task = asyncio.create_task(self._consume())

    async def _consume(self) -> None:
        """Read the stream until it ends, errors or goes idle."""
        log = self.logger.bind(
            correlation_id=self._correlation_id,
            attempt=self._connection_attempts
        )
        log.info("Opening stream")

        try:
            async with self._session.get(self.stream_url) as response:
                if response.status != 200:
                    body = await response.text()
                    raise StreamConnectionError(f"HTTP {response.status}: {body[:500]}")

                self._handle_ready()

                while True:
                    line = await asyncio.wait_for(
                        response.content.readline(),
                        timeout=self.stream_timeout
                    )
                    if not line:
                        break
                    self._handle_line(line)

        except asyncio.TimeoutError:
            self._handle_idle_timeout()
            return
        except (aiohttp.ClientError, StreamConnectionError, ValueError) as e:
            self._handle_error(e)
            return
        except Exception as e:
            # Unknown failures end the session like transport errors
            self.logger.error("Unexpected stream failure", correlation_id=self._correlation_id, exc_info=True)
            self._handle_error(e)
            return

        self._handle_end()

    def _handle_ready(self) -> None:
        self.logger.info("Stream ready", correlation_id=self._correlation_id)
        self._is_connected = True
        self._reconnect_state.reset()

    def _handle_idle_timeout(self) -> None:
        self.logger.warning(
            "Stream idle timeout",
            correlation_id=self._correlation_id,
            stream_timeout=self.stream_timeout
        )
        self._is_connected = False
        self._schedule_reconnect("idle_timeout")

    def _handle_error(self, error: BaseException) -> None:
        self.logger.error(
            "Error connecting stream",
            correlation_id=self._correlation_id,
            error=str(error)
        )
        self._is_connected = False
        self._schedule_reconnect("error")

    def _handle_end(self) -> None:
        self.logger.error("Stream ended", correlation_id=self._correlation_id)
        self._is_connected = False
        self._schedule_reconnect("end")

    def _handle_line(self, line: bytes) -> None:
        """Decode one stream line and deliver it to the consumer."""
        line = line.strip()
        if not line:
            # Keep-alive
            return

        log = self.logger.bind(correlation_id=self._correlation_id)

        try:
            payload = json.loads(line)
        except ValueError as e:
            log.warning("Undecodable stream message", error=str(e), message=line[:500])
            return

        if not isinstance(payload, dict):
            log.warning("Unexpected stream message", message=payload)
            return

        if "actor" not in payload and ("info" in payload or "error" in payload):
            log.info("Stream system message", message=payload)
            return

        try:
            event = StreamEvent.from_activity(payload, self.rule_set)
            log.debug(
                "Received activity",
                username=event.username,
                body=event.body.replace("\n", " "),
                geo=event.geo.to_wkt() if event.geo else None
            )
        except (ValueError, TypeError, KeyError, AttributeError) as e:
            log.warning("Could not parse activity", error=str(e), activity=payload)
            return

        self._events_received += 1
        self._last_message_time = datetime.now(timezone.utc)
        EVENTS_RECEIVED.inc()

        # Consumer failures must not be mistaken for stream failures
        try:
            self._on_event(event)
        except Exception as e:
            log.error("Error in event handler", error=str(e), activity=payload, exc_info=True)

    def _schedule_reconnect(self, reason: str) -> None:
        """Queue a reconnect, replacing any reconnect already pending."""
        if self._stopped:
            return

        if self._reconnect_handle is not None:
            self._reconnect_handle.cancel()

        delay = self._reconnect_state.delay
        self.logger.info(
            "Queueing reconnect",
            correlation_id=self._correlation_id,
            reason=reason,
            backoff_delay=delay
        )
        loop = asyncio.get_running_loop()
        self._reconnect_handle = loop.call_later(delay, self._reconnect)

    def _reconnect(self) -> None:
        self._reconnect_handle = None
        if self._stopped:
            return

        self.logger.warning("Connection lost, destroying stream", correlation_id=self._correlation_id)
        if self._stream_task is not None and not self._stream_task.done():
            self._stream_task.cancel()

        self.logger.info("Attempting to reconnect stream")
        self._reconnects += 1
        RECONNECTS.inc()
        self._open()
        self._reconnect_state.grow()

    async def stop(self) -> None:
        """Close the stream permanently."""
        self._stopped = True

        if self._reconnect_handle is not None:
            self._reconnect_handle.cancel()
            self._reconnect_handle = None

        if self._stream_task is not None and not self._stream_task.done():
            self._stream_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._stream_task
        self._stream_task = None

        if self._session is not None:
            await self._session.close()
            self._session = None

        self._is_connected = False
        self.logger.info(
            "Stream stopped",
            correlation_id=self._correlation_id,
            events_received=self._events_received
        )

    @property
    def is_connected(self) -> bool:
        """Check if the stream session is established."""
        return self._is_connected

    @property
    def reconnect_pending(self) -> bool:
        """Check if a reconnect is queued."""
        return self._reconnect_handle is not None

    @property
    def backoff_delay(self) -> float:
        """Get the delay the next reconnect will wait, in seconds."""
        return self._reconnect_state.delay

    @property
    def events_received(self) -> int:
        """Get number of activities delivered to the consumer."""
        return self._events_received

    def get_stats(self) -> Dict[str, Any]:
        """Get client statistics.

        Returns:
            Dictionary containing client statistics
        """
        return {
            'is_connected': self._is_connected,
            'events_received': self._events_received,
            'connection_attempts': self._connection_attempts,
            'reconnects': self._reconnects,
            'reconnect_pending': self.reconnect_pending,
            'backoff_delay': self._reconnect_state.delay,
            'last_message_time': self._last_message_time.isoformat() if self._last_message_time else None,
            'correlation_id': self._correlation_id
        }
