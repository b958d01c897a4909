"""
Reply Sender

Sends @-mention replies to report authors through the Twitter API.
"""

from datetime import datetime, timezone
from typing import Optional

import aiohttp
import structlog
from prometheus_client import Counter
from tweepy.asynchronous import AsyncClient
from tweepy.errors import TweepyException

from settings import TwitterSettings

REPLIES_SENT = Counter('replies_sent_total', 'Total replies dispatched (including dry runs)')
REPLIES_FAILED = Counter('replies_failed_total', 'Total replies that failed to send')


class ReplySender:
    """Notification gateway for outbound replies.

    With sending disabled every reply is logged and reported as dispatched,
    so dependent steps still run in test deployments.
    """

    def __init__(self, settings: TwitterSettings, client: Optional[AsyncClient] = None) -> None:
        """
        Initialize the sender.

        Args:
            settings: Credentials and reply behaviour
            client: Optional pre-built Twitter client, mainly for tests
        """
        self.settings = settings
        self.client = client or AsyncClient(
            consumer_key=settings.consumer_key,
            consumer_secret=settings.consumer_secret,
            access_token=settings.access_token_key,
            access_token_secret=settings.access_token_secret,
        )
        self._blacklist = {name.lower() for name in settings.reply_blacklist}
        self.logger = structlog.get_logger(__name__)

    def compose(self, username: str, message: Optional[str]) -> str:
        """
        Build the tweet text for a reply.

        Args:
            username: Recipient screen name, without @
            message: Reply body; None when the message could not be resolved

        Returns:
            Tweet text
        """
        text = f"@{username} {message or ''}".rstrip()
        if self.settings.add_timestamp:
            text = f"{text} {datetime.now(timezone.utc).strftime('%H:%M:%S')}"
        return text

    async def send_reply(self, username: str, message: Optional[str]) -> bool:
        """
        Send a reply to a user.

        Args:
            username: Recipient screen name, without @
            message: Reply body

        Returns:
            True if the reply was dispatched (or sending is disabled), False otherwise
        """
        log = self.logger.bind(username=username)

        if username.lower() in self._blacklist:
            log.info("User is on the reply blacklist, not replying")
            return False

        text = self.compose(username, message)

        if not self.settings.send_enabled:
            log.info("Reply sending is in test mode, no message will be sent", text=text)
            REPLIES_SENT.inc()
            return True

        try:
            await self.client.create_tweet(text=text)
        except (TweepyException, aiohttp.ClientError) as e:
            REPLIES_FAILED.inc()
            log.error("Tweeting failed", error=str(e), text=text)
            return False

        REPLIES_SENT.inc()
        log.info("Reply sent", text=text)
        return True
