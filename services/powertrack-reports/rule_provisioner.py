"""
PowerTrack Rule Provisioner

Pushes the configured filter rules to the PowerTrack rules endpoint before
the stream is opened.
"""

from typing import Any, Dict, List, Optional

import aiohttp
import structlog

from shared.models import RuleSet


class RuleProvisioningError(Exception):
    """Raised when the rule set could not be pushed to the provider."""


class RuleProvisioner:
    """Synchronises the provider's rule list with a local RuleSet.

    Rules present on the provider but absent locally are deleted, then the
    local rules are added. Adding a rule the provider already has is a no-op
    on the provider side.
    """

    def __init__(
        self,
        rules_url: str,
        username: str,
        password: str,
        request_timeout: float = 30.0
    ) -> None:
        """
        Initialize the provisioner.

        Args:
            rules_url: PowerTrack rules API URL
            username: PowerTrack account username
            password: PowerTrack account password
            request_timeout: Total timeout for each rules API request, in seconds
        """
        self.rules_url = rules_url
        self.auth = aiohttp.BasicAuth(username, password)
        self.timeout = aiohttp.ClientTimeout(total=request_timeout)
        self.logger = structlog.get_logger(__name__)

    async def provision(self, rule_set: RuleSet) -> None:
        """
        Push a rule set to the provider.

        Args:
            rule_set: Rules to install

        Raises:
            RuleProvisioningError: If any rules API call fails
        """
        log = self.logger.bind(rules_url=self.rules_url, rule_count=len(rule_set))
        log.debug("Provisioning rules", rules=rule_set.to_wire())

        wanted = {(rule["value"], rule["tag"]) for rule in rule_set.to_wire()}

        try:
            async with aiohttp.ClientSession(auth=self.auth, timeout=self.timeout) as session:
                existing = await self._fetch_rules(session)
                stale = [
                    {"value": rule.get("value"), "tag": rule.get("tag")}
                    for rule in existing
                    if (rule.get("value"), rule.get("tag")) not in wanted
                ]
                if stale:
                    log.info("Deleting stale rules", stale_count=len(stale))
                    await self._post_rules(session, stale, params={"_method": "delete"})

                await self._post_rules(session, rule_set.to_wire())
        except aiohttp.ClientError as e:
            log.error("Rules API request failed", error=str(e))
            raise RuleProvisioningError(f"Rules API request failed: {e}") from e

        log.info("Rules provisioned")

    async def _fetch_rules(self, session: aiohttp.ClientSession) -> List[Dict[str, Any]]:
        async with session.get(self.rules_url) as response:
            if response.status != 200:
                body = await response.text()
                raise RuleProvisioningError(
                    f"Fetching rules failed: HTTP {response.status}: {body}"
                )
            data = await response.json()
            return data.get("rules") or []

    async def _post_rules(
        self,
        session: aiohttp.ClientSession,
        rules: List[Dict[str, Any]],
        params: Optional[Dict[str, str]] = None
    ) -> None:
        async with session.post(self.rules_url, json={"rules": rules}, params=params) as response:
            if response.status not in (200, 201):
                body = await response.text()
                action = "Deleting" if params else "Adding"
                raise RuleProvisioningError(
                    f"{action} rules failed: HTTP {response.status}: {body}"
                )
