"""
Report Orchestrator

Turns a classified stream event into its side effects: report persistence,
user tracking and outbound replies. Each category has a pipeline of steps in
which a step's dependents only run once it has succeeded, while independent
steps run side by side.
"""

import asyncio
from dataclasses import dataclass, field
from typing import Awaitable, Callable, List, Sequence, Set

import structlog
from prometheus_client import Counter

from messages import MessageCatalog
from reply_sender import ReplySender
from report_classifier import classify
from report_store import ReportStore
from shared.models import ClassificationVerdict, ReportCategory, StreamEvent

EVENTS_CLASSIFIED = Counter('events_classified_total', 'Total events classified', ['category'])


@dataclass
class PipelineStep:
    """One side effect in a category pipeline.

    Attributes:
        name: Step name used in logs
        action: Coroutine factory returning True on success
        then: Steps that run only after this one succeeds
    """

    name: str
    action: Callable[[], Awaitable[bool]]
    then: List["PipelineStep"] = field(default_factory=list)


class ReportOrchestrator:
    """Classifies incoming events and runs their category pipelines."""

    def __init__(self, store: ReportStore, sender: ReplySender, messages: MessageCatalog) -> None:
        self.store = store
        self.sender = sender
        self.messages = messages
        self.logger = structlog.get_logger(__name__)
        self._tasks: Set[asyncio.Task] = set()

    def handle_event(self, event: StreamEvent) -> ClassificationVerdict:
        """
        Classify an event and schedule its pipeline in the background.

        This is the stream consumer; it returns as soon as the pipeline is
        scheduled so the stream keeps its arrival order.

        Args:
            event: Activity delivered by the stream

        Returns:
            The verdict the pipeline was scheduled for
        """
        verdict = classify(event)
        EVENTS_CLASSIFIED.labels(category=verdict.category.value).inc()
        self.logger.debug(
            "Categorized activity via rule tags",
            username=event.username,
            categorization=verdict.describe(),
            category=verdict.category.value
        )

        task = asyncio.create_task(self.execute(verdict, event))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return verdict

    async def execute(self, verdict: ClassificationVerdict, event: StreamEvent) -> None:
        """
        Run the pipeline for a verdict to completion.

        Args:
            verdict: Classification of the event
            event: The classified event
        """
        log = self.logger.bind(
            username=event.username,
            category=verdict.category.value,
            categorization=verdict.describe()
        )

        if verdict.category is ReportCategory.UNMATCHED:
            log.warning(
                "Activity did not match category actions",
                body=event.body,
                tags=sorted(event.matching_tags),
                geo=event.geo.to_wkt() if event.geo else None
            )
            return

        log.info("Running report pipeline")
        await self.run_steps(self.build_pipeline(verdict, event), event)

    def build_pipeline(self, verdict: ClassificationVerdict, event: StreamEvent) -> List[PipelineStep]:
        """
        Build the step tree for a verdict.

        Args:
            verdict: Classification of the event
            event: The classified event

        Returns:
            Root steps; empty for unmatched events
        """
        category = verdict.category
        username = event.username

        if category is ReportCategory.CONFIRMED:
            return [
                PipelineStep(
                    "insert_confirmed",
                    lambda: self.store.insert_confirmed(event),
                    then=[PipelineStep("upsert_user", lambda: self.store.upsert_user(username))]
                )
            ]

        if category is ReportCategory.ASK_FOR_GEO:
            return [
                PipelineStep("insert_nonspatial_report", lambda: self.store.insert_nonspatial_report(event)),
                PipelineStep(
                    "check_new_user",
                    lambda: self._if_new_user(username),
                    then=[PipelineStep("insert_nonspatial_user", lambda: self.store.insert_nonspatial_user(username))]
                ),
                self._reply_step(event, "thanks_text"),
            ]

        if category is ReportCategory.UNCONFIRMED:
            return [
                PipelineStep("insert_unconfirmed", lambda: self.store.insert_unconfirmed(event)),
                self._reply_step(event, "invite_text", then=[self._invitee_step(username)]),
            ]

        if category is ReportCategory.INVITE:
            return [self._reply_step(event, "invite_text", then=[self._invitee_step(username)])]

        return []

    def _reply_step(
        self,
        event: StreamEvent,
        code: str,
        then: Sequence[PipelineStep] = ()
    ) -> PipelineStep:
        # Replies only go to users not yet in the all-users table
        send = PipelineStep(
            f"send_{code}",
            lambda: self.sender.send_reply(event.username, self.messages.get_message(code, event.language)),
            then=list(then)
        )
        return PipelineStep("check_new_user_for_reply", lambda: self._if_new_user(event.username), then=[send])

    def _invitee_step(self, username: str) -> PipelineStep:
        return PipelineStep("insert_invitee", lambda: self.store.insert_invitee(username))

    async def _if_new_user(self, username: str) -> bool:
        is_new = await self.store.is_new_user(username)
        if is_new is False:
            self.logger.debug("User already exists, skipping dependent steps", username=username)
        return bool(is_new)

    async def run_steps(self, steps: Sequence[PipelineStep], event: StreamEvent) -> None:
        """Run sibling steps concurrently, each followed by its dependents."""
        if steps:
            await asyncio.gather(*(self._run_step(step, event) for step in steps))

    async def _run_step(self, step: PipelineStep, event: StreamEvent) -> None:
        log = self.logger.bind(step=step.name, username=event.username)

        try:
            succeeded = await step.action()
        except Exception as e:
            log.error(
                "Pipeline step raised",
                error=str(e),
                body=event.body,
                tags=sorted(event.matching_tags),
                exc_info=True
            )
            succeeded = False

        if not succeeded:
            if step.then:
                log.info("Step did not succeed, skipping dependents", skipped=[s.name for s in step.then])
            return

        await self.run_steps(step.then, event)

    async def drain(self) -> None:
        """Wait for all scheduled pipelines to finish."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks))

    @property
    def pending(self) -> int:
        """Get number of pipelines still running."""
        return len(self._tasks)
