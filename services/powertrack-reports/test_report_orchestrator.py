"""
Unit tests for ReportOrchestrator

Tests the category pipelines: which side effects run, and that dependent
steps only run once the step they depend on has succeeded.
"""

import asyncio
from datetime import datetime, timezone
from typing import List
from unittest.mock import AsyncMock, MagicMock

import pytest
from structlog.testing import capture_logs

from report_classifier import classify
from report_orchestrator import ReportOrchestrator
from shared.models import GeoPoint, ReportCategory, RuleFamily, StreamEvent


def make_event(*families: RuleFamily, geo: GeoPoint = None) -> StreamEvent:
    """Create a StreamEvent matching the given rule families."""
    return StreamEvent(
        username="reporter",
        posted_at=datetime(2024, 1, 15, 10, 30, tzinfo=timezone.utc),
        body="flood on Mount Road",
        language="en",
        geo=geo,
        matching_tags=frozenset(family.value for family in families),
        families=frozenset(families),
    )


CONFIRMED = make_event(RuleFamily.BOUNDING_BOX, RuleFamily.ADDRESSED, geo=GeoPoint(80.25, 13.06))
ASK_FOR_GEO = make_event(RuleFamily.ADDRESSED, RuleFamily.LOCATION_MATCH)
UNCONFIRMED = make_event(RuleFamily.BOUNDING_BOX, geo=GeoPoint(80.25, 13.06))
INVITE = make_event(RuleFamily.LOCATION_MATCH)
UNMATCHED = make_event(RuleFamily.ADDRESSED)


class TestReportOrchestrator:
    """Test suite for ReportOrchestrator."""

    @pytest.fixture
    def trace(self) -> List[str]:
        """Collect side effects in the order they happen."""
        return []

    @pytest.fixture
    def store(self, trace: List[str]) -> AsyncMock:
        """Create a mock report store where every statement succeeds."""
        store = AsyncMock()

        def record(name, result=True):
            async def action(*args):
                trace.append(name)
                return result
            return action

        store.insert_confirmed.side_effect = record("insert_confirmed")
        store.upsert_user.side_effect = record("upsert_user")
        store.insert_unconfirmed.side_effect = record("insert_unconfirmed")
        store.insert_nonspatial_report.side_effect = record("insert_nonspatial_report")
        store.insert_nonspatial_user.side_effect = record("insert_nonspatial_user")
        store.insert_invitee.side_effect = record("insert_invitee")
        store.is_new_user.return_value = True
        return store

    @pytest.fixture
    def sender(self, trace: List[str]) -> AsyncMock:
        """Create a mock reply sender that always dispatches."""
        sender = AsyncMock()

        async def send_reply(username, message):
            trace.append(f"reply:{message}")
            return True

        sender.send_reply.side_effect = send_reply
        return sender

    @pytest.fixture
    def messages(self) -> MagicMock:
        """Create a mock message catalog that echoes the code."""
        messages = MagicMock()
        messages.get_message.side_effect = lambda code, language: code
        return messages

    @pytest.fixture
    def orchestrator(self, store: AsyncMock, sender: AsyncMock, messages: MagicMock) -> ReportOrchestrator:
        """Create a ReportOrchestrator instance for testing."""
        return ReportOrchestrator(store=store, sender=sender, messages=messages)

    @pytest.mark.asyncio
    async def test_confirmed_pipeline(
        self,
        orchestrator: ReportOrchestrator,
        sender: AsyncMock,
        trace: List[str]
    ) -> None:
        """Test that a confirmed report is stored, then its user upserted."""
        await orchestrator.execute(classify(CONFIRMED), CONFIRMED)

        assert trace == ["insert_confirmed", "upsert_user"]
        sender.send_reply.assert_not_called()

    @pytest.mark.asyncio
    async def test_confirmed_insert_failure_skips_upsert(
        self,
        orchestrator: ReportOrchestrator,
        store: AsyncMock
    ) -> None:
        """Test that the user upsert depends on the report insert."""
        store.insert_confirmed.side_effect = None
        store.insert_confirmed.return_value = False

        await orchestrator.execute(classify(CONFIRMED), CONFIRMED)

        store.upsert_user.assert_not_called()

    @pytest.mark.asyncio
    async def test_ask_for_geo_pipeline(
        self,
        orchestrator: ReportOrchestrator,
        store: AsyncMock,
        trace: List[str]
    ) -> None:
        """Test that a new non-spatial reporter is stored and asked for location."""
        await orchestrator.execute(classify(ASK_FOR_GEO), ASK_FOR_GEO)

        assert sorted(trace) == sorted([
            "insert_nonspatial_report",
            "insert_nonspatial_user",
            "reply:thanks_text",
        ])
        store.insert_nonspatial_report.assert_awaited_once_with(ASK_FOR_GEO)
        store.insert_nonspatial_user.assert_awaited_once_with("reporter")

    @pytest.mark.asyncio
    async def test_ask_for_geo_existing_user(
        self,
        orchestrator: ReportOrchestrator,
        store: AsyncMock,
        trace: List[str]
    ) -> None:
        """Test that a known user's report is stored without user insert or reply."""
        store.is_new_user.return_value = False

        await orchestrator.execute(classify(ASK_FOR_GEO), ASK_FOR_GEO)

        assert trace == ["insert_nonspatial_report"]

    @pytest.mark.asyncio
    async def test_ask_for_geo_report_failure_does_not_block_reply(
        self,
        orchestrator: ReportOrchestrator,
        store: AsyncMock,
        trace: List[str]
    ) -> None:
        """Test that the report insert and the reply are independent."""
        store.insert_nonspatial_report.side_effect = None
        store.insert_nonspatial_report.return_value = False

        await orchestrator.execute(classify(ASK_FOR_GEO), ASK_FOR_GEO)

        assert "reply:thanks_text" in trace
        assert "insert_nonspatial_user" in trace

    @pytest.mark.asyncio
    async def test_unconfirmed_pipeline(
        self,
        orchestrator: ReportOrchestrator,
        trace: List[str]
    ) -> None:
        """Test that the invitee is recorded only after the invite is sent."""
        await orchestrator.execute(classify(UNCONFIRMED), UNCONFIRMED)

        assert set(trace) == {"insert_unconfirmed", "reply:invite_text", "insert_invitee"}
        assert trace.index("reply:invite_text") < trace.index("insert_invitee")

    @pytest.mark.asyncio
    async def test_unconfirmed_insert_failure_does_not_block_invite(
        self,
        orchestrator: ReportOrchestrator,
        store: AsyncMock,
        trace: List[str]
    ) -> None:
        """Test that the invite goes out even when the report insert fails."""
        store.insert_unconfirmed.side_effect = None
        store.insert_unconfirmed.return_value = False

        await orchestrator.execute(classify(UNCONFIRMED), UNCONFIRMED)

        assert trace == ["reply:invite_text", "insert_invitee"]

    @pytest.mark.asyncio
    async def test_invite_send_failure_skips_invitee(
        self,
        orchestrator: ReportOrchestrator,
        store: AsyncMock,
        sender: AsyncMock
    ) -> None:
        """Test that a failed invite is not recorded."""
        sender.send_reply.side_effect = None
        sender.send_reply.return_value = False

        await orchestrator.execute(classify(INVITE), INVITE)

        sender.send_reply.assert_awaited_once_with("reporter", "invite_text")
        store.insert_invitee.assert_not_called()

    @pytest.mark.asyncio
    async def test_invite_existing_user(
        self,
        orchestrator: ReportOrchestrator,
        store: AsyncMock,
        sender: AsyncMock
    ) -> None:
        """Test that known users are not invited again."""
        store.is_new_user.return_value = False

        await orchestrator.execute(classify(INVITE), INVITE)

        sender.send_reply.assert_not_called()
        store.insert_invitee.assert_not_called()

    @pytest.mark.asyncio
    async def test_user_check_failure_skips_reply(
        self,
        orchestrator: ReportOrchestrator,
        store: AsyncMock,
        sender: AsyncMock
    ) -> None:
        """Test that a failed new-user check counts as not new."""
        store.is_new_user.return_value = None

        await orchestrator.execute(classify(INVITE), INVITE)

        sender.send_reply.assert_not_called()

    @pytest.mark.asyncio
    async def test_unmatched_is_logged_without_side_effects(
        self,
        orchestrator: ReportOrchestrator,
        store: AsyncMock,
        sender: AsyncMock,
        trace: List[str]
    ) -> None:
        """Test that unmatched events are logged as a warning and nothing else."""
        verdict = classify(UNMATCHED)

        assert verdict.category is ReportCategory.UNMATCHED
        with capture_logs() as logs:
            await orchestrator.execute(verdict, UNMATCHED)

        assert trace == []
        store.is_new_user.assert_not_called()
        sender.send_reply.assert_not_called()

        warnings = [entry for entry in logs if entry["event"] == "Activity did not match category actions"]
        assert len(warnings) == 1
        assert warnings[0]["log_level"] == "warning"
        assert warnings[0]["body"] == UNMATCHED.body
        assert warnings[0]["tags"] == ["addressed"]
        assert warnings[0]["categorization"] == "-BOUNDINGBOX -GEO +ADDRESSED -LOCATION"

    @pytest.mark.asyncio
    async def test_raising_step_does_not_stop_siblings(
        self,
        orchestrator: ReportOrchestrator,
        store: AsyncMock,
        trace: List[str]
    ) -> None:
        """Test that an exception in one step is contained to that step."""
        store.insert_unconfirmed.side_effect = RuntimeError("driver bug")

        await orchestrator.execute(classify(UNCONFIRMED), UNCONFIRMED)

        assert trace == ["reply:invite_text", "insert_invitee"]

    @pytest.mark.asyncio
    async def test_handle_event_schedules_pipeline(
        self,
        orchestrator: ReportOrchestrator,
        messages: MagicMock,
        trace: List[str]
    ) -> None:
        """Test that handle_event classifies and runs the pipeline in the background."""
        verdict = orchestrator.handle_event(INVITE)

        assert verdict.category is ReportCategory.INVITE
        assert orchestrator.pending == 1

        await orchestrator.drain()
        await asyncio.sleep(0)

        assert trace == ["reply:invite_text", "insert_invitee"]
        messages.get_message.assert_called_once_with("invite_text", "en")
        assert orchestrator.pending == 0
