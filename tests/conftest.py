import os
from pathlib import Path
import sys

import pytest

# Ensure src/ is importable without an editable install
ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

os.environ.setdefault("RELAYBUS_DISABLE_TRACING", "1")

from relaybus.contracts.events import (  # noqa: E402
    AgentInvocationEvent,
    AgentInvocationPayload,
    ChatOpsReplyContext,
    EmailReplyContext,
)
from relaybus.contracts.types import AgentInvocationChannel  # noqa: E402


@pytest.fixture
def email_context() -> EmailReplyContext:
    return EmailReplyContext(
        email_id="AAMkAGI2",
        sender="alice@example.com",
        recipient="agent@example.com",
        subject="Quarterly numbers",
        provider_id="outlook",
        conversation_id="thread-9",
    )


@pytest.fixture
def chatops_context() -> ChatOpsReplyContext:
    return ChatOpsReplyContext(
        provider="ms-teams",
        channel_id="19:general",
        message_id="1700000000000",
        sender_id="29:bob",
        sender_name="Bob",
        workspace_id=None,
        thread_id="1699999999999",
    )


@pytest.fixture
def make_event():
    def _make(
        agent_id: str = "agent-1",
        message: str = "summarise the incident",
        channel: AgentInvocationChannel = AgentInvocationChannel.CHATOPS,
        reply_context=None,
    ) -> AgentInvocationEvent:
        return AgentInvocationEvent(
            channel=channel,
            agent_id=agent_id,
            organization_id="org-1",
            user_id="user-1",
            payload=AgentInvocationPayload(message=message),
            reply_context=reply_context,
        )

    return _make
