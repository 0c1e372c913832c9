"""Reply delivery contracts used by the worker."""

from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Protocol

from relaybus.contracts.events import (
    AgentInvocationEvent,
    ChatOpsReplyContext,
    EmailReplyContext,
)

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class AgentResponse:
    """What an agent produced for one event."""

    text: str
    message_id: str


class AgentExecutor(Protocol):
    """Business logic run for every delivered event."""

    async def execute(self, event: AgentInvocationEvent) -> AgentResponse: ...


class ReplySender(Protocol):
    """Sends an agent's answer back through the originating surface."""

    async def send_email_reply(
        self, context: EmailReplyContext, agent_id: str, text: str
    ) -> None: ...

    async def send_chatops_reply(
        self, context: ChatOpsReplyContext, agent_id: str, text: str
    ) -> None: ...


class LoggingReplySender:
    """Reply sender that only records replies in the log."""

    async def send_email_reply(self, context: EmailReplyContext, agent_id: str, text: str) -> None:
        logger.info(
            "reply.email",
            extra={
                "extra": {
                    "email_id": context.email_id,
                    "recipient": context.sender,
                    "agent_id": agent_id,
                    "length": len(text),
                }
            },
        )

    async def send_chatops_reply(
        self, context: ChatOpsReplyContext, agent_id: str, text: str
    ) -> None:
        logger.info(
            "reply.chatops",
            extra={
                "extra": {
                    "provider": context.provider,
                    "channel_id": context.channel_id,
                    "thread_id": context.thread_id,
                    "agent_id": agent_id,
                    "length": len(text),
                }
            },
        )


async def route_reply(
    sender: ReplySender, event: AgentInvocationEvent, response: AgentResponse
) -> bool:
    """Deliver ``response`` according to the event's reply context.

    Returns False when the event carries no reply context.
    """
    context = event.reply_context
    if context is None:
        return False
    if isinstance(context, EmailReplyContext):
        await sender.send_email_reply(context, event.agent_id, response.text)
    elif isinstance(context, ChatOpsReplyContext):
        await sender.send_chatops_reply(context, event.agent_id, response.text)
    else:  # pragma: no cover - closed union
        raise TypeError(f"Unsupported reply context: {type(context).__name__}")
    return True
