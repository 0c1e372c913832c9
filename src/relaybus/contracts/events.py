"""Event contracts for agent invocations carried over the message broker.

Bodies travel as camelCase JSON (``agentId``, ``replyContext``,
``originalMessage``); Python code uses the snake_case attribute names.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Annotated, Any, Literal
from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel

from relaybus.broker.errors import DeserializationError
from relaybus.contracts.types import AgentInvocationChannel, DeadLetterReason


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class WireModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class EmailReplyContext(WireModel):
    """Everything needed to answer the email that triggered an invocation."""

    kind: Literal["email"] = "email"
    email_id: str
    sender: str
    recipient: str
    subject: str
    provider_id: str
    conversation_id: str | None = None


class ChatOpsReplyContext(WireModel):
    """Everything needed to answer in a chat-ops thread (MS Teams, Slack)."""

    kind: Literal["chatops"] = "chatops"
    provider: str
    channel_id: str
    message_id: str
    sender_id: str
    sender_name: str
    workspace_id: str | None = None
    thread_id: str | None = None
    conversation_reference: Any | None = None


ReplyContext = Annotated[
    EmailReplyContext | ChatOpsReplyContext,
    Field(discriminator="kind"),
]


class EventMetadata(WireModel):
    received_at: datetime = Field(default_factory=utcnow)
    source_ip: str | None = None
    user_agent: str | None = None


class AgentInvocationPayload(WireModel):
    """Handler input. Keys beyond the known ones are kept as-is."""

    model_config = ConfigDict(extra="allow")

    message: str
    conversation_id: str | None = None
    attachments: list[Any] = Field(default_factory=list)


class AgentInvocationEvent(WireModel):
    """Unit of transport between the dispatcher and the worker.

    ``id`` is assigned once at construction and survives redelivery; broker
    delivery handles (offsets, delivery tags, stream ids) are separate.
    """

    model_config = ConfigDict(frozen=True)

    id: UUID = Field(default_factory=uuid4)
    channel: AgentInvocationChannel
    agent_id: str = Field(min_length=1)
    organization_id: str = Field(min_length=1)
    user_id: str = Field(min_length=1)
    payload: AgentInvocationPayload
    reply_context: ReplyContext | None = None
    metadata: EventMetadata = Field(default_factory=EventMetadata)


class DeadLetterRecord(WireModel):
    """Body written to a dead-letter destination."""

    original_message: str
    error_type: DeadLetterReason
    error_message: str = ""
    timestamp: datetime = Field(default_factory=utcnow)
    original_message_id: str | None = None


def encode_event(event: AgentInvocationEvent) -> str:
    return event.model_dump_json(by_alias=True)


def decode_event(raw: str | bytes) -> AgentInvocationEvent:
    """Parse and validate a wire body into an event.

    Raises DeserializationError for malformed JSON and schema violations alike.
    """
    try:
        return AgentInvocationEvent.model_validate_json(raw)
    except ValidationError as exc:
        text = raw.decode("utf-8", errors="replace") if isinstance(raw, bytes) else raw
        raise DeserializationError(str(exc), raw=text) from exc


def encode_dead_letter(record: DeadLetterRecord) -> str:
    return record.model_dump_json(by_alias=True)


def dead_letter_fields(record: DeadLetterRecord) -> dict[str, str]:
    """Flat string fields for stream-based dead-letter destinations."""
    data = record.model_dump(mode="json", by_alias=True, exclude_none=True)
    return {key: str(value) for key, value in data.items()}
