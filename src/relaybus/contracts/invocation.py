"""Caller-facing invocation options and results."""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime
from typing import Generic, Literal, TypeGuard, TypeVar, Union
from uuid import UUID

from relaybus.contracts.events import AgentInvocationPayload, ChatOpsReplyContext, EmailReplyContext
from relaybus.contracts.types import AgentInvocationChannel

T = TypeVar("T")

SyncHandler = Callable[[], Union[Awaitable[T], T]]


@dataclass(slots=True)
class InvokeOptions(Generic[T]):
    """Routing fields for one invocation plus the inline fallback."""

    channel: AgentInvocationChannel
    agent_id: str
    organization_id: str
    user_id: str
    payload: AgentInvocationPayload
    sync_handler: SyncHandler[T]
    reply_context: EmailReplyContext | ChatOpsReplyContext | None = None
    received_at: datetime | None = None
    source_ip: str | None = None
    user_agent: str | None = None


@dataclass(frozen=True, slots=True)
class AsyncInvokeResult:
    """The event was durably handed to the broker; no business result yet."""

    event_id: UUID
    is_async: Literal[True] = True


@dataclass(frozen=True, slots=True)
class SyncInvokeResult(Generic[T]):
    """The sync handler ran inline and produced ``result``."""

    result: T
    is_async: Literal[False] = False


InvokeResult = Union[AsyncInvokeResult, SyncInvokeResult[T]]


def is_async_result(result: InvokeResult[T]) -> TypeGuard[AsyncInvokeResult]:
    return isinstance(result, AsyncInvokeResult)


def is_sync_result(result: InvokeResult[T]) -> TypeGuard[SyncInvokeResult[T]]:
    return isinstance(result, SyncInvokeResult)
