"""Shared enums for relaybus contracts."""

from __future__ import annotations

from enum import Enum


class AgentInvocationChannel(str, Enum):
    """Surface an invocation originated from."""

    EMAIL = "email"
    CHATOPS = "chatops"


class BrokerType(str, Enum):
    """Message broker backends selectable through configuration."""

    KAFKA = "kafka"
    REDIS = "redis"
    RABBITMQ = "rabbitmq"
    MEMORY = "memory"


class DeadLetterReason(str, Enum):
    """Why a delivery was moved off the main path."""

    PARSE_ERROR = "parse_error"
    HANDLER_ERROR = "handler_error"
