"""Tesy broker package.

- session.py: BrokerSession with connection lifecycle, subscriptions and telemetry
- outbound.py: bounded queue of commands waiting for a connection
- topics.py: request/response topic layout
"""

from .outbound import CommandEnvelope, OutboundQueue
from .session import BrokerSession
from .topics import ResponseTopic, parse_response_topic, request_topic, response_filter

__all__ = [
    "BrokerSession",
    "CommandEnvelope",
    "OutboundQueue",
    "ResponseTopic",
    "parse_response_topic",
    "request_topic",
    "response_filter",
]
