"""Presence-based network access control.

A long-lived client holds a TCP connection to the gateway; while it stays
connected and keeps sending heartbeats, the gateway keeps its address allowed
through an external hook, and revokes it when the connection ends or goes
silent.
"""
from heartgate.config import ClientConfig, ServerConfig
from heartgate.errors import ConfigError, FatalError, HeartgateError
from heartgate.hooks import PolicyHookRunner
from heartgate.registry import ClientRecord, ClientRegistry
from heartgate.server import EventLoop
from heartgate.supervisor import AttemptState, ConnectionSupervisor
from heartgate.sweeper import TimeoutSweeper

__version__ = "0.1.0"

__all__ = [
    "AttemptState",
    "ClientConfig",
    "ClientRecord",
    "ClientRegistry",
    "ConfigError",
    "ConnectionSupervisor",
    "EventLoop",
    "FatalError",
    "HeartgateError",
    "PolicyHookRunner",
    "ServerConfig",
    "TimeoutSweeper",
]
