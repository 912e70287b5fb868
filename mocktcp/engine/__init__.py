"""Scripted action engine: connections, runners, checks and the ready signal."""
from mocktcp.engine.connection import Connection
from mocktcp.engine.ready import ReadySignal
from mocktcp.engine.reporter import CheckRecorder, FailFastReporter
from mocktcp.engine.runner import ConnectionRunner, RunnerState

__all__ = [
    "CheckRecorder",
    "Connection",
    "ConnectionRunner",
    "FailFastReporter",
    "ReadySignal",
    "RunnerState",
]
