"""
mocktcp - Scriptable mock TCP server for testing TCP clients
"""
from mocktcp.engine import (
    CheckRecorder,
    Connection,
    ConnectionRunner,
    FailFastReporter,
    ReadySignal,
    RunnerState,
)
from mocktcp.exceptions import (
    ConfigurationError,
    IdleTimeoutError,
    MockServerError,
    ScriptError,
    SetupError,
    StreamError,
    UnexpectedConnectionError,
    VerificationMismatch,
)
from mocktcp.models import (
    Action,
    ActionKind,
    CheckResult,
    ConnectionScript,
    InvokeAction,
    RecvAction,
    SendAction,
    ServerConfig,
    SleepAction,
    decode_hex,
    parse_action,
)
from mocktcp.server import MockServer, default_on_timeout, start_server
from mocktcp.threaded import ThreadedMockServer

__version__ = "1.0.0"

__all__ = [
    "Action",
    "ActionKind",
    "CheckRecorder",
    "CheckResult",
    "ConfigurationError",
    "Connection",
    "ConnectionRunner",
    "ConnectionScript",
    "FailFastReporter",
    "IdleTimeoutError",
    "InvokeAction",
    "MockServer",
    "MockServerError",
    "ReadySignal",
    "RecvAction",
    "RunnerState",
    "ScriptError",
    "SendAction",
    "ServerConfig",
    "SetupError",
    "SleepAction",
    "StreamError",
    "ThreadedMockServer",
    "UnexpectedConnectionError",
    "VerificationMismatch",
    "decode_hex",
    "default_on_timeout",
    "parse_action",
    "start_server",
]
