"""
Core data models

Actions, connection scripts and the frozen server configuration.
"""
from collections import deque
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, ClassVar, Deque, Dict, Iterable, Iterator, Optional, Sequence, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from mocktcp.config import settings
from mocktcp.exceptions import IdleTimeoutError, ScriptError


class ActionKind(str, Enum):
    """Action kinds accepted in connection scripts"""

    SEND = "send"
    PACKSEND = "packsend"
    RECV = "recv"
    PACKRECV = "packrecv"
    SLEEP = "sleep"
    CODE = "code"


def decode_hex(text: str) -> bytes:
    """
    Decode a human-readable hex string into raw bytes.

    Whitespace anywhere in the string is ignored, so "48 45 4C 4C 4F"
    and "48454c4c4f" decode to the same five bytes.

    Raises:
        ScriptError: If the text is not a string of hex digit pairs
    """
    if not isinstance(text, str):
        raise ScriptError(f"Hex payload must be a string, got {type(text).__name__}")
    cleaned = "".join(text.split())
    try:
        return bytes.fromhex(cleaned)
    except ValueError as e:
        raise ScriptError(f"Invalid hex payload: {text!r}", details={"error": str(e)}) from e


class Action(BaseModel):
    """One scripted step of a connection"""

    model_config = ConfigDict(frozen=True)

    kinds: ClassVar[Tuple[ActionKind, ...]] = ()

    kind: ActionKind
    label: str = ""

    @field_validator("kind")
    @classmethod
    def _check_kind(cls, value: ActionKind) -> ActionKind:
        if cls.kinds and value not in cls.kinds:
            raise ValueError(f"{cls.__name__} does not accept kind {value.value!r}")
        return value

    def describe(self) -> str:
        return self.kind.value


class SendAction(Action):
    """Queue a payload for the client"""

    kinds: ClassVar[Tuple[ActionKind, ...]] = (ActionKind.SEND, ActionKind.PACKSEND)

    kind: ActionKind = ActionKind.SEND
    payload: bytes

    @classmethod
    def from_hex(cls, text: str, label: str = "") -> "SendAction":
        return cls(kind=ActionKind.PACKSEND, payload=decode_hex(text), label=label)

    @property
    def is_hex(self) -> bool:
        return self.kind == ActionKind.PACKSEND

    def describe(self) -> str:
        return self.payload.hex().upper() if self.is_hex else repr(self.payload)


class RecvAction(Action):
    """
    Wait for an exact byte sequence from the client.

    The number of bytes read is always len(expected). Hex actions render
    both sides as uppercase hex when reporting, raw actions report bytes.
    Lowercase or spaced hex in a script therefore matches the same bytes
    sent by the client; the comparison never sees the script text as written.
    """

    kinds: ClassVar[Tuple[ActionKind, ...]] = (ActionKind.RECV, ActionKind.PACKRECV)

    kind: ActionKind = ActionKind.RECV
    expected: bytes

    @classmethod
    def from_hex(cls, text: str, label: str = "") -> "RecvAction":
        return cls(kind=ActionKind.PACKRECV, expected=decode_hex(text), label=label)

    @property
    def is_hex(self) -> bool:
        return self.kind == ActionKind.PACKRECV

    @property
    def size(self) -> int:
        return len(self.expected)

    def render(self, data: bytes) -> Union[bytes, str]:
        """Render received or expected bytes for the check report"""
        return data.hex().upper() if self.is_hex else data

    def describe(self) -> str:
        return self.expected.hex().upper() if self.is_hex else repr(self.expected)


class SleepAction(Action):
    """Pause this connection only"""

    kinds: ClassVar[Tuple[ActionKind, ...]] = (ActionKind.SLEEP,)

    kind: ActionKind = ActionKind.SLEEP
    duration: float = Field(ge=0)

    def describe(self) -> str:
        return f"{self.duration}s"


class InvokeAction(Action):
    """Call back into the test with (server, connection, label)"""

    kinds: ClassVar[Tuple[ActionKind, ...]] = (ActionKind.CODE,)

    kind: ActionKind = ActionKind.CODE
    callback: Callable[..., Any]

    def describe(self) -> str:
        return getattr(self.callback, "__qualname__", repr(self.callback))


_BUILDERS: Dict[ActionKind, Callable[[Any, str], Action]] = {
    ActionKind.SEND: lambda value, label: SendAction(payload=value, label=label),
    ActionKind.PACKSEND: SendAction.from_hex,
    ActionKind.RECV: lambda value, label: RecvAction(expected=value, label=label),
    ActionKind.PACKRECV: RecvAction.from_hex,
    ActionKind.SLEEP: lambda value, label: SleepAction(duration=value, label=label),
    ActionKind.CODE: lambda value, label: InvokeAction(callback=value, label=label),
}


def parse_action(entry: Union[Action, Sequence[Any]]) -> Action:
    """
    Build an Action from its list encoding.

    Entries look like ("recv", b"HELLO", "wait for hello") or
    ["packsend", "42 59 45", "send bye"]. The trailing label is optional.
    Action instances are returned unchanged.

    Raises:
        ScriptError: On unknown kinds, wrong argument counts or invalid values
    """
    if isinstance(entry, Action):
        return entry
    if isinstance(entry, (str, bytes)) or not isinstance(entry, Sequence) or not entry:
        raise ScriptError(f"Action entry must be a non-empty sequence: {entry!r}")

    name, *args = entry
    try:
        kind = ActionKind(name)
    except ValueError:
        raise ScriptError(f"Unknown action kind: {name!r}", details={"entry": repr(entry)}) from None

    if len(args) not in (1, 2):
        raise ScriptError(
            f"Action {kind.value!r} takes a value and an optional label",
            details={"entry": repr(entry), "arguments": len(args)},
        )

    value = args[0]
    label = str(args[1]) if len(args) == 2 else ""
    try:
        return _BUILDERS[kind](value, label)
    except ValidationError as e:
        raise ScriptError(f"Invalid {kind.value} action: {e}", details={"entry": repr(entry)}) from e


class ConnectionScript:
    """
    Ordered queue of actions bound to one connection.

    Consumed strictly front to back by exactly one ConnectionRunner.
    """

    def __init__(self, actions: Iterable[Action] = ()):
        self._actions: Deque[Action] = deque(actions)

    @classmethod
    def from_entries(cls, entries: Iterable[Union[Action, Sequence[Any]]]) -> "ConnectionScript":
        return cls(parse_action(entry) for entry in entries)

    def pop(self) -> Action:
        """Remove and return the next action."""
        return self._actions.popleft()

    def peek(self) -> Optional[Action]:
        return self._actions[0] if self._actions else None

    def __len__(self) -> int:
        return len(self._actions)

    def __bool__(self) -> bool:
        return bool(self._actions)

    def __iter__(self) -> Iterator[Action]:
        return iter(list(self._actions))

    def __repr__(self) -> str:
        kinds = ", ".join(action.kind.value for action in self._actions)
        return f"ConnectionScript([{kinds}])"


def default_on_timeout(connection: Any) -> None:
    """Default idle timeout policy: fail the whole run."""
    raise IdleTimeoutError(
        "server timeout",
        details={"connection_id": getattr(connection, "id", None)},
    )


class ServerConfig(BaseModel):
    """Mock server configuration, frozen once the server is built"""

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True, extra="forbid")

    connections: Tuple[Tuple[Action, ...], ...] = ()
    host: str = Field(default_factory=lambda: settings.host)
    port: Optional[int] = Field(default_factory=lambda: settings.port, ge=0, le=65535)
    timeout: float = Field(default_factory=lambda: settings.timeout, gt=0)
    on_timeout: Callable[..., Any] = default_on_timeout
    on_error: Optional[Callable[..., Any]] = None
    reporter: Optional[Any] = None
    logger: Optional[Any] = None
    debug: bool = Field(default_factory=lambda: settings.debug)

    @field_validator("connections", mode="before")
    @classmethod
    def _parse_connections(cls, value: Any) -> Tuple[Tuple[Action, ...], ...]:
        return tuple(tuple(parse_action(entry) for entry in script) for script in value)

    def build_scripts(self) -> Deque[ConnectionScript]:
        """Fresh, unshared scripts in the order connections will be accepted."""
        return deque(ConnectionScript(actions) for actions in self.connections)


class CheckResult(BaseModel):
    """Outcome of one receive-and-verify check"""

    label: str
    passed: bool
    actual: Any = None
    expected: Any = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
