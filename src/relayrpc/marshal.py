"""Proxy marshaling: passing live callbacks inside plain data.

Outbound, `marshal_out` walks a payload and replaces every callable it finds
with a function reference token:

    {"___function": "<root-id>.<key>.<key>"}

and records the callable in the connection's callback registry under the
same dotted path. Inbound, `marshal_in` turns every token back into a
`RemoteFunction`; awaiting it sends a nested request to the peer that
produced the token, addressed at the token's path. Because the stub's
arguments are themselves marshaled, callbacks can be passed through
callbacks to any depth.

The walk is bounded by `max_depth`: a container is only walked when its
parent sits at depth <= max_depth (the root is depth 0). Containers nested
deeper are passed through unchanged, so callables below that boundary are
NOT converted. This keeps cyclic graphs from recursing forever at the cost
of sending them truncated.

What gets walked:
- dict: every key
- list / tuple: every element, the index used as path segment
- RpcTarget: its declared `rpc_surface()`
- dataclass instances: their fields

Everything else is copied as-is.
"""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from relayrpc.config import DEFAULT_MAX_DEPTH
from relayrpc.error import RpcError
from relayrpc.ids import generate_id
from relayrpc.types import RpcTarget

FUNCTION_KEY = "___function"

RemoteCall = Callable[[str, list[Any]], Awaitable[Any]]


@dataclass(frozen=True, slots=True)
class FunctionRef:
    """Function reference token: {"___function": path}"""

    path: str

    def to_json(self) -> dict[str, str]:
        """Convert to JSON object."""
        return {FUNCTION_KEY: self.path}

    @staticmethod
    def is_token(value: Any) -> bool:
        return (
            isinstance(value, dict)
            and isinstance(value.get(FUNCTION_KEY), str)
            and bool(value[FUNCTION_KEY])
        )

    @staticmethod
    def from_json(value: Any) -> FunctionRef:
        """Parse from JSON value."""
        if not FunctionRef.is_token(value):
            msg = f"Invalid function reference: {value!r}"
            raise ValueError(msg)
        return FunctionRef(value[FUNCTION_KEY])


@dataclass(slots=True)
class CallbackEntry:
    """A callable registered on a connection, with the object that held it."""

    source: Any
    func: Callable[..., Any]


class RemoteFunction:
    """Awaitable stub for a callable that lives on a peer.

    Example:
        ```python
        async def handler(options):
            await options["on_progress"](50)   # runs on the caller's side
        ```
    """

    __slots__ = ('path', '_call')

    def __init__(self, path: str, call: RemoteCall) -> None:
        self.path = path
        self._call = call

    async def __call__(self, *args: Any) -> Any:
        return await self._call(self.path, list(args))

    def __repr__(self) -> str:
        return f"RemoteFunction({self.path!r})"


def _is_function(value: Any) -> bool:
    return callable(value) and not isinstance(value, (type, RpcTarget))


def _is_container(value: Any) -> bool:
    return (
        isinstance(value, (dict, list, tuple, RpcTarget))
        or (dataclasses.is_dataclass(value) and not isinstance(value, type))
    )


class _Marshaler:
    __slots__ = ('callbacks', 'max_depth')

    def __init__(self, callbacks: dict[str, CallbackEntry], max_depth: int) -> None:
        self.callbacks = callbacks
        self.max_depth = max_depth

    def walk(self, value: Any, path: str, depth: int) -> Any:
        match value:
            case list() | tuple():
                return [
                    self.child(item, f"{path}.{index}", value, depth)
                    for index, item in enumerate(value)
                ]
            case dict():
                entries = value.items()
            case RpcTarget():
                entries = value.rpc_surface().items()
            case _ if dataclasses.is_dataclass(value) and not isinstance(value, type):
                entries = (
                    (f.name, getattr(value, f.name)) for f in dataclasses.fields(value)
                )
            case _:
                return _leaf(value)

        result = {
            str(key): self.child(item, f"{path}.{key}", value, depth)
            for key, item in entries
        }
        # Empty objects are not worth sending
        return result or None

    def child(self, item: Any, path: str, owner: Any, depth: int) -> Any:
        if _is_function(item):
            self.callbacks[path] = CallbackEntry(owner, item)
            return FunctionRef(path).to_json()
        if _is_container(item):
            if depth <= self.max_depth:
                return self.walk(item, path, depth + 1)
            return item
        return _leaf(item)


def _leaf(value: Any) -> Any:
    if isinstance(value, RpcError):
        return value.to_wire()
    return value


def marshal_out(
    value: Any,
    callbacks: dict[str, CallbackEntry],
    root_id: str | None = None,
    max_depth: int = DEFAULT_MAX_DEPTH,
) -> Any:
    """Convert a payload into its serializable mirror.

    Args:
        value: The payload (any object graph)
        callbacks: Registry receiving every callable found, keyed by path
        root_id: First path segment; a fresh id when omitted
        max_depth: Depth bound of the walk

    Returns:
        The payload with callables replaced by function reference tokens

    Raises:
        TypeError: If `value` itself is callable
    """
    if _is_function(value):
        raise TypeError("root can't be a function")
    if root_id is None:
        root_id = generate_id()
    marshaler = _Marshaler(callbacks, max_depth)
    return marshaler.walk(value, root_id, 0)


def marshal_in(value: Any, call: RemoteCall) -> Any:
    """Convert a received mirror into a live payload.

    Args:
        value: Payload as received from a peer
        call: Coroutine function `(path, args)` issuing the nested request

    Returns:
        The payload with every function reference token replaced by a
        RemoteFunction
    """
    match value:
        case dict() if FunctionRef.is_token(value):
            return RemoteFunction(FunctionRef.from_json(value).path, call)
        case dict():
            return {key: marshal_in(item, call) for key, item in value.items()}
        case list():
            return [marshal_in(item, call) for item in value]
        case _:
            return value
