"""The RpcMessage envelope exchanged between endpoints."""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass, field
from typing import Any, Literal

from relayrpc.ids import generate_id

Direction = Literal["request", "response"]

# Destination matching every endpoint.
WILDCARD = "*"

_DIRECTIONS = ("request", "response")


@dataclass(slots=True)
class RpcMessage:
    """A single request or response.

    A response reuses the id of the request it answers, with source and
    destination swapped. Source and destination must differ.
    """

    source: str
    destination: str
    direction: Direction
    function_name: str
    data: Any = None
    id: str = field(default_factory=generate_id)
    origin: str | None = None
    send_only_if_there_is_a_listener: bool = False
    host_id: str = "notset"

    def __post_init__(self) -> None:
        if self.source == self.destination:
            raise ValueError("source and destination can't be the same")
        if self.direction not in _DIRECTIONS:
            raise ValueError(f"Invalid direction: {self.direction!r}")

    @classmethod
    def request(
        cls,
        source: str,
        destination: str,
        function_name: str,
        data: Any,
    ) -> RpcMessage:
        return cls(source, destination, "request", function_name, data)

    @classmethod
    def response(cls, msg: RpcMessage, data: Any) -> RpcMessage:
        """Build the response to `msg` carrying `data`."""
        return cls(
            source=msg.destination,
            destination=msg.source,
            direction="response",
            function_name=msg.function_name,
            data=data,
            id=msg.id,
        )

    def with_data(self, data: Any) -> RpcMessage:
        """Return a copy of this message carrying different data."""
        return dataclasses.replace(self, data=data)

    def to_json(self) -> dict[str, Any]:
        """Convert to the JSON object sent on the wire."""
        result: dict[str, Any] = {
            "id": self.id,
            "source": self.source,
            "destination": self.destination,
            "direction": self.direction,
            "functionName": self.function_name,
            "data": self.data,
            "sendOnlyIfThereIsAListener": self.send_only_if_there_is_a_listener,
            "host_id": self.host_id,
        }
        if self.origin is not None:
            result["origin"] = self.origin
        return result

    @staticmethod
    def from_json(obj: Any) -> RpcMessage:
        """Parse a wire JSON object.

        Raises:
            ValueError: If the object is not a well-formed message
        """
        if not isinstance(obj, dict):
            raise ValueError(f"Message must be an object, got {type(obj).__name__}")
        msg_id = obj.get("id")
        function_name = obj.get("functionName")
        if not isinstance(msg_id, str) or not msg_id:
            raise ValueError("Message id must be a non-empty string")
        if not isinstance(function_name, str):
            raise ValueError("Message functionName must be a string")
        return RpcMessage(
            source=str(obj.get("source", "")),
            destination=str(obj.get("destination", "")),
            direction=obj.get("direction"),
            function_name=function_name,
            data=obj.get("data"),
            id=msg_id,
            origin=obj.get("origin"),
            send_only_if_there_is_a_listener=bool(
                obj.get("sendOnlyIfThereIsAListener", False)
            ),
            host_id=obj.get("host_id", "notset"),
        )
