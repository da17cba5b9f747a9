"""Core type definitions for relayrpc."""

from __future__ import annotations

import inspect
from abc import ABC
from typing import Any


class RpcTarget(ABC):
    """Base class for objects that can be passed to a peer with live methods.

    When an RpcTarget appears in a payload, its public methods are sent as
    callable references and its public, non-callable attributes as plain
    data. The peer receives a dict whose method entries are awaitable stubs
    that call back into this object.

    Usage:
        class Progress(RpcTarget):
            def __init__(self, total: int) -> None:
                self.total = total

            async def on_step(self, step: int) -> None:
                print(f"{step}/{self.total}")

        await connection.send_request("worker", "run", {"progress": Progress(10)})

    Override `rpc_surface()` to declare the surface explicitly.
    """

    # Members that are never exposed to a peer
    _rpc_reserved_methods = frozenset({
        'rpc_surface',
        # Python special methods
        '__init__', '__new__', '__del__', '__repr__', '__str__',
        '__hash__', '__eq__', '__ne__', '__lt__', '__le__', '__gt__', '__ge__',
        '__getattr__', '__setattr__', '__delattr__', '__getattribute__',
        '__class__', '__dict__', '__doc__', '__module__', '__weakref__',
    })

    def rpc_surface(self) -> dict[str, Any]:
        """Return the members exposed to a peer, keyed by name.

        Default implementation returns public instance attributes and public
        methods collected across the class hierarchy, sorted by name.
        """
        surface: dict[str, Any] = {}
        for name in sorted(set(dir(self))):
            if name.startswith('_') or name in self._rpc_reserved_methods:
                continue
            # Skip properties so that reading the surface has no side effects
            if isinstance(inspect.getattr_static(type(self), name, None), property):
                continue
            surface[name] = getattr(self, name)
        return surface
