from copy import copy

from typing import TYPE_CHECKING, NamedTuple

if TYPE_CHECKING:
    from typing import List
    from typing import Optional

    from flare_sdk.client import Client
    from flare_sdk.scope import Scope


class StackLayer(NamedTuple):
    client: "Optional[Client]"
    scope: "Scope"


class Stack:
    """The (client, scope) layers of a hub. There is always at least one."""

    def __init__(self, client: "Optional[Client]", scope: "Scope") -> None:
        self._layers: "List[StackLayer]" = [StackLayer(client, scope)]

    @property
    def top(self) -> "StackLayer":
        return self._layers[-1]

    @property
    def depth(self) -> int:
        return len(self._layers)

    def set_top(self, client: "Optional[Client]", scope: "Scope") -> None:
        self._layers[-1] = StackLayer(client, scope)

    def push(self) -> None:
        top = self._layers[-1]
        self._layers.append(StackLayer(top.client, copy(top.scope)))

    def pop(self) -> "StackLayer":
        if len(self._layers) <= 1:
            raise RuntimeError("Pop from empty stack")
        return self._layers.pop()

    def __len__(self) -> int:
        return len(self._layers)

    def __repr__(self) -> str:
        return "<Stack depth=%d>" % len(self._layers)
