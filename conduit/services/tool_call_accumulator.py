"""Reassemble streamed tool-call fragments into complete calls.

Streaming chat completions deliver each tool call in pieces: the first
fragment usually carries ``index``, ``id`` and the function name, the rest
only carry more ``arguments`` text under the same ``index``.  Fragments are
accepted as OpenAI ``ChoiceDeltaToolCall`` objects or as plain dicts.
"""

from __future__ import annotations

import json
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any
from typing import Dict
from typing import Iterable
from typing import List
from typing import Optional
from typing import Tuple

FUNCTION_NAME_SEPARATOR = "__"


def _field(obj: Any, name: str) -> Any:
    if obj is None:
        return None
    if isinstance(obj, dict):
        return obj.get(name)
    return getattr(obj, name, None)


@dataclass
class AccumulatedToolCall:
    index: int
    id: str
    name: str = ""
    arguments: str = ""

    def parsed_arguments(self) -> Dict[str, Any]:
        """Decode ``arguments``; empty means no arguments.

        Raises ``ValueError`` when the text is not a JSON object.
        """

        if not self.arguments.strip():
            return {}
        value = json.loads(self.arguments)
        if not isinstance(value, dict):
            raise ValueError(f"tool arguments must be a JSON object, got {type(value).__name__}")
        return value

    def as_message_entry(self) -> Dict[str, Any]:
        """OpenAI ``tool_calls`` entry for the assistant message."""

        return {
            "id": self.id,
            "type": "function",
            "function": {"name": self.name, "arguments": self.arguments},
        }


class ToolCallAccumulator:
    """Ordered by first appearance, keyed by fragment ``index``."""

    def __init__(self):
        self._calls: "OrderedDict[int, AccumulatedToolCall]" = OrderedDict()
        self._announced: set = set()

    def __len__(self) -> int:
        return len(self._calls)

    def __bool__(self) -> bool:
        return bool(self._calls)

    def add(self, fragment: Any) -> Optional[AccumulatedToolCall]:
        """Merge one fragment.

        Returns the call when this fragment gave it its name for the first
        time (so callers can announce it exactly once), otherwise ``None``.
        """

        index = _field(fragment, "index")
        fragment_id = _field(fragment, "id")

        if not isinstance(index, int) or index < 0:
            index = None
            if fragment_id:
                for existing_index, existing in self._calls.items():
                    if existing.id == fragment_id:
                        index = existing_index
                        break
            if index is None:
                index = max(self._calls, default=-1) + 1

        call = self._calls.get(index)
        if call is None:
            call = AccumulatedToolCall(index=index, id=fragment_id or f"tc_{index}")
            self._calls[index] = call
        elif fragment_id and call.id == f"tc_{index}":
            call.id = fragment_id

        function = _field(fragment, "function")
        name = _field(function, "name")
        if name and not call.name:
            call.name = name
        arguments = _field(function, "arguments")
        if arguments:
            call.arguments += arguments

        if call.name and index not in self._announced:
            self._announced.add(index)
            return call
        return None

    def extend(self, fragments: Iterable[Any]) -> List[AccumulatedToolCall]:
        newly_named = []
        for fragment in fragments or []:
            call = self.add(fragment)
            if call is not None:
                newly_named.append(call)
        return newly_named

    def calls(self) -> List[AccumulatedToolCall]:
        return list(self._calls.values())

    def reset(self) -> None:
        self._calls.clear()
        self._announced.clear()


def make_function_name(server_id: int, tool_name: str) -> str:
    return f"{server_id}{FUNCTION_NAME_SEPARATOR}{tool_name}"


def split_function_name(name: str) -> Optional[Tuple[int, str]]:
    """``"3__search"`` -> ``(3, "search")``; ``None`` when it does not parse."""

    if not name or FUNCTION_NAME_SEPARATOR not in name:
        return None
    prefix, tool_name = name.split(FUNCTION_NAME_SEPARATOR, 1)
    if not prefix.isdigit() or not tool_name:
        return None
    return int(prefix), tool_name


__all__ = [
    "AccumulatedToolCall",
    "ToolCallAccumulator",
    "make_function_name",
    "split_function_name",
]
