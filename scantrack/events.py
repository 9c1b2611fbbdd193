from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Literal

from sse_starlette.sse import ServerSentEvent

# Frames end with a blank line: "data: <payload>\n\n"
SSE_SEP = "\n"


@dataclass
class ChangeEvent:
    """Envelope pushed to job-list subscribers."""

    type: Literal["snapshot", "changed", "changed_bulk"]
    item: dict[str, Any] | None = None
    items: list[dict[str, Any]] = field(default_factory=list)

    @classmethod
    def changed(cls, item: dict[str, Any]) -> ChangeEvent:
        return cls(type="changed", item=item)

    @classmethod
    def changed_bulk(cls, items: list[dict[str, Any]]) -> ChangeEvent:
        return cls(type="changed_bulk", items=items)

    @classmethod
    def snapshot(cls, items: list[dict[str, Any]]) -> ChangeEvent:
        return cls(type="snapshot", items=items)

    def to_dict(self) -> dict[str, Any]:
        if self.type == "changed":
            return {"type": self.type, "item": self.item}
        return {"type": self.type, "items": self.items}

    def to_json(self) -> str:
        return json.dumps(self.to_dict())


def frame(payload: str) -> ServerSentEvent:
    """One data frame. Multi-line payloads become several ``data:`` lines."""
    return ServerSentEvent(data=payload, sep=SSE_SEP)


def heartbeat() -> ServerSentEvent:
    """Comment frame that keeps idle connections open through proxies."""
    return ServerSentEvent(comment="ping", sep=SSE_SEP)
