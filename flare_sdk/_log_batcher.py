from typing import TYPE_CHECKING

from flare_sdk._batcher import Batcher
from flare_sdk.envelope import Envelope, Item, PayloadRef
from flare_sdk.utils import safe_repr

if TYPE_CHECKING:
    from typing import Any
    from typing import Dict
    from typing import List

    from flare_sdk._types import Log


EMPTY_TRACE_ID = "0" * 32


def serialize_attribute(value: "Any") -> "Dict[str, Any]":
    # bool first, it is a subclass of int
    if isinstance(value, bool):
        return {"value": value, "type": "boolean"}
    if isinstance(value, int):
        return {"value": value, "type": "integer"}
    if isinstance(value, float):
        return {"value": value, "type": "double"}
    if isinstance(value, str):
        return {"value": value, "type": "string"}
    return {"value": safe_repr(value), "type": "string"}


class LogBatcher(Batcher["Log"]):
    """Buffers structured logs and sends them as one ``log`` item per batch."""

    MAX_BEFORE_FLUSH = 100
    FLUSH_WAIT_TIME = 5.0

    TYPE = "log"
    CONTENT_TYPE = "application/vnd.flare.items.log+json"

    @staticmethod
    def _to_transport_format(item: "Log") -> "Any":
        attributes = dict(item["attributes"])
        attributes.setdefault("flare.severity_number", item["severity_number"])
        attributes.setdefault("flare.severity_text", item["severity_text"])

        return {
            "timestamp": int(item["time_unix_nano"]) / 1.0e9,
            "trace_id": item.get("trace_id") or EMPTY_TRACE_ID,
            "level": str(item["severity_text"]),
            "body": str(item["body"]),
            "attributes": {k: serialize_attribute(v) for k, v in attributes.items()},
        }

    def _add_to_envelope(self, envelope: "Envelope", items: "List[Log]") -> None:
        envelope.add_item(
            Item(
                type=self.TYPE,
                content_type=self.CONTENT_TYPE,
                headers={"item_count": len(items)},
                payload=PayloadRef(
                    json={"items": [self._to_transport_format(log) for log in items]}
                ),
            )
        )
