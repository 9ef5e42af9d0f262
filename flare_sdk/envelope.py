import io
import json
import mimetypes

from flare_sdk.utils import json_dumps, capture_internal_exceptions

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from typing import Any
    from typing import Optional
    from typing import Union
    from typing import Dict
    from typing import List
    from typing import Iterator

    from flare_sdk._types import Event, EventDataCategory
    from flare_sdk.session import Session


# Item types whose payload is a JSON document.
JSON_ITEM_TYPES = frozenset(
    ("event", "transaction", "session", "sessions", "check_in", "log")
)
KNOWN_ITEM_TYPES = JSON_ITEM_TYPES | frozenset(("attachment", "statsd"))


class EnvelopeError(ValueError):
    """Raised when bytes cannot be decoded into an envelope.

    `stage` names the part of the input that was malformed: one of
    ``envelope_header``, ``item_header``, ``item_payload`` or
    ``payload_terminator``.
    """

    def __init__(self, stage: str, message: str) -> None:
        ValueError.__init__(self, "%s: %s" % (stage, message))
        self.stage = stage
        self.message = message


def parse_json(data: "Union[bytes, str]") -> "Any":
    # on some python 3 versions this needs to be bytes
    if isinstance(data, bytes):
        data = data.decode("utf-8", "replace")
    return json.loads(data)


class Envelope:
    """
    A container for everything sent to the server. Holds a header dict and a
    list of items. At most one item may be of type "event" or "transaction";
    the `event_id` header is taken from the first such item added.

    An envelope can also wrap bytes that were produced elsewhere, see
    `Envelope.from_raw`. Those are passed through without being parsed.
    """

    def __init__(
        self,
        headers: "Optional[Dict[str, Any]]" = None,
        items: "Optional[List[Item]]" = None,
    ) -> None:
        if headers is not None:
            headers = dict(headers)
        self.headers = headers or {}
        if items is None:
            items = []
        else:
            items = list(items)
        self.items = items
        self._raw: "Optional[bytes]" = None

    @classmethod
    def from_raw(cls, data: bytes) -> "Envelope":
        rv = cls()
        rv._raw = bytes(data)
        return rv

    @property
    def is_raw(self) -> bool:
        return self._raw is not None

    @property
    def description(self) -> str:
        if self._raw is not None:
            return "raw envelope (%s bytes)" % len(self._raw)
        return "envelope with %s items (%s)" % (
            len(self.items),
            ", ".join(x.data_category for x in self.items),
        )

    def add_event(
        self,
        event: "Event",
    ) -> None:
        self.add_item(Item(payload=PayloadRef(json=event), type="event"))

    def add_transaction(
        self,
        transaction: "Event",
    ) -> None:
        self.add_item(Item(payload=PayloadRef(json=transaction), type="transaction"))

    def add_checkin(
        self,
        checkin: "Any",
    ) -> None:
        self.add_item(Item(payload=PayloadRef(json=checkin), type="check_in"))

    def add_session(
        self,
        session: "Union[Session, Dict[str, Any]]",
    ) -> None:
        if not isinstance(session, dict):
            session = session.to_json()
        self.add_item(Item(payload=PayloadRef(json=session), type="session"))

    def add_sessions(
        self,
        sessions: "Any",
    ) -> None:
        self.add_item(Item(payload=PayloadRef(json=sessions), type="sessions"))

    def add_item(
        self,
        item: "Item",
    ) -> None:
        if self._raw is not None:
            raise ValueError("cannot add items to a raw envelope")
        if "event_id" not in self.headers and item.type in ("event", "transaction"):
            payload = item.payload.json
            if payload is not None and payload.get("event_id"):
                self.headers["event_id"] = payload["event_id"]
        self.items.append(item)

    def get_event(self) -> "Optional[Event]":
        for items in self.items:
            event = items.get_event()
            if event is not None:
                return event
        return None

    def get_transaction_event(self) -> "Optional[Event]":
        for item in self.items:
            event = item.get_transaction_event()
            if event is not None:
                return event
        return None

    def __iter__(self) -> "Iterator[Item]":
        return iter(self.items)

    def __len__(self) -> int:
        return len(self.items)

    def serialize_into(
        self,
        f: "Any",
    ) -> None:
        if self._raw is not None:
            f.write(self._raw)
            return
        f.write(json_dumps(self.headers))
        f.write(b"\n")
        for item in self.items:
            item.serialize_into(f)

    def serialize(self) -> bytes:
        out = io.BytesIO()
        self.serialize_into(out)
        return out.getvalue()

    @classmethod
    def deserialize_from(
        cls,
        f: "Any",
    ) -> "Envelope":
        line = f.readline()
        if not line.strip():
            raise EnvelopeError("envelope_header", "missing envelope header")
        try:
            headers = parse_json(line)
        except ValueError as e:
            raise EnvelopeError("envelope_header", str(e)) from e
        if not isinstance(headers, dict):
            raise EnvelopeError("envelope_header", "header is not an object")

        items = []
        while 1:
            item = Item.deserialize_from(f)
            if item is None:
                break
            items.append(item)
        return cls(headers=headers, items=items)

    @classmethod
    def deserialize(
        cls,
        bytes: bytes,
    ) -> "Envelope":
        return cls.deserialize_from(io.BytesIO(bytes))

    def __repr__(self) -> str:
        if self._raw is not None:
            return "<Envelope raw=%r>" % (self._raw[:64],)
        return "<Envelope headers=%r items=%r>" % (self.headers, self.items)


class PayloadRef:
    def __init__(
        self,
        bytes: "Optional[bytes]" = None,
        path: "Optional[Union[bytes, str]]" = None,
        json: "Optional[Any]" = None,
    ) -> None:
        self.json = json
        self.bytes = bytes
        self.path = path

    def get_bytes(self) -> bytes:
        if self.bytes is None:
            if self.path is not None:
                with capture_internal_exceptions():
                    with open(self.path, "rb") as f:
                        self.bytes = f.read()
            elif self.json is not None:
                self.bytes = json_dumps(self.json)
        return self.bytes or b""

    @property
    def inferred_content_type(self) -> str:
        if self.json is not None:
            return "application/json"
        elif self.path is not None:
            path = self.path
            if isinstance(path, bytes):
                path = path.decode("utf-8", "replace")
            ty = mimetypes.guess_type(path)[0]
            if ty:
                return ty
        return "application/octet-stream"

    def __repr__(self) -> str:
        return "<Payload %r>" % (self.inferred_content_type,)


class Item:
    def __init__(
        self,
        payload: "Union[bytes, str, PayloadRef]",
        headers: "Optional[Dict[str, Any]]" = None,
        type: "Optional[str]" = None,
        content_type: "Optional[str]" = None,
        filename: "Optional[str]" = None,
    ) -> None:
        if headers is not None:
            headers = dict(headers)
        else:
            headers = {}
        if type is not None:
            headers["type"] = type
        # the length is always derived from the payload
        headers.pop("length", None)
        self.headers = headers

        if isinstance(payload, bytes):
            payload = PayloadRef(bytes=payload)
        elif isinstance(payload, str):
            payload = PayloadRef(bytes=payload.encode("utf-8"))

        if filename is not None:
            headers["filename"] = filename
        if content_type is not None:
            headers["content_type"] = content_type
        elif self.type == "attachment" and "content_type" not in headers:
            headers["content_type"] = payload.inferred_content_type

        self.payload = payload
        # Set for items decoded without a length header.
        self.implicit_length = False

    def __repr__(self) -> str:
        return "<Item headers=%r payload=%r data_category=%r>" % (
            self.headers,
            self.payload,
            self.data_category,
        )

    @property
    def type(self) -> "Optional[str]":
        return self.headers.get("type")

    @property
    def is_known_type(self) -> bool:
        return self.type in KNOWN_ITEM_TYPES

    @property
    def data_category(self) -> "EventDataCategory":
        ty = self.headers.get("type")
        if ty == "session" or ty == "sessions":
            return "session"
        elif ty == "attachment":
            return "attachment"
        elif ty == "transaction":
            return "transaction"
        elif ty == "event":
            return "error"
        elif ty == "check_in":
            return "monitor"
        elif ty == "statsd":
            return "metric_bucket"
        elif ty == "log":
            return "log_item"
        else:
            return "default"

    def get_bytes(self) -> bytes:
        return self.payload.get_bytes()

    def get_event(self) -> "Optional[Event]":
        """
        Returns an error event if there is one.
        """
        if self.type == "event" and self.payload.json is not None:
            return self.payload.json
        return None

    def get_transaction_event(self) -> "Optional[Event]":
        if self.type == "transaction" and self.payload.json is not None:
            return self.payload.json
        return None

    def serialize_into(
        self,
        f: "Any",
    ) -> None:
        bytes = self.get_bytes()
        headers: "Dict[str, Any]" = {}
        if "type" in self.headers:
            headers["type"] = self.headers["type"]
        if not self.implicit_length or b"\n" in bytes:
            headers["length"] = len(bytes)
        for key, value in self.headers.items():
            if key not in headers:
                headers[key] = value
        f.write(json_dumps(headers))
        f.write(b"\n")
        f.write(bytes)
        f.write(b"\n")

    def serialize(self) -> bytes:
        out = io.BytesIO()
        self.serialize_into(out)
        return out.getvalue()

    @classmethod
    def deserialize_from(
        cls,
        f: "Any",
    ) -> "Optional[Item]":
        line = f.readline()
        if not line.strip():
            # blank lines are only allowed as trailing padding
            if f.read().strip():
                raise EnvelopeError("item_header", "unexpected blank line")
            return None
        try:
            headers = parse_json(line)
        except ValueError as e:
            raise EnvelopeError("item_header", str(e)) from e
        if not isinstance(headers, dict) or not isinstance(headers.get("type"), str):
            raise EnvelopeError("item_header", "missing item type")

        length = headers.get("length")
        if length is not None:
            if isinstance(length, bool) or not isinstance(length, int) or length < 0:
                raise EnvelopeError("item_header", "invalid length %r" % (length,))
            payload = f.read(length)
            if len(payload) < length:
                raise EnvelopeError(
                    "item_payload",
                    "expected %s bytes, got %s" % (length, len(payload)),
                )
            terminator = f.read(1)
            if terminator not in (b"", b"\n"):
                raise EnvelopeError(
                    "payload_terminator", "unexpected byte %r after payload" % terminator
                )
        else:
            # if no length was specified we need to read up to the end of line
            # and remove it (if it is present, i.e. not the very last char in an eof terminated envelope)
            payload = f.readline()
            if payload.endswith(b"\n"):
                payload = payload[:-1]

        if headers["type"] in JSON_ITEM_TYPES:
            try:
                parsed = parse_json(payload)
            except ValueError as e:
                raise EnvelopeError("item_payload", str(e)) from e
            rv = cls(headers=headers, payload=PayloadRef(bytes=payload, json=parsed))
        else:
            rv = cls(headers=headers, payload=payload)
        rv.implicit_length = length is None
        return rv

    @classmethod
    def deserialize(
        cls,
        bytes: bytes,
    ) -> "Optional[Item]":
        return cls.deserialize_from(io.BytesIO(bytes))
