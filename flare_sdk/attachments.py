import os
import mimetypes

from flare_sdk.envelope import Item, PayloadRef

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from typing import Optional, Union, Callable


DEFAULT_ATTACHMENT_TYPE = "event.attachment"


class Attachment:
    """A file or blob sent along with the events captured in a ``Scope``.

    :param bytes: Raw bytes of the attachment, or a function that returns the raw bytes. Must be provided unless
                  ``path`` is provided.
    :param filename: The filename of the attachment. Defaults to the basename of ``path``.
    :param path: Path to a file to attach. The file is read when the envelope is serialized.
    :param content_type: The content type. Guessed from the filename when not given.
    :param attachment_type: How the server should treat the attachment, ``event.attachment`` unless
                            told otherwise.
    """

    def __init__(
        self,
        bytes: "Union[None, bytes, Callable[[], bytes]]" = None,
        filename: "Optional[str]" = None,
        path: "Optional[str]" = None,
        content_type: "Optional[str]" = None,
        attachment_type: str = DEFAULT_ATTACHMENT_TYPE,
    ) -> None:
        if bytes is None and path is None:
            raise TypeError("path or raw bytes required for attachment")
        if filename is None and path is not None:
            filename = os.path.basename(path)
        if filename is None:
            raise TypeError("filename is required for attachment")
        if content_type is None:
            content_type = mimetypes.guess_type(filename)[0]
        self.bytes = bytes
        self.filename = filename
        self.path = path
        self.content_type = content_type
        self.attachment_type = attachment_type

    def to_envelope_item(self) -> "Item":
        """Returns an envelope item for this attachment."""
        payload: "Union[PayloadRef, bytes]"
        if self.bytes is not None:
            payload = self.bytes() if callable(self.bytes) else self.bytes
        else:
            payload = PayloadRef(path=self.path)
        return Item(
            payload=payload,
            type="attachment",
            filename=self.filename,
            headers={"attachment_type": self.attachment_type},
            content_type=self.content_type,
        )

    def __repr__(self) -> str:
        return "<Attachment %r>" % (self.filename,)
