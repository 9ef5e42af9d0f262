import io
import gzip
from urllib.request import getproxies

import certifi
import urllib3

from flare_sdk.consts import VERSION
from flare_sdk.envelope import Envelope
from flare_sdk.ratelimit import RateLimiter
from flare_sdk.utils import logger, capture_internal_exceptions
from flare_sdk.worker import BackgroundWorker

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from typing import Any
    from typing import Callable
    from typing import Dict
    from typing import Optional
    from typing import Type

    from urllib3.poolmanager import PoolManager


class Transport:
    """Baseclass for all transports.

    A transport delivers envelopes. `send_envelope` must not block the
    caller and must not raise; delivery errors are logged.
    """

    def __init__(self, options: "Optional[Dict[str, Any]]" = None) -> None:
        self.options = options

    def send_envelope(self, envelope: "Envelope") -> None:
        """
        Send an envelope. Fire and forget: the envelope may be dropped if the
        transport cannot keep up.
        """
        raise NotImplementedError()

    def flush(
        self,
        timeout: float,
        callback: "Optional[Any]" = None,
    ) -> bool:
        """Wait `timeout` seconds for the current envelopes to be sent out.
        Returns `True` if everything was sent in time."""
        return True

    def shutdown(
        self,
        timeout: float,
        callback: "Optional[Any]" = None,
    ) -> bool:
        """Flushes within `timeout` and stops the transport. Returns the
        result of the flush."""
        rv = self.flush(timeout, callback)
        self.kill()
        return rv

    def kill(self) -> None:
        """Forcefully kills the transport."""
        pass

    def __del__(self) -> None:
        try:
            self.kill()
        except Exception:
            pass


class HttpTransport(Transport):
    """The default HTTP transport."""

    def __init__(self, options: "Dict[str, Any]") -> None:
        Transport.__init__(self, options)
        assert options["endpoint"]
        self._endpoint = options["endpoint"]
        self._auth_token = options["auth_token"]
        self._worker = BackgroundWorker(queue_size=options["transport_queue_size"])
        # only ever touched from jobs running on the worker thread
        self._rate_limiter = RateLimiter()

        self._pool = self._make_pool(
            self._endpoint,
            http_proxy=options["http_proxy"],
            ca_certs=options["ca_certs"],
        )

        from flare_sdk import Hub

        self.hub_cls = Hub

    @property
    def rate_limiter(self) -> "RateLimiter":
        return self._rate_limiter

    def _send_request(
        self,
        body: bytes,
        headers: "Dict[str, str]",
    ) -> None:
        headers.update({"User-Agent": "flare.python/%s" % VERSION})
        if self._auth_token:
            headers["X-Flare-Auth"] = str(self._auth_token)

        response = self._pool.request(
            "POST",
            self._endpoint,
            body=body,
            headers=headers,
        )

        try:
            self._rate_limiter.update_from_response(response.status, response.headers)

            if response.status == 429:
                # if we hit a 429.  Something was rate limited but we already
                # acted on this in `update_from_response`.
                logger.debug("Rate limited by server (429)")

            elif response.status >= 300 or response.status < 200:
                logger.error(
                    "Unexpected status code: %s (body: %s)",
                    response.status,
                    response.data,
                )
        finally:
            response.close()

    def _send_envelope(self, envelope: "Envelope") -> None:
        envelope_ = self._rate_limiter.filter_envelope(envelope)
        if envelope_ is None:
            logger.debug("Envelope dropped due to rate limits")
            return None

        body = io.BytesIO()
        with gzip.GzipFile(fileobj=body, mode="w") as f:
            envelope_.serialize_into(f)

        logger.debug("Sending %s to %s", envelope_.description, self._endpoint)
        self._send_request(
            body.getvalue(),
            headers={
                "Content-Type": "application/x-flare-envelope",
                "Content-Encoding": "gzip",
            },
        )
        return None

    def _get_pool_options(self, ca_certs: "Optional[str]") -> "Dict[str, Any]":
        return {
            "num_pools": 2,
            "cert_reqs": "CERT_REQUIRED",
            "ca_certs": ca_certs or certifi.where(),
        }

    def _make_pool(
        self,
        endpoint: str,
        http_proxy: "Optional[str]",
        ca_certs: "Optional[str]",
    ) -> "PoolManager":
        proxy = None

        if http_proxy != "":
            scheme = urllib3.util.parse_url(endpoint).scheme or "http"
            proxy = http_proxy or getproxies().get(scheme)

        opts = self._get_pool_options(ca_certs)

        if proxy:
            return urllib3.ProxyManager(proxy, **opts)
        else:
            return urllib3.PoolManager(**opts)

    def send_envelope(self, envelope: "Envelope") -> None:
        hub = self.hub_cls.current

        def send_envelope_wrapper() -> None:
            with hub:
                with capture_internal_exceptions():
                    self._send_envelope(envelope)

        if not self._worker.submit(send_envelope_wrapper):
            logger.debug("Transport queue full, dropped %s", envelope.description)

    def flush(
        self,
        timeout: float,
        callback: "Optional[Any]" = None,
    ) -> bool:
        logger.debug("Flushing HTTP transport")
        return self._worker.flush(timeout, callback)

    def kill(self) -> None:
        logger.debug("Killing HTTP transport")
        self._worker.kill()


class _FunctionTransport(Transport):
    def __init__(self, func: "Callable[[Envelope], None]") -> None:
        Transport.__init__(self)
        self._func = func

    def send_envelope(self, envelope: "Envelope") -> None:
        with capture_internal_exceptions():
            self._func(envelope)
        return None


def make_transport(options: "Dict[str, Any]") -> "Optional[Transport]":
    ref_transport = options["transport"]

    # If no transport is given, we use the http transport class
    if ref_transport is None:
        transport_cls: "Type[Transport]" = HttpTransport
    elif isinstance(ref_transport, Transport):
        return ref_transport
    elif isinstance(ref_transport, type) and issubclass(ref_transport, Transport):
        transport_cls = ref_transport
    elif callable(ref_transport):
        return _FunctionTransport(ref_transport)
    else:
        raise TypeError("Invalid transport %r" % (ref_transport,))

    # if a transport class is given only instantiate it if there is
    # somewhere to send to
    if options["endpoint"]:
        return transport_cls(options)

    return None
