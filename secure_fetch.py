"""
Bounded retrieval of remote images.

The connection is pinned to the addresses checked by the URL validator, so a
DNS answer that changes between validation and fetch cannot redirect it.
TLS server name and certificate checks still use the original hostname.

Every fetch runs under a watchdog. When the wall-clock budget runs out, or a
caller cancels through a CancelToken, the watchdog shuts down the sockets the
fetch opened, which wakes any blocked read no matter how slowly the peer
is trickling bytes.
"""
import functools
import logging
import socket
import threading
import time
from typing import Callable, List, Optional

import requests
from requests.adapters import HTTPAdapter
from urllib3 import HTTPConnectionPool, HTTPSConnectionPool
from urllib3.exceptions import ReadTimeoutError

from errors import FetchCancelled, FetchError, FetchTimeout, HttpError, NotAnImage, TooLarge
from url_security import ValidatedURL

logger = logging.getLogger(__name__)

CHUNK_SIZE = 64 * 1024
USER_AGENT = 'image-overlay-service/1.0'

TIMED_OUT = 'timed out'
CANCELLED = 'cancelled'


class CancelToken:
    """Shared between the fetches of one request so a failure can stop the others."""

    def __init__(self):
        self._lock = threading.Lock()
        self._callbacks: List[Callable[[], None]] = []
        self.cancelled = False

    def add_callback(self, callback: Callable[[], None]):
        """Run ``callback`` on cancel, or right away if already cancelled."""
        with self._lock:
            if not self.cancelled:
                self._callbacks.append(callback)
                return
        callback()

    def remove_callback(self, callback: Callable[[], None]):
        with self._lock:
            if callback in self._callbacks:
                self._callbacks.remove(callback)

    def cancel(self):
        with self._lock:
            if self.cancelled:
                return
            self.cancelled = True
            callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            callback()


def _shutdown(sock):
    try:
        sock.shutdown(socket.SHUT_RDWR)
    except OSError:
        # Already closed by the request itself
        pass


class ConnectionWatchdog:
    """Remembers the sockets opened for one fetch and can cut them all at once."""

    def __init__(self):
        self._lock = threading.Lock()
        self._sockets = []
        self.reason: Optional[str] = None

    @property
    def fired(self) -> bool:
        return self.reason is not None

    def track(self, sock):
        with self._lock:
            self._sockets.append(sock)
            fired = self.fired
        if fired:
            _shutdown(sock)

    def fire(self, reason: str):
        with self._lock:
            if self.reason is None:
                self.reason = reason
            sockets = list(self._sockets)
        for sock in sockets:
            _shutdown(sock)


class _WatchedPoolMixin:
    def __init__(self, *args, watchdog: Optional[ConnectionWatchdog] = None, **kwargs):
        self.watchdog = watchdog
        super().__init__(*args, **kwargs)

    def _new_conn(self):
        conn = super()._new_conn()
        if self.watchdog is not None:
            connect = conn.connect
            watchdog = self.watchdog

            def watched_connect():
                connect()
                watchdog.track(conn.sock)

            conn.connect = watched_connect
        return conn


class WatchedHTTPConnectionPool(_WatchedPoolMixin, HTTPConnectionPool):
    pass


class WatchedHTTPSConnectionPool(_WatchedPoolMixin, HTTPSConnectionPool):
    pass


class PinnedHostAdapter(HTTPAdapter):
    """Adapter that connects to an IP literal but verifies TLS for ``hostname``."""

    def __init__(self, hostname: str, watchdog: Optional[ConnectionWatchdog] = None, **kwargs):
        self.hostname = hostname
        self.watchdog = watchdog
        super().__init__(**kwargs)

    def init_poolmanager(self, *args, **kwargs):
        # urllib3 checks the certificate against server_hostname as well as using it for SNI
        kwargs['server_hostname'] = self.hostname
        super().init_poolmanager(*args, **kwargs)
        if self.watchdog is not None:
            self.poolmanager.pool_classes_by_scheme = {
                'http': functools.partial(WatchedHTTPConnectionPool, watchdog=self.watchdog),
                'https': functools.partial(WatchedHTTPSConnectionPool, watchdog=self.watchdog),
            }


def _is_read_timeout(error: Exception) -> bool:
    if isinstance(error, requests.exceptions.Timeout):
        return True
    return any(isinstance(arg, ReadTimeoutError) for arg in error.args)


def pinned_url(validated: ValidatedURL, address: str) -> str:
    """Rebuild the URL with ``address`` in place of the hostname."""
    host = f"[{address}]" if ':' in address else address
    return f"{validated.scheme}://{host}:{validated.port}{validated.path}"


class SecureFetcher:
    """Fetches one image per call under a time and size budget."""

    def __init__(self, max_bytes: int = 10 * 1024 * 1024, timeout: float = 5.0,
                 session_factory: Callable[[], requests.Session] = requests.Session,
                 clock: Callable[[], float] = time.monotonic):
        self.max_bytes = max_bytes
        self.timeout = timeout
        self.session_factory = session_factory
        self.clock = clock

    def fetch(self, validated: ValidatedURL, cancel: Optional[CancelToken] = None) -> bytes:
        """
        Download the image behind a validated URL.

        Args:
            validated: Output of UrlValidator.validate
            cancel: Optional token; cancelling it aborts the transfer

        Returns:
            The raw response body

        Raises:
            FetchTimeout: the wall-clock budget ran out
            FetchCancelled: ``cancel`` was cancelled before the body was read
            HttpError: connection failure, redirect or non-2xx status
            NotAnImage: Content-Type is not image/*
            TooLarge: declared or actual size above max_bytes
        """
        deadline = self.clock() + self.timeout
        watchdog = ConnectionWatchdog()
        timer = threading.Timer(max(self.timeout, 0), watchdog.fire, args=(TIMED_OUT,))
        timer.daemon = True
        on_cancel = functools.partial(watchdog.fire, CANCELLED)

        timer.start()
        if cancel is not None:
            cancel.add_callback(on_cancel)
        try:
            return self._fetch_pinned(validated, deadline, watchdog)
        finally:
            timer.cancel()
            if cancel is not None:
                cancel.remove_callback(on_cancel)

    def _interrupted(self, watchdog: ConnectionWatchdog, validated: ValidatedURL) -> FetchError:
        if watchdog.reason == CANCELLED:
            return FetchCancelled(f"Fetching {validated.url} was cancelled")
        return FetchTimeout(f"Fetching {validated.url} exceeded {self.timeout}s")

    def _fetch_pinned(self, validated: ValidatedURL, deadline: float, watchdog: ConnectionWatchdog) -> bytes:
        last_error: Optional[Exception] = None

        with self.session_factory() as session:
            # Proxies from the environment would bypass the pinned address
            session.trust_env = False
            adapter = PinnedHostAdapter(validated.hostname, watchdog=watchdog)
            session.mount('https://', adapter)
            session.mount('http://', adapter)

            # Every address was validated; move to the next one only if connecting fails
            for address in validated.addresses:
                try:
                    return self._fetch_from(session, validated, address, deadline, watchdog)
                except requests.exceptions.ConnectTimeout as e:
                    if watchdog.fired:
                        raise self._interrupted(watchdog, validated)
                    raise FetchTimeout(f"Connecting to {validated.hostname} ({address}) timed out: {e}")
                except requests.exceptions.ConnectionError as e:
                    if watchdog.fired:
                        raise self._interrupted(watchdog, validated)
                    logger.info("Connection to %s (%s) failed: %s", validated.hostname, address, e)
                    last_error = e
                    if self.clock() >= deadline:
                        break

        raise HttpError(f"Could not connect to {validated.hostname}: {last_error}")

    def _fetch_from(self, session, validated: ValidatedURL, address: str, deadline: float,
                    watchdog: ConnectionWatchdog) -> bytes:
        if watchdog.fired:
            raise self._interrupted(watchdog, validated)
        remaining = deadline - self.clock()
        if remaining <= 0:
            raise FetchTimeout(f"Fetch budget for {validated.hostname} exhausted")

        headers = {
            'Host': validated.host_header,
            'User-Agent': USER_AGENT,
            'Accept': 'image/*',
        }
        try:
            response = session.get(pinned_url(validated, address), headers=headers, stream=True,
                                   timeout=remaining, allow_redirects=False)
        except requests.exceptions.ConnectionError:
            raise
        except requests.exceptions.RequestException as e:
            if watchdog.fired:
                raise self._interrupted(watchdog, validated)
            if isinstance(e, requests.exceptions.Timeout):
                raise FetchTimeout(f"Fetching {validated.url} timed out: {e}")
            raise HttpError(f"Fetching {validated.url} failed: {e}")

        with response:
            try:
                return self._read_body(response, validated, deadline, watchdog)
            except requests.exceptions.RequestException as e:
                if watchdog.fired:
                    raise self._interrupted(watchdog, validated)
                # requests reports a read timeout while streaming as ConnectionError
                if _is_read_timeout(e) or self.clock() >= deadline:
                    raise FetchTimeout(f"Reading {validated.url} timed out: {e}")
                raise HttpError(f"Reading {validated.url} failed: {e}")

    def _read_body(self, response, validated: ValidatedURL, deadline: float,
                   watchdog: ConnectionWatchdog) -> bytes:
        # Headers cut short by the watchdog can still parse into a response
        if watchdog.fired:
            raise self._interrupted(watchdog, validated)
        if not 200 <= response.status_code < 300:
            raise HttpError(f"{validated.url} returned HTTP {response.status_code}")

        content_type = response.headers.get('Content-Type', '')
        if not content_type.strip().lower().startswith('image/'):
            raise NotAnImage(f"{validated.url} has content type {content_type!r}")

        declared = response.headers.get('Content-Length')
        if declared is not None:
            try:
                declared_length = int(declared)
            except ValueError:
                declared_length = None
            if declared_length is not None and declared_length > self.max_bytes:
                raise TooLarge(f"{validated.url} declares {declared_length} bytes (max {self.max_bytes})")

        body = bytearray()
        for chunk in response.iter_content(chunk_size=CHUNK_SIZE):
            if watchdog.fired:
                raise self._interrupted(watchdog, validated)
            if self.clock() > deadline:
                raise FetchTimeout(f"Fetching {validated.url} exceeded {self.timeout}s")
            if not chunk:
                continue
            body.extend(chunk)
            if len(body) > self.max_bytes:
                raise TooLarge(f"{validated.url} body exceeds {self.max_bytes} bytes")

        # A shut-down socket ends a body without Content-Length early instead of failing
        if watchdog.fired:
            raise self._interrupted(watchdog, validated)
        return bytes(body)
