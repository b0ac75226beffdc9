"""Tests for secure_fetch.py: fake sessions, plus local sockets for the deadline and cancel paths."""
import socket
import threading
import time

import pytest
import requests
from urllib3.exceptions import ReadTimeoutError

from errors import FetchCancelled, FetchTimeout, HttpError, NotAnImage, TooLarge
from secure_fetch import (
    CancelToken, ConnectionWatchdog, PinnedHostAdapter, SecureFetcher, WatchedHTTPConnectionPool,
    WatchedHTTPSConnectionPool, pinned_url,
)
from url_security import ValidatedURL

from conftest import FakeClock, PUBLIC_IP


class FakeResponse:
    def __init__(self, status_code=200, headers=None, chunks=(), on_chunk=None):
        self.status_code = status_code
        self.headers = {'Content-Type': 'image/png'} if headers is None else headers
        self.chunks = list(chunks)
        self.on_chunk = on_chunk
        self.consumed = 0
        self.closed = False

    def iter_content(self, chunk_size=1):
        for chunk in self.chunks:
            self.consumed += 1
            if self.on_chunk:
                self.on_chunk()
            if isinstance(chunk, Exception):
                raise chunk
            yield chunk

    def close(self):
        self.closed = True

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()


class FakeSession:
    """Session stand-in: hands out one outcome (response or exception) per get()."""

    def __init__(self, *outcomes):
        self.outcomes = list(outcomes)
        self.requests = []
        self.adapters = {}
        self.closed = False

    def mount(self, prefix, adapter):
        self.adapters[prefix] = adapter

    def get(self, url, **kwargs):
        self.requests.append((url, kwargs))
        outcome = self.outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    def close(self):
        self.closed = True

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()


def make_validated(addresses=(PUBLIC_IP,), port=443):
    return ValidatedURL(
        url='https://images.example.com/logo.png',
        hostname='images.example.com',
        port=port,
        path='/logo.png',
        addresses=tuple(addresses),
    )


def make_fetcher(session, max_bytes=1024, timeout=5.0, clock=None):
    return SecureFetcher(max_bytes=max_bytes, timeout=timeout,
                         session_factory=lambda: session, clock=clock or FakeClock())


class TestPinnedUrl:
    def test_ipv4(self):
        assert pinned_url(make_validated(), PUBLIC_IP) == f'https://{PUBLIC_IP}:443/logo.png'

    def test_ipv6_is_bracketed(self):
        assert pinned_url(make_validated(port=8443), '2606:2800:220:1::1') == \
            'https://[2606:2800:220:1::1]:8443/logo.png'

    def test_adapter_keeps_tls_hostname(self):
        adapter = PinnedHostAdapter('images.example.com')
        pool_kw = adapter.poolmanager.connection_pool_kw
        assert pool_kw['server_hostname'] == 'images.example.com'
        assert 'assert_hostname' not in pool_kw

    def test_watched_adapter_tracks_both_schemes(self):
        adapter = PinnedHostAdapter('images.example.com', watchdog=ConnectionWatchdog())
        https_pool = adapter.poolmanager.connection_from_host(PUBLIC_IP, 443, scheme='https')
        http_pool = adapter.poolmanager.connection_from_host(PUBLIC_IP, 80, scheme='http')
        assert isinstance(https_pool, WatchedHTTPSConnectionPool)
        assert isinstance(http_pool, WatchedHTTPConnectionPool)
        assert https_pool.watchdog is http_pool.watchdog is adapter.watchdog


class TestSecureFetcher:
    def test_returns_body(self):
        response = FakeResponse(chunks=[b'abc', b'', b'def'])
        session = FakeSession(response)

        assert make_fetcher(session).fetch(make_validated()) == b'abcdef'

        url, kwargs = session.requests[0]
        assert url == f'https://{PUBLIC_IP}:443/logo.png'
        assert kwargs['headers']['Host'] == 'images.example.com'
        assert kwargs['stream'] is True
        assert kwargs['allow_redirects'] is False
        assert kwargs['timeout'] == pytest.approx(5.0)
        assert session.adapters['https://'].hostname == 'images.example.com'
        assert response.closed
        assert session.closed

    @pytest.mark.parametrize('status', [301, 302, 404, 500, 503])
    def test_non_2xx_rejected(self, status):
        session = FakeSession(FakeResponse(status_code=status, chunks=[b'x']))
        with pytest.raises(HttpError):
            make_fetcher(session).fetch(make_validated())

    @pytest.mark.parametrize('headers', [
        {'Content-Type': 'text/html; charset=utf-8'},
        {'Content-Type': 'application/octet-stream'},
        {},
    ])
    def test_non_image_content_type_rejected(self, headers):
        session = FakeSession(FakeResponse(headers=headers, chunks=[b'x']))
        with pytest.raises(NotAnImage):
            make_fetcher(session).fetch(make_validated())

    def test_content_type_is_case_insensitive(self):
        session = FakeSession(FakeResponse(headers={'Content-Type': 'Image/JPEG'}, chunks=[b'x']))
        assert make_fetcher(session).fetch(make_validated()) == b'x'

    def test_declared_length_over_limit_rejected_before_download(self):
        response = FakeResponse(headers={'Content-Type': 'image/png', 'Content-Length': '5000'},
                                chunks=[b'x'])
        with pytest.raises(TooLarge):
            make_fetcher(FakeSession(response), max_bytes=1024).fetch(make_validated())
        assert response.consumed == 0
        assert response.closed

    def test_body_over_limit_without_content_length(self):
        response = FakeResponse(chunks=[b'x' * 6] * 5)
        with pytest.raises(TooLarge):
            make_fetcher(FakeSession(response), max_bytes=10).fetch(make_validated())
        # Aborted as soon as the limit was crossed
        assert response.consumed == 2
        assert response.closed

    def test_understated_content_length(self):
        response = FakeResponse(headers={'Content-Type': 'image/png', 'Content-Length': '4'},
                                chunks=[b'x' * 8, b'x' * 8])
        with pytest.raises(TooLarge):
            make_fetcher(FakeSession(response), max_bytes=10).fetch(make_validated())

    def test_body_exactly_at_limit_allowed(self):
        session = FakeSession(FakeResponse(chunks=[b'x' * 10]))
        assert len(make_fetcher(session, max_bytes=10).fetch(make_validated())) == 10

    def test_request_timeout(self):
        session = FakeSession(requests.exceptions.ReadTimeout('read timed out'))
        with pytest.raises(FetchTimeout):
            make_fetcher(session).fetch(make_validated())
        assert session.closed

    def test_connect_timeout(self):
        session = FakeSession(requests.exceptions.ConnectTimeout('connect timed out'))
        with pytest.raises(FetchTimeout):
            make_fetcher(session).fetch(make_validated())

    def test_slow_body_hits_wall_clock_deadline(self):
        clock = FakeClock()
        response = FakeResponse(chunks=[b'x'] * 10, on_chunk=lambda: clock.advance(2))
        session = FakeSession(response)
        with pytest.raises(FetchTimeout):
            make_fetcher(session, timeout=5.0, clock=clock).fetch(make_validated())
        assert response.consumed == 3
        assert response.closed
        assert session.closed

    def test_read_timeout_while_streaming(self):
        stalled = requests.exceptions.ConnectionError(ReadTimeoutError(None, None, 'Read timed out.'))
        response = FakeResponse(chunks=[b'x', stalled])
        with pytest.raises(FetchTimeout):
            make_fetcher(FakeSession(response)).fetch(make_validated())
        assert response.closed

    def test_broken_stream_is_http_error(self):
        response = FakeResponse(chunks=[b'x', requests.exceptions.ChunkedEncodingError('broken')])
        with pytest.raises(HttpError):
            make_fetcher(FakeSession(response)).fetch(make_validated())

    def test_next_address_tried_after_connection_error(self):
        session = FakeSession(requests.exceptions.ConnectionError('refused'),
                              FakeResponse(chunks=[b'ok']))
        validated = make_validated(addresses=(PUBLIC_IP, '93.184.216.35'))

        assert make_fetcher(session).fetch(validated) == b'ok'
        assert [url for url, _ in session.requests] == [
            f'https://{PUBLIC_IP}:443/logo.png',
            'https://93.184.216.35:443/logo.png',
        ]

    def test_all_addresses_unreachable(self):
        session = FakeSession(requests.exceptions.ConnectionError('refused'),
                              requests.exceptions.ConnectionError('refused'))
        validated = make_validated(addresses=(PUBLIC_IP, '93.184.216.35'))
        with pytest.raises(HttpError):
            make_fetcher(session).fetch(validated)
        assert session.closed

    def test_budget_exhausted_before_request(self):
        clock = FakeClock()
        session = FakeSession()
        fetcher = SecureFetcher(timeout=0, session_factory=lambda: session, clock=clock)
        with pytest.raises(FetchTimeout):
            fetcher.fetch(make_validated())
        assert session.requests == []

    def test_cancel_stops_reading(self):
        token = CancelToken()
        response = FakeResponse(chunks=[b'x', b'y', b'z'], on_chunk=token.cancel)
        with pytest.raises(FetchCancelled):
            make_fetcher(FakeSession(response)).fetch(make_validated(), cancel=token)
        assert response.consumed == 1
        assert response.closed

    def test_already_cancelled_token_sends_nothing(self):
        token = CancelToken()
        token.cancel()
        session = FakeSession(FakeResponse(chunks=[b'x']))
        with pytest.raises(FetchCancelled):
            make_fetcher(session).fetch(make_validated(), cancel=token)
        assert session.requests == []

    def test_environment_proxies_ignored(self):
        session = FakeSession(FakeResponse(chunks=[b'x']))
        make_fetcher(session).fetch(make_validated())
        assert session.trust_env is False


class TestCancelToken:
    def test_callbacks_run_once(self):
        token = CancelToken()
        calls = []
        token.add_callback(lambda: calls.append('a'))
        token.cancel()
        token.cancel()
        assert calls == ['a']
        assert token.cancelled

    def test_late_callback_runs_immediately(self):
        token = CancelToken()
        token.cancel()
        calls = []
        token.add_callback(lambda: calls.append('late'))
        assert calls == ['late']

    def test_removed_callback_not_run(self):
        token = CancelToken()
        calls = []

        def callback():
            calls.append('x')

        token.add_callback(callback)
        token.remove_callback(callback)
        token.cancel()
        assert calls == []


STATUS_LINE = b'HTTP/1.1 200 OK\r\n'
IMAGE_HEADERS = STATUS_LINE + b'Content-Type: image/png\r\nContent-Length: 100\r\n\r\n'


class TrickleServer:
    """Local HTTP peer that sends ``prefix`` at once, then ``trickle`` one byte at a time."""

    def __init__(self, prefix, trickle, interval=0.25):
        self.prefix = prefix
        self.trickle = trickle
        self.interval = interval
        self.stopped = threading.Event()
        self.listener = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        self.listener.bind(('127.0.0.1', 0))
        self.listener.listen(1)
        self.listener.settimeout(5)
        self.port = self.listener.getsockname()[1]
        self.thread = threading.Thread(target=self._serve, daemon=True)
        self.thread.start()

    def _serve(self):
        try:
            conn, _ = self.listener.accept()
        except OSError:
            return
        with conn:
            try:
                conn.recv(4096)
                conn.sendall(self.prefix)
                for i in range(len(self.trickle)):
                    if self.stopped.wait(self.interval):
                        return
                    conn.sendall(self.trickle[i:i + 1])
            except OSError:
                return

    def close(self):
        self.stopped.set()
        self.listener.close()
        self.thread.join(timeout=2)


@pytest.fixture
def trickle_server():
    servers = []

    def start(prefix, trickle):
        server = TrickleServer(prefix, trickle)
        servers.append(server)
        return server

    yield start
    for server in servers:
        server.close()


def local_validated(port):
    return ValidatedURL(
        url=f'http://images.example.com:{port}/logo.png',
        hostname='images.example.com',
        port=port,
        path='/logo.png',
        addresses=('127.0.0.1',),
        scheme='http',
    )


class TestDeadlineOnRealSockets:
    def test_trickled_body_cut_at_deadline(self, trickle_server):
        server = trickle_server(IMAGE_HEADERS, b'x' * 100)
        started = time.monotonic()
        with pytest.raises(FetchTimeout):
            SecureFetcher(timeout=1.0).fetch(local_validated(server.port))
        assert time.monotonic() - started < 2.5

    def test_trickled_headers_cut_at_deadline(self, trickle_server):
        server = trickle_server(STATUS_LINE, b'X-Padding: ' + b'a' * 200)
        started = time.monotonic()
        with pytest.raises(FetchTimeout):
            SecureFetcher(timeout=1.0).fetch(local_validated(server.port))
        assert time.monotonic() - started < 2.5

    def test_cancel_cuts_transfer(self, trickle_server):
        server = trickle_server(IMAGE_HEADERS, b'x' * 100)
        token = CancelToken()
        threading.Timer(0.3, token.cancel).start()
        started = time.monotonic()
        with pytest.raises(FetchCancelled):
            SecureFetcher(timeout=10.0).fetch(local_validated(server.port), cancel=token)
        assert time.monotonic() - started < 2.5

    def test_fast_server_still_succeeds(self, trickle_server):
        server = trickle_server(STATUS_LINE + b'Content-Type: image/png\r\nContent-Length: 3\r\n\r\nabc', b'')
        assert SecureFetcher(timeout=2.0).fetch(local_validated(server.port)) == b'abc'
