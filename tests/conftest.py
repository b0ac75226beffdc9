"""
Shared fixtures for the overlay service tests.

Nothing here touches the network: DNS, HTTP sessions and clocks are fakes,
and images are generated in memory with Pillow.
"""
from io import BytesIO

import pytest
from PIL import Image

from config import Settings
from errors import DnsResolutionFailed

ALLOWED_HOSTS = frozenset({'images.example.com', 'cdn.example.com'})
PUBLIC_IP = '93.184.216.34'


def encode_image(img, fmt='PNG', **save_kwargs):
    buf = BytesIO()
    img.save(buf, format=fmt, **save_kwargs)
    return buf.getvalue()


@pytest.fixture
def make_image():
    """Factory returning encoded bytes of a solid-colour image."""

    def _make(width, height, color=(0, 0, 255), mode='RGB', fmt='PNG'):
        return encode_image(Image.new(mode, (width, height), color), fmt)

    return _make


class FakeClock:
    def __init__(self, now=0.0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock(960.0)


class FakeResolver:
    """DNS stand-in: maps hostnames to address lists and records lookups."""

    def __init__(self, answers=None):
        self.answers = answers or {}
        self.calls = []

    def __call__(self, hostname, port):
        self.calls.append((hostname, port))
        if hostname not in self.answers:
            raise DnsResolutionFailed(f"no answer for {hostname}")
        return list(self.answers[hostname])


@pytest.fixture
def resolver():
    return FakeResolver({host: [PUBLIC_IP] for host in ALLOWED_HOSTS})


@pytest.fixture
def settings():
    return Settings(allowed_hosts=ALLOWED_HOSTS)
