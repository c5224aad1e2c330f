"""
Unit tests for client address resolution in voucher_service/middleware/auth.py
"""

import pytest
from starlette.requests import Request

from voucher_service.config import settings
from voucher_service.middleware.auth import client_ip

PEER = "198.51.100.20"


def _request(forwarded_for=None, peer=PEER) -> Request:
    headers = []
    if forwarded_for is not None:
        headers.append((b"x-forwarded-for", forwarded_for.encode()))
    scope = {
        "type": "http",
        "method": "GET",
        "path": "/",
        "headers": headers,
        "client": (peer, 50000) if peer else None,
    }
    return Request(scope)


def test_forwarded_header_ignored_without_trusted_proxies(monkeypatch):
    monkeypatch.setattr(settings, "TRUSTED_PROXY_HOPS", 0)
    assert client_ip(_request("203.0.113.7")) == PEER
    assert client_ip(_request()) == PEER


def test_single_trusted_proxy_uses_rightmost_entry(monkeypatch):
    monkeypatch.setattr(settings, "TRUSTED_PROXY_HOPS", 1)
    # The left entry is whatever the client sent; the proxy appended the right one.
    assert client_ip(_request("203.0.113.7, 192.0.2.44")) == "192.0.2.44"
    assert client_ip(_request("192.0.2.44")) == "192.0.2.44"


def test_two_trusted_proxies(monkeypatch):
    monkeypatch.setattr(settings, "TRUSTED_PROXY_HOPS", 2)
    assert client_ip(_request("203.0.113.7, 192.0.2.44, 10.0.0.2")) == "192.0.2.44"
    assert client_ip(_request("192.0.2.44")) == "192.0.2.44"


@pytest.mark.parametrize("header", ["", " , "])
def test_empty_forwarded_header_falls_back_to_peer(monkeypatch, header):
    monkeypatch.setattr(settings, "TRUSTED_PROXY_HOPS", 1)
    assert client_ip(_request(header)) == PEER


def test_missing_peer(monkeypatch):
    monkeypatch.setattr(settings, "TRUSTED_PROXY_HOPS", 0)
    assert client_ip(_request(peer=None)) == "unknown"
