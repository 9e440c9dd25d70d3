"""Fixtures for testing.

FakeNetwork models an OS that hands out ephemeral ports sequentially,
skipping ports that are still in use, and wraps at the top of its range.
A stride above one stands in for a platform that does not allocate in order.
"""

import errno
import socket

import pytest


class FakeSocket:
    def __init__(self, network):
        self.network = network
        self.local = None
        self.peer = None
        self.timeout = None
        self.closed = False

    def settimeout(self, value):
        self.timeout = value

    def bind(self, address):
        host, port = address
        assert port == 0, "reproducer must never bind an explicit local port"
        if self.network.bind_error is not None:
            raise OSError(self.network.bind_error, "bind failed")
        self.local = (host, self.network.allocate())

    def connect(self, address):
        if self.local is None:
            self.local = (address[0], self.network.allocate())
        if address == self.local and self.network.self_connect:
            self.peer = address
            return
        if address in self.network.listeners:
            self.peer = address
            return
        raise ConnectionRefusedError(errno.ECONNREFUSED, "Connection refused")

    def getsockname(self):
        return self.local or ("0.0.0.0", 0)

    def getpeername(self):
        if self.peer is None:
            raise OSError(errno.ENOTCONN, "Transport endpoint is not connected")
        return self.peer

    def close(self):
        if not self.closed and self.local is not None:
            self.network.in_use.discard(self.local[1])
        self.closed = True


class FakeNetwork:
    def __init__(self, start=49152, low=49152, high=65535, self_connect=True,
                 listeners=(), in_use=(), fail_after=None, stride=1):
        self.next_port = start
        self.low = low
        self.high = high
        self.self_connect = self_connect
        self.listeners = set(listeners)
        self.in_use = set(in_use) | {port for _, port in self.listeners}
        self.fail_after = fail_after
        self.stride = stride
        self.bind_error = None
        self.created = []

    def allocate(self):
        while True:
            port = self.next_port
            following = port + self.stride
            self.next_port = following if following <= self.high else self.low
            if port not in self.in_use:
                self.in_use.add(port)
                return port

    def socket(self, family=socket.AF_INET, type=socket.SOCK_STREAM):
        if self.fail_after is not None and len(self.created) >= self.fail_after:
            raise OSError(errno.EMFILE, "Too many open files")
        sock = FakeSocket(self)
        self.created.append(sock)
        return sock


@pytest.fixture
def network():
    return FakeNetwork()


@pytest.fixture
def make_network():
    return FakeNetwork
