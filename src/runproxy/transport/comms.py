"""
Sockets between the client and the worker. Each side binds one PULL socket for what it receives and
connects a PUSH socket to the other side's address for what it sends
"""

import logging
import time

import zmq

from runproxy.transport.msg import BackboneAddress, Message
from runproxy.transport.serde import des_message

logger = logging.getLogger(__name__)
default_timeout_ms = 5_000


class Deadline:
    """Point in time `timeout_ms` from creation, on the monotonic clock"""

    def __init__(self, timeout_ms: int):
        self.timeout_ms = timeout_ms
        self.at_ns = time.monotonic_ns() + timeout_ms * 1_000_000

    def remaining_ms(self) -> int:
        return max(0, (self.at_ns - time.monotonic_ns()) // 1_000_000)

    def expired(self) -> bool:
        return time.monotonic_ns() >= self.at_ns


def get_context() -> zmq.Context:
    return zmq.Context.instance()


def get_socket(address: BackboneAddress) -> zmq.Socket:
    """Push socket connected to `address`"""
    socket = get_context().socket(zmq.PUSH)
    # unconsumed messages are dropped a second after close, instead of blocking the close
    socket.set(zmq.LINGER, 1000)
    socket.connect(address)
    return socket


class Listener:
    """Pull socket bound at `address`. A port of `*` binds a random free port, the actual
    address is then available as `self.address`"""

    def __init__(self, address: BackboneAddress):
        self.socket = get_context().socket(zmq.PULL)
        self.socket.set(zmq.LINGER, 0)
        self.socket.bind(address)
        self.address: BackboneAddress = self.socket.getsockopt_string(zmq.LAST_ENDPOINT)

    def recv_messages(self, timeout_ms: int | None = default_timeout_ms) -> list[Message]:
        """Blocks up to `timeout_ms` for the first message, then drains whatever is already queued"""
        if not self.socket.poll(timeout_ms, zmq.POLLIN):
            return []
        messages: list[Message] = []
        try:
            while True:
                messages.append(des_message(self.socket.recv(zmq.NOBLOCK)))
        except zmq.Again:
            pass
        return messages

    def close(self) -> None:
        self.socket.close()
