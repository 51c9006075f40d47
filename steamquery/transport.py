"""Socket wrappers with per-call timeouts.

Each call makes exactly one attempt. Expired reads raise ``Timeout``, every
other socket failure raises ``ServerUnreachable``.
"""

import logging
import socket
import time

from steamquery.exceptions import ServerUnreachable, Timeout

log = logging.getLogger(__name__)

# Master server pages and compressed bursts can exceed the usual MTU-sized datagram.
RECV_BUFSIZE = 65535


class UDPTransport(object):
    """Connectionless datagram socket.

    Replies are only accepted from the address of the last ``send``, stray
    datagrams from anywhere else are dropped until the timeout runs out.
    """

    def __init__(self, timeout=3.0):
        self.timeout = timeout
        self.peer = None
        self._sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)

    def send(self, address, data):
        log.debug('%s: UDP send %s bytes', address, len(data))
        self.peer = address
        try:
            self._sock.sendto(data, address.as_tuple())
        except OSError as e:
            raise ServerUnreachable('Failed to send to %s: %s' % (address, e)) from e

    def receive(self, timeout=None):
        timeout = self.timeout if timeout is None else timeout
        deadline = time.monotonic() + timeout
        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise Timeout('No datagram received within %ss' % timeout)
            self._sock.settimeout(remaining)
            try:
                data, addr = self._sock.recvfrom(RECV_BUFSIZE)
            except socket.timeout as e:
                raise Timeout('No datagram received within %ss' % timeout) from e
            except OSError as e:
                raise ServerUnreachable('Failed to receive: %s' % e) from e
            if self.peer is not None and addr[:2] != self.peer.as_tuple():
                log.debug('%s:%s: Dropping %s bytes from unexpected source', addr[0], addr[1], len(data))
                continue
            log.debug('%s:%s: UDP received %s bytes', addr[0], addr[1], len(data))
            return data

    def close(self):
        self._sock.close()

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()


class TCPTransport(object):
    """Persistent stream connection with its own read buffer."""

    def __init__(self, address, timeout=10.0):
        self.address = address
        self.timeout = timeout
        self._sock = None
        self._buffer = b""

    @property
    def connected(self):
        return self._sock is not None

    def connect(self):
        try:
            self._sock = socket.create_connection(address=self.address.as_tuple(), timeout=self.timeout)
        except socket.timeout as e:
            raise ServerUnreachable("Timed out connecting to %s" % (self.address,)) from e
        except ConnectionRefusedError as e:
            raise ServerUnreachable("Connection refused by %s" % (self.address,)) from e
        except OSError as e:
            raise ServerUnreachable("Could not connect to %s: %s" % (self.address, e)) from e
        self._buffer = b""
        log.debug('%s: TCP connected', self.address)

    def send(self, data):
        if self._sock is None:
            raise ServerUnreachable("Not connected to %s" % (self.address,))
        try:
            self._sock.sendall(data)
        except OSError as e:
            raise ServerUnreachable("Failed to send to %s: %s" % (self.address, e)) from e

    def _recv_chunk(self, timeout):
        if self._sock is None:
            raise ServerUnreachable("Not connected to %s" % (self.address,))
        self._sock.settimeout(self.timeout if timeout is None else timeout)
        try:
            chunk = self._sock.recv(4096)
        except socket.timeout as e:
            raise Timeout('No data received from %s within %ss' % (self.address, self._sock.gettimeout())) from e
        except OSError as e:
            raise ServerUnreachable("Failed to receive from %s: %s" % (self.address, e)) from e
        if not chunk:
            raise ServerUnreachable("Connection closed by %s" % (self.address,))
        return chunk

    def receive(self, timeout=None):
        """Return whatever is buffered, or the next chunk from the socket."""
        if self._buffer:
            data, self._buffer = self._buffer, b""
            return data
        return self._recv_chunk(timeout)

    def receive_exactly(self, size, timeout=None):
        while len(self._buffer) < size:
            self._buffer += self._recv_chunk(timeout)
        data, self._buffer = self._buffer[:size], self._buffer[size:]
        return data

    def unread(self, data):
        """Put bytes back in front of the read buffer."""
        self._buffer = data + self._buffer

    def close(self):
        if self._sock is not None:
            self._sock.close()
            self._sock = None
        self._buffer = b""

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()
