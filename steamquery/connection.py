"""Source server RCON communications module"""

import contextlib
import itertools
import logging
import struct
import threading
from enum import Enum

from steamquery.exceptions import (MalformedPacket, NotAuthenticated, RconAuthError, RconSizeError,
                                   ServerUnreachable, SteamQueryError, Timeout, UnexpectedReply)
from steamquery.transport import TCPTransport
from steamquery.utils import Config, to_address

log = logging.getLogger(__name__)

# "Vanilla" RCON Packet types
SERVERDATA_AUTH = 3
SERVERDATA_AUTH_RESPONSE = 2
SERVERDATA_EXECCOMMAND = 2
SERVERDATA_RESPONSE_VALUE = 0

MAX_PACKET_SIZE = 4096
# id, type and the two terminating null bytes
PACKET_OVERHEAD = 10


class RconState(Enum):
    DISCONNECTED = 0
    CONNECTED = 1
    AUTHENTICATING = 2
    AUTHENTICATED = 3
    FAILED = 4


class RconPacket(object):
    """RCON packet"""

    def __init__(self, pkt_id=0, pkt_type=-1, body=b''):
        self.pkt_id = pkt_id
        self.pkt_type = pkt_type
        if isinstance(body, str):
            body = body.encode('utf-8')
        self.body = body

    def __str__(self):
        """Return the body string."""
        return self.body.decode('utf-8', errors='replace')

    def __repr__(self):
        return '<RconPacket id=%s type=%s body=%r>' % (self.pkt_id, self.pkt_type, self.body)

    def size(self):
        """Return the pkt_size field for this packet."""
        return len(self.body) + PACKET_OVERHEAD

    def pack(self):
        """Return the packed version of the packet."""
        return struct.pack('<3i', self.size(), self.pkt_id, self.pkt_type) + self.body + b'\x00\x00'

    @classmethod
    def unpack(cls, data):
        """Build a packet from the bytes following the size field."""
        if len(data) < PACKET_OVERHEAD - 2 or not data.endswith(b'\x00'):
            raise MalformedPacket('Received malformed RCON packet')
        pkt_id, pkt_type = struct.unpack('<2i', data[:8])
        body = data[8:-2] if data.endswith(b'\x00\x00') and len(data) >= PACKET_OVERHEAD else data[8:-1]
        return cls(pkt_id, pkt_type, body)


@contextlib.contextmanager
def managed_rcon_connection(*args, **kwargs):
    """ Yields an authenticated RconConnection (closes its socket when leaving context). """
    conn = RconConnection.create(*args, **kwargs)
    try:
        yield conn
    finally:
        conn.close()


class RconConnection(object):
    """RCON client to server connection"""

    def __init__(self, address, port=27015, password='', single_packet_mode=False, timeout=None,
                 idle_timeout=None, config=None, transport=None):
        """Construct an RconConnection.

        Parameters:
            address (ServerAddress|str|tuple) server hostname, IP address or address
            port (int) server port number, used when ``address`` is a bare host name
            password (str) server RCON password
            single_packet_mode (bool) set to True for servers which do not handle 0-length
                SERVERDATA_RESPONSE_VALUE requests (i.e. Factorio). Responses are then read until
                no packet arrives for ``idle_timeout`` seconds.
            timeout (float) seconds to wait for a reply
            idle_timeout (float) seconds of silence that end a response in single packet mode
            config (Config) supplies defaults for the timeouts
            transport (TCPTransport) stream to use instead of a new one

        """
        config = config or Config()
        self.address = to_address(address, port)
        self.password = password
        self.single_packet_mode = single_packet_mode
        self.timeout = timeout if timeout is not None else config.get_float("rcon_timeout")
        self.idle_timeout = idle_timeout if idle_timeout is not None else config.get_float("rcon_idle_timeout")
        self.transport = transport or TCPTransport(self.address, self.timeout)
        self.state = RconState.DISCONNECTED
        self.pkt_id = itertools.count(1)
        self._lock = threading.Lock()

    @classmethod
    def create(cls, address, port=27015, password='', **kwargs):
        """Return a connected and authenticated RconConnection."""
        self = cls(address, port, password, **kwargs)
        self.connect()
        try:
            self.auth()
        except SteamQueryError:
            self.close()
            raise
        return self

    def __repr__(self):
        return '<RconConnection %s state=%s>' % (self.address, self.state.name)

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()

    @property
    def authenticated(self):
        return self.state == RconState.AUTHENTICATED

    def connect(self):
        if not self.transport.connected:
            self.transport.connect()
        self.state = RconState.CONNECTED
        log.info('%s: RCON connected', self.address)

    def close(self):
        self.transport.close()
        self.state = RconState.DISCONNECTED

    def auth(self, password=None):
        """Authenticate with the server using the given password.

        Returns True on success. A rejected password leaves the session in the
        FAILED state and raises RconAuthError.
        """
        if password is not None:
            self.password = password
        with self._lock:
            if not self.transport.connected:
                self.connect()
            self.state = RconState.AUTHENTICATING
            auth_pkt = RconPacket(next(self.pkt_id), SERVERDATA_AUTH, self.password)
            try:
                self._send_pkt(auth_pkt)
                # The server should respond with an empty SERVERDATA_RESPONSE_VALUE followed by
                # SERVERDATA_AUTH_RESPONSE. Some server types omit the initial empty packet.
                auth_resp = self._recv_pkt()
                while auth_resp.pkt_type == SERVERDATA_RESPONSE_VALUE:
                    log.debug('%s: Discarding %r while authenticating', self.address, auth_resp)
                    auth_resp = self._recv_pkt()
            except ServerUnreachable:
                self._drop()
                raise
            except SteamQueryError:
                self.state = RconState.FAILED
                raise

            if auth_resp.pkt_type != SERVERDATA_AUTH_RESPONSE:
                self.state = RconState.FAILED
                raise UnexpectedReply('Received invalid auth response packet')
            if auth_resp.pkt_id == -1:
                self.state = RconState.FAILED
                log.warning('%s: RCON authentication failed', self.address)
                raise RconAuthError('Bad password')
            if auth_resp.pkt_id != auth_pkt.pkt_id:
                self.state = RconState.FAILED
                raise UnexpectedReply('Auth response ID %s does not match request ID %s'
                                      % (auth_resp.pkt_id, auth_pkt.pkt_id))
            self.state = RconState.AUTHENTICATED
            log.info('%s: RCON logged in', self.address)
            return True

    def exec_command(self, command):
        """Execute the given RCON command.

        Parameters:
            command (str) the RCON command string (ex. "status")

        Returns the response body
        """
        if self.state != RconState.AUTHENTICATED:
            raise NotAuthenticated('RCON session is %s, authenticate first' % self.state.name.lower())
        with self._lock:
            log.debug('%s: Executing "%s"', self.address, command)
            cmd_pkt = RconPacket(next(self.pkt_id), SERVERDATA_EXECCOMMAND, command)
            try:
                self._send_pkt(cmd_pkt)
                if self.single_packet_mode:
                    body = self._read_idle_response(cmd_pkt)
                else:
                    body = self._read_multi_response(cmd_pkt)
            except ServerUnreachable:
                self._drop()
                raise
        return body.decode('utf-8', errors='replace')

    rcon_auth = auth
    rcon_exec = exec_command

    def _drop(self):
        log.warning('%s: RCON connection lost', self.address)
        self.transport.close()
        self.state = RconState.DISCONNECTED

    def _send_pkt(self, pkt):
        """Send one RCON packet over the connection.

            Raises:
                RconSizeError if the size of the specified packet is > 4096 bytes
        """
        if pkt.size() > MAX_PACKET_SIZE:
            raise RconSizeError('pkt_size > %s bytes' % MAX_PACKET_SIZE)
        self.transport.send(pkt.pack())

    def _recv_pkt(self, timeout=None):
        """Read one RCON packet"""
        if timeout is None:
            timeout = self.timeout
        header = self.transport.receive_exactly(4, timeout)
        (pkt_size,) = struct.unpack('<i', header)
        if pkt_size < PACKET_OVERHEAD - 2 or pkt_size > MAX_PACKET_SIZE + PACKET_OVERHEAD:
            raise MalformedPacket('Received RCON packet with invalid size %s' % pkt_size)
        try:
            data = self.transport.receive_exactly(pkt_size, self.timeout)
        except Timeout:
            # Partial body stays buffered, the size field goes back in front of it.
            self.transport.unread(header)
            raise
        return RconPacket.unpack(data)

    def _check_response(self, response, req_pkt):
        """Return True if the packet belongs to the request, False if it is stale."""
        if response.pkt_type == SERVERDATA_AUTH_RESPONSE and response.pkt_id == -1:
            self.state = RconState.FAILED
            raise NotAuthenticated('Server revoked the RCON authentication')
        if response.pkt_id == req_pkt.pkt_id:
            if response.pkt_type != SERVERDATA_RESPONSE_VALUE:
                raise UnexpectedReply('Received unexpected RCON packet type %s' % response.pkt_type)
            return True
        if 0 <= response.pkt_id < req_pkt.pkt_id:
            log.debug('%s: Discarding stale %r', self.address, response)
            return False
        raise UnexpectedReply('Response ID %s does not match request ID %s' % (response.pkt_id, req_pkt.pkt_id))

    def _read_multi_response(self, req_pkt):
        """Return concatenated multi-packet response."""
        chk_pkt = RconPacket(next(self.pkt_id), SERVERDATA_RESPONSE_VALUE)
        self._send_pkt(chk_pkt)
        # According to the Valve wiki, a server will mirror a
        # SERVERDATA_RESPONSE_VALUE packet and then send an additional response
        # packet with an empty body. So we should concatenate any packets until
        # we receive a response that matches the ID in chk_pkt. The additional
        # packet is discarded as stale by the next exchange.
        body_parts = []
        while True:
            response = self._recv_pkt()
            if response.pkt_id == chk_pkt.pkt_id:
                break
            if self._check_response(response, req_pkt):
                body_parts.append(response.body)
        return b''.join(body_parts)

    def _read_idle_response(self, req_pkt):
        """Return packets of the response until the server goes quiet."""
        body_parts = []
        timeout = self.timeout
        while True:
            try:
                response = self._recv_pkt(timeout)
            except Timeout:
                if body_parts:
                    break
                raise
            if self._check_response(response, req_pkt):
                body_parts.append(response.body)
                timeout = self.idle_timeout
        return b''.join(body_parts)
