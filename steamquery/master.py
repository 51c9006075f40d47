"""Steam master server query protocol.

The master server answers every request with one page of addresses. The
enumeration starts at ``0.0.0.0:0``, continues with the last address of the
previous page as seed and ends when the master returns ``0.0.0.0:0``.
"""

import logging
import socket
import struct
import threading
from enum import IntEnum

from steamquery.exceptions import MalformedPacket, ServerUnreachable, Timeout
from steamquery.packets import Engine, pack_byte, pack_string
from steamquery.transport import UDPTransport
from steamquery.utils import Config, ServerAddress, to_address

log = logging.getLogger(__name__)

A2M_GET_SERVERS_BATCH2 = b'1'
M2A_SERVER_BATCH = b'\xff\xff\xff\xff\x66\x0a'
SEED = '0.0.0.0:0'
SENTINEL = (b'\x00' * 6)
ENTRY = struct.Struct('>4sH')

GOLDSRC_MASTER_SERVER = ('hl1master.steampowered.com', 27010)
SOURCE_MASTER_SERVER = ('hl2master.steampowered.com', 27011)


class Region(IntEnum):
    US_EAST = 0x00
    US_WEST = 0x01
    SOUTH_AMERICA = 0x02
    EUROPE = 0x03
    ASIA = 0x04
    AUSTRALIA = 0x05
    MIDDLE_EAST = 0x06
    AFRICA = 0x07
    ALL = 0xFF


def build_filter(filter=None, **filters):
    """Turn ``gamedir='cstrike', secure=1`` into ``\\gamedir\\cstrike\\secure\\1``."""
    if isinstance(filter, str):
        result = filter
    else:
        result = ''
        filters = dict(filter or {}, **filters)
    for key, value in filters.items():
        if isinstance(value, bool):
            value = int(value)
        result += '\\%s\\%s' % (key, value)
    return result


def servers_request(region, seed=SEED, filter=''):
    return A2M_GET_SERVERS_BATCH2 + pack_byte(int(region)) + pack_string(str(seed)) + pack_string(filter)


def parse_servers(data):
    """Return the addresses of one reply and whether the sentinel was part of it."""
    if not data.startswith(M2A_SERVER_BATCH):
        raise MalformedPacket('Not a master server reply: %r' % bytes(data[:6]))
    data = data[len(M2A_SERVER_BATCH):]
    if len(data) % ENTRY.size:
        raise MalformedPacket('Master server reply has a trailing partial entry')
    addresses = []
    for offset in range(0, len(data), ENTRY.size):
        entry = data[offset:offset + ENTRY.size]
        if entry == SENTINEL:
            return addresses, True
        ip, port = ENTRY.unpack(entry)
        try:
            addresses.append(ServerAddress(socket.inet_ntoa(ip), port))
        except ValueError:
            log.warning('Skipping invalid master server entry %s:%s', socket.inet_ntoa(ip), port)
    return addresses, False


class MasterServer(object):
    """Client of one Steam master server.

    Parameters:
        address (ServerAddress|str|tuple) the master server, defaults to the one of ``engine``
        engine (Engine) picks the default master server
        timeout (float) seconds to wait for each page
        retries (int) extra attempts after a timed out page request
        max_pages (int) page cap of ``iter_servers``, 0 means unlimited
        config (Config) supplies defaults for the values above
        transport (UDPTransport) socket to use instead of a new one
    """

    def __init__(self, address=None, engine=Engine.SOURCE, timeout=None, retries=None, max_pages=None,
                 config=None, transport=None):
        config = config or Config()
        if address is None:
            address = GOLDSRC_MASTER_SERVER if engine == Engine.GOLDSRC else SOURCE_MASTER_SERVER
        self.address = to_address(address)
        self.timeout = timeout if timeout is not None else config.get_float("timeout")
        self.retries = retries if retries is not None else config.get_int("retries")
        self.max_pages = max_pages if max_pages is not None else config.get_int("master_max_pages")
        self.transport = transport or UDPTransport(self.timeout)
        self._lock = threading.Lock()

    def __repr__(self):
        return '<MasterServer %s>' % (self.address,)

    def close(self):
        self.transport.close()

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()

    def get_page(self, region=Region.ALL, seed=SEED, filter=''):
        """Request one page of server addresses following ``seed``.

        Returns a list of ServerAddress and True if the enumeration is finished.
        """
        data = servers_request(region, seed, build_filter(filter))
        with self._lock:
            error = None
            for attempt in range(self.retries + 1):
                self.transport.send(self.address, data)
                try:
                    reply = self.transport.receive(self.timeout)
                except Timeout as e:
                    error = e
                    log.debug('%s: Page request after %s timed out (attempt %s)', self.address, seed, attempt + 1)
                    continue
                addresses, finished = parse_servers(reply)
                log.debug('%s: Got %s servers after %s', self.address, len(addresses), seed)
                return addresses, finished
            raise ServerUnreachable('%s did not answer after %s attempt(s)' % (self.address, self.retries + 1)) from error

    def iter_servers(self, region=Region.ALL, filter='', max_pages=None):
        """Yield every server address, requesting further pages as needed.

        Each call starts a new enumeration from the first page.
        """
        if max_pages is None:
            max_pages = self.max_pages
        filter = build_filter(filter)
        seed = SEED
        seen = set()
        pages = 0
        while not max_pages or pages < max_pages:
            addresses, finished = self.get_page(region, seed, filter)
            pages += 1
            new = [address for address in addresses if address not in seen]
            for address in new:
                seen.add(address)
                yield address
            if finished or not new:
                return
            seed = new[-1]
        log.info('%s: Stopped enumerating after %s pages', self.address, pages)

    def list_master_servers(self, region=Region.ALL, filter='', max_pages=None):
        return list(self.iter_servers(region, filter, max_pages))
