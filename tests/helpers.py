import bz2
import zlib

from steamquery.connection import RconPacket
from steamquery.exceptions import Timeout
from steamquery.fragments import COMPRESSED_FLAG
from steamquery.packets import pack_byte, pack_long, pack_ulong, pack_ushort


class FakeUDPTransport(object):
    """Replays queued datagrams and records everything sent."""

    def __init__(self, replies=()):
        self.replies = list(replies)
        self.sent = []
        self.closed = False

    def queue(self, *datagrams):
        self.replies.extend(datagrams)

    def send(self, address, data):
        self.sent.append((address, data))

    def receive(self, timeout=None):
        if not self.replies:
            raise Timeout('nothing queued')
        return self.replies.pop(0)

    def close(self):
        self.closed = True


class FakeTCPTransport(object):
    """Stream that asks ``responder`` for the bytes to answer each sent packet with."""

    def __init__(self, responder=None):
        self.responder = responder
        self.connected = False
        self.sent = []
        self.buffer = b''

    def connect(self):
        self.connected = True

    def close(self):
        self.connected = False

    def feed(self, data):
        self.buffer += data

    def send(self, data):
        packet = RconPacket.unpack(data[4:])
        self.sent.append(packet)
        if self.responder:
            self.feed(self.responder(packet))

    def receive_exactly(self, size, timeout=None):
        if len(self.buffer) < size:
            raise Timeout('nothing buffered')
        data, self.buffer = self.buffer[:size], self.buffer[size:]
        return data

    def unread(self, data):
        self.buffer = data + self.buffer


def rcon_reply(pkt_id, pkt_type, body=b''):
    return RconPacket(pkt_id, pkt_type, body).pack()


def chunks(data, count):
    size = -(-len(data) // count)
    return [data[i * size:(i + 1) * size] for i in range(count)]


def source_datagrams(payload, count, request_id=7, compressed=False):
    """Split payload the way a Source server does, header 0xFFFFFFFE removed."""
    data = bz2.compress(payload) if compressed else payload
    if compressed:
        request_id |= COMPRESSED_FLAG
    result = []
    for num, chunk in enumerate(chunks(data, count)):
        datagram = pack_ulong(request_id) + pack_byte(count) + pack_byte(num) + pack_ushort(1248)
        if compressed and num == 0:
            datagram += pack_long(len(payload)) + pack_ulong(zlib.crc32(payload) & 0xFFFFFFFF)
        result.append(datagram + chunk)
    return result


def goldsrc_datagrams(payload, count, request_id=9):
    return [pack_ulong(request_id) + pack_byte(num << 4 | count) + chunk
            for num, chunk in enumerate(chunks(payload, count))]
