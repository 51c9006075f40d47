"""Reassembly of replies split across several datagrams."""

import bz2
import logging
import threading
import time
import zlib
from dataclasses import dataclass
from typing import Optional

from steamquery.exceptions import CorruptResponse, MalformedPacket
from steamquery.packets import (Engine, WHOLE, read_header, unpack_byte, unpack_long,
                                unpack_ulong, unpack_ushort)

log = logging.getLogger(__name__)

COMPRESSED_FLAG = 0x80000000


@dataclass(frozen=True)
class Fragment:
    request_id: int
    index: int
    count: int
    payload: bytes
    compressed: bool = False
    decompressed_size: Optional[int] = None
    crc32: Optional[int] = None


def parse_fragment(data, engine=Engine.SOURCE):
    """Parse a split datagram whose ``0xFFFFFFFE`` header was already removed."""
    request_id, data = unpack_ulong(data)
    if engine == Engine.GOLDSRC:
        num, data = unpack_byte(data)
        return Fragment(request_id, num >> 4, num & 0x0F, bytes(data))

    total, data = unpack_byte(data)
    num, data = unpack_byte(data)
    _splitsize, data = unpack_ushort(data)
    compressed = bool(request_id & COMPRESSED_FLAG)
    if compressed and num == 0:
        size, data = unpack_long(data)
        crc, data = unpack_ulong(data)
        return Fragment(request_id, num, total, bytes(data), True, size, crc)
    return Fragment(request_id, num, total, bytes(data), compressed)


class _Buffer(object):

    def __init__(self, count):
        self.count = count
        self.parts = {}
        self.first = None
        self.created = time.monotonic()

    def complete(self):
        return len(self.parts) == self.count


class FragmentReassembler(object):
    """Collects fragments per request id until every index has arrived.

    Incomplete buffers older than ``timeout`` seconds are dropped the next
    time a fragment is added or ``purge`` is called.
    """

    def __init__(self, timeout=5.0):
        self.timeout = timeout
        self._buffers = {}
        self._finished = {}
        self._lock = threading.Lock()

    def __len__(self):
        return len(self._buffers)

    def add(self, fragment):
        """Store a fragment.

        Returns the reassembled single-packet payload (header stripped) once
        the set is complete, otherwise ``None``.
        """
        with self._lock:
            self._purge(time.monotonic())
            if fragment.request_id in self._finished:
                log.debug('Discarding late fragment %s of request %s', fragment.index, fragment.request_id)
                return None

            if fragment.count < 1:
                raise MalformedPacket('Split packet announces %s fragments' % fragment.count)
            buf = self._buffers.get(fragment.request_id)
            if buf is None:
                buf = self._buffers[fragment.request_id] = _Buffer(fragment.count)
            elif buf.count != fragment.count:
                del self._buffers[fragment.request_id]
                raise MalformedPacket('Fragment count changed from %s to %s' % (buf.count, fragment.count))
            if not 0 <= fragment.index < buf.count:
                del self._buffers[fragment.request_id]
                raise MalformedPacket('Fragment index %s out of range 0..%s' % (fragment.index, buf.count - 1))

            if fragment.index in buf.parts:
                log.debug('Discarding duplicate fragment %s of request %s', fragment.index, fragment.request_id)
                return None
            buf.parts[fragment.index] = fragment.payload
            if fragment.index == 0:
                buf.first = fragment
            if not buf.complete():
                return None

            del self._buffers[fragment.request_id]
            self._finished[fragment.request_id] = time.monotonic()

        combined = b''.join(buf.parts[i] for i in range(buf.count))
        if buf.first.compressed:
            combined = self._decompress(combined, buf.first)
        header, combined = read_header(combined)
        if header != WHOLE:
            raise MalformedPacket('Reassembled payload does not start with a single packet header')
        return combined

    @staticmethod
    def _decompress(data, first):
        try:
            data = bz2.decompress(data)
        except (OSError, ValueError, EOFError) as e:
            raise CorruptResponse('Failed to decompress split response: %s' % e) from e
        if len(data) != first.decompressed_size:
            raise CorruptResponse('Decompressed size %s does not match announced %s'
                                  % (len(data), first.decompressed_size))
        if zlib.crc32(data) & 0xFFFFFFFF != first.crc32:
            raise CorruptResponse('CRC32 checksum mismatch of decompressed split response')
        return data

    def discard(self, request_id=None):
        """Drop one partial buffer, or every buffer and finished id."""
        with self._lock:
            if request_id is None:
                self._buffers.clear()
                self._finished.clear()
            else:
                self._buffers.pop(request_id, None)

    def purge(self):
        with self._lock:
            self._purge(time.monotonic())

    def _purge(self, now):
        for request_id, buf in list(self._buffers.items()):
            if now - buf.created > self.timeout:
                log.warning('Dropping incomplete split response %s (%s/%s fragments)',
                            request_id, len(buf.parts), buf.count)
                del self._buffers[request_id]
        for request_id, finished in list(self._finished.items()):
            if now - finished > self.timeout:
                del self._finished[request_id]
