import socket
import struct
import threading
from dataclasses import replace

import pytest

from steamquery.connection import SERVERDATA_AUTH_RESPONSE, SERVERDATA_RESPONSE_VALUE, RconConnection
from steamquery.exceptions import ServerUnreachable, Timeout
from steamquery.packets import encode_info
from steamquery.query import SourceQuery
from steamquery.transport import TCPTransport, UDPTransport
from steamquery.utils import ServerAddress
from tests.helpers import rcon_reply
from tests.test_query import INFO


@pytest.fixture
def udp_server():
    sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    sock.bind(('127.0.0.1', 0))
    sock.settimeout(2)
    yield sock
    sock.close()


@pytest.fixture
def tcp_server():
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.bind(('127.0.0.1', 0))
    sock.listen(1)
    sock.settimeout(2)
    yield sock
    sock.close()


def address_of(sock):
    return ServerAddress(*sock.getsockname())


def serve(target, *args):
    thread = threading.Thread(target=target, args=args, daemon=True)
    thread.start()
    return thread


def recv_exactly(conn, size):
    data = b''
    while len(data) < size:
        chunk = conn.recv(size - len(data))
        if not chunk:
            raise ConnectionError('client went away')
        data += chunk
    return data


def read_rcon_packet(conn):
    (size,) = struct.unpack('<i', recv_exactly(conn, 4))
    pkt_id, pkt_type = struct.unpack('<2i', recv_exactly(conn, size)[:8])
    return pkt_id, pkt_type


def test_udp_round_trip(udp_server):
    with UDPTransport(timeout=1) as transport:
        transport.send(address_of(udp_server), b'hello')
        data, client = udp_server.recvfrom(100)
        assert data == b'hello'
        udp_server.sendto(b'world', client)
        assert transport.receive() == b'world'


def test_udp_timeout(udp_server):
    with UDPTransport(timeout=0.1) as transport:
        transport.send(address_of(udp_server), b'hello')
        with pytest.raises(Timeout):
            transport.receive()


def test_udp_drops_datagrams_from_other_sources(udp_server):
    stranger = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    with UDPTransport(timeout=1) as transport, stranger:
        transport.send(address_of(udp_server), b'hello')
        data, client = udp_server.recvfrom(100)
        stranger.sendto(b'stray', client)
        udp_server.sendto(b'reply', client)
        assert transport.receive() == b'reply'

        stranger.sendto(b'stray', client)
        with pytest.raises(Timeout):
            transport.receive(0.2)


def test_query_ignores_spoofed_reply(udp_server, config):
    stranger = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)

    def answer():
        data, client = udp_server.recvfrom(100)
        stranger.sendto(encode_info(replace(INFO, server_name='SPOOFED')), client)
        udp_server.sendto(encode_info(INFO), client)

    thread = serve(answer)
    with stranger, SourceQuery(address_of(udp_server), timeout=1, config=config) as query:
        assert query.query_info().server_name == INFO.server_name
    thread.join(2)


def test_tcp_connect_refused():
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.bind(('127.0.0.1', 0))
    address = address_of(sock)
    sock.close()
    with pytest.raises(ServerUnreachable):
        TCPTransport(address, timeout=1).connect()


def test_tcp_send_before_connect():
    with pytest.raises(ServerUnreachable):
        TCPTransport(ServerAddress('127.0.0.1', 27015)).send(b'x')


def test_tcp_receive_exactly_across_chunks(tcp_server):
    release = threading.Event()

    def answer():
        conn, _ = tcp_server.accept()
        with conn:
            conn.sendall(b'abc')
            release.wait(2)
            conn.sendall(b'defgh')
            recv_exactly(conn, 1)

    thread = serve(answer)
    with TCPTransport(address_of(tcp_server), timeout=1) as transport:
        transport.connect()
        assert transport.receive_exactly(2) == b'ab'
        with pytest.raises(Timeout):
            transport.receive_exactly(4, 0.1)
        release.set()
        assert transport.receive_exactly(4) == b'cdef'
        assert transport.receive() == b'gh'
        transport.send(b'.')
    thread.join(2)


def test_tcp_connection_closed(tcp_server):
    def answer():
        conn, _ = tcp_server.accept()
        conn.sendall(b'ab')
        conn.close()

    thread = serve(answer)
    transport = TCPTransport(address_of(tcp_server), timeout=1)
    transport.connect()
    thread.join(2)
    with pytest.raises(ServerUnreachable):
        transport.receive_exactly(4)
    transport.close()
    assert not transport.connected


def test_rcon_packet_split_by_a_stall(tcp_server, config):
    def answer():
        conn, _ = tcp_server.accept()
        with conn:
            auth_id, _ = read_rcon_packet(conn)
            conn.sendall(rcon_reply(auth_id, SERVERDATA_RESPONSE_VALUE)
                         + rcon_reply(auth_id, SERVERDATA_AUTH_RESPONSE))
            first_id, _ = read_rcon_packet(conn)
            first_check, _ = read_rcon_packet(conn)
            first = rcon_reply(first_id, SERVERDATA_RESPONSE_VALUE, b'first')
            conn.sendall(first[:8])
            # the rest only arrives once the client has moved on to the next command
            second_id, _ = read_rcon_packet(conn)
            second_check, _ = read_rcon_packet(conn)
            conn.sendall(first[8:] + rcon_reply(first_check, SERVERDATA_RESPONSE_VALUE)
                         + rcon_reply(second_id, SERVERDATA_RESPONSE_VALUE, b'second')
                         + rcon_reply(second_check, SERVERDATA_RESPONSE_VALUE))
            recv_exactly(conn, 1)

    thread = serve(answer)
    rcon = RconConnection(address_of(tcp_server), password='secret', timeout=0.3, config=config)
    with rcon:
        rcon.auth()
        with pytest.raises(Timeout):
            rcon.exec_command('first')
        assert rcon.exec_command('second') == 'second'
        rcon.transport.send(b'.')
    thread.join(2)
