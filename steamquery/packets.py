"""Encoding of A2S requests and decoding of their replies.

Numbers are fixed width little-endian, strings are null-terminated. Every
``unpack_*`` helper returns the value and the remaining bytes.
"""

import struct
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from steamquery.exceptions import MalformedPacket

# Is the response split among many packets or just one?
WHOLE = -1
SPLIT = -2

# Challenge
CHALLENGE = -1
A2S_SERVERQUERY_GETCHALLENGE = b'W'
S2C_CHALLENGE = b'A'

# Ping
A2A_PING = b'i'
A2A_PING_RESP = b'j'

# Details Query
A2S_INFO = b'T'
A2S_INFO_STRING = b'Source Engine Query'
A2S_INFO_RESP = b'I'
A2S_INFO_GOLDSRC_RESP = b'm'

# Players Query
A2S_PLAYER = b'U'
A2S_PLAYER_RESP = b'D'

# Rules Query
A2S_RULES = b'V'
A2S_RULES_RESP = b'E'

# Extra data flags trailing the Source info reply
EDF_PORT = 0x80
EDF_STEAMID = 0x10
EDF_SPECTATOR = 0x40
EDF_KEYWORDS = 0x20
EDF_GAMEID = 0x01
# Oldest protocol version known to append the extra data flag.
EDF_MIN_PROTOCOL = 7


class Engine(Enum):
    """Engine family of a server, decides how split packets are laid out."""
    SOURCE = "source"
    GOLDSRC = "goldsrc"


@dataclass(frozen=True)
class ModInfo:
    link: str
    download_link: str
    version: int
    size: int
    multiplayer_only: bool
    custom_dll: bool


@dataclass(frozen=True)
class ServerInfo:
    """Snapshot of one info reply."""
    protocol: int
    server_name: str
    map_name: str
    folder: str
    game: str
    app_id: Optional[int]
    num_players: int
    max_players: int
    num_bots: int
    server_type: str
    environment: str
    password: bool
    vac: bool
    version: Optional[str] = None
    port: Optional[int] = None
    steam_id: Optional[int] = None
    spectator_port: Optional[int] = None
    spectator_name: Optional[str] = None
    tags: Optional[str] = None
    game_id: Optional[int] = None
    # GoldSrc legacy replies only
    address: Optional[str] = None
    mod: Optional[ModInfo] = None

    @property
    def dedicated(self):
        return self.server_type in ('d', 'D')


@dataclass(frozen=True)
class Player:
    index: int
    name: str
    score: int
    duration: float


def _unpack(fmt, data):
    size = struct.calcsize(fmt)
    if len(data) < size:
        raise MalformedPacket('Expected %s more bytes, got %s' % (size, len(data)))
    return struct.unpack(fmt, data[:size])[0], data[size:]


def unpack_byte(data):
    return _unpack('<B', data)

def unpack_short(data):
    return _unpack('<h', data)

def unpack_ushort(data):
    return _unpack('<H', data)

def unpack_long(data):
    return _unpack('<l', data)

def unpack_ulong(data):
    return _unpack('<L', data)

def unpack_longlong(data):
    return _unpack('<Q', data)

def unpack_float(data):
    return _unpack('<f', data)

def unpack_char(data):
    value, data = unpack_byte(data)
    return chr(value), data

def unpack_string(data):
    try:
        text, res = bytes(data).split(b'\x00', 1)
    except ValueError:
        raise MalformedPacket('Unterminated string')
    return text.decode('utf-8', errors='replace'), res

def pack_byte(val):
    return struct.pack('<B', val)

def pack_short(val):
    return struct.pack('<h', val)

def pack_ushort(val):
    return struct.pack('<H', val)

def pack_long(val):
    return struct.pack('<l', val)

def pack_ulong(val):
    return struct.pack('<L', val)

def pack_longlong(val):
    return struct.pack('<Q', val)

def pack_float(val):
    return struct.pack('<f', val)

def pack_char(val):
    return pack_byte(ord(val))

def pack_string(val):
    if isinstance(val, str):
        val = val.encode('utf-8')
    return val + b'\x00'


def read_header(data):
    """Split the 4-byte packet header from a datagram.

    Returns ``WHOLE`` or ``SPLIT`` together with the rest of the datagram.
    """
    header, data = unpack_long(data)
    if header not in (WHOLE, SPLIT):
        raise MalformedPacket('Unknown packet header 0x%08X' % (header & 0xFFFFFFFF))
    return header, data


def split_tag(payload):
    """Return the one-byte type tag and the body of a single-packet payload."""
    if not payload:
        raise MalformedPacket('Empty packet payload')
    return bytes(payload[:1]), payload[1:]


# Requests

def ping_request():
    return pack_long(WHOLE) + A2A_PING

def challenge_request():
    return pack_long(WHOLE) + A2S_SERVERQUERY_GETCHALLENGE + pack_long(CHALLENGE)

def info_request(challenge=None):
    data = pack_long(WHOLE) + A2S_INFO + pack_string(A2S_INFO_STRING)
    if challenge is not None and challenge != CHALLENGE:
        data += pack_long(challenge)
    return data

def player_request(challenge=CHALLENGE):
    return pack_long(WHOLE) + A2S_PLAYER + pack_long(challenge)

def rules_request(challenge=CHALLENGE):
    return pack_long(WHOLE) + A2S_RULES + pack_long(challenge)


# Replies

def parse_challenge(body):
    return unpack_long(body)[0]


def parse_info(body):
    """Parse the body of a Source ``'I'`` reply."""
    result = {}
    result['protocol'], body = unpack_byte(body)
    result['server_name'], body = unpack_string(body)
    result['map_name'], body = unpack_string(body)
    result['folder'], body = unpack_string(body)
    result['game'], body = unpack_string(body)
    result['app_id'], body = unpack_ushort(body)
    result['num_players'], body = unpack_byte(body)
    result['max_players'], body = unpack_byte(body)
    result['num_bots'], body = unpack_byte(body)
    result['server_type'], body = unpack_char(body)
    result['environment'], body = unpack_char(body)
    password, body = unpack_byte(body)
    vac, body = unpack_byte(body)
    result['password'] = bool(password)
    result['vac'] = bool(vac)

    # Everything past this point is optional, anything that does not
    # parse is left out.
    try:
        result['version'], body = unpack_string(body)
        if result['protocol'] >= EDF_MIN_PROTOCOL and body:
            edf, body = unpack_byte(body)
            if edf & EDF_PORT:
                result['port'], body = unpack_ushort(body)
            if edf & EDF_STEAMID:
                result['steam_id'], body = unpack_longlong(body)
            if edf & EDF_SPECTATOR:
                result['spectator_port'], body = unpack_ushort(body)
                result['spectator_name'], body = unpack_string(body)
            if edf & EDF_KEYWORDS:
                result['tags'], body = unpack_string(body)
            if edf & EDF_GAMEID:
                result['game_id'], body = unpack_longlong(body)
    except MalformedPacket:
        pass

    return ServerInfo(**result)


def parse_goldsrc_info(body):
    """Parse the body of a legacy GoldSrc ``'m'`` reply."""
    result = {}
    result['address'], body = unpack_string(body)
    result['server_name'], body = unpack_string(body)
    result['map_name'], body = unpack_string(body)
    result['folder'], body = unpack_string(body)
    result['game'], body = unpack_string(body)
    result['num_players'], body = unpack_byte(body)
    result['max_players'], body = unpack_byte(body)
    result['protocol'], body = unpack_byte(body)
    result['server_type'], body = unpack_char(body)
    result['environment'], body = unpack_char(body)
    password, body = unpack_byte(body)
    result['password'] = bool(password)
    is_mod, body = unpack_byte(body)
    if is_mod:
        mod = {}
        mod['link'], body = unpack_string(body)
        mod['download_link'], body = unpack_string(body)
        _, body = unpack_byte(body)
        mod['version'], body = unpack_long(body)
        mod['size'], body = unpack_long(body)
        multiplayer_only, body = unpack_byte(body)
        custom_dll, body = unpack_byte(body)
        mod['multiplayer_only'] = bool(multiplayer_only)
        mod['custom_dll'] = bool(custom_dll)
        result['mod'] = ModInfo(**mod)
    vac, body = unpack_byte(body)
    result['vac'] = bool(vac)
    result['num_bots'], body = unpack_byte(body)
    result['app_id'] = None
    return ServerInfo(**result)


def parse_players(body):
    num_players, body = unpack_byte(body)
    result = []

    # Cheaty 32-slot servers may send an incomplete reply
    try:
        for i in range(num_players):
            index, body = unpack_byte(body)
            name, body = unpack_string(body)
            score, body = unpack_long(body)
            duration, body = unpack_float(body)
            result.append(Player(index, name, score, duration))
    except MalformedPacket:
        pass

    return result


def parse_rules(body):
    num_rules, body = unpack_ushort(body)
    rules = {}

    # TF2 sends incomplete packets so num_rules is a lie, maybe
    try:
        while body and len(rules) < num_rules:
            key, body = unpack_string(body)
            rules[key], body = unpack_string(body)
    except MalformedPacket:
        pass

    return rules


# Reply encoders, used to synthesise server answers

def encode_challenge(challenge):
    return pack_long(WHOLE) + S2C_CHALLENGE + pack_long(challenge)


def encode_info(info):
    extra_fields = (info.port, info.steam_id, info.spectator_port, info.spectator_name, info.tags, info.game_id)
    if any(field is not None for field in extra_fields):
        if info.version is None:
            raise ValueError('Extra data fields need a version string in front of them')
        if info.protocol < EDF_MIN_PROTOCOL:
            raise ValueError('Protocol %s cannot carry extra data fields' % info.protocol)
    data = pack_long(WHOLE) + A2S_INFO_RESP
    data += pack_byte(info.protocol)
    data += pack_string(info.server_name)
    data += pack_string(info.map_name)
    data += pack_string(info.folder)
    data += pack_string(info.game)
    data += pack_ushort(info.app_id or 0)
    data += pack_byte(info.num_players)
    data += pack_byte(info.max_players)
    data += pack_byte(info.num_bots)
    data += pack_char(info.server_type)
    data += pack_char(info.environment)
    data += pack_byte(int(info.password))
    data += pack_byte(int(info.vac))
    if info.version is None:
        return data
    data += pack_string(info.version)

    edf = 0
    extra = b''
    if info.port is not None:
        edf |= EDF_PORT
        extra += pack_ushort(info.port)
    if info.steam_id is not None:
        edf |= EDF_STEAMID
        extra += pack_longlong(info.steam_id)
    if info.spectator_port is not None:
        edf |= EDF_SPECTATOR
        extra += pack_ushort(info.spectator_port) + pack_string(info.spectator_name or '')
    if info.tags is not None:
        edf |= EDF_KEYWORDS
        extra += pack_string(info.tags)
    if info.game_id is not None:
        edf |= EDF_GAMEID
        extra += pack_longlong(info.game_id)
    if edf:
        data += pack_byte(edf) + extra
    return data


def encode_players(players):
    data = pack_long(WHOLE) + A2S_PLAYER_RESP + pack_byte(len(players))
    for player in players:
        data += pack_byte(player.index) + pack_string(player.name)
        data += pack_long(player.score) + pack_float(player.duration)
    return data


def encode_rules(rules):
    data = pack_long(WHOLE) + A2S_RULES_RESP + pack_ushort(len(rules))
    for key, value in rules.items():
        data += pack_string(key) + pack_string(value)
    return data
