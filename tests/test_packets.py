import pytest

from steamquery.exceptions import MalformedPacket
from steamquery.packets import (SPLIT, WHOLE, Player, ServerInfo, encode_info, encode_players, encode_rules,
                                info_request, pack_byte, pack_long, pack_string, pack_ushort, parse_goldsrc_info,
                                parse_info, parse_players, parse_rules, ping_request, player_request, read_header,
                                rules_request, split_tag, challenge_request)


def make_info(**kwargs):
    fields = dict(protocol=17, server_name='Test Server', map_name='de_dust2', folder='cstrike',
                  game='Counter-Strike: Source', app_id=240, num_players=5, max_players=24, num_bots=1,
                  server_type='d', environment='l', password=False, vac=True, version='1.0.0.70')
    fields.update(kwargs)
    return ServerInfo(**fields)


def decode(data):
    header, payload = read_header(data)
    assert header == WHOLE
    return split_tag(payload)


def test_request_encodings():
    assert info_request() == b'\xff\xff\xff\xffTSource Engine Query\x00'
    assert info_request(0x01020304) == b'\xff\xff\xff\xffTSource Engine Query\x00\x04\x03\x02\x01'
    assert challenge_request() == b'\xff\xff\xff\xffW\xff\xff\xff\xff'
    assert player_request(1234) == b'\xff\xff\xff\xffU' + pack_long(1234)
    assert rules_request() == b'\xff\xff\xff\xffV\xff\xff\xff\xff'
    assert ping_request() == b'\xff\xff\xff\xffi'


def test_read_header():
    assert read_header(b'\xff\xff\xff\xffI')[0] == WHOLE
    assert read_header(b'\xfe\xff\xff\xff')[0] == SPLIT
    with pytest.raises(MalformedPacket):
        read_header(b'\x00\x00\x00\x00I')
    with pytest.raises(MalformedPacket):
        read_header(b'\xff\xff')


def test_info_example():
    tag, body = decode(encode_info(make_info()))
    assert tag == b'I'
    info = parse_info(body)
    assert info.map_name == 'de_dust2'
    assert info.server_name == 'Test Server'
    assert info.vac is True
    assert info.dedicated
    assert info.tags is None


def test_info_round_trip_with_extra_data():
    info = make_info(port=27015, steam_id=90071992547409920, spectator_port=27020, spectator_name='SourceTV',
                     tags='alltalk,increased_maxplayers', game_id=240)
    tag, body = decode(encode_info(info))
    assert parse_info(body) == info


def test_info_truncated_extra_data_is_absent():
    info = make_info(port=27015, tags='secure')
    data = encode_info(info)
    tag, body = decode(data[:-4])
    parsed = parse_info(body)
    assert parsed.port == 27015
    assert parsed.tags is None


def test_info_old_protocol_ignores_trailing_bytes():
    info = make_info(protocol=6)
    tag, body = decode(encode_info(info) + b'\x80\x87\x69')
    assert parse_info(body) == info


def test_info_extra_data_needs_capable_info():
    with pytest.raises(ValueError):
        encode_info(make_info(version=None, tags='alltalk'))
    with pytest.raises(ValueError):
        encode_info(make_info(protocol=6, port=27015))
    tag, body = decode(encode_info(make_info(version=None)))
    assert parse_info(body).version is None


def test_info_missing_mandatory_field():
    data = encode_info(make_info())
    tag, body = decode(data[:20])
    with pytest.raises(MalformedPacket):
        parse_info(body)


def test_goldsrc_info():
    body = b''.join([
        pack_string('127.0.0.1:27015'), pack_string('Old Server'), pack_string('de_nuke'),
        pack_string('cstrike'), pack_string('Counter-Strike'), pack_byte(3), pack_byte(16), pack_byte(47),
        b'd', b'w', pack_byte(1), pack_byte(1),
        pack_string('http://mod'), pack_string('http://mod/dl'), b'\x00', pack_long(1), pack_long(1024),
        pack_byte(1), pack_byte(0), pack_byte(1), pack_byte(2),
    ])
    info = parse_goldsrc_info(body)
    assert info.address == '127.0.0.1:27015'
    assert info.protocol == 47
    assert info.password is True
    assert info.mod.download_link == 'http://mod/dl'
    assert info.mod.multiplayer_only is True
    assert info.vac is True
    assert info.num_bots == 2
    assert info.app_id is None


def test_players():
    players = [Player(0, 'Alice', 10, 61.5), Player(1, 'Bob', -2, 3.25)]
    tag, body = decode(encode_players(players))
    assert tag == b'D'
    assert parse_players(body) == players


def test_players_incomplete_reply():
    players = [Player(0, 'Alice', 10, 61.5), Player(1, 'Bob', -2, 3.25)]
    tag, body = decode(encode_players(players))
    assert parse_players(body[:-6]) == players[:1]


def test_rules():
    rules = {'mp_timelimit': '30', 'sv_gravity': '800'}
    tag, body = decode(encode_rules(rules))
    assert tag == b'E'
    assert parse_rules(body) == rules


def test_rules_count_larger_than_payload():
    body = pack_ushort(5) + pack_string('a') + pack_string('1') + pack_string('b')
    assert parse_rules(body) == {'a': '1'}


def test_empty_payload():
    with pytest.raises(MalformedPacket):
        split_tag(b'')
