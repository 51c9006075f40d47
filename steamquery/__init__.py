"""Query Source and GoldSrc game servers, Steam master servers and RCON."""

from steamquery.connection import RconConnection, RconPacket, RconState, managed_rcon_connection
from steamquery.exceptions import (BadChallenge, CorruptResponse, MalformedPacket, NotAuthenticated,
                                   RconAuthError, RconError, RconSizeError, ServerUnreachable,
                                   SteamQueryError, Timeout, UnexpectedReply)
from steamquery.master import MasterServer, Region
from steamquery.packets import Engine, ModInfo, Player, ServerInfo
from steamquery.query import QueryState, SourceQuery
from steamquery.utils import Config, ServerAddress, setup_logging

__version__ = "1.0.0"


def _one_shot(method, address, port, kwargs):
    with SourceQuery(address, port, **kwargs) as query:
        return method(query)


def query_info(address, port=27015, **kwargs):
    return _one_shot(SourceQuery.query_info, address, port, kwargs)


def query_players(address, port=27015, **kwargs):
    return _one_shot(SourceQuery.query_players, address, port, kwargs)


def query_rules(address, port=27015, **kwargs):
    return _one_shot(SourceQuery.query_rules, address, port, kwargs)


def ping(address, port=27015, **kwargs):
    return _one_shot(SourceQuery.ping, address, port, kwargs)


def rcon_auth(address, port=27015, password='', **kwargs):
    """Return a connected RconConnection authenticated with ``password``."""
    return RconConnection.create(address, port, password, **kwargs)


def rcon_exec(connection, command):
    return connection.exec_command(command)


def list_master_servers(region=Region.ALL, filter='', **kwargs):
    max_pages = kwargs.pop('max_pages', None)
    with MasterServer(**kwargs) as master:
        return master.list_master_servers(region, filter, max_pages)
