import logging
import os
import socket
from dataclasses import dataclass
from datetime import datetime, timezone


DEFAULTS = {
    "timeout": "3.0",
    "retries": "0",
    "fragment_timeout": "5.0",
    "rcon_timeout": "10.0",
    "rcon_idle_timeout": "0.5",
    "master_max_pages": "0",
}


class Config:

    def __init__(self, path: str = "steamquery.txt"):
        self.path = path
        self.update()

    def update(self):
        self.config = dict(DEFAULTS)
        if not self.path or not os.path.exists(self.path):
            return
        with open(self.path, "r", encoding="utf-8") as f:
            for line in f.readlines():
                line = line.strip()
                if not line or line.startswith("#"):
                    continue
                line = line.split("=", 1)
                if len(line) == 2:
                    self.config[line[0].strip()] = line[1].strip()

    def get(self, key: str, alternative_value=None, update_config=False):
        if update_config:
            self.update()
        try:
            res = self.config[key]
        except KeyError:
            res = alternative_value
        finally:
            return res

    def get_float(self, key: str, alternative_value: float = None):
        value = self.get(key)
        if value is None:
            return alternative_value
        try:
            return float(value)
        except ValueError:
            raise ValueError("Config value for %s is not a number: %r" % (key, value))

    def get_int(self, key: str, alternative_value: int = None):
        value = self.get(key)
        if value is None:
            return alternative_value
        try:
            return int(value)
        except ValueError:
            raise ValueError("Config value for %s is not an integer: %r" % (key, value))


def setup_logging(filename: str = None, level=logging.INFO):
    """Configure the root logger the same way for scripts embedding this package.

    Passing ``filename=True`` writes to a timestamped file in ``logs/``.
    """
    if filename is True:
        filename = datetime.now(timezone.utc).strftime('logs/steamquery-%Y.%m.%d-%H.%M.%S.log')
    kwargs = dict(format='[%(asctime)s][%(levelname)s][%(name)s] %(message)s', datefmt='%m/%d %H:%M:%S', level=level)
    if filename:
        kwargs.update(filename=filename, filemode='w+')
    logging.basicConfig(**kwargs)


@dataclass(frozen=True)
class ServerAddress:
    """IPv4 address and port of a game or master server."""
    host: str
    port: int

    def __post_init__(self):
        if not isinstance(self.port, int) or self.port <= 0 or self.port > 0xFFFF:
            raise ValueError("The port of the server has to be a number between 1 and 65535, got %r" % (self.port,))
        try:
            socket.inet_aton(self.host)
        except (OSError, TypeError):
            raise ValueError("%r is not a resolved IPv4 address, use ServerAddress.resolve()" % (self.host,))

    @classmethod
    def resolve(cls, host: str, port: int = 27015):
        try:
            ip = socket.gethostbyname(host)
        except socket.gaierror as e:
            raise ValueError("Could not resolve %s: %s" % (host, e))
        return cls(ip, port)

    @classmethod
    def from_string(cls, address: str, default_port: int = 27015):
        host, sep, port = address.rpartition(":")
        if not sep:
            return cls.resolve(address, default_port)
        try:
            port = int(port)
        except ValueError:
            raise ValueError("Invalid port in address %r" % address)
        return cls.resolve(host, port)

    def as_tuple(self):
        return (self.host, self.port)

    def __str__(self):
        return "%s:%s" % (self.host, self.port)


def to_address(address, port: int = 27015) -> ServerAddress:
    """Accept a ``ServerAddress``, an ``(host, port)`` tuple or a host name."""
    if isinstance(address, ServerAddress):
        return address
    if isinstance(address, tuple):
        return ServerAddress.resolve(*address)
    if ":" in address:
        return ServerAddress.from_string(address)
    return ServerAddress.resolve(address, port)
