import logging
import threading
import time
from enum import Enum

from steamquery.exceptions import BadChallenge, MalformedPacket, ServerUnreachable, Timeout, UnexpectedReply
from steamquery.fragments import FragmentReassembler, parse_fragment
from steamquery.packets import (
    A2S_INFO_GOLDSRC_RESP, A2S_INFO_RESP, A2S_PLAYER_RESP, A2S_RULES_RESP, CHALLENGE, S2C_CHALLENGE, WHOLE,
    Engine, challenge_request, info_request, parse_challenge, parse_goldsrc_info, parse_info, parse_players,
    parse_rules, ping_request, player_request, read_header, rules_request, split_tag,
)
from steamquery.transport import UDPTransport
from steamquery.utils import Config, to_address

log = logging.getLogger(__name__)

INFO_REPLIES = (A2S_INFO_RESP, A2S_INFO_GOLDSRC_RESP)


class QueryState(Enum):
    UNINITIALIZED = 0
    READY = 1


class SourceQuery(object):
    """Query session against one Source or GoldSrc game server.

    Parameters:
        address (ServerAddress|str|tuple) the server to query
        port (int) used when ``address`` is a bare host name
        engine (Engine) engine family, decides the split packet layout
        timeout (float) seconds to wait for each datagram
        retries (int) extra attempts after a timed out round trip
        fragment_timeout (float) seconds after which partial split replies are dropped
        config (Config) supplies defaults for the values above
        transport (UDPTransport) socket to use instead of a new one

    Only one request is in flight at a time. The last results are kept on
    the session as ``ping_ms``, ``info``, ``players`` and ``rules``.
    """

    def __init__(self, address, port=27015, engine=Engine.SOURCE, timeout=None, retries=None,
                 fragment_timeout=None, config=None, transport=None):
        config = config or Config()
        self.address = to_address(address, port)
        self.engine = engine
        self.timeout = timeout if timeout is not None else config.get_float("timeout")
        self.retries = retries if retries is not None else config.get_int("retries")
        if fragment_timeout is None:
            fragment_timeout = config.get_float("fragment_timeout")
        self.transport = transport or UDPTransport(self.timeout)
        self.reassembler = FragmentReassembler(fragment_timeout)
        self.state = QueryState.UNINITIALIZED
        self.challenge = None
        self.ping_ms = None
        self.info = None
        self.players = None
        self.rules = None
        self._lock = threading.Lock()

    def __repr__(self):
        return '<SourceQuery %s engine=%s state=%s>' % (self.address, self.engine.value, self.state.name)

    def init(self):
        """Ping the server, fetch its info and a challenge number."""
        self.ping()
        self.query_info()
        self.get_challenge()
        self.state = QueryState.READY
        log.info('%s: Query session ready (%s, ping %.1fms)', self.address, self.info.server_name, self.ping_ms)
        return self

    def close(self):
        self.reassembler.discard()
        self.transport.close()

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()

    def _receive(self):
        """Read datagrams until one whole reply is available."""
        while True:
            raw = self.transport.receive(self.timeout)
            header, raw = read_header(raw)
            if header == WHOLE:
                return raw
            fragment = parse_fragment(raw, self.engine)
            try:
                payload = self.reassembler.add(fragment)
            except MalformedPacket:
                self.reassembler.discard(fragment.request_id)
                raise
            if payload is not None:
                return payload

    def _await_reply(self, expected):
        tag, body = split_tag(self._receive())
        if expected is None or tag in expected:
            return tag, body
        log.warning('%s: Ignoring unexpected %r reply, waiting for %s', self.address, tag, expected)
        tag, body = split_tag(self._receive())
        if tag in expected:
            return tag, body
        raise UnexpectedReply('Expected one of %s, got %r' % (expected, tag))

    def _request(self, data, expected=None):
        """Send a request and return the type tag and body of the reply.

        Parameters:
            data (bytes) the encoded request
            expected (tuple) reply tags accepted for this request, ``None`` accepts any
        """
        with self._lock:
            error = None
            for attempt in range(self.retries + 1):
                self.reassembler.discard()
                self.transport.send(self.address, data)
                try:
                    return self._await_reply(expected)
                except Timeout as e:
                    error = e
                    log.debug('%s: Attempt %s timed out', self.address, attempt + 1)
                except Exception:
                    self.reassembler.discard()
                    raise
            self.reassembler.discard()
            raise ServerUnreachable('%s did not answer after %s attempt(s)' % (self.address, self.retries + 1)) from error

    def ping(self):
        """Return the round trip time of a ping request in milliseconds."""
        start = time.perf_counter()
        self._request(ping_request())
        self.ping_ms = (time.perf_counter() - start) * 1000
        return self.ping_ms

    def get_challenge(self):
        tag, body = self._request(challenge_request(), (S2C_CHALLENGE,))
        self.challenge = parse_challenge(body)
        log.debug('%s: Got challenge %s', self.address, self.challenge)
        return self.challenge

    def query_info(self):
        tag, body = self._request(info_request(), INFO_REPLIES + (S2C_CHALLENGE,))
        if tag == S2C_CHALLENGE:
            # Newer servers want the info request repeated with a challenge.
            self.challenge = parse_challenge(body)
            tag, body = self._request(info_request(self.challenge), INFO_REPLIES)
        if tag == A2S_INFO_GOLDSRC_RESP:
            self.info = parse_goldsrc_info(body)
        else:
            self.info = parse_info(body)
        return self.info

    def _acquire_challenge(self, build, expected):
        """Fetch a challenge, asking with the request itself if ``'W'`` goes unanswered.

        Returns the reply body when the server answers without wanting a challenge.
        """
        try:
            self.get_challenge()
        except ServerUnreachable:
            log.info('%s: No answer to the challenge request, asking with %r instead',
                     self.address, build(CHALLENGE)[4:5])
            tag, body = self._request(build(CHALLENGE), (expected, S2C_CHALLENGE))
            if tag == expected:
                return body
            self.challenge = parse_challenge(body)
        return None

    def _challenged_query(self, build, expected):
        if self.challenge is None or self.challenge == CHALLENGE:
            body = self._acquire_challenge(build, expected)
            if body is not None:
                return body
        tag, body = self._request(build(self.challenge), (expected, S2C_CHALLENGE))
        if tag == S2C_CHALLENGE:
            self.challenge = parse_challenge(body)
            log.info('%s: Challenge was rejected, retrying with %s', self.address, self.challenge)
            tag, body = self._request(build(self.challenge), (expected, S2C_CHALLENGE))
            if tag == S2C_CHALLENGE:
                self.challenge = parse_challenge(body)
                raise BadChallenge('%s rejected the challenge number twice' % (self.address,))
        return body

    def query_players(self):
        self.players = parse_players(self._challenged_query(player_request, A2S_PLAYER_RESP))
        return self.players

    def query_rules(self):
        self.rules = parse_rules(self._challenged_query(rules_request, A2S_RULES_RESP))
        return self.rules
