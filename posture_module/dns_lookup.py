"""
DNS lookup module for the posture monitor, built on dnspython.

This module provides:
- DNSQuerier: a single-message query primitive bound to the environment's
  resolver configuration (server list + port), EDNS0 with optional DNSSEC
- resolve_policy(): TXT policy extraction by marker substring
- list_mx(): MX enumeration in answer order
- lookup_tlsa() / lookup_dane(): TLSA presence per exchange, failures kept apart
- has_dane_records() / dane_present(): the same as plain booleans

Failures are reported through LookupResult / MxResult instead of being folded
into the "none" sentinel; callers that need the persisted form use as_field().
"""
from __future__ import annotations

import asyncio
from typing import Optional, List, Sequence, Iterable, Any

import dns.asyncquery
import dns.exception
import dns.message
import dns.rcode
import dns.rdatatype
import dns.resolver

from .dns_utils import strip_root
from .logger import get_child_logger
from .posture_records import LookupResult, MxHost, MxResult, ABSENT, PRESENT, FAILED

log = get_child_logger("dns_lookup")

DEFAULT_RESOLV_CONF = "/etc/resolv.conf"
DEFAULT_QUERY_TIMEOUT = 5.0
EDNS_PAYLOAD = 4096

# Response codes that still mean "the zone answered"
_ANSWERED_RCODES = (dns.rcode.NOERROR, dns.rcode.NXDOMAIN)


class QueryFailed(Exception):
    """A query produced no usable response."""


class NoAnswerError(QueryFailed):
    """No configured server answered the question."""


class ResolverConfigError(Exception):
    """The local resolver configuration could not be loaded."""


def _nameserver_address(ns: Any) -> str:
    # dnspython >= 2.4 may hand back Nameserver objects instead of strings
    if isinstance(ns, str):
        return ns
    return str(getattr(ns, "address", ns))


class DNSQuerier:
    """
    Sends one query to the configured servers in order.

    The first server that produces any response wins, whatever its rcode;
    a server that times out or cannot be reached is skipped.
    """

    def __init__(
        self,
        nameservers: Sequence[str],
        port: int = 53,
        timeout: float = DEFAULT_QUERY_TIMEOUT,
        max_inflight: int = 16,
    ):
        self.nameservers = [s for s in nameservers if s]
        self.port = int(port)
        self.timeout = float(timeout)
        self._max_inflight = max_inflight
        self._semaphore: Optional[asyncio.Semaphore] = None

    @classmethod
    def from_resolv_conf(cls, path: str = DEFAULT_RESOLV_CONF, timeout: float = DEFAULT_QUERY_TIMEOUT) -> "DNSQuerier":
        """Build a querier from a resolv.conf file. Raises ResolverConfigError."""
        try:
            resolver = dns.resolver.Resolver(filename=path, configure=True)
        except (dns.resolver.NoResolverConfiguration, OSError) as e:
            raise ResolverConfigError(f"cannot initialize the local resolver from {path}: {e}") from e
        servers = [_nameserver_address(ns) for ns in resolver.nameservers]
        if not servers:
            raise ResolverConfigError(f"no nameservers configured in {path}")
        log.info("Loaded resolver configuration from {} (nameservers={} port={})", path, servers, resolver.port)
        return cls(servers, port=resolver.port, timeout=timeout)

    def _get_semaphore(self) -> asyncio.Semaphore:
        if self._semaphore is None:
            self._semaphore = asyncio.Semaphore(self._max_inflight)
        return self._semaphore

    def make_query(self, qname: str, rdtype: Any, validate: bool = False) -> dns.message.Message:
        # relative names are made absolute; RD is set by default
        return dns.message.make_query(
            qname,
            rdtype,
            use_edns=0,
            payload=EDNS_PAYLOAD,
            want_dnssec=validate,
        )

    async def _exchange(self, query: dns.message.Message, server: str) -> dns.message.Message:
        response, _used_tcp = await dns.asyncquery.udp_with_fallback(
            query, server, timeout=self.timeout, port=self.port
        )
        return response

    async def query(self, qname: str, rdtype: Any, validate: bool = False) -> dns.message.Message:
        """Return the first response received. Raises NoAnswerError if no server answered."""
        query = self.make_query(qname, rdtype, validate)
        errors: List[str] = []
        async with self._get_semaphore():
            for server in self.nameservers:
                try:
                    return await self._exchange(query, server)
                except (dns.exception.Timeout, OSError) as e:
                    log.debug("{} {}: server {} unreachable: {}", qname, dns.rdatatype.to_text(query.question[0].rdtype), server, e)
                    errors.append(f"{server}: {type(e).__name__}")
                except dns.exception.DNSException as e:
                    raise QueryFailed(f"{server}: {e}") from e
        reason = "; ".join(errors) if errors else "no nameservers configured"
        raise NoAnswerError(f"No name server to answer the question ({reason})")


def _rcode_failure(response: dns.message.Message) -> Optional[str]:
    rcode = response.rcode()
    if rcode in _ANSWERED_RCODES:
        return None
    return dns.rcode.to_text(rcode)


def _answers_of_type(response: dns.message.Message, rdtype: Any) -> Iterable[Any]:
    for rrset in response.answer:
        if rrset.rdtype != rdtype:
            continue
        for rdata in rrset:
            yield rdata


def join_txt(rdata: Any) -> str:
    """Character strings of one TXT record joined with a single space."""
    return " ".join(s.decode("utf-8", errors="replace") for s in rdata.strings)


async def resolve_policy(querier: Any, qname: str, marker: str, validate: bool = False) -> LookupResult:
    """
    TXT lookup returning the first record that contains `marker` (case-sensitive).

    absent: the zone answered and no record matched.
    failed: no server answered, or the server returned an error rcode.
    """
    try:
        response = await querier.query(qname, dns.rdatatype.TXT, validate)
    except QueryFailed as e:
        log.warning("TXT {} failed: {}", qname, e)
        return LookupResult.failure(str(e))

    failure = _rcode_failure(response)
    if failure:
        log.warning("TXT {} answered {}", qname, failure)
        return LookupResult.failure(failure)

    for rdata in _answers_of_type(response, dns.rdatatype.TXT):
        text = join_txt(rdata)
        if marker in text:
            return LookupResult.found(text)
    return LookupResult.missing()


async def list_mx(querier: Any, domain: str) -> MxResult:
    """MX answers in response order; preferences are kept but not used for ordering.

    A null MX (RFC 7505) is reported as the host ".".
    """
    try:
        response = await querier.query(domain, dns.rdatatype.MX)
    except QueryFailed as e:
        log.warning("MX {} failed: {}", domain, e)
        return MxResult(FAILED, reason=str(e))

    failure = _rcode_failure(response)
    if failure:
        log.warning("MX {} answered {}", domain, failure)
        return MxResult(FAILED, reason=failure)

    hosts = [
        MxHost(int(rdata.preference), strip_root(rdata.exchange.to_text()) or ".")
        for rdata in _answers_of_type(response, dns.rdatatype.MX)
    ]
    if not hosts:
        return MxResult(ABSENT)
    return MxResult(PRESENT, hosts=hosts)


async def lookup_tlsa(querier: Any, mx_host: str) -> LookupResult:
    """
    TLSA lookup for one exchange.

    The query goes to the bare exchange name, not _25._tcp.<host>.
    failed: no server answered, or the server returned an error rcode.
    """
    try:
        response = await querier.query(mx_host, dns.rdatatype.TLSA)
    except QueryFailed as e:
        log.warning("TLSA {} failed: {}", mx_host, e)
        return LookupResult.failure(str(e))

    failure = _rcode_failure(response)
    if failure:
        log.warning("TLSA {} answered {}", mx_host, failure)
        return LookupResult.failure(failure)

    count = sum(1 for _ in _answers_of_type(response, dns.rdatatype.TLSA))
    if count:
        return LookupResult.found(f"{count} TLSA")
    return LookupResult.missing()


async def has_dane_records(querier: Any, mx_host: str) -> bool:
    """True if at least one TLSA record is published for the exchange."""
    return (await lookup_tlsa(querier, mx_host)).present


async def lookup_dane(querier: Any, hosts: Sequence[str]) -> LookupResult:
    """
    present as soon as one exchange has TLSA records. Otherwise failed if any
    exchange's lookup failed (reasons joined per host), else absent.
    """
    failures: List[str] = []
    for host in hosts:
        result = await lookup_tlsa(querier, host)
        if result.present:
            return result
        if result.failed:
            failures.append(f"{host}: {result.reason}")
    if failures:
        return LookupResult.failure("; ".join(failures))
    return LookupResult.missing()


async def dane_present(querier: Any, hosts: Sequence[str]) -> bool:
    """True iff any of the exchanges has TLSA records."""
    return (await lookup_dane(querier, hosts)).present
