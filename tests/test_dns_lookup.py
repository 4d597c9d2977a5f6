import dns.exception
import dns.flags
import dns.message
import dns.rcode
import dns.rdatatype
import pytest

from posture_module.dns_lookup import (
    DNSQuerier,
    NoAnswerError,
    QueryFailed,
    ResolverConfigError,
    dane_present,
    has_dane_records,
    list_mx,
    lookup_dane,
    lookup_tlsa,
    resolve_policy,
)

TLSA = "3 1 1 " + "ab" * 32


async def test_resolve_policy_returns_full_matching_record(zone):
    zone.add("example.gov.", "TXT", '"google-site-verification=abc"', '"v=spf1 include:_spf.example.gov -all"')
    result = await resolve_policy(zone, "example.gov.", "v=spf1")
    assert result.present
    assert result.value == "v=spf1 include:_spf.example.gov -all"
    assert result.as_field() == "v=spf1 include:_spf.example.gov -all"


async def test_resolve_policy_joins_character_strings_with_a_space(zone):
    zone.add("example.gov.", "TXT", '"v=spf1 ip4:192.0.2.0/24" "include:_spf.example.net -all"')
    result = await resolve_policy(zone, "example.gov.", "v=spf1")
    assert result.value == "v=spf1 ip4:192.0.2.0/24 include:_spf.example.net -all"


async def test_resolve_policy_no_matching_record_is_absent(zone):
    zone.add("example.gov.", "TXT", '"some other text"')
    result = await resolve_policy(zone, "example.gov.", "v=spf1")
    assert result.absent
    assert result.as_field() == "none"


async def test_resolve_policy_marker_is_case_sensitive(zone):
    zone.add("_dmarc.example.gov.", "TXT", '"v=dmarc1; p=reject"')
    result = await resolve_policy(zone, "_dmarc.example.gov.", "v=DMARC1;")
    assert result.absent


async def test_resolve_policy_failure_is_not_absence(zone):
    zone.fail("example.gov.", "TXT")
    result = await resolve_policy(zone, "example.gov.", "v=spf1")
    assert result.failed
    assert not result.absent
    assert "No name server" in result.reason
    # persisted form stays compatible
    assert result.as_field() == "none"


async def test_resolve_policy_servfail_is_a_failure(zone):
    zone.rcode("example.gov.", "TXT", "SERVFAIL")
    result = await resolve_policy(zone, "example.gov.", "v=spf1")
    assert result.failed
    assert result.reason == "SERVFAIL"


async def test_resolve_policy_nxdomain_is_absent(zone):
    zone.rcode("nowhere.gov.", "TXT", "NXDOMAIN")
    result = await resolve_policy(zone, "nowhere.gov.", "v=spf1")
    assert result.absent


async def test_list_mx_keeps_answer_order_and_strips_root(zone):
    zone.add("example.gov.", "MX", "20 backup.example.gov.", "10 mail.example.gov.")
    result = await list_mx(zone, "example.gov.")
    assert result.present
    assert result.hostnames() == ["backup.example.gov", "mail.example.gov"]
    assert result.by_preference() == ["mail.example.gov", "backup.example.gov"]
    assert result.as_field() == ["backup.example.gov", "mail.example.gov"]


async def test_list_mx_zero_records_is_none_sentinel(zone):
    result = await list_mx(zone, "example.gov.")
    assert result.as_field() == ["none"]
    assert not result.failed


async def test_list_mx_unreachable_is_null_sentinel(zone):
    zone.fail("broken.gov.", "MX")
    result = await list_mx(zone, "broken.gov.")
    assert result.failed
    assert result.as_field() == ["null"]


async def test_list_mx_returns_every_record(zone):
    hosts = [f"mx{i}.example.gov." for i in range(5)]
    zone.add("example.gov.", "MX", *[f"10 {h}" for h in hosts])
    result = await list_mx(zone, "example.gov.")
    assert len(result.as_field()) == 5


async def test_null_mx_reported_as_root(zone):
    zone.add("nomail.gov.", "MX", "0 .")
    result = await list_mx(zone, "nomail.gov.")
    assert result.hostnames() == ["."]


async def test_has_dane_records_queries_bare_hostname(zone):
    zone.add("mail.example.gov.", "TLSA", TLSA)
    assert await has_dane_records(zone, "mail.example.gov")
    assert zone.queried("TLSA") == ["mail.example.gov."]


async def test_has_dane_records_false_without_tlsa(zone):
    assert not await has_dane_records(zone, "mail.example.gov")


async def test_has_dane_records_false_on_failure(zone):
    zone.fail("mail.example.gov.", "TLSA")
    assert not await has_dane_records(zone, "mail.example.gov")


async def test_dane_present_if_any_host_has_tlsa(zone):
    zone.add("mx2.example.gov.", "TLSA", TLSA)
    assert await dane_present(zone, ["mx1.example.gov", "mx2.example.gov"])
    assert not await dane_present(zone, ["mx1.example.gov", "mx3.example.gov"])
    assert not await dane_present(zone, [])


async def test_tlsa_servfail_is_a_failure_not_absence(zone):
    zone.rcode("mail.example.gov.", "TLSA", "SERVFAIL")
    result = await lookup_tlsa(zone, "mail.example.gov")
    assert result.failed
    assert result.reason == "SERVFAIL"
    assert not await has_dane_records(zone, "mail.example.gov")


async def test_lookup_dane_failed_only_when_no_host_has_tlsa(zone):
    zone.rcode("mx1.example.gov.", "TLSA", "REFUSED")
    result = await lookup_dane(zone, ["mx1.example.gov", "mx2.example.gov"])
    assert result.failed
    assert result.reason == "mx1.example.gov: REFUSED"

    zone.add("mx2.example.gov.", "TLSA", TLSA)
    assert (await lookup_dane(zone, ["mx1.example.gov", "mx2.example.gov"])).present


async def test_lookup_dane_absent_when_every_host_answers_empty(zone):
    assert (await lookup_dane(zone, ["mx1.example.gov", "mx2.example.gov"])).absent
    assert (await lookup_dane(zone, [])).absent


def test_make_query_sets_rd_and_edns():
    querier = DNSQuerier(["192.0.2.53"])
    q = querier.make_query("example.gov", "TXT", validate=True)
    assert q.flags & dns.flags.RD
    assert q.edns == 0
    assert q.payload == 4096
    assert q.ednsflags & dns.flags.DO
    assert q.question[0].name.to_text() == "example.gov."

    plain = querier.make_query("example.gov.", "MX")
    assert not plain.ednsflags & dns.flags.DO


class _ScriptedQuerier(DNSQuerier):
    def __init__(self, nameservers, outcomes):
        super().__init__(nameservers, timeout=0.1)
        self.outcomes = outcomes
        self.asked = []

    async def _exchange(self, query, server):
        self.asked.append(server)
        outcome = self.outcomes[server]
        if isinstance(outcome, Exception):
            raise outcome
        response = dns.message.make_response(query)
        response.set_rcode(outcome)
        return response


async def test_query_first_response_wins_even_if_error_rcode():
    querier = _ScriptedQuerier(
        ["192.0.2.1", "192.0.2.2"],
        {"192.0.2.1": dns.rcode.SERVFAIL, "192.0.2.2": dns.rcode.NOERROR},
    )
    response = await querier.query("example.gov", dns.rdatatype.TXT)
    assert response.rcode() == dns.rcode.SERVFAIL
    assert querier.asked == ["192.0.2.1"]


async def test_query_skips_unreachable_server():
    querier = _ScriptedQuerier(
        ["192.0.2.1", "192.0.2.2"],
        {"192.0.2.1": dns.exception.Timeout(), "192.0.2.2": dns.rcode.NOERROR},
    )
    response = await querier.query("example.gov", dns.rdatatype.TXT)
    assert response.rcode() == dns.rcode.NOERROR
    assert querier.asked == ["192.0.2.1", "192.0.2.2"]


async def test_query_raises_when_no_server_answers():
    querier = _ScriptedQuerier(
        ["192.0.2.1", "192.0.2.2"],
        {"192.0.2.1": dns.exception.Timeout(), "192.0.2.2": OSError("unreachable")},
    )
    with pytest.raises(NoAnswerError):
        await querier.query("example.gov", dns.rdatatype.TXT)


async def test_query_with_no_servers_raises():
    with pytest.raises(NoAnswerError):
        await DNSQuerier([]).query("example.gov", dns.rdatatype.TXT)


async def test_malformed_response_is_query_failed():
    querier = _ScriptedQuerier(["192.0.2.1"], {"192.0.2.1": dns.exception.FormError("bad packet")})
    with pytest.raises(QueryFailed):
        await querier.query("example.gov", dns.rdatatype.TXT)


def test_from_resolv_conf(tmp_path):
    conf = tmp_path / "resolv.conf"
    conf.write_text("nameserver 192.0.2.53\nnameserver 192.0.2.54\noptions timeout:1\n")
    querier = DNSQuerier.from_resolv_conf(str(conf))
    assert querier.nameservers == ["192.0.2.53", "192.0.2.54"]
    assert querier.port == 53
    assert querier.timeout == 5.0


def test_from_resolv_conf_missing_file(tmp_path):
    with pytest.raises(ResolverConfigError):
        DNSQuerier.from_resolv_conf(str(tmp_path / "missing.conf"))
