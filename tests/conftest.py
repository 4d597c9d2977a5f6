import os
import stat
from typing import Dict, List, Tuple, Set

import dns.message
import dns.name
import dns.rcode
import dns.rdatatype
import dns.rrset
import pytest

from posture_module.dns_lookup import NoAnswerError


def _key(qname, rdtype) -> Tuple[str, int]:
    name = dns.name.from_text(str(qname)).to_text().lower()
    return name, int(dns.rdatatype.RdataType.make(rdtype))


class FakeQuerier:
    """
    In-memory zone data answering DNSQuerier.query() with real dnspython messages.

        zone.add("example.gov.", "TXT", '"v=spf1 -all"')
        zone.fail("broken.gov.", "MX")          # no server answered
        zone.rcode("lame.gov.", "TXT", "SERVFAIL")
    """

    def __init__(self):
        self.records: Dict[Tuple[str, int], List[str]] = {}
        self.failures: Set[Tuple[str, int]] = set()
        self.rcodes: Dict[Tuple[str, int], int] = {}
        self.calls: List[Tuple[str, str]] = []

    def add(self, name, rdtype, *values):
        self.records.setdefault(_key(name, rdtype), []).extend(values)
        return self

    def fail(self, name, rdtype):
        self.failures.add(_key(name, rdtype))
        return self

    def rcode(self, name, rdtype, rcode_text):
        self.rcodes[_key(name, rdtype)] = dns.rcode.from_text(rcode_text)
        return self

    async def query(self, qname, rdtype, validate=False):
        key = _key(qname, rdtype)
        self.calls.append((key[0], dns.rdatatype.to_text(key[1])))
        if key in self.failures:
            raise NoAnswerError("No name server to answer the question")
        query = dns.message.make_query(key[0], key[1])
        response = dns.message.make_response(query)
        if key in self.rcodes:
            response.set_rcode(self.rcodes[key])
            return response
        values = self.records.get(key)
        if values:
            response.answer.append(dns.rrset.from_text_list(key[0], 300, "IN", key[1], values))
        return response

    def queried(self, rdtype) -> List[str]:
        return [name for name, t in self.calls if t == rdtype]


@pytest.fixture
def zone():
    return FakeQuerier()


@pytest.fixture
def make_probe(tmp_path):
    """
    Write an executable stand-in for the probe binary. Each invocation appends
    its hostname argument to the returned log file.
    """
    counter = {"n": 0}

    def _make(body: str):
        counter["n"] += 1
        script = tmp_path / f"probe{counter['n']}.sh"
        calls = tmp_path / f"probe{counter['n']}.calls"
        script.write_text(f'#!/bin/sh\necho "$1" >> "{calls}"\n{body}\n')
        script.chmod(script.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
        return str(script), calls

    return _make


@pytest.fixture
def probe_calls():
    """Hostnames a probe stand-in was invoked with, in order."""
    def _read(calls_file) -> List[str]:
        if not os.path.exists(calls_file):
            return []
        with open(calls_file) as f:
            return [line.strip() for line in f if line.strip()]
    return _read


@pytest.fixture
def clean_env(monkeypatch, tmp_path):
    """No POSTURE_* variables and no stray .env file leak into a test."""
    for name in list(os.environ):
        if name.startswith("POSTURE_"):
            monkeypatch.delenv(name)
    monkeypatch.chdir(tmp_path)
    return tmp_path
