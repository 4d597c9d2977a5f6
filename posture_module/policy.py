"""
posture_module/policy.py

Policy-related helpers: where each DNS-published mail policy lives, how to
recognize it, and fetching the MTA-STS policy document over HTTPS.

Public API:
- POLICIES: name -> PolicySpec(label, marker)
- policy_name(kind, domain, selector="") -> str
- async fetch_sts_policy(domain, session=None, timeout=5.0) -> Optional[List[str]]
- parse_sts_mode(lines) -> str

Notes:
- The policy document is treated as newline-delimited text, one entry per line.
- Network failures never raise out of fetch_sts_policy; absence is returned instead.
"""
from __future__ import annotations

import asyncio
import re
from dataclasses import dataclass
from typing import Optional, List, Dict

import aiohttp

from .logger import get_child_logger

log = get_child_logger("policy")

STS_POLICY_URL = "https://mta-sts.{domain}/.well-known/mta-sts.txt"
STS_MODE_RE = re.compile(r"^\s*mode\s*:\s*(?P<mode>\S+)", re.I)


@dataclass(frozen=True)
class PolicySpec:
    label: str    # owner-name prefix, "" for the domain apex
    marker: str   # case-sensitive substring identifying the record


POLICIES: Dict[str, PolicySpec] = {
    "spf": PolicySpec("", "v=spf1"),
    "dmarc": PolicySpec("_dmarc", "v=DMARC1;"),
    "smtp_sts": PolicySpec("_mta-sts", "v=STSv1;"),
    "tls_report": PolicySpec("_smtp._tls", "v=TLSRPTv1;"),
    "dkim": PolicySpec("_domainkey", "v=DKIM1"),
}


def policy_name(kind: str, domain: str, selector: str = "") -> str:
    """Owner name of a policy record, e.g. policy_name("dmarc", "example.gov.") -> "_dmarc.example.gov."."""
    spec = POLICIES[kind]
    if kind == "dkim":
        if not selector:
            raise ValueError("DKIM lookups need a selector")
        return f"{selector}.{spec.label}.{domain}"
    if not spec.label:
        return domain
    return f"{spec.label}.{domain}"


async def fetch_sts_policy(
    domain: str,
    session: Optional[aiohttp.ClientSession] = None,
    timeout: float = 5.0,
    url_template: str = STS_POLICY_URL,
) -> Optional[List[str]]:
    """
    GET the well-known MTA-STS policy and return its lines.

    Returns None on connection errors, timeouts and non-2xx responses.
    """
    url = url_template.format(domain=domain.rstrip("."))
    owns_session = session is None
    if owns_session:
        session = aiohttp.ClientSession()
    try:
        async with session.get(
            url, allow_redirects=True, timeout=aiohttp.ClientTimeout(total=timeout)
        ) as r:
            if not 200 <= r.status < 300:
                log.info("{}: policy fetch returned HTTP {}", url, r.status)
                return None
            body = await r.text(errors="replace")
    except (aiohttp.ClientError, asyncio.TimeoutError, UnicodeError) as e:
        log.info("{}: policy fetch failed: {}", url, str(e) or type(e).__name__)
        return None
    finally:
        if owns_session:
            await session.close()
    return body.splitlines()


def parse_sts_mode(lines: Optional[List[str]]) -> str:
    """mode value of a fetched policy ("enforce", "testing", "none"), or "" if missing."""
    for line in lines or []:
        m = STS_MODE_RE.match(line)
        if m:
            return m.group("mode").strip().lower()
    return ""
