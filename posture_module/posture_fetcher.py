from __future__ import annotations
import asyncio
import csv
import time
from dataclasses import dataclass
from typing import Optional, List, Any, Dict, Iterable, Iterator

import aiohttp

from .dns_lookup import resolve_policy, list_mx, lookup_dane
from .dns_utils import fqdn
from .logger import get_child_logger
from .policy import policy_name, POLICIES, STS_POLICY_URL, fetch_sts_policy, parse_sts_mode
from .posture_records import DomainPosture, LookupResult
from .posture_store import StoreError
from .probes import SMTPProber
from .throttle import RateLimiter

log = get_child_logger("posture_fetcher")


@dataclass(frozen=True)
class DomainEntry:
    name: str
    dkim_selector: str = ""
    agency: str = ""


def parse_domain_rows(rows: Iterable[List[str]]) -> Iterator[DomainEntry]:
    """Rows are `domain, dkim selector, agency`; short rows leave the missing fields empty."""
    for row in rows:
        cells = [c.strip() for c in row]
        if not cells or not cells[0] or cells[0].startswith("#"):
            continue
        cells += [""] * (3 - len(cells))
        yield DomainEntry(name=cells[0], dkim_selector=cells[1], agency=cells[2])


def read_domain_list(path: str) -> List[DomainEntry]:
    """Read the whole domain list up front. Raises OSError if the file cannot be opened."""
    with open(path, newline="", encoding="utf-8") as f:
        return list(parse_domain_rows(csv.reader(f)))


class PostureFetcher:
    """
    Builds one DomainPosture: TXT policies, MTA-STS document, MX list, DANE,
    and (full test only) the first exchange's transport capabilities.
    """

    def __init__(
        self,
        querier: Any,
        prober: Optional[SMTPProber] = None,
        full_test: bool = False,
        session: Optional[aiohttp.ClientSession] = None,
        http_timeout: float = 5.0,
        sort_mx_by_preference: bool = False,
        validate: bool = False,
        sts_url_template: str = STS_POLICY_URL,
    ):
        self.querier = querier
        self.prober = prober
        self.full_test = bool(full_test)
        self.session = session
        self.http_timeout = http_timeout
        self.sort_mx_by_preference = sort_mx_by_preference
        self.validate = validate
        self.sts_url_template = sts_url_template

    async def _policy(self, kind: str, zname: str, selector: str = "") -> LookupResult:
        return await resolve_policy(
            self.querier, policy_name(kind, zname, selector), POLICIES[kind].marker, self.validate
        )

    async def fetch(
        self,
        domain: str,
        agency: str = "",
        dkim_selector: str = "",
        existing: Optional[Dict[str, Any]] = None,
    ) -> DomainPosture:
        zname = fqdn(domain)
        if existing:
            agency = existing.get("agency", agency)
        posture = DomainPosture(zname=zname, agency=agency, time=int(time.time()))

        posture.spf = await self._policy("spf", zname)
        posture.dmarc = await self._policy("dmarc", zname)
        posture.smtp_sts = await self._policy("smtp_sts", zname)
        if posture.smtp_sts.present:
            posture.sts_policy = await fetch_sts_policy(
                zname, session=self.session, timeout=self.http_timeout, url_template=self.sts_url_template
            )
            posture.sts_mode = parse_sts_mode(posture.sts_policy)
        posture.tls_report = await self._policy("tls_report", zname)
        if dkim_selector:
            posture.dkim_select = dkim_selector
            posture.dkim = await self._policy("dkim", zname, dkim_selector)

        posture.mx = await list_mx(self.querier, zname)
        if not posture.mx.present:
            return posture

        # a null MX (".") has nothing to look up or probe
        hosts = [h for h in posture.mx.hostnames() if h != "."]
        posture.dane_lookup = await lookup_dane(self.querier, hosts)

        if self.full_test and self.prober is not None:
            ordered = posture.mx.by_preference() if self.sort_mx_by_preference else posture.mx.hostnames()
            target = ordered[0]
            if target != ".":
                posture.apply_capabilities(await self.prober.capabilities(target))
        return posture


@dataclass
class BatchSummary:
    processed: int = 0
    created: int = 0
    updated: int = 0
    failed: int = 0


async def process_entry(entry: DomainEntry, fetcher: PostureFetcher, store: Any, summary: BatchSummary) -> Optional[DomainPosture]:
    """Evaluate and persist one domain. Store failures are logged and counted, not raised."""
    zname = fqdn(entry.name)
    log.info("Processing domain: {}", zname)
    t0 = time.time()
    try:
        existing = await asyncio.to_thread(store.find_by_domain_name, zname)
    except StoreError as e:
        log.error("{}: cannot read stored record: {}", zname, e)
        summary.failed += 1
        return None

    posture = await fetcher.fetch(entry.name, entry.agency, entry.dkim_selector, existing)
    doc = posture.to_document()
    try:
        if existing is None:
            await asyncio.to_thread(store.upsert, doc)
            summary.created += 1
        else:
            await asyncio.to_thread(store.update, zname, doc)
            summary.updated += 1
    except StoreError as e:
        log.error("{}: cannot persist record: {}", zname, e)
        summary.failed += 1
        return posture

    summary.processed += 1
    if posture.lookup_errors:
        log.warning("{}: lookups failed: {}", zname, posture.lookup_errors)
    log.info("{}: done in {} ms", zname, round((time.time() - t0) * 1000, 2))
    return posture


async def run_batch(
    entries: Iterable[DomainEntry],
    fetcher: PostureFetcher,
    store: Any,
    limiter: Optional[RateLimiter] = None,
    concurrency: int = 1,
) -> BatchSummary:
    """
    Evaluate every entry with at most `concurrency` domains in flight, each
    one admitted through `limiter`.
    """
    summary = BatchSummary()
    queue: asyncio.Queue = asyncio.Queue()
    for entry in entries:
        queue.put_nowait(entry)

    async def _worker():
        while True:
            try:
                entry = queue.get_nowait()
            except asyncio.QueueEmpty:
                return
            try:
                if limiter is not None:
                    await limiter.acquire()
                await process_entry(entry, fetcher, store, summary)
            except Exception:
                log.exception("{}: unexpected error, skipping", entry.name)
                summary.failed += 1
            finally:
                queue.task_done()

    workers = [asyncio.create_task(_worker()) for _ in range(max(1, concurrency))]
    try:
        await asyncio.gather(*workers)
    finally:
        for w in workers:
            w.cancel()
    log.info(
        "Batch complete: processed={} created={} updated={} failed={}",
        summary.processed, summary.created, summary.updated, summary.failed,
    )
    return summary
