import asyncio
import sys
import json
import argparse
from typing import Optional, List

import aiohttp
from dotenv import load_dotenv

from posture_module.dns_lookup import DNSQuerier, ResolverConfigError
from posture_module.logger import configure_logging, get_child_logger
from posture_module.posture_fetcher import PostureFetcher, read_domain_list, run_batch, DomainEntry
from posture_module.posture_store import PostureStore, StoreError
from posture_module.probes import SMTPProber, CapabilityCache
from posture_module.settings import Settings, SettingsError
from posture_module.throttle import RateLimiter

load_dotenv()

configure_logging()
log = get_child_logger("main")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Email security posture monitor")
    parser.add_argument("--config", default="monitor.conf", help="The configuration file")
    parser.add_argument("--input", help="Domain list (domain,dkim selector,agency per line)")
    parser.add_argument("--db", help="Path of the LMDB posture store")
    parser.add_argument("--full", action="store_true", default=None, help="Probe the first MX for STARTTLS support")
    parser.add_argument("--concurrency", type=int, help="Domains evaluated at the same time")
    parser.add_argument("--interval", type=float, help="Seconds per `rate` domain admissions")
    parser.add_argument("--domain", action="append", help="Evaluate this domain instead of the input list (repeatable)")
    parser.add_argument("--dump", action="store_true", help="Print stored posture documents as JSON and exit")
    parser.add_argument("--pretty", action="store_true", help="Pretty print JSON output")
    return parser


def _querier(settings: Settings) -> DNSQuerier:
    servers = settings.nameserver_list()
    if servers:
        return DNSQuerier(servers, timeout=settings.dns_timeout)
    return DNSQuerier.from_resolv_conf(settings.resolv, timeout=settings.dns_timeout)


async def run(settings: Settings, entries: List[DomainEntry], store: PostureStore, querier: DNSQuerier) -> int:
    prober: Optional[SMTPProber] = None
    if settings.full:
        prober = SMTPProber(
            binary=settings.probe,
            timeout=settings.probe_timeout,
            cache=CapabilityCache(cache_timeouts=settings.cache_timeouts),
        )
    limiter = RateLimiter(rate=settings.rate, per=settings.interval)

    async with aiohttp.ClientSession() as session:
        fetcher = PostureFetcher(
            querier,
            prober=prober,
            full_test=settings.full,
            session=session,
            http_timeout=settings.http_timeout,
            sort_mx_by_preference=settings.mx_preference,
        )
        summary = await run_batch(entries, fetcher, store, limiter=limiter, concurrency=settings.concurrency)
    return 0 if summary.failed == 0 else 2


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    try:
        settings = Settings.load(
            args.config,
            input=args.input,
            db=args.db,
            full=args.full,
            concurrency=args.concurrency,
            interval=args.interval,
        )
    except SettingsError as e:
        log.critical("Invalid configuration: {}", e)
        return 1

    try:
        store = PostureStore(settings.db)
    except StoreError as e:
        log.critical("{}", e)
        return 1

    with store:
        if args.dump:
            docs = list(store.items())
            print(json.dumps(docs, indent=2 if args.pretty else None, default=str))
            return 0

        try:
            querier = _querier(settings)
        except ResolverConfigError as e:
            log.critical("Cannot initialize the local resolver: {}", e)
            return 1

        if args.domain:
            entries = [DomainEntry(name=d) for d in args.domain]
        else:
            try:
                entries = read_domain_list(settings.input)
            except OSError as e:
                log.critical("Error in opening file {}: {}", settings.input, e)
                return 1

        log.info("Evaluating {} domains (full test={})", len(entries), settings.full)
        return asyncio.run(run(settings, entries, store, querier))


def cli() -> None:
    try:
        sys.exit(main())
    except KeyboardInterrupt:
        sys.exit(130)


if __name__ == "__main__":
    cli()
