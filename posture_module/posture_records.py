# posture_module/posture_records.py
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional, List, Dict, Any

NONE_SENTINEL = "none"
NULL_SENTINEL = "null"

PRESENT = "present"
ABSENT = "absent"
FAILED = "failed"


@dataclass(frozen=True)
class LookupResult:
    """
    Outcome of a policy lookup.

    Attributes:
        status: One of 'present', 'absent', 'failed'.
        value: The matching record text (present only).
        reason: Why the query failed (failed only).
    """
    status: str
    value: str = ""
    reason: str = ""

    @classmethod
    def found(cls, value: str) -> "LookupResult":
        return cls(PRESENT, value=value)

    @classmethod
    def missing(cls) -> "LookupResult":
        return cls(ABSENT)

    @classmethod
    def failure(cls, reason: str) -> "LookupResult":
        return cls(FAILED, reason=reason)

    @property
    def present(self) -> bool:
        return self.status == PRESENT

    @property
    def absent(self) -> bool:
        return self.status == ABSENT

    @property
    def failed(self) -> bool:
        return self.status == FAILED

    def as_field(self) -> str:
        """Persisted form: the record text, or "none" for both absent and failed."""
        return self.value if self.present else NONE_SENTINEL


@dataclass(frozen=True)
class MxHost:
    preference: int
    host: str


@dataclass(frozen=True)
class MxResult:
    status: str
    hosts: List[MxHost] = field(default_factory=list)
    reason: str = ""

    @property
    def present(self) -> bool:
        return self.status == PRESENT

    @property
    def failed(self) -> bool:
        return self.status == FAILED

    def hostnames(self) -> List[str]:
        """Exchange names in answer order."""
        return [mx.host for mx in self.hosts]

    def by_preference(self) -> List[str]:
        """Exchange names sorted by MX preference; answer order breaks ties."""
        return [mx.host for mx in sorted(self.hosts, key=lambda mx: mx.preference)]

    def as_field(self) -> List[str]:
        if self.status == FAILED:
            return [NULL_SENTINEL]
        if self.status == ABSENT:
            return [NONE_SENTINEL]
        return self.hostnames()


@dataclass(frozen=True)
class Capabilities:
    """Transport capabilities observed for one organizational domain."""
    starttls: bool = False
    requiretls: bool = False
    blocktls: bool = False
    cert: str = ""
    timed_out: bool = False

    def as_tuple(self):
        return self.starttls, self.requiretls, self.blocktls, self.cert


@dataclass
class DomainPosture:
    # --- identity ---
    zname: str
    agency: str = ""
    time: int = 0

    # --- TXT policies ---
    spf: LookupResult = field(default_factory=LookupResult.missing)
    dmarc: LookupResult = field(default_factory=LookupResult.missing)
    smtp_sts: LookupResult = field(default_factory=LookupResult.missing)
    tls_report: LookupResult = field(default_factory=LookupResult.missing)
    dkim_select: str = ""
    dkim: LookupResult = field(default_factory=LookupResult.missing)

    # MTA-STS policy document
    sts_policy: Optional[List[str]] = None
    sts_mode: str = ""

    # --- MX / DANE ---
    mx: MxResult = field(default_factory=lambda: MxResult(ABSENT))
    dane_lookup: LookupResult = field(default_factory=LookupResult.missing)

    # --- SMTP capabilities (full test only) ---
    starttls: bool = False
    requiretls: bool = False
    blocktls: bool = False
    cert: str = ""
    probe_timed_out: bool = False

    @property
    def dane(self) -> bool:
        return self.dane_lookup.present

    def apply_capabilities(self, caps: Capabilities) -> None:
        self.starttls, self.requiretls, self.blocktls, self.cert = caps.as_tuple()
        self.probe_timed_out = caps.timed_out

    @property
    def lookup_errors(self) -> Dict[str, str]:
        """Field name -> failure reason for every lookup that failed rather than came back empty."""
        errors: Dict[str, str] = {}
        for name in ("spf", "dmarc", "smtp_sts", "tls_report", "dkim"):
            result: LookupResult = getattr(self, name)
            if result.failed:
                errors[name] = result.reason
        if self.mx.failed:
            errors["mx"] = self.mx.reason
        if self.dane_lookup.failed:
            errors["dane"] = self.dane_lookup.reason
        if self.probe_timed_out:
            errors["probe"] = "timeout"
        return errors

    def to_document(self) -> Dict[str, Any]:
        """Mapping persisted by the posture store; absent and failed lookups both read "none"."""
        return {
            "zname": self.zname,
            "agency": self.agency,
            "time": self.time,
            "spf": self.spf.as_field(),
            "dkimselect": self.dkim_select,
            "dkim": self.dkim.as_field(),
            "dmarc": self.dmarc.as_field(),
            "dane": self.dane,
            "mx": self.mx.as_field(),
            "smtpsts": self.smtp_sts.as_field(),
            "stspolicy": self.sts_policy,
            "stsmode": self.sts_mode,
            "tlsreport": self.tls_report.as_field(),
            "starttls": self.starttls,
            "requiretls": self.requiretls,
            "blocktls": self.blocktls,
            "cert": self.cert,
            "errors": self.lookup_errors,
        }
