# posture_module/dns_utils.py
from __future__ import annotations
import re
from typing import Optional, List

import idna

# --------------------------------------------------------------------
# Basic utilities and normalization
# --------------------------------------------------------------------
def to_ascii_hostname(name: Optional[str]) -> str:
    """
    Lowercase + IDNA (punycode) each label + strip trailing dot.
    Returns "" if input is falsy.
    """
    if not name:
        return ""
    name = str(name).strip().strip(".")
    if not name:
        return ""
    labels: List[str] = []
    for lbl in name.split("."):
        if not lbl:
            continue
        try:
            labels.append(idna.encode(lbl, uts46=True, std3_rules=False).decode("ascii"))
        except idna.IDNAError:
            # keep only LDH characters (underscore labels such as _dmarc survive)
            safe = re.sub(r"[^A-Za-z0-9\-_]", "", lbl).strip("-")[:63]
            if safe:
                labels.append(safe)
    return ".".join(labels).lower()


def fqdn(name: Optional[str]) -> str:
    """Absolute form of a name: normalized and ending with a single dot."""
    ascii_name = to_ascii_hostname(name)
    return f"{ascii_name}." if ascii_name else "."


def strip_root(name: Optional[str]) -> str:
    """Relative form of a name as found in answer data (no trailing dot, case kept)."""
    if not name:
        return ""
    return str(name).strip().rstrip(".")


def org_domain(host: Optional[str]) -> str:
    """
    Organizational-domain key used to group mail exchanges under one operator.

    Heuristic, not a public-suffix lookup: the last two labels of the host.
    Names with fewer than two labels key on themselves.

        smtp.mailprovider.com  -> mailprovider.com
        relay2.mailprovider.com. -> mailprovider.com
        localhost -> localhost
    """
    name = (host or "").strip().rstrip(".").lower()
    labels = name.split(".")
    if len(labels) < 2:
        return name
    return ".".join(labels[-2:])
