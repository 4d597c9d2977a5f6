"""Email security posture monitor: DNS policy resolution, MX/DANE enumeration and STARTTLS probing."""
