"""
Turn low-level connectivity failures into operator-facing messages.

Database DNS failures and TLS certificate failures usually arrive wrapped
(SQLAlchemy OperationalError around psycopg2, httpx.ConnectError around
ssl.SSLCertVerificationError), so both helpers walk the exception chain.
"""
import re
import socket
import ssl
from typing import Iterator, Optional
from urllib.parse import urlparse

from config import get_settings

DNS_ERROR_PATTERNS = [
    re.compile(r"could not translate host name", re.IGNORECASE),
    re.compile(r"name or service not known", re.IGNORECASE),
    re.compile(r"nodename nor servname", re.IGNORECASE),
    re.compile(r"temporary failure in name resolution", re.IGNORECASE),
    re.compile(r"getaddrinfo failed", re.IGNORECASE),
]
DNS_HOST_PATTERN = re.compile(r'host name "([^"]+)"', re.IGNORECASE)
DNS_ERRNOS = {getattr(socket, name) for name in ("EAI_NONAME", "EAI_AGAIN") if hasattr(socket, name)}

TLS_ERROR_PATTERNS = [
    re.compile(r"self[- ]signed certificate", re.IGNORECASE),
    re.compile(r"unable to verify", re.IGNORECASE),
    re.compile(r"certificate chain", re.IGNORECASE),
    re.compile(r"certificate verify failed", re.IGNORECASE),
    re.compile(r"\btls\b", re.IGNORECASE),
]


def iter_exception_chain(error: Optional[BaseException]) -> Iterator[BaseException]:
    seen = set()
    pending = [error]
    while pending:
        current = pending.pop()
        if current is None or id(current) in seen:
            continue
        seen.add(id(current))
        yield current
        # SQLAlchemy DBAPIError keeps the driver exception on `.orig`.
        orig = getattr(current, "orig", None)
        pending.append(current.__cause__ or current.__context__)
        if isinstance(orig, BaseException):
            pending.append(orig)


def _database_host() -> str:
    url = (get_settings().database_url or "").strip()
    try:
        return urlparse(url).hostname or ""
    except ValueError:
        return ""


def _find_dns_error(error: BaseException) -> Optional[BaseException]:
    for exc in iter_exception_chain(error):
        if isinstance(exc, socket.gaierror) and (not DNS_ERRNOS or exc.errno in DNS_ERRNOS):
            return exc
        message = str(exc)
        if any(p.search(message) for p in DNS_ERROR_PATTERNS):
            return exc
    return None


def format_db_connectivity_message(error: BaseException) -> Optional[str]:
    """Actionable message for a database host lookup failure, else None."""
    dns_error = _find_dns_error(error)
    if dns_error is None:
        return None

    match = DNS_HOST_PATTERN.search(str(dns_error))
    host = (match.group(1) if match else "") or _database_host() or "unknown-host"

    if host.endswith(".supabase.co"):
        return (
            f'Database host lookup failed for "{host}". '
            "Update SUPABASE_DB_URL using the current connection string from Supabase Dashboard "
            "(Project Settings -> Database -> Connection string). "
            'If direct host "db.<project-ref>.supabase.co" does not resolve, use the Transaction Pooler URL '
            '(host like "aws-0-<region>.pooler.supabase.com", port 6543, user "postgres.<project-ref>").'
        )
    return f'Database host lookup failed for "{host}". Check SUPABASE_DB_URL / DATABASE_URL and DNS settings.'


def _find_tls_error(error: BaseException) -> Optional[BaseException]:
    for exc in iter_exception_chain(error):
        if isinstance(exc, ssl.SSLCertVerificationError):
            return exc
        message = str(exc)
        if message and any(p.search(message) for p in TLS_ERROR_PATTERNS):
            return exc
    return None


def format_tls_error_message(error: BaseException) -> Optional[str]:
    """Actionable message for a TLS certificate failure on an outbound call, else None."""
    tls_error = _find_tls_error(error)
    if tls_error is None:
        return None

    details = str(tls_error).strip() or "certificate validation failed"
    return (
        f"TLS certificate validation failed while calling an external service: {details}. "
        "If your network uses an intercepting proxy, point SSL_CERT_FILE at a bundle "
        "containing your proxy/root CA and restart. For local-only testing, you can set "
        "ALLOW_SELF_SIGNED_TLS=true and restart the server (insecure)."
    )
