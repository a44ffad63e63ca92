"""
db_errors.py - Connection error types and the user-facing error classifier.

Driver exceptions are reduced to a short code (ECONNREFUSED, ENOTFOUND,
ETIMEDOUT, ER_ACCESS_DENIED_ERROR, 28P01, ...) and the code picks one of
a fixed set of messages.  The raw driver text always travels alongside
as `details` so the operator can still see what actually happened.
"""
import ipaddress
import re
import socket
from dataclasses import dataclass
from typing import Iterator, Optional

import pymysql

from app_logging import get_logger


class DatabaseConnectionError(Exception):
    """Opening a connection failed.  The driver exception is chained as __cause__."""


# ---------------------------------------------------------------------------
# Codes & messages
# ---------------------------------------------------------------------------

ECONNREFUSED = "ECONNREFUSED"
ENOTFOUND = "ENOTFOUND"
ETIMEDOUT = "ETIMEDOUT"
MYSQL_ACCESS_DENIED = "ER_ACCESS_DENIED_ERROR"
PG_INVALID_PASSWORD = "28P01"

AUTH_CODES = {MYSQL_ACCESS_DENIED, PG_INVALID_PASSWORD}

MSG_LOCAL_UNREACHABLE = (
    "Cannot reach a local or private address from a remote deployment. "
    "Use a database host that is reachable from this server."
)
MSG_REFUSED = "Connection refused. Check if the database server is running."
MSG_NOT_FOUND = "Host not found. Check your hostname/IP address."
MSG_ACCESS_DENIED = "Access denied. Check your username and password."
MSG_PRIVATE_TIMEOUT = (
    "Connection timeout. Private IP addresses cannot be reached from here; "
    "use a publicly reachable or cloud-hosted database."
)
MSG_TIMEOUT = "Connection timeout. Check your network or firewall settings."
MSG_GENERIC = "Connection failed. Please check your credentials."

# PyMySQL client/server error numbers
_MYSQL_CODES = {
    1045: MYSQL_ACCESS_DENIED,   # ER_ACCESS_DENIED_ERROR
    2005: ENOTFOUND,             # CR_UNKNOWN_HOST
}

# Message fragments from libpq, PyMySQL and the socket layer
_MESSAGE_HINTS = (
    ("connection refused", ECONNREFUSED),
    ("could not translate host name", ENOTFOUND),
    ("name or service not known", ENOTFOUND),
    ("nodename nor servname", ENOTFOUND),
    ("getaddrinfo failed", ENOTFOUND),
    ("unknown mysql server host", ENOTFOUND),
    ("timeout expired", ETIMEDOUT),
    ("timed out", ETIMEDOUT),
    ("password authentication failed", PG_INVALID_PASSWORD),
    ("access denied for user", MYSQL_ACCESS_DENIED),
)

_IPV4 = re.compile(r"\b\d{1,3}(?:\.\d{1,3}){3}\b")


@dataclass
class ClassifiedError:
    message: str
    details: str
    code: Optional[str] = None

    def to_dict(self) -> dict:
        return {"success": False, "error": self.message, "details": self.details}


# ---------------------------------------------------------------------------
# Host heuristics
# ---------------------------------------------------------------------------

def is_private_host(host: Optional[str]) -> bool:
    """True for localhost names and loopback, private or link-local IPs."""
    if not host:
        return False
    name = host.strip().lower().strip("[]")
    if name == "localhost" or name.endswith(".localhost"):
        return True
    try:
        ip = ipaddress.ip_address(name)
    except ValueError:
        return False
    return ip.is_loopback or ip.is_private or ip.is_link_local


def mentions_private_ip(text: str) -> bool:
    return any(is_private_host(candidate) for candidate in _IPV4.findall(text or ""))


# ---------------------------------------------------------------------------
# Code extraction
# ---------------------------------------------------------------------------

def _chain(exc: BaseException) -> Iterator[BaseException]:
    """Walk an exception and whatever it was raised from."""
    seen = set()
    current: Optional[BaseException] = exc
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        yield current
        original = getattr(current, "original_exception", None)  # set by PyMySQL
        if isinstance(original, BaseException):
            yield original
        current = current.__cause__ or current.__context__


def error_code(exc: BaseException) -> Optional[str]:
    """Best-effort short code for a driver exception, or None."""
    for err in _chain(exc):
        code = getattr(err, "code", None)
        if isinstance(code, str) and code:
            return code
        pgcode = getattr(err, "pgcode", None)
        if pgcode:
            return pgcode
        if isinstance(err, ConnectionRefusedError):
            return ECONNREFUSED
        if isinstance(err, socket.gaierror):
            return ENOTFOUND
        if isinstance(err, TimeoutError):
            return ETIMEDOUT
        if isinstance(err, pymysql.err.MySQLError) and err.args and isinstance(err.args[0], int):
            if err.args[0] in _MYSQL_CODES:
                return _MYSQL_CODES[err.args[0]]

    text = " ".join(str(err) for err in _chain(exc)).lower()
    for fragment, code in _MESSAGE_HINTS:
        if fragment in text:
            return code
    return None


# ---------------------------------------------------------------------------
# Classifier
# ---------------------------------------------------------------------------

def classify_error(exc: BaseException, hostname: Optional[str] = None) -> ClassifiedError:
    """Map a driver exception to a user-facing message plus the raw details.

    The raw error is logged server-side before anything is returned.
    """
    details = str(exc) or "Unknown error"
    code = error_code(exc)
    get_logger("db_errors").error(
        "database error", hostname=hostname, code=code,
        error_type=type(exc).__name__, error=details,
    )

    if code == ECONNREFUSED:
        message = MSG_LOCAL_UNREACHABLE if is_private_host(hostname) else MSG_REFUSED
    elif code == ENOTFOUND:
        message = MSG_NOT_FOUND
    elif code in AUTH_CODES:
        message = MSG_ACCESS_DENIED
    elif code == ETIMEDOUT:
        message = MSG_PRIVATE_TIMEOUT if mentions_private_ip(details) else MSG_TIMEOUT
    else:
        message = MSG_GENERIC

    return ClassifiedError(message=message, details=details, code=code)
