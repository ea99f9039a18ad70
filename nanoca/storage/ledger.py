"""
Certificate ledger (private/crtdb) + the two counters (crtserial, crlserial).

One TAB-separated record per line:
    state \t expiry \t revocation_info \t serial \t filename \t subject

Times are UTCTime "YYMMDDHHMMSSZ" (GeneralizedTime "YYYYMMDDHHMMSSZ" from 2050 on),
revocation_info is "<time>,<reason>" or empty. Every write goes through
atomic_write, so a reader never sees a half-written ledger or counter.
"""
import logging
import datetime
import contextlib
from typing import List, Optional

from filelock import FileLock, Timeout
from pydantic import ValidationError as ModelValidationError

from nanoca.common.errors import ConfigurationError, IOFailure, NotFound
from nanoca.common.models import EntryState, LedgerEntry
from nanoca.common.utils import atomic_write
from nanoca.storage.layout import CALayout

log = logging.getLogger(__name__)

_UTCTIME = "%y%m%d%H%M%SZ"
_GENTIME = "%Y%m%d%H%M%SZ"


# -------------------- FIELD CODECS -------------------- #

def format_time(ts: datetime.datetime) -> str:
    ts = ts.astimezone(datetime.timezone.utc)
    return ts.strftime(_UTCTIME if 1950 <= ts.year < 2050 else _GENTIME)


def parse_time(text: str) -> datetime.datetime:
    if len(text) == 13:
        ts = datetime.datetime.strptime(text, _UTCTIME)
        # RFC 5280 pivot: YY >= 50 is 19YY
        if ts.year >= 2050:
            ts = ts.replace(year=ts.year - 100)
    elif len(text) == 15:
        ts = datetime.datetime.strptime(text, _GENTIME)
    else:
        raise ValueError(f"bad timestamp {text!r}")
    return ts.replace(tzinfo=datetime.timezone.utc)


# TAB plus everything str.splitlines() treats as a line boundary
_UNSAFE = "\t\n\r\x0b\x0c\x1c\x1d\x1e\x85\u2028\u2029"


def _hex_escape(ch: str) -> str:
    return "".join(f"\\{b:02X}" for b in ch.encode("utf-8"))


def ledger_subject(name) -> str:
    """Display form of an x509.Name that cannot break a ledger line."""
    return "".join(_hex_escape(ch) if ch in _UNSAFE else ch for ch in name.rfc4514_string())


def serialize_entry(entry: LedgerEntry) -> str:
    revocation = ""
    if entry.revoked_at is not None:
        revocation = format_time(entry.revoked_at)
        if entry.reason:
            revocation += "," + entry.reason
    fields = [
        entry.state.value,
        format_time(entry.expiry),
        revocation,
        str(entry.serial),
        entry.filename,
        entry.subject,
    ]
    for field in fields:
        if any(ch in _UNSAFE for ch in field):
            raise ValueError(f"serial {entry.serial}: field {field!r} contains a TAB or line break")
    return "\t".join(fields)


def parse_entry(line: str) -> LedgerEntry:
    fields = line.rstrip("\n").split("\t", 5)
    if len(fields) != 6:
        raise ValueError(f"expected 6 TAB-separated fields, got {len(fields)}")
    state, expiry, revocation, serial, filename, subject = fields

    revoked_at = reason = None
    if revocation:
        when, _, why = revocation.partition(",")
        revoked_at = parse_time(when)
        reason = why or None
    try:
        return LedgerEntry(
            state=EntryState(state),
            expiry=parse_time(expiry),
            revoked_at=revoked_at,
            reason=reason,
            serial=int(serial),
            filename=filename,
            subject=subject,
        )
    except ModelValidationError as e:
        raise ValueError(str(e))


# -------------------- LOCKING -------------------- #

@contextlib.contextmanager
def ca_lock(layout: CALayout, timeout: float = 10.0):
    """Exclusive cross-process lock around a read-modify-write of CA state."""
    lock = FileLock(layout.lock_path, timeout=timeout)
    try:
        lock.acquire()
    except Timeout:
        raise IOFailure(f"timed out after {timeout}s waiting for {layout.lock_path}")
    try:
        yield
    finally:
        lock.release()


# -------------------- LEDGER -------------------- #

class Ledger:
    """
    The authoritative record of every certificate a CA issued.
    Entries are never deleted; serials are unique and strictly increasing.
    """

    def __init__(self, layout: CALayout):
        self.layout = layout
        self.path = layout.crtdb_path

    # -------------------- Entries -------------------- #

    def entries(self) -> List[LedgerEntry]:
        """All entries, in insertion order."""
        try:
            with open(self.path, "r", encoding="utf-8", newline="") as f:
                lines = f.read().split("\n")
        except OSError as e:
            raise IOFailure(f"cannot read ledger {self.path}: {e}")
        out = []
        for lineno, line in enumerate(lines, 1):
            if not line.strip():
                continue
            try:
                out.append(parse_entry(line))
            except ValueError as e:
                raise ConfigurationError(f"{self.path}:{lineno}: corrupt ledger record ({e})")
        return out

    def write(self, entries: List[LedgerEntry]):
        text = "".join(serialize_entry(e) + "\n" for e in entries)
        atomic_write(self.path, text)

    def find(self, serial: int) -> Optional[LedgerEntry]:
        for e in self.entries():
            if e.serial == serial:
                return e
        return None

    def get(self, serial: int) -> LedgerEntry:
        entry = self.find(serial)
        if entry is None:
            raise NotFound(f"certificate with serial {serial} does not exist")
        return entry

    def append(self, entry: LedgerEntry):
        """Commit a new entry. The caller holds ca_lock."""
        entries = self.entries()
        if entries and entry.serial <= entries[-1].serial:
            raise ValueError(f"serial {entry.serial} is not above the last recorded serial {entries[-1].serial}")
        entries.append(entry)
        self.write(entries)
        log.info("ledger: recorded serial %d (%s)", entry.serial, entry.subject)

    def replace(self, entry: LedgerEntry):
        """Rewrite the entry with the same serial. The caller holds ca_lock."""
        entries = self.entries()
        for i, e in enumerate(entries):
            if e.serial == entry.serial:
                entries[i] = entry
                self.write(entries)
                return
        raise NotFound(f"certificate with serial {entry.serial} does not exist")

    # -------------------- Counters -------------------- #

    def _read_counter(self, path: str) -> int:
        try:
            with open(path, "r", encoding="ascii") as f:
                value = int(f.read().strip())
        except OSError as e:
            raise IOFailure(f"cannot read counter {path}: {e}")
        except ValueError:
            raise ConfigurationError(f"counter {path} does not hold a decimal number")
        if value < 1:
            raise ConfigurationError(f"counter {path} holds {value}, expected a positive number")
        return value

    def _write_counter(self, path: str, value: int):
        atomic_write(path, f"{value}\n")

    def next_serial(self) -> int:
        """
        Serial for the next certificate. Never below the last ledger serial + 1,
        so a ledger commit whose counter write was lost cannot be reused.
        """
        counter = self._read_counter(self.layout.crtserial_path)
        entries = self.entries()
        if entries and entries[-1].serial >= counter:
            log.warning("crtserial %d lags behind ledger serial %d; skipping ahead", counter, entries[-1].serial)
            counter = entries[-1].serial + 1
        return counter

    def advance_serial(self, used: int):
        self._write_counter(self.layout.crtserial_path, used + 1)

    def next_crl_number(self) -> int:
        return self._read_counter(self.layout.crlserial_path)

    def set_crl_number(self, value: int):
        self._write_counter(self.layout.crlserial_path, value)

    @classmethod
    def initialize(cls, layout: CALayout) -> "Ledger":
        """Empty ledger, both counters seeded at 1."""
        atomic_write(layout.crtdb_path, "")
        atomic_write(layout.crtserial_path, "1\n")
        atomic_write(layout.crlserial_path, "1\n")
        return cls(layout)

