"""Read-only views of the ledger, one line per certificate in issue order."""

from typing import List, NamedTuple, Optional
import datetime

from nanoca.common.models import EntryState, LedgerEntry
from nanoca.common.utils import now_utc

_STATE_LABELS = {
    EntryState.VALID: "valid",
    EntryState.REVOKED: "revoked",
    EntryState.EXPIRED: "expired",
}


class EntryView(NamedTuple):
    entry: LedgerEntry
    state: EntryState       # effective state at listing time

    def line(self) -> str:
        e = self.entry
        text = f"{e.serial:>6}  {_STATE_LABELS[self.state]:<8} {e.expiry:%Y-%m-%d %H:%M:%SZ}  {e.subject}"
        if e.revoked_at is not None:
            text += f"  [revoked {e.revoked_at:%Y-%m-%d %H:%M:%SZ}, {e.reason or 'unspecified'}]"
        return text


def list_entries(identity, now: Optional[datetime.datetime] = None) -> List[EntryView]:
    now = now or now_utc()
    return [EntryView(e, e.effective_state(now)) for e in identity.ledger.entries()]
