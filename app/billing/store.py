"""
app/billing/store.py
--------------------
SessionStore — the set of open bills ("tabs") and which one is active.

Invariants
──────────
* There is always at least one session.  Closing the last one replaces
  it with a fresh, empty session #1.
* active_id always names an existing session.
* Session ids are unique and handed out as max(existing) + 1.

Persistence is best effort: save() is called after every change and a
failing backend is logged, never raised.  Several requests may share one
backend, so code that acts after a slow call (checkout) reload()s first
instead of writing back a stale copy.

Blob format (JSON-compatible):

    {"sessions": [BillSession.to_dict(), ...], "activeId": 2}
"""
import logging
from typing import List, Optional

from app.billing.errors import BillingError, PersistenceWriteFailed, SessionNotFound
from app.billing.pricing import TaxMode
from app.billing.session import SUBMIT_TIMEOUT, BillSession


logger = logging.getLogger(__name__)

FIRST_ID = 1


class SessionStore:

    def __init__(self, storage=None, tax_mode=TaxMode.EXCLUSIVE,
                 submit_timeout=SUBMIT_TIMEOUT):
        self.storage  = storage
        self.tax_mode = TaxMode.parse(tax_mode)
        self.submit_timeout = submit_timeout
        self.sessions: List[BillSession] = [self._fresh(FIRST_ID)]
        self.active_id = FIRST_ID
        self.last_error: Optional[PersistenceWriteFailed] = None

    def _fresh(self, session_id: int) -> BillSession:
        return BillSession(id=session_id, tax_mode=self.tax_mode)

    # ── Restore ───────────────────────────────────────────────────

    @classmethod
    def restore(cls, storage, tax_mode=TaxMode.EXCLUSIVE,
                submit_timeout=SUBMIT_TIMEOUT) -> 'SessionStore':
        """
        Build a store from whatever the storage backend holds.

        Anything unreadable (missing blob, wrong shape, empty session
        list, a row that fails to parse, duplicate ids) is discarded and
        the store starts over with one default session.
        """
        store = cls(storage=storage, tax_mode=tax_mode, submit_timeout=submit_timeout)
        store.reload()
        return store

    def reload(self) -> bool:
        """
        Replace the in-memory sessions with what storage holds now.

        Another request may have written since this store was restored.
        An unreadable or invalid blob leaves the current state alone and
        returns False.
        """
        if self.storage is None:
            return False
        try:
            blob = self.storage.load()
        except Exception as exc:
            logger.warning(f'Could not read saved bills, keeping current state: {exc}')
            return False

        if blob is None:
            return False

        try:
            sessions = self._parse_blob(blob)
        except (KeyError, TypeError, ValueError, ArithmeticError, BillingError) as exc:
            logger.warning(f'Discarding invalid saved bills: {exc}')
            return False

        self.sessions = sessions
        active_id = blob.get('activeId')
        if self.get(active_id) is None:
            active_id = sessions[0].id
        self.active_id = active_id
        return True

    def _parse_blob(self, blob) -> List[BillSession]:
        if not isinstance(blob, dict):
            raise TypeError('saved bills must be an object')
        rows = blob.get('sessions')
        if not isinstance(rows, list) or not rows:
            raise ValueError('saved bills must contain a non-empty session list')

        sessions = [
            BillSession.from_dict(row, tax_mode=self.tax_mode, timeout=self.submit_timeout)
            for row in rows
        ]
        ids = [s.id for s in sessions]
        if len(set(ids)) != len(ids):
            raise ValueError(f'duplicate session ids: {ids}')
        return sessions

    # ── Read ──────────────────────────────────────────────────────

    def get(self, session_id) -> Optional[BillSession]:
        for s in self.sessions:
            if s.id == session_id:
                return s
        return None

    def require(self, session_id) -> BillSession:
        s = self.get(session_id)
        if s is None:
            raise SessionNotFound(f'No open bill #{session_id}.')
        return s

    @property
    def active(self) -> BillSession:
        return self.require(self.active_id)

    @property
    def ids(self) -> List[int]:
        return [s.id for s in self.sessions]

    def __len__(self):
        return len(self.sessions)

    def __contains__(self, session_id):
        return self.get(session_id) is not None

    # ── Tabs ──────────────────────────────────────────────────────

    def new_tab(self) -> BillSession:
        """Open a new empty bill and make it active."""
        new_id  = max(self.ids) + 1
        session = self._fresh(new_id)
        self.sessions.append(session)
        self.active_id = new_id
        return session

    def switch_tab(self, session_id) -> BillSession:
        session = self.require(session_id)
        self.active_id = session.id
        return session

    def close_tab(self, session_id=None) -> BillSession:
        """
        Close a bill (the active one by default) and return the session
        that is active afterwards.
        """
        if session_id is None:
            session_id = self.active_id
        closing = self.require(session_id)
        closing.mark_closed()

        if len(self.sessions) == 1:
            self.sessions  = [self._fresh(FIRST_ID)]
            self.active_id = FIRST_ID
            return self.active

        self.sessions = [s for s in self.sessions if s.id != closing.id]
        if closing.id == self.active_id:
            self.active_id = self.sessions[-1].id
        return self.active

    # ── Persistence ───────────────────────────────────────────────

    def to_blob(self) -> dict:
        return {
            'sessions': [s.to_dict() for s in self.sessions],
            'activeId': self.active_id,
        }

    def save(self) -> bool:
        """
        Write the current state to storage.  Returns False (and keeps the
        error on `last_error`) if the backend failed.
        """
        self.last_error = None
        if self.storage is None:
            return True
        try:
            self.storage.save(self.to_blob())
        except Exception as exc:
            self.last_error = PersistenceWriteFailed(str(exc))
            logger.warning(f'PersistenceWriteFailed: {exc}')
            return False
        return True
