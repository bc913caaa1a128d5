"""
app/billing/invoice.py
-----------------------
Invoice numbers for bills written to this app's own database.

Format:  YYYY-NNNN   (2026-0001, 2026-0002, … 2026-10000)

A GST tax invoice must carry a consecutive serial number, unique for the
year (CGST Rule 46).  A hole in the series reads as a suppressed sale on
audit, so a checkout that is rolled back after taking a number must
hand that number back.

That is why the counter lives in `invoice_sequences` and is advanced
inside the same transaction as the invoice insert, instead of coming
from a database SEQUENCE, which never rolls back.  The row is read with
SELECT … FOR UPDATE, so two terminals checking out at once queue on it.
"""
from datetime import datetime


def format_invoice_number(year: int, seq: int) -> str:
    # four digits minimum, grows past 9999
    return f'{year}-{seq:04d}'


def _reserve(db_session, year: int) -> int:
    from app.billing.models import InvoiceSequence

    counter = db_session.get(InvoiceSequence, year, with_for_update=True)
    if counter is None:
        db_session.add(InvoiceSequence(year=year, last_seq=0))
        db_session.flush()
        counter = db_session.get(InvoiceSequence, year, with_for_update=True)

    counter.last_seq += 1
    db_session.flush()
    return counter.last_seq


def generate_invoice_number(db_session, year=None) -> str:
    """
    Reserve the next invoice number for `year` (default: this year).

    MUST run inside the transaction that writes the invoice; the lock and
    the increment both go away if that transaction rolls back.
    """
    year = year or datetime.now().year
    return format_invoice_number(year, _reserve(db_session, year))
