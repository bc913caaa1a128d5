"""
app/catalog
-----------
Products, variants and customers as the billing screen sees them.

Billing only reads these rows (converted to read-only records) and
updates stock / customer statistics after an invoice is written.
"""
