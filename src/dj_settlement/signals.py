"""
Signals emitted by dj_settlement services.

Receivers run inside the caller's transaction; keep them fast and side-effect free
or defer work with ``transaction.on_commit``.
"""

from django.dispatch import Signal

# Sent after a ledger entry has been written. kwargs: entry
ledger_entry_posted = Signal()

# Sent when a win fee charge is recorded at bid win. kwargs: charge
fee_charge_created = Signal()

# Sent when a win fee has been collected. kwargs: charge
fee_collected = Signal()

# Sent when a collection attempt failed and the charge is left retryable.
# kwargs: charge, reason
fee_collection_failed = Signal()

# Sent when a collected fee is refunded. kwargs: charge, entry
fee_refunded = Signal()

# Sent whenever a mandate changes status. kwargs: mandate, previous_status
mandate_status_changed = Signal()

# Sent after a commission split has been recorded. kwargs: split
commission_recorded = Signal()
