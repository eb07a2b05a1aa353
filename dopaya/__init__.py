"""
Dopaya — Impact Calculation & Points Ledger
=============================================
Turns a donation amount into a real-world impact figure with localized,
human-readable text, and credits the donor's Impact Points balance with an
append-only audit trail.  Both completion paths (the "donate now" request and
the payment-provider webhook) run through the same pipeline.

Package layout::

    dopaya/
    ├── config.py          # YAML → typed Python config
    ├── constants.py       # Languages, unit keywords, text scaffolds
    ├── database/
    │   ├── engine.py      # SQLAlchemy engine + async helper
    │   └── models.py      # All ORM models
    ├── engine/
    │   ├── impact.py      # Impact factor / tier resolution (pure)
    │   ├── text.py        # Number formatting + CTA / past-tense rendering
    │   ├── points.py      # The one rounding rule for Impact Points
    │   ├── snapshot.py    # Immutable per-donation impact snapshots
    │   └── mapper.py      # snake_case / camelCase project normalization
    ├── services/
    │   ├── store.py               # Single-row storage primitives
    │   ├── ledger_service.py      # Balance increment + ledger append saga
    │   ├── donation_service.py    # Donation recorder + completion pipeline
    │   ├── payment_events.py      # Payment-confirmed webhook processing
    │   ├── reconciliation_service.py  # Abandoned-intent resolution
    │   ├── reward_service.py      # Redemptions + welcome bonus
    │   └── log_buffer.py          # Operator alert ring buffer
    └── api/
        ├── main.py        # FastAPI app
        ├── deps.py        # Dependency injection + JWT auth
        ├── tasks.py       # Background reconciliation loop
        └── routes/        # Donations, webhooks, rewards, admin
"""

__version__ = "0.1.0"
