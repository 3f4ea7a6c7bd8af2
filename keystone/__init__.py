"""
Keystone — Progression & Access-Gating Engine
=============================================
Records scored actions and assessments, derives each user's competency
standing from that history, tracks once-only milestones and the billing
lifecycle, and answers "may user U use capability C now?" from a
declarative rule table.

Package layout::

    keystone/
    ├── config.py          # YAML → typed infrastructure config
    ├── errors.py          # ValidationError / InvalidTransition / StorageUnavailable
    ├── database/
    │   ├── engine.py      # SQLAlchemy engine, storage guard, async helper
    │   ├── models.py      # ORM models + closed enumerations
    │   └── seed.py        # Default tuning settings
    ├── engine/            # Pure logic, no I/O
    │   ├── events.py      # Inbound payloads + validation
    │   ├── scoring.py     # Level table + standing calculation
    │   ├── milestones.py  # Milestone lifecycle rules + deadline policy
    │   ├── subscription.py # Subscription state machine
    │   ├── access.py      # Capability rules + gate evaluation
    │   ├── locks.py       # Per-key critical sections
    │   └── cache.py       # In-memory tuning cache + PG LISTEN/NOTIFY
    ├── services/          # Transactional orchestration
    │   ├── event_store.py       # Append-only events & assessments
    │   ├── standing_service.py  # Standing over stored history
    │   ├── milestone_service.py # Milestone tracker (CAS on status)
    │   ├── subscription_service.py
    │   ├── access_service.py
    │   ├── progression_service.py # Submission pipeline
    │   ├── settings_service.py  # Audited settings writes
    │   └── notifications.py     # "Milestone completed" bus
    └── api/
        ├── main.py        # FastAPI app + error mapping
        ├── deps.py        # JWT → user id, engine/cache providers
        └── routes/        # /me, /ingest, /admin
"""

__version__ = "0.1.0"
