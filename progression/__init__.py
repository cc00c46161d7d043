"""
Progression — Experience, Levels, Streaks and Rankings for a Community App
==========================================================================
Turns discrete member events (daily attendance, streak milestones,
referrals, rewarded ads, admin corrections) into a single experience total,
derives levels from it, and serves national, regional and school rankings.
Every award is idempotent per logical event and safe under concurrent
writers.

Package layout::

    progression/
    ├── config.py          # YAML → typed Python config
    ├── constants.py       # Leveling formula + thresholds
    ├── errors.py          # Error taxonomy
    ├── database/
    │   ├── engine.py      # Engine, retrying transactions, async bridge
    │   ├── models.py      # ORM models (users, attendance, rewards, audit, settings)
    │   └── seed.py        # Default reward catalog
    ├── engine/
    │   ├── cache.py       # In-memory settings cache + PG LISTEN/NOTIFY
    │   ├── catalog.py     # RewardSettings snapshot
    │   └── streak.py      # Civil dates + streak arithmetic
    ├── services/
    │   ├── reward_service.py          # The only writer of experience
    │   ├── attendance_service.py      # Daily check-in
    │   ├── ranking_service.py         # Leaderboards
    │   ├── settings_service.py        # Reward catalog CRUD
    │   ├── reconciliation_service.py  # Derived stats repair job
    │   └── log_buffer.py              # Recent logs for admins
    └── api/
        ├── main.py        # FastAPI app
        ├── deps.py        # Engine, cache, JWT, deadlines
        └── routes/        # Public, member and admin endpoints
"""

__version__ = "0.1.0"
