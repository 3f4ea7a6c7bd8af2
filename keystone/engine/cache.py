"""
keystone.engine.cache — In-Memory Tuning Cache with PG LISTEN/NOTIFY
====================================================================

Tuning values (level table, capability rules, milestone deadlines, billing
windows) live in the ``settings`` table and are cached here, parsed into
their engine types once per load rather than on every request.

Invalidation: the settings service fires ``NOTIFY settings_changed`` inside
the writing transaction; every worker process runs a LISTEN thread that
reloads its cache when the notification arrives.
"""

from __future__ import annotations

import json
import logging
import random
import select as _select
import threading
from collections.abc import Mapping
from datetime import timedelta
from typing import TYPE_CHECKING, Any

from sqlalchemy import select, text
from sqlalchemy.orm import Session

from keystone.database.models import MilestoneType, Setting
from keystone.database.seed import DEFAULT_SETTINGS
from keystone.engine.access import CapabilityRule, parse_capability_rules
from keystone.engine.milestones import DeadlinePolicy
from keystone.engine.scoring import LevelTable
from keystone.errors import ValidationError

if TYPE_CHECKING:
    from sqlalchemy import Engine

logger = logging.getLogger(__name__)

NOTIFY_CHANNEL = "settings_changed"

# Allowlist of payloads accepted by send_notify()
ALLOWED_NOTIFY_TABLES: frozenset[str] = frozenset({"settings"})


def _default(key: str) -> Any:
    return DEFAULT_SETTINGS[key][0]


class ConfigCache:
    """Thread-safe cache of parsed tuning settings.

    Usage:
        cache = ConfigCache(engine)
        cache.load_all()
        cache.start_listener()

        levels = cache.get_level_table()
        rules = cache.get_capability_rules()
    """

    def __init__(self, engine: Engine | None) -> None:
        self._engine = engine
        self._lock = threading.Lock()

        self._settings: dict[str, Any] = {}
        self._levels: LevelTable = LevelTable(_default("scoring.levels"))
        self._rules: dict[str, CapabilityRule] = parse_capability_rules(
            _default("access.capabilities"), self._levels,
        )
        self._deadlines: DeadlinePolicy = DeadlinePolicy.from_setting(
            _default("milestones.deadline_hours"),
        )
        self._level_triggers: dict[str, MilestoneType] = {}

        self._listener_healthy = False
        self._listener_failed = False
        self._listener_thread: threading.Thread | None = None
        self._shutdown_event = threading.Event()

    # -------------------------------------------------------------------
    # Loading
    # -------------------------------------------------------------------
    def load_all(self) -> None:
        """Load every setting from the DB.  Call on startup."""
        if self._engine is None:
            raise RuntimeError("ConfigCache has no engine to load from")
        with Session(self._engine) as session:
            rows = session.scalars(select(Setting)).all()
            parsed: dict[str, Any] = {}
            for row in rows:
                try:
                    parsed[row.key] = json.loads(row.value_json)
                except (json.JSONDecodeError, TypeError):
                    parsed[row.key] = row.value_json
        self.load_from_mapping(parsed)

    def load_from_mapping(self, values: Mapping[str, Any]) -> None:
        """Replace the cached settings with *values* and re-derive everything.

        Invalid tuning never replaces a working configuration: a bad level
        table falls back to the defaults, bad capability rules are dropped.
        """
        settings = dict(values)

        try:
            levels = LevelTable(settings.get("scoring.levels", _default("scoring.levels")))
        except ValidationError as exc:
            logger.error("Invalid scoring.levels (%s); using defaults", exc)
            levels = LevelTable(_default("scoring.levels"))

        rules = parse_capability_rules(
            settings.get("access.capabilities", _default("access.capabilities")), levels,
        )
        deadlines = DeadlinePolicy.from_setting(
            settings.get("milestones.deadline_hours", _default("milestones.deadline_hours")),
        )

        triggers: dict[str, MilestoneType] = {}
        raw_triggers = settings.get("milestones.level_triggers") or {}
        for level_name, mtype in raw_triggers.items():
            if levels.rank(level_name) is None:
                logger.warning("Ignoring level trigger for unknown level %r", level_name)
                continue
            try:
                triggers[level_name] = MilestoneType(mtype)
            except ValueError:
                logger.warning("Ignoring level trigger with unknown milestone %r", mtype)

        with self._lock:
            self._settings = settings
            self._levels = levels
            self._rules = rules
            self._deadlines = deadlines
            self._level_triggers = triggers

        logger.info(
            "ConfigCache loaded: %d settings, %d levels, %d capabilities, "
            "%d deadlines, %d level triggers",
            len(settings), len(levels), len(rules),
            len(deadlines.deadlines), len(triggers),
        )

    # -------------------------------------------------------------------
    # Parsed reads
    # -------------------------------------------------------------------
    def get_level_table(self) -> LevelTable:
        with self._lock:
            return self._levels

    def get_capability_rules(self) -> dict[str, CapabilityRule]:
        with self._lock:
            return dict(self._rules)

    def get_deadline_policy(self) -> DeadlinePolicy:
        with self._lock:
            return self._deadlines

    def get_level_triggers(self) -> dict[str, MilestoneType]:
        with self._lock:
            return dict(self._level_triggers)

    def get_past_due_grace(self) -> timedelta:
        return timedelta(days=self.get_float(
            "billing.past_due_grace_days", _default("billing.past_due_grace_days"),
        ))

    def get_trial_length(self) -> timedelta:
        return timedelta(days=self.get_float(
            "billing.trial_days", _default("billing.trial_days"),
        ))

    def get_period_length(self) -> timedelta:
        return timedelta(days=self.get_float(
            "billing.period_days", _default("billing.period_days"),
        ))

    # -------------------------------------------------------------------
    # Typed setting accessors
    # -------------------------------------------------------------------
    def get_setting(self, key: str, default: Any = None) -> Any:
        with self._lock:
            return self._settings.get(key, default)

    def get_float(self, key: str, default: float = 0.0) -> float:
        val = self.get_setting(key)
        if val is None:
            return default
        try:
            return float(val)
        except (TypeError, ValueError):
            return default

    # -------------------------------------------------------------------
    # Invalidation
    # -------------------------------------------------------------------
    def handle_notify(self, table_name: str) -> None:
        """Reload when a NOTIFY payload names a cached table."""
        table_name = table_name.strip().lower()
        if table_name == "settings":
            logger.info("Config cache invalidation for table: %s", table_name)
            self.load_all()
        else:
            logger.warning("Unknown table in NOTIFY: %s — ignoring", table_name)

    @property
    def listener_healthy(self) -> bool:
        return self._listener_healthy and not self._listener_failed

    @property
    def listener_failed(self) -> bool:
        return self._listener_failed

    def stop_listener(self) -> None:
        self._shutdown_event.set()
        if self._listener_thread is not None and self._listener_thread.is_alive():
            self._listener_thread.join(timeout=5)
            logger.info("PG NOTIFY listener thread stopped")

    def start_listener(self) -> None:
        """LISTEN for settings changes on a background thread.

        Only meaningful on PostgreSQL; other backends log and return.
        Reconnects with capped exponential backoff plus jitter and gives up
        after ``max_attempts`` consecutive failures.
        """
        if self._engine is None or self._engine.dialect.name != "postgresql":
            logger.info("Settings LISTEN skipped (backend is not PostgreSQL)")
            return

        import psycopg2

        max_backoff = 60.0
        max_attempts = 10

        def _listen() -> None:
            dsn = self._engine.url.set(drivername="postgresql").render_as_string(
                hide_password=False,
            )
            attempt = 0
            while not self._shutdown_event.is_set():
                conn = None
                try:
                    conn = psycopg2.connect(dsn)
                    conn.set_isolation_level(0)  # autocommit
                    conn.cursor().execute(f"LISTEN {NOTIFY_CHANNEL};")
                    logger.info("PG LISTEN started on '%s'", NOTIFY_CHANNEL)
                    attempt = 0
                    self._listener_healthy = True

                    while not self._shutdown_event.is_set():
                        if _select.select([conn], [], [], 5.0) == ([], [], []):
                            continue
                        conn.poll()
                        while conn.notifies:
                            notify = conn.notifies.pop(0)
                            try:
                                self.handle_notify(notify.payload or "")
                            except Exception:
                                logger.exception(
                                    "Error handling NOTIFY payload %r", notify.payload,
                                )
                except Exception:
                    self._listener_healthy = False
                    attempt += 1
                    if attempt >= max_attempts:
                        logger.critical(
                            "PG LISTEN exhausted %d retries; settings will not "
                            "hot-reload in this process", max_attempts,
                        )
                        self._listener_failed = True
                        break
                    backoff = min(2 ** (attempt - 1), max_backoff)
                    wait = backoff + random.uniform(0, backoff * 0.5)
                    logger.exception(
                        "PG LISTEN connection lost (attempt %d/%d); retrying in %.1fs",
                        attempt, max_attempts, wait,
                    )
                    if self._shutdown_event.wait(timeout=wait):
                        break
                finally:
                    if conn is not None:
                        conn.close()

        thread = threading.Thread(target=_listen, daemon=True, name="settings-listener")
        self._listener_thread = thread
        thread.start()


def notify_before_commit(session: Session, table_name: str) -> None:
    """Queue a NOTIFY inside the current transaction (delivered on commit).

    A no-op on backends without LISTEN/NOTIFY.
    """
    if table_name not in ALLOWED_NOTIFY_TABLES:
        raise ValueError(
            f"Invalid table name for NOTIFY: '{table_name}'. "
            f"Allowed: {sorted(ALLOWED_NOTIFY_TABLES)}"
        )
    if session.get_bind().dialect.name != "postgresql":
        return
    session.execute(text(f"NOTIFY {NOTIFY_CHANNEL}, '{table_name}'"))
