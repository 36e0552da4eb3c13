"""Natural-key upserts for ledger entities.

Ledger models declare ``__natural_key__`` describing which columns identify a
row coming from the gateway and what happens when that row already exists:

- ``ConflictPolicy.UPDATE``: state rows (subscriptions). The newer event's
  values overwrite the stored ones in a single INSERT .. ON CONFLICT DO UPDATE,
  unless the stored row is in a ``terminal`` state.
- ``ConflictPolicy.IGNORE``: append-only rows (revenue, transactions, event
  log, open fraud flags). A replay is a no-op, except that ``fill`` columns
  still NULL on the stored row take the replayed value.

Both forms are one statement, so concurrent deliveries of the same event
cannot interleave a read and a write.
"""
import enum
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Tuple, Type

from sqlalchemy import and_, func, not_, or_
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.orm import Session

logger = logging.getLogger(__name__)


class ConflictPolicy(str, enum.Enum):
    UPDATE = "update"
    IGNORE = "ignore"


@dataclass(frozen=True)
class NaturalKey:
    """Columns identifying a row across event replays, plus its conflict policy"""
    columns: Tuple[str, ...]
    policy: ConflictPolicy
    # Partial-index predicate, e.g. {"status": "open"}
    where: Dict[str, Any] = field(default_factory=dict)
    # Columns an UPDATE must never overwrite
    preserve: Tuple[str, ...] = ("id", "created_at")
    # Stored values that freeze a row against UPDATE, e.g. {"status": "canceled"}
    terminal: Dict[str, Any] = field(default_factory=dict)
    # Columns whose new value lifts the freeze (same natural key, new gateway object)
    reopen_on: Tuple[str, ...] = ()
    # IGNORE only: columns filled in on conflict when the stored value is NULL
    fill: Tuple[str, ...] = ()


def _dialect_insert(db: Session):
    dialect = db.get_bind().dialect.name
    if dialect == "postgresql":
        return postgresql.insert
    if dialect == "sqlite":
        return sqlite.insert
    raise RuntimeError(f"Natural-key upsert not supported on dialect '{dialect}'")


def upsert(db: Session, model: Type, values: Dict[str, Any], key: Optional[NaturalKey] = None) -> Tuple[Any, bool]:
    """Insert ``values`` or apply the model's conflict policy.

    Args:
        db: Database session (the caller owns the commit)
        model: Declarative model class
        values: Column values for the row, must include the natural key columns
        key: Override for ``model.__natural_key__``

    Returns:
        (row, applied) where ``applied`` is False when the conflicting row was
        left untouched: an IGNORE replay, a terminal row, or nothing to fill.
    """
    key = key or model.__natural_key__
    missing = [c for c in key.columns if values.get(c) is None]
    if missing:
        raise ValueError(f"{model.__name__} upsert missing natural key column(s): {', '.join(missing)}")

    db.flush()
    insert = _dialect_insert(db)
    stmt = insert(model).values(**values)

    table = model.__table__
    index_where = None
    if key.where:
        index_where = and_(*(getattr(model, col) == val for col, val in key.where.items()))

    if key.policy == ConflictPolicy.UPDATE:
        set_ = {
            col: stmt.excluded[col]
            for col in values
            if col not in key.columns and col not in key.preserve
        }
        if hasattr(model, "updated_at"):
            set_["updated_at"] = datetime.now(timezone.utc)
        guard = None
        if key.terminal:
            guard = or_(
                not_(and_(*(table.c[col] == val for col, val in key.terminal.items()))),
                *(table.c[col] != stmt.excluded[col] for col in key.reopen_on),
            )
        stmt = stmt.on_conflict_do_update(
            index_elements=list(key.columns),
            index_where=index_where,
            set_=set_,
            where=guard,
        )
    elif key.fill:
        stmt = stmt.on_conflict_do_update(
            index_elements=list(key.columns),
            index_where=index_where,
            set_={col: func.coalesce(table.c[col], stmt.excluded[col]) for col in key.fill},
            where=or_(*(table.c[col].is_(None) for col in key.fill)),
        )
    else:
        stmt = stmt.on_conflict_do_nothing(
            index_elements=list(key.columns),
            index_where=index_where,
        )

    result = db.execute(stmt)
    applied = result.rowcount is None or result.rowcount > 0

    lookup = db.query(model).populate_existing().filter(
        *(getattr(model, col) == values[col] for col in key.columns)
    )
    for col, val in key.where.items():
        lookup = lookup.filter(getattr(model, col) == val)
    row = lookup.one()

    if not applied:
        logger.debug(f"{model.__name__} {dict((c, values[c]) for c in key.columns)} left unchanged")
    return row, applied


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes read back from SQLite"""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value
