"""Filecoin chain epoch <-> wall clock conversion."""

from __future__ import annotations

import math
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import BigInteger, DateTime, case, cast
from sqlalchemy.ext.compiler import compiles
from sqlalchemy.sql.expression import ColumnElement, FunctionElement

# Mainnet genesis, 2020-08-24 22:00:00 UTC.
GENESIS_TIMESTAMP = 1598306400
EPOCH_DURATION_SECONDS = 30

# Chain sentinel for "has not happened".
UNSET_EPOCH = -1


def epoch_to_timestamp(epoch: int) -> int:
    """Unix timestamp at the start of ``epoch``; the unset epoch maps to 0."""
    if epoch == UNSET_EPOCH:
        return 0
    return epoch * EPOCH_DURATION_SECONDS + GENESIS_TIMESTAMP


def epoch_to_datetime(epoch: int) -> datetime:
    return datetime.fromtimestamp(epoch_to_timestamp(epoch), tz=UTC)


def timestamp_to_epoch(timestamp: float) -> int:
    """Epoch containing the given Unix timestamp (floor)."""
    return math.floor((timestamp - GENESIS_TIMESTAMP) / EPOCH_DURATION_SECONDS)


def datetime_to_epoch(value: datetime) -> int:
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return timestamp_to_epoch(value.timestamp())


class unix_to_datetime(FunctionElement[datetime]):
    """Portable ``to_timestamp``: Unix seconds to a timestamp value."""

    type = DateTime(timezone=True)
    name = "unix_to_datetime"
    inherit_cache = True


@compiles(unix_to_datetime, "postgresql")
def _unix_to_datetime_postgresql(element: unix_to_datetime, compiler: Any, **kw: Any) -> str:
    return "to_timestamp(%s)" % compiler.process(element.clauses, **kw)


@compiles(unix_to_datetime, "sqlite")
def _unix_to_datetime_sqlite(element: unix_to_datetime, compiler: Any, **kw: Any) -> str:
    return "datetime(%s, 'unixepoch')" % compiler.process(element.clauses, **kw)


def epoch_to_timestamp_sql(epoch: ColumnElement[int]) -> ColumnElement[int]:
    """SQL counterpart of :func:`epoch_to_timestamp`."""
    return case(
        (epoch == UNSET_EPOCH, 0),
        else_=cast(epoch, BigInteger) * EPOCH_DURATION_SECONDS + GENESIS_TIMESTAMP,
    )


def epoch_to_datetime_sql(epoch: ColumnElement[int]) -> unix_to_datetime:
    """SQL counterpart of :func:`epoch_to_datetime`."""
    return unix_to_datetime(epoch_to_timestamp_sql(epoch))
