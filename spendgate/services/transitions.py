"""
Compare-and-swap status transitions.

Every status write in the core goes through `compare_and_set`: the UPDATE
only matches while the row is still in one of the expected statuses, so two
producers racing on the same entity cannot both win. The loser gets
`Conflict`; synchronous callers surface it, async entry points treat it as
"already handled".
"""

from collections.abc import Iterable

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from spendgate.exceptions import Conflict


async def compare_and_set(
    session: AsyncSession,
    model,
    key_column,
    key: str,
    expected: Iterable[str],
    **values,
) -> None:
    """Set `values` on the row keyed by `key` iff its status is in `expected`."""
    expected = tuple(expected)
    result = await session.execute(
        update(model)
        .where(key_column == key, model.status.in_(expected))
        .values(**values)
        .execution_options(synchronize_session="evaluate")
    )
    if result.rowcount != 1:
        raise Conflict(model.__name__, key, expected)
