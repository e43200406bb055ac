"""
Connection handling for the SQLAlchemy-backed implementations.

PostgreSQL components accept either an AsyncEngine or an AsyncConnection.
``execute_with_connection`` hides the difference so each operation can be
written once.
"""

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine


@asynccontextmanager
async def execute_with_connection(
    conn: AsyncConnection | AsyncEngine,
    transactional: bool = True,
) -> AsyncIterator[AsyncConnection]:
    """
    Yield a connection for one database operation.

    Args:
        conn: Database connection or engine
        transactional: When ``conn`` is an engine, open a transaction
            (``begin``) instead of a bare connection (``connect``)

    Yields:
        AsyncConnection ready for execute() calls

    Note:
        A passed-in AsyncConnection is used as is; its owner controls the
        transaction, so ``transactional`` has no effect.

    Example:
        >>> async with execute_with_connection(self.conn) as conn:
        ...     await conn.execute(query, params)
    """
    if isinstance(conn, AsyncEngine):
        if transactional:
            async with conn.begin() as connection:
                yield connection
        else:
            async with conn.connect() as connection:
                yield connection
    else:
        yield conn
