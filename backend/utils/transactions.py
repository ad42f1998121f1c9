import logging
from contextlib import asynccontextmanager

from pymongo.errors import PyMongoError

from config.env import MONGO_TRANSACTIONS_ENABLED
from utils.errors import TransactionAbort

logger = logging.getLogger(__name__)


class UnitOfWork:
    """
    Transaction context threaded through every ledger write.
    Leaf helpers pass `session=uow.session` and never commit or abort.
    """

    def __init__(self, db, session=None):
        self.db = db
        self.session = session

    @property
    def in_transaction(self) -> bool:
        return self.session is not None


@asynccontextmanager
async def unit_of_work(db, *, enabled: bool | None = None):
    """
    Begin/commit/rollback boundary, owned by top-level ledger operations.
    The motor transaction context aborts on any exception raised inside it.
    """
    if enabled is None:
        enabled = MONGO_TRANSACTIONS_ENABLED

    if not enabled:
        try:
            yield UnitOfWork(db)
        except PyMongoError as e:
            logger.exception("UNIT_OF_WORK_FAILED transactions=off")
            raise TransactionAbort(f"Ledger write failed: {e}") from e
        return

    try:
        async with await db.client.start_session() as session:
            async with session.start_transaction():
                yield UnitOfWork(db, session)
    except PyMongoError as e:
        logger.exception("TRANSACTION_ABORTED")
        raise TransactionAbort(f"Ledger transaction aborted: {e}") from e


@asynccontextmanager
async def join_or_begin(db, uow: UnitOfWork | None):
    """Join the caller's unit of work if given, otherwise open a new one."""
    if uow is not None:
        yield uow
        return

    async with unit_of_work(db) as own:
        yield own
