"""
事务执行器
在数据库事务中执行工作单元，序列化冲突/死锁时回滚并退避重试
"""
import asyncio
from typing import Any, Awaitable, Callable, Optional, TypeVar

from sqlalchemy.exc import DBAPIError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from rf_core.database import DatabaseManager
from rf_core.utils.errors import ReturnFlowException, TransientStoreError, PersistenceError
from rf_core.utils.logger import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

UnitOfWork = Callable[[AsyncSession], Awaitable[T]]

# serialization_failure / deadlock_detected
TRANSIENT_SQLSTATES = frozenset({"40001", "40P01"})

# SQLite 写锁冲突没有 SQLSTATE，只能看消息
_SQLITE_TRANSIENT_MESSAGES = ("database is locked", "database table is locked")


def _sqlstate(error: DBAPIError) -> Optional[str]:
    orig = error.orig
    for attr in ("sqlstate", "pgcode"):
        code = getattr(orig, attr, None)
        if code:
            return str(code)
    return None


def is_transient(error: BaseException) -> bool:
    """是否为可重试的存储冲突"""
    if isinstance(error, TransientStoreError):
        return True
    if not isinstance(error, DBAPIError):
        return False
    if _sqlstate(error) in TRANSIENT_SQLSTATES:
        return True
    message = str(error.orig).lower()
    return any(fragment in message for fragment in _SQLITE_TRANSIENT_MESSAGES)


def classify_store_error(error: BaseException, attempts: int = 0) -> ReturnFlowException:
    """把底层数据库异常转换为 TransientStoreError / PersistenceError"""
    if isinstance(error, ReturnFlowException):
        return error
    if is_transient(error):
        return TransientStoreError(
            code="TRANSACTION_CONFLICT",
            detail=f"Transaction aborted by concurrent update: {error.__class__.__name__}",
            attempts=attempts,
        )
    return PersistenceError(
        code="DATABASE_ERROR",
        detail=f"Database operation failed: {error.__class__.__name__}",
    )


class TransactionRunner:
    """事务执行器：核心服务获取事务句柄的唯一入口"""

    def __init__(
        self,
        db_manager: DatabaseManager,
        max_retries: Optional[int] = None,
        base_delay_ms: Optional[int] = None,
    ):
        settings = db_manager.settings
        self.db_manager = db_manager
        self.max_retries = settings.tx_max_retries if max_retries is None else max_retries
        self.base_delay = (settings.tx_retry_base_delay_ms if base_delay_ms is None else base_delay_ms) / 1000.0

    async def run_in_transaction(
        self,
        unit_of_work: UnitOfWork,
        max_retries: Optional[int] = None,
    ) -> T:
        """
        在事务中执行 unit_of_work(session)

        成功则提交；遇到序列化冲突或死锁时回滚，等待 base_delay * attempt 后重试，
        最多重试 max_retries 次，用尽后抛出 TransientStoreError。
        其他异常回滚后立即抛出（业务异常原样，数据库异常转为 PersistenceError）。
        """
        retries = self.max_retries if max_retries is None else max_retries
        attempt = 0

        while True:
            try:
                async with self.db_manager.get_transaction() as session:
                    return await unit_of_work(session)
            except ReturnFlowException as e:
                if not isinstance(e, TransientStoreError):
                    raise
                error: BaseException = e
            except SQLAlchemyError as e:
                if not is_transient(e):
                    logger.error("Transaction failed", error_type=e.__class__.__name__, exc_info=True)
                    raise classify_store_error(e) from e
                error = e

            if attempt >= retries:
                logger.error("Transaction retries exhausted", attempts=attempt + 1)
                exhausted = classify_store_error(error, attempts=attempt + 1)
                if exhausted is error:
                    raise exhausted
                raise exhausted from error

            attempt += 1
            delay = self.base_delay * attempt
            logger.warning(
                "Transient transaction conflict, retrying",
                attempt=attempt,
                max_retries=retries,
                delay_ms=round(delay * 1000),
            )
            await asyncio.sleep(delay)

    async def run_in_session(self, operation: UnitOfWork) -> T:
        """只读查询：不开启显式事务，不重试"""
        try:
            async with self.db_manager.get_session() as session:
                return await operation(session)
        except ReturnFlowException:
            raise
        except SQLAlchemyError as e:
            logger.error("Session operation failed", exc_info=True)
            raise classify_store_error(e) from e
