import logging
from contextlib import asynccontextmanager
from typing import Dict, List, Optional
from sqlalchemy import and_, exists, func, or_, select
from sqlalchemy.exc import DisconnectionError, InterfaceError, OperationalError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from mailsync.exceptions import StorageError
from mailsync.models import EmailAccount, Message, Thread

logger = logging.getLogger(__name__)

_CONNECTION_ERRORS = (OperationalError, InterfaceError, DisconnectionError)


class MailStore:
    """Persistence facade over accounts, threads and messages.

    Every SQLAlchemy failure is re-raised as ``StorageError``; lost
    connections are flagged so batch loops can stop early.
    """

    def __init__(self, db: AsyncSession):
        self.db = db

    @asynccontextmanager
    async def _guard(self, action: str):
        try:
            yield
        except _CONNECTION_ERRORS as e:
            raise StorageError(f"{action} failed: {e}", connection_lost=True) from e
        except SQLAlchemyError as e:
            raise StorageError(f"{action} failed: {e}") from e

    @asynccontextmanager
    async def savepoint(self, action: str):
        """Nested transaction; a failure inside rolls back to the savepoint only"""
        async with self._guard(action):
            async with self.db.begin_nested():
                yield

    # Accounts
    async def get_account(self, account_id: int) -> Optional[EmailAccount]:
        async with self._guard("Account lookup"):
            result = await self.db.execute(select(EmailAccount).where(EmailAccount.id == account_id))
            return result.scalar_one_or_none()

    async def find_account(self, user_id: str, email_address: str) -> Optional[EmailAccount]:
        async with self._guard("Account lookup"):
            result = await self.db.execute(
                select(EmailAccount).where(
                    EmailAccount.user_id == user_id,
                    EmailAccount.email_address == email_address,
                )
            )
            return result.scalar_one_or_none()

    async def list_accounts(self, user_id: Optional[str] = None, active_only: bool = False) -> List[EmailAccount]:
        query = select(EmailAccount).order_by(EmailAccount.id)
        if user_id is not None:
            query = query.where(EmailAccount.user_id == user_id)
        if active_only:
            query = query.where(EmailAccount.is_active == True)  # noqa: E712
        async with self._guard("Account listing"):
            result = await self.db.execute(query)
            return list(result.scalars().all())

    async def add_account(self, account: EmailAccount) -> EmailAccount:
        async with self._guard("Account insert"):
            self.db.add(account)
            await self.db.flush()
        return account

    async def clear_primary(self, user_id: str, keep_account_id: int):
        for other in await self.list_accounts(user_id=user_id):
            if other.id != keep_account_id and other.is_primary:
                other.is_primary = False

    async def update_sync_state(self, account: EmailAccount, **changes) -> Dict:
        """Merge ``changes`` into the account's sync state and persist the whole object"""
        merged = {**(account.sync_state or {}), **changes}
        account.sync_state = merged
        await self.commit()
        return merged

    # Threads
    async def find_thread(self, account_id: int, thread_id: str) -> Optional[Thread]:
        async with self._guard("Thread lookup"):
            result = await self.db.execute(
                select(Thread).where(Thread.account_id == account_id, Thread.thread_id == thread_id)
            )
            return result.scalar_one_or_none()

    async def find_threads_by_subject(self, account_id: int, normalized_subject: str) -> List[Thread]:
        async with self._guard("Thread subject lookup"):
            result = await self.db.execute(
                select(Thread)
                .where(Thread.account_id == account_id, Thread.normalized_subject == normalized_subject)
                .order_by(Thread.last_message_at.desc())
            )
            return list(result.scalars().all())

    async def add_thread(self, thread: Thread) -> Thread:
        async with self._guard("Thread insert"):
            self.db.add(thread)
            await self.db.flush()
        return thread

    async def thread_stats(self, account_id: int) -> Dict:
        async with self._guard("Thread statistics"):
            total = await self.db.scalar(select(func.count(Thread.id)).where(Thread.account_id == account_id))
            unread = await self.db.scalar(
                select(func.count(Thread.id)).where(Thread.account_id == account_id, Thread.unread_count > 0)
            )
            by_type = await self.db.execute(
                select(Thread.thread_type, func.count(Thread.id))
                .where(Thread.account_id == account_id)
                .group_by(Thread.thread_type)
            )
            by_status = await self.db.execute(
                select(Thread.status, func.count(Thread.id))
                .where(Thread.account_id == account_id)
                .group_by(Thread.status)
            )
            return {
                'total_threads': total or 0,
                'unread_threads': unread or 0,
                'by_type': {getattr(k, 'value', k): v for k, v in by_type.all()},
                'by_status': {getattr(k, 'value', k): v for k, v in by_status.all()},
            }

    async def delete_orphaned_threads(self, account_id: int) -> int:
        has_messages = exists().where(
            and_(Message.account_id == Thread.account_id, Message.thread_id == Thread.thread_id)
        )
        async with self._guard("Orphaned thread cleanup"):
            result = await self.db.execute(
                select(Thread).where(Thread.account_id == account_id, ~has_messages)
            )
            orphans = list(result.scalars().all())
            for thread in orphans:
                await self.db.delete(thread)
            await self.db.commit()
        return len(orphans)

    # Messages
    async def find_message(self, account_id: int, message_id: str) -> Optional[Message]:
        """Look a message up by provider id or RFC822 Message-ID"""
        async with self._guard("Message lookup"):
            result = await self.db.execute(
                select(Message)
                .where(
                    Message.account_id == account_id,
                    or_(Message.message_id == message_id, Message.internet_message_id == message_id),
                )
                .limit(1)
            )
            return result.scalar_one_or_none()

    async def message_exists(self, account_id: int, message_id: str) -> bool:
        async with self._guard("Message lookup"):
            count = await self.db.scalar(
                select(func.count(Message.id)).where(
                    Message.account_id == account_id, Message.message_id == message_id
                )
            )
            return bool(count)

    async def find_thread_id_for_messages(self, account_id: int, message_ids: List[str]) -> Optional[str]:
        """Return the thread of the most recent stored message among ``message_ids``"""
        if not message_ids:
            return None
        async with self._guard("Reference lookup"):
            result = await self.db.execute(
                select(Message.thread_id)
                .where(
                    Message.account_id == account_id,
                    or_(Message.message_id.in_(message_ids), Message.internet_message_id.in_(message_ids)),
                )
                .order_by(Message.date.desc())
                .limit(1)
            )
            return result.scalar_one_or_none()

    async def add_message(self, message: Message) -> Message:
        async with self._guard("Message insert"):
            self.db.add(message)
            await self.db.flush()
        return message

    async def count_messages(self, account_id: int, unread_only: bool = False) -> int:
        query = select(func.count(Message.id)).where(
            Message.account_id == account_id, Message.is_deleted == False  # noqa: E712
        )
        if unread_only:
            query = query.where(Message.is_read == False)  # noqa: E712
        async with self._guard("Message count"):
            return (await self.db.scalar(query)) or 0

    # Unit of work
    async def commit(self):
        async with self._guard("Commit"):
            await self.db.commit()

    async def rollback(self):
        try:
            await self.db.rollback()
        except SQLAlchemyError as e:
            logger.warning("Rollback failed: %s", e)

    async def refresh(self, obj):
        async with self._guard("Refresh"):
            await self.db.refresh(obj)
