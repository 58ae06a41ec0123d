"""Database operations for a project's conversation and its messages."""

from typing import Any
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from sandcraft.db.enums import MessageRole
from sandcraft.db.models import Conversation
from sandcraft.db.models import Message
from sandcraft.utils.logger import setup_logger

logger = setup_logger()


async def get_conversation_by_project_id(
    db_session: AsyncSession, project_id: UUID
) -> Conversation | None:
    stmt = select(Conversation).where(Conversation.project_id == project_id)
    result = await db_session.execute(stmt)
    return result.scalar_one_or_none()


async def get_or_create_conversation(
    db_session: AsyncSession, project_id: UUID
) -> Conversation:
    """Get the project's conversation, creating it on first use."""
    conversation = await get_conversation_by_project_id(db_session, project_id)
    if conversation is not None:
        return conversation

    conversation = Conversation(project_id=project_id)
    db_session.add(conversation)
    try:
        await db_session.commit()
    except IntegrityError:
        # Lost a creation race, the other writer's row is the conversation
        await db_session.rollback()
        existing = await get_conversation_by_project_id(db_session, project_id)
        if existing is None:
            raise
        return existing

    return conversation


async def create_message(
    db_session: AsyncSession,
    conversation_id: UUID,
    role: MessageRole,
    content: str,
    tool_calls: list[dict[str, Any]] | None = None,
) -> Message:
    """Append a message to a conversation and commit it."""
    if role == MessageRole.USER and tool_calls:
        raise ValueError("User messages cannot carry tool calls")

    message = Message(
        conversation_id=conversation_id,
        role=role,
        content=content,
        tool_calls=tool_calls or None,
    )
    db_session.add(message)
    await db_session.commit()
    return message


async def get_conversation_messages(
    db_session: AsyncSession, conversation_id: UUID
) -> list[Message]:
    """Messages of a conversation, oldest first."""
    stmt = (
        select(Message)
        .where(Message.conversation_id == conversation_id)
        .order_by(Message.created_at, Message.id)
    )
    result = await db_session.execute(stmt)
    return list(result.scalars().all())
