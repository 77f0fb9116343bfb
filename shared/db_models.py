"""SQLAlchemy database models for the MessengerFlow collections.

Column names keep the camelCase spelling of the hosted schema so that the SQL
backend and the Supabase backend return identical documents.
"""

from sqlalchemy import Column, Integer, Boolean, Text, JSON
from sqlalchemy.orm import declarative_base


Base = declarative_base()


class AgentRow(Base):
    """Model for agents table."""
    __tablename__ = 'agents'

    id = Column(Text, primary_key=True)
    name = Column(Text)
    email = Column(Text)
    password = Column(Text)
    role = Column(Text)
    avatar = Column(Text)
    status = Column(Text)
    assigned_page_ids = Column('assignedPageIds', JSON)


class PageRow(Base):
    """Model for pages table."""
    __tablename__ = 'pages'

    id = Column(Text, primary_key=True)
    name = Column(Text)
    category = Column(Text)
    is_connected = Column('isConnected', Boolean)
    access_token = Column('accessToken', Text)
    assigned_agent_ids = Column('assignedAgentIds', JSON)


class ConversationRow(Base):
    """Model for conversations table."""
    __tablename__ = 'conversations'

    id = Column(Text, primary_key=True)
    page_id = Column('pageId', Text)
    customer_id = Column('customerId', Text)
    customer_name = Column('customerName', Text)
    customer_avatar = Column('customerAvatar', Text)
    last_message = Column('lastMessage', Text)
    last_timestamp = Column('lastTimestamp', Text)
    status = Column(Text)
    assigned_agent_id = Column('assignedAgentId', Text)
    unread_count = Column('unreadCount', Integer)


class MessageRow(Base):
    """Model for messages table."""
    __tablename__ = 'messages'

    id = Column(Text, primary_key=True)
    conversation_id = Column('conversationId', Text)
    sender_id = Column('senderId', Text)
    sender_name = Column('senderName', Text)
    text = Column(Text)
    timestamp = Column(Text)
    is_incoming = Column('isIncoming', Boolean)
    is_read = Column('isRead', Boolean)


class LinkRow(Base):
    """Model for links table."""
    __tablename__ = 'links'

    id = Column(Text, primary_key=True)
    title = Column(Text)
    url = Column(Text)
    category = Column(Text)


class MediaRow(Base):
    """Model for media table."""
    __tablename__ = 'media'

    id = Column(Text, primary_key=True)
    title = Column(Text)
    url = Column(Text)
    type = Column(Text)
    is_local = Column('isLocal', Boolean)


class ProvisioningLogRow(Base):
    """Model for provisioning_logs table."""
    __tablename__ = 'provisioning_logs'

    id = Column(Text, primary_key=True)
    status = Column(Text)
    timestamp = Column(Text)


COLLECTION_MODELS = {
    'agents': AgentRow,
    'pages': PageRow,
    'conversations': ConversationRow,
    'messages': MessageRow,
    'links': LinkRow,
    'media': MediaRow,
    'provisioning_logs': ProvisioningLogRow,
}
