"""Initial schema

Revision ID: 001
Revises:
Create Date: 2026-10-19

"""
from alembic import op


# revision identifiers, used by Alembic.
revision = '001'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    # Portal users
    op.execute("""
        CREATE TABLE IF NOT EXISTS agents (
            id TEXT PRIMARY KEY,
            name TEXT,
            email TEXT,
            password TEXT,
            role TEXT,
            avatar TEXT,
            status TEXT,
            "assignedPageIds" JSONB
        )
    """)

    # Connected pages
    op.execute("""
        CREATE TABLE IF NOT EXISTS pages (
            id TEXT PRIMARY KEY,
            name TEXT,
            category TEXT,
            "isConnected" BOOLEAN,
            "accessToken" TEXT,
            "assignedAgentIds" JSONB
        )
    """)

    op.execute("""
        CREATE TABLE IF NOT EXISTS conversations (
            id TEXT PRIMARY KEY,
            "pageId" TEXT,
            "customerId" TEXT,
            "customerName" TEXT,
            "customerAvatar" TEXT,
            "lastMessage" TEXT,
            "lastTimestamp" TEXT,
            status TEXT,
            "assignedAgentId" TEXT,
            "unreadCount" INTEGER
        )
    """)

    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_conversations_page
        ON conversations("pageId")
    """)

    op.execute("""
        CREATE TABLE IF NOT EXISTS messages (
            id TEXT PRIMARY KEY,
            "conversationId" TEXT,
            "senderId" TEXT,
            "senderName" TEXT,
            text TEXT,
            timestamp TEXT,
            "isIncoming" BOOLEAN,
            "isRead" BOOLEAN
        )
    """)

    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_messages_conversation
        ON messages("conversationId")
    """)

    # Quick-reply catalog
    op.execute("""
        CREATE TABLE IF NOT EXISTS links (
            id TEXT PRIMARY KEY,
            title TEXT,
            url TEXT,
            category TEXT
        )
    """)

    op.execute("""
        CREATE TABLE IF NOT EXISTS media (
            id TEXT PRIMARY KEY,
            title TEXT,
            url TEXT,
            type TEXT,
            "isLocal" BOOLEAN
        )
    """)

    # Write-test heartbeats
    op.execute("""
        CREATE TABLE IF NOT EXISTS provisioning_logs (
            id TEXT PRIMARY KEY,
            status TEXT,
            timestamp TEXT
        )
    """)


def downgrade() -> None:
    op.execute("DROP TABLE IF EXISTS provisioning_logs CASCADE")
    op.execute("DROP TABLE IF EXISTS media CASCADE")
    op.execute("DROP TABLE IF EXISTS links CASCADE")
    op.execute("DROP TABLE IF EXISTS messages CASCADE")
    op.execute("DROP TABLE IF EXISTS conversations CASCADE")
    op.execute("DROP TABLE IF EXISTS pages CASCADE")
    op.execute("DROP TABLE IF EXISTS agents CASCADE")
