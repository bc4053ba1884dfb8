"""Database schema and initialization."""
from boardbank.db.connection import db
from boardbank.utils.logger import get_logger

logger = get_logger(__name__)

# SQL schema for all tables (for fresh installs)
SCHEMA = """
-- Game sessions (one board game on one table)
CREATE TABLE IF NOT EXISTS sessions (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    join_code VARCHAR(12) NOT NULL,
    is_active BOOLEAN NOT NULL DEFAULT TRUE,
    buttons INTEGER[] NOT NULL DEFAULT '{100,200,500,1000,2000,5000}',
    host_player_id UUID,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    CONSTRAINT sessions_buttons_count CHECK (cardinality(buttons) BETWEEN 1 AND 8)
);

-- Join codes only need to be unique among running sessions
CREATE UNIQUE INDEX IF NOT EXISTS idx_sessions_active_code
    ON sessions(join_code) WHERE is_active;

-- Players (the host is a player with is_host set)
CREATE TABLE IF NOT EXISTS players (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    session_id UUID NOT NULL REFERENCES sessions(id) ON DELETE CASCADE,
    name VARCHAR(100) NOT NULL CHECK (length(name) > 0),
    balance INTEGER NOT NULL,
    initial_balance INTEGER NOT NULL,
    is_host BOOLEAN NOT NULL DEFAULT FALSE,
    created_at TIMESTAMPTZ NOT NULL DEFAULT clock_timestamp()
);

CREATE INDEX IF NOT EXISTS idx_players_session ON players(session_id, created_at);

-- Transactions. Player references carry no foreign key: removing a player
-- keeps its history, which then resolves to a "removed player" label.
CREATE TABLE IF NOT EXISTS transactions (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    seq BIGSERIAL NOT NULL,
    session_id UUID NOT NULL REFERENCES sessions(id) ON DELETE CASCADE,
    from_player_id UUID,  -- NULL is the bank
    to_player_id UUID,  -- NULL is the bank
    amount INTEGER NOT NULL,
    previous_balance INTEGER NOT NULL,
    new_balance INTEGER NOT NULL,
    description TEXT NOT NULL DEFAULT '',
    created_at TIMESTAMPTZ NOT NULL DEFAULT clock_timestamp(),
    CONSTRAINT transactions_has_player CHECK (
        from_player_id IS NOT NULL OR to_player_id IS NOT NULL
    )
);

CREATE INDEX IF NOT EXISTS idx_transactions_session ON transactions(session_id, seq);
"""

# Migrations for existing databases
MIGRATIONS = [
    # Migration 1: Link the host player once both rows exist
    """
    DO $$
    BEGIN
        IF NOT EXISTS (
            SELECT 1 FROM information_schema.table_constraints
            WHERE table_name = 'sessions' AND constraint_name = 'sessions_host_player_fk'
        ) THEN
            ALTER TABLE sessions ADD CONSTRAINT sessions_host_player_fk
                FOREIGN KEY (host_player_id) REFERENCES players(id)
                ON DELETE SET NULL DEFERRABLE INITIALLY DEFERRED;
        END IF;
    END $$;
    """,
]


async def init_db() -> None:
    """Initialize database schema and run migrations."""
    logger.info("Initializing database schema...")
    await db.execute(SCHEMA)
    
    logger.info("Running migrations...")
    for i, migration in enumerate(MIGRATIONS, 1):
        try:
            await db.execute(migration)
            logger.info(f"Migration {i} completed")
        except Exception as e:
            logger.warning(f"Migration {i} skipped or failed: {e}")
    
    logger.info("Database schema initialized")
