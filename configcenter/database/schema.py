"""DDL for the configuration store tables."""

from configcenter.database.postgres import PostgresClient
from configcenter.logger.logger import get_logger
from configcenter.logger.types import Category, param

SCHEMA_STATEMENTS: tuple[str, ...] = (
    """
    CREATE TABLE IF NOT EXISTS system_configurations (
        id BIGSERIAL PRIMARY KEY,
        category VARCHAR(50) NOT NULL,
        config_key VARCHAR(100) NOT NULL,
        config_value TEXT,
        value_type VARCHAR(20) NOT NULL DEFAULT 'string',
        is_encrypted BOOLEAN NOT NULL DEFAULT FALSE,
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        environment VARCHAR(20) NOT NULL DEFAULT 'development',
        updated_by VARCHAR(100),
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        CONSTRAINT unq_system_configurations_category_key_env
            UNIQUE (category, config_key, environment)
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_system_configurations_category_env
        ON system_configurations (category, environment)
    """,
    """
    CREATE TABLE IF NOT EXISTS configuration_metadata (
        id BIGSERIAL PRIMARY KEY,
        category VARCHAR(50) NOT NULL,
        config_key VARCHAR(100) NOT NULL,
        display_name VARCHAR(200) NOT NULL,
        description TEXT,
        input_type VARCHAR(20) NOT NULL DEFAULT 'text',
        validation_rules JSONB,
        default_value TEXT,
        is_required BOOLEAN NOT NULL DEFAULT FALSE,
        sort_order INTEGER NOT NULL DEFAULT 0,
        group_name VARCHAR(100),
        help_text TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        CONSTRAINT unq_configuration_metadata_category_key UNIQUE (category, config_key)
    )
    """,
    # No FK to system_configurations: the row recording a delete must outlive
    # the entry it refers to. Orphans are removed by purge_orphaned().
    """
    CREATE TABLE IF NOT EXISTS configuration_history (
        id BIGSERIAL PRIMARY KEY,
        config_id BIGINT NOT NULL,
        old_value TEXT,
        new_value TEXT,
        changed_by VARCHAR(100),
        change_reason TEXT,
        ip_address INET,
        user_agent TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_configuration_history_config_id
        ON configuration_history (config_id)
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_configuration_history_created_at
        ON configuration_history (created_at)
    """,
    """
    CREATE TABLE IF NOT EXISTS service_logs (
        id BIGSERIAL PRIMARY KEY,
        timestamp TIMESTAMPTZ NOT NULL,
        service_name VARCHAR(100) NOT NULL,
        instance_id VARCHAR(100) NOT NULL,
        environment VARCHAR(20) NOT NULL,
        level VARCHAR(10) NOT NULL,
        category VARCHAR(50),
        function_name TEXT,
        file_path TEXT,
        line_number INTEGER,
        message TEXT NOT NULL,
        error_message TEXT,
        stack_trace TEXT,
        context JSONB,
        duration_ms INTEGER,
        ingestion_time TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
    """,
)


def ensure_schema(postgres: PostgresClient) -> None:
    """Create the store tables if they do not exist yet."""
    logger = get_logger().with_category(Category.DATABASE)
    with postgres.transaction() as conn:
        with conn.cursor() as cur:
            for statement in SCHEMA_STATEMENTS:
                cur.execute(statement)
    logger.info("Schema ensured", param("statements", len(SCHEMA_STATEMENTS)))
